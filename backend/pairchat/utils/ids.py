from datetime import datetime, timezone
from typing import Any, Optional

from bson import ObjectId

from pairchat.exceptions import InvalidArgument


def parse_object_id(value: Any, label: str = "ID") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not isinstance(value, str) or not ObjectId.is_valid(value):
        raise InvalidArgument(f"Invalid {label}")
    return ObjectId(value)


def utcnow() -> datetime:
    # BSON dates carry millisecond precision; truncate so stored == returned
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=now.microsecond - now.microsecond % 1000)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Mongo hands back naive datetimes unless the client is tz_aware
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)
