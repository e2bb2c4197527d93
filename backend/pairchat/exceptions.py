"""
Error taxonomy shared by the REST and realtime layers.

Services and repositories raise these; the HTTP layer maps them to status
codes in ``pairchat.errors`` and the realtime layer turns them into
``error`` events. The ``message`` is always safe to show to clients.
"""

from typing import Iterable, Optional


class ChatError(Exception):
    """
    Base class for every classified error.

    - message: human-friendly message
    - fields: optional list of field names related to the error
    - kind: canonical error kind sent to clients (class name by default)
    """

    status_code = 400

    def __init__(self, message: str, *, fields: Optional[Iterable[str]] = None):
        super().__init__(message)
        self.message = message
        self.fields = list(fields) if fields else None

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_payload(self) -> dict:
        payload = {"message": self.message, "kind": self.kind}
        if self.fields:
            payload["fields"] = list(self.fields)
        return payload


class InvalidArgument(ChatError):
    status_code = 400


class NotFound(ChatError):
    status_code = 404


class AuthenticationError(ChatError):
    status_code = 401


class UploadFailed(ChatError):
    status_code = 400


class InvalidOperation(ChatError):
    status_code = 400


class ConflictError(ChatError):
    """Optimistic update retries were exhausted."""

    status_code = 409


__all__ = [
    "ChatError",
    "InvalidArgument",
    "NotFound",
    "AuthenticationError",
    "UploadFailed",
    "InvalidOperation",
    "ConflictError",
]
