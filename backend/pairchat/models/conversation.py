from datetime import datetime
from typing import List, Optional, TypedDict

from bson import ObjectId

from pairchat.models.message import MessageDocument


class ConversationDocument(TypedDict, total=False):
    _id: ObjectId
    # always sorted ascending; pair_key is "<a>:<b>" of the same pair
    participants: List[str]
    pair_key: str
    messages: List[MessageDocument]
    # per-user unread counters (user_id -> count)
    unread_count: dict[str, int]
    last_message: Optional[MessageDocument]
    # bumped on every write, used for optimistic updates
    version: int
    created_at: datetime
    updated_at: datetime
