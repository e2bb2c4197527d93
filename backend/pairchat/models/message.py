from datetime import datetime
from typing import Literal, Optional, TypedDict

from bson import ObjectId


MessageStatus = Literal["sent", "delivered", "read"]

# "sending" only exists on the client, before the server assigned an id
STATUS_RANK = {"sending": -1, "sent": 0, "delivered": 1, "read": 2}


def status_advances(current: str, new: str) -> bool:
    """True when moving from ``current`` to ``new`` goes forward."""
    return STATUS_RANK.get(new, -1) > STATUS_RANK.get(current, -1)


class MessageDocument(TypedDict, total=False):
    # embedded in ConversationDocument.messages, never stored on its own
    _id: ObjectId
    sender_id: str
    receiver_id: str
    text: str
    image: Optional[str]
    status: MessageStatus
    read_at: Optional[datetime]
    delivered_at: Optional[datetime]
    # client ack / correlation token
    client_message_id: Optional[str]
    created_at: datetime
