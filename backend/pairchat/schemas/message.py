from datetime import datetime
from typing import List, Optional

from pydantic import Field

from pairchat.schemas.base import ApiModel
from pairchat.utils.ids import as_utc


class MessageSend(ApiModel):

    text: Optional[str] = None
    # data URI / base64 payload, uploaded before the message is stored
    image: Optional[str] = None
    client_message_id: Optional[str] = Field(default=None, max_length=100)


class Participant(ApiModel):

    id: str = Field(alias="_id")
    full_name: Optional[str] = None
    profile_pic: str = ""

    @classmethod
    def from_user(cls, user: dict) -> "Participant":
        return cls(id=str(user["_id"]), full_name=user.get("full_name"), profile_pic=user.get("profile_pic") or "")


class MessageOut(ApiModel):

    id: str = Field(alias="_id")
    conversation_id: Optional[str] = None
    sender_id: str
    receiver_id: str
    text: str = ""
    image: Optional[str] = None
    status: str = "sent"
    read_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    client_message_id: Optional[str] = None
    created_at: datetime
    sender: Optional[Participant] = None
    receiver: Optional[Participant] = None

    @classmethod
    def from_document(cls, doc: dict, conversation_id=None, users: Optional[dict] = None) -> "MessageOut":
        users = users or {}
        sender = users.get(doc["sender_id"])
        receiver = users.get(doc["receiver_id"])
        return cls(
            id=str(doc["_id"]),
            conversation_id=str(conversation_id) if conversation_id is not None else None,
            sender_id=doc["sender_id"],
            receiver_id=doc["receiver_id"],
            text=doc.get("text") or "",
            image=doc.get("image"),
            status=doc.get("status", "sent"),
            read_at=as_utc(doc.get("read_at")),
            delivered_at=as_utc(doc.get("delivered_at")),
            client_message_id=doc.get("client_message_id"),
            created_at=as_utc(doc["created_at"]),
            sender=Participant.from_user(sender) if sender else None,
            receiver=Participant.from_user(receiver) if receiver else None,
        )


class Pagination(ApiModel):

    page: int
    total_pages: int
    total: int


class MessagePage(ApiModel):

    messages: List[MessageOut]
    pagination: Pagination


class SearchResult(ApiModel):

    message: MessageOut
    conversation_id: str
    sender: Optional[Participant] = None
