from datetime import datetime
from typing import Optional

from pydantic import EmailStr, Field

from pairchat.schemas.base import ApiModel
from pairchat.schemas.message import MessageOut
from pairchat.utils.ids import as_utc


class UserCreate(ApiModel):

    full_name: str = Field(min_length=1, max_length=100)
    email: EmailStr
    # bcrypt only looks at the first 72 bytes
    password: str = Field(min_length=6, max_length=72)


class UserLogin(ApiModel):

    email: EmailStr
    password: str = Field(min_length=1)


class ProfileUpdate(ApiModel):

    profile_pic: str = Field(min_length=1)


class StatusUpdate(ApiModel):

    is_online: bool


class UserPublic(ApiModel):

    id: str = Field(alias="_id")
    email: Optional[str] = None
    full_name: Optional[str] = None
    profile_pic: str = ""
    is_online: bool = False
    last_seen: Optional[datetime] = None

    @classmethod
    def from_document(cls, doc: dict) -> "UserPublic":
        return cls(
            id=str(doc["_id"]),
            email=doc.get("email"),
            full_name=doc.get("full_name"),
            profile_pic=doc.get("profile_pic") or "",
            is_online=bool(doc.get("is_online")),
            last_seen=as_utc(doc.get("last_seen")),
        )


class SidebarUser(UserPublic):

    unread_count: int = 0
    last_message: Optional[MessageOut] = None
