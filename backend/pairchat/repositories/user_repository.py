from datetime import datetime
from typing import Iterable, List, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from pairchat.models.user import UserDocument
from pairchat.utils.ids import utcnow


def _normalize(user: Optional[dict]) -> Optional[UserDocument]:
    if user:
        user["_id"] = str(user["_id"])  # normalize to string for API layer
    return user


class UserRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("users")

    async def ensure_indexes(self) -> None:
        await self._collection.create_index([("email", ASCENDING)], unique=True)

    async def create_user(self, email: str, hashed_password: str, full_name: Optional[str]) -> str:

        doc: UserDocument = {
            "email": email,
            "hashed_password": hashed_password,
            "full_name": full_name,
            "profile_pic": "",
            "is_online": False,
            "last_seen": None,
            "created_at": utcnow(),
        }
        result = await self._collection.insert_one(doc)
        return str(result.inserted_id)

    async def get_user_by_email(self, email: str) -> Optional[UserDocument]:

        return _normalize(await self._collection.find_one({"email": email}))

    async def get_user_by_id(self, user_id: str) -> Optional[UserDocument]:
        if not ObjectId.is_valid(user_id):
            return None
        return _normalize(await self._collection.find_one({"_id": ObjectId(user_id)}))

    async def exists(self, user_id: str) -> bool:
        if not ObjectId.is_valid(user_id):
            return False
        return await self._collection.find_one({"_id": ObjectId(user_id)}, {"_id": 1}) is not None

    async def get_users_by_ids(self, user_ids: Iterable[str]) -> List[dict]:
        oids = [ObjectId(uid) for uid in set(user_ids) if ObjectId.is_valid(uid)]
        cursor = self._collection.find({"_id": {"$in": oids}}, {"hashed_password": 0})
        return [_normalize(user) for user in await cursor.to_list(length=None)]

    async def list_others(self, user_id: str) -> List[dict]:
        # online users first, then alphabetical
        cursor = self._collection.find(
            {"_id": {"$ne": ObjectId(user_id)}},
            {"hashed_password": 0},
        ).sort([("is_online", DESCENDING), ("full_name", ASCENDING)])
        return [_normalize(user) for user in await cursor.to_list(length=None)]

    async def set_online(self, user_id: str, is_online: bool, last_seen: Optional[datetime] = None) -> Optional[UserDocument]:
        fields: dict = {"is_online": is_online}
        if not is_online:
            fields["last_seen"] = last_seen or utcnow()
        user = await self._collection.find_one_and_update(
            {"_id": ObjectId(user_id)},
            {"$set": fields},
            projection={"hashed_password": 0},
            return_document=ReturnDocument.AFTER,
        )
        return _normalize(user)

    async def update_profile_pic(self, user_id: str, url: str) -> Optional[dict]:
        user = await self._collection.find_one_and_update(
            {"_id": ObjectId(user_id)},
            {"$set": {"profile_pic": url}},
            projection={"hashed_password": 0},
            return_document=ReturnDocument.AFTER,
        )
        return _normalize(user)
