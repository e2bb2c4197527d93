import logging
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError

from pairchat.exceptions import ConflictError, InvalidArgument, InvalidOperation, NotFound
from pairchat.models.conversation import ConversationDocument
from pairchat.models.message import MessageDocument, status_advances
from pairchat.utils.ids import as_utc, utcnow

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100
SEARCH_LIMIT = 50
MIN_QUERY_LENGTH = 2
MAX_UPDATE_ATTEMPTS = 5

# mutate(conversation) -> (update document or None for "nothing to write", result)
Mutation = Callable[[Dict[str, Any]], Tuple[Optional[Dict[str, Any]], Any]]


def canonical_pair(user_a: str, user_b: str) -> List[str]:
    return sorted([str(user_a), str(user_b)])


def pair_key(user_a: str, user_b: str) -> str:
    return ":".join(canonical_pair(user_a, user_b))


def clamp_paging(page: Optional[int], page_size: Optional[int]) -> Tuple[int, int]:
    page = max(int(page or 1), 1)
    page_size = min(max(int(page_size or DEFAULT_PAGE_SIZE), 1), MAX_PAGE_SIZE)
    return page, page_size


class ConversationRepository:
    """
    One document per unordered user pair, embedding the whole message log.

    Appends are single atomic ``update_one`` calls. Read-state changes are
    read-modify-write operations guarded by the document ``version``.
    """

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("pair_key", ASCENDING)], unique=True)
        await self.collection.create_index([("participants", ASCENDING), ("updated_at", DESCENDING)])
        await self.collection.create_index([("messages._id", ASCENDING)])

    # ------------------------------------------------------------------
    # lookup
    # ------------------------------------------------------------------

    async def find_conversation(self, user_a: str, user_b: str) -> Optional[ConversationDocument]:
        participants = canonical_pair(user_a, user_b)
        return await self.collection.find_one(
            {"pair_key": ":".join(participants), "participants": participants}
        )

    async def get_by_id(self, conversation_id: ObjectId) -> Optional[ConversationDocument]:
        return await self.collection.find_one({"_id": conversation_id})

    async def find_by_message(self, message_id: ObjectId, participant_id: str) -> Optional[ConversationDocument]:
        return await self.collection.find_one({"messages._id": message_id, "participants": participant_id})

    async def list_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        cursor = self.collection.find({"participants": user_id}, {"messages": 0})
        return await cursor.to_list(length=None)

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------

    async def create_conversation(self, user_a: str, user_b: str, first_message: MessageDocument) -> ConversationDocument:
        participants = canonical_pair(user_a, user_b)
        now = first_message["created_at"]
        doc: ConversationDocument = {
            "participants": participants,
            "pair_key": ":".join(participants),
            "messages": [first_message],
            "unread_count": {first_message["receiver_id"]: 1},
            "last_message": first_message,
            "version": 1,
            "created_at": now,
            "updated_at": now,
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = result.inserted_id
        return doc

    async def append_message(self, conversation: ConversationDocument, message: MessageDocument) -> MessageDocument:
        receiver_id = message["receiver_id"]
        if receiver_id not in conversation.get("participants", []):
            raise InvalidArgument("Receiver is not part of this conversation")
        # push, cache refresh and counter bump must land in one write
        result = await self.collection.update_one(
            {"_id": conversation["_id"]},
            {
                "$push": {"messages": message},
                "$set": {"last_message": message, "updated_at": message["created_at"]},
                "$inc": {f"unread_count.{receiver_id}": 1, "version": 1},
            },
        )
        if not result.matched_count:
            raise NotFound("Conversation not found")
        return message

    async def append_or_create(self, message: MessageDocument) -> Tuple[ConversationDocument, MessageDocument]:
        sender_id, receiver_id = message["sender_id"], message["receiver_id"]
        conversation = await self.find_conversation(sender_id, receiver_id)
        if conversation is None:
            try:
                conversation = await self.create_conversation(sender_id, receiver_id, message)
                return conversation, message
            except DuplicateKeyError:
                # a concurrent first message created the pair in the meantime
                logger.debug("Conversation %s created concurrently, appending", pair_key(sender_id, receiver_id))
                conversation = await self.find_conversation(sender_id, receiver_id)
                if conversation is None:
                    raise
        await self.append_message(conversation, message)
        return conversation, message

    async def mark_one_read(self, conversation: Dict[str, Any], message_id: ObjectId, reader_id: str) -> Dict[str, Any]:
        def mutate(conv):
            index, message = self._locate(conv, message_id, reader_id)
            if message["sender_id"] == reader_id:
                raise InvalidOperation("Cannot mark your own message as read")
            if message.get("status") == "read":
                return None, message
            now = utcnow()
            unread = max(int(conv.get("unread_count", {}).get(reader_id, 0)) - 1, 0)
            fields = {
                f"messages.{index}.status": "read",
                f"messages.{index}.read_at": now,
                f"unread_count.{reader_id}": unread,
            }
            fields.update(self._last_message_fields(conv, message, "read", "read_at", now))
            return {"$set": fields}, {**message, "status": "read", "read_at": now}

        return await self._update_with_retry(conversation, mutate)

    async def mark_all_read(self, conversation: Dict[str, Any], reader_id: str) -> int:
        def mutate(conv):
            if reader_id not in conv.get("participants", []):
                raise NotFound("Conversation not found")
            now = utcnow()
            fields: Dict[str, Any] = {}
            count = 0
            for index, message in enumerate(conv.get("messages") or []):
                if message.get("receiver_id") == reader_id and message.get("status") != "read":
                    fields[f"messages.{index}.status"] = "read"
                    fields[f"messages.{index}.read_at"] = now
                    count += 1
            last = conv.get("last_message")
            if last and last.get("receiver_id") == reader_id and last.get("status") != "read":
                fields["last_message.status"] = "read"
                fields["last_message.read_at"] = now
            if not fields and not conv.get("unread_count", {}).get(reader_id):
                return None, 0
            fields[f"unread_count.{reader_id}"] = 0
            return {"$set": fields}, count

        return await self._update_with_retry(conversation, mutate)

    async def mark_delivered(self, conversation: Dict[str, Any], message_id: ObjectId, receiver_id: str) -> Optional[Dict[str, Any]]:
        """Move a message from sent to delivered. Returns None when nothing changed."""

        def mutate(conv):
            index, message = self._locate(conv, message_id, receiver_id)
            if message["receiver_id"] != receiver_id:
                raise InvalidOperation("Only the receiver can acknowledge delivery")
            if not status_advances(message.get("status", "sent"), "delivered"):
                return None, None
            now = utcnow()
            fields = {
                f"messages.{index}.status": "delivered",
                f"messages.{index}.delivered_at": now,
            }
            fields.update(self._last_message_fields(conv, message, "delivered", "delivered_at", now))
            return {"$set": fields}, {**message, "status": "delivered", "delivered_at": now}

        return await self._update_with_retry(conversation, mutate)

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    def list_messages(self, conversation: Dict[str, Any], page: int = 1, page_size: int = DEFAULT_PAGE_SIZE) -> Tuple[List[Dict[str, Any]], int]:
        page, page_size = clamp_paging(page, page_size)
        messages = conversation.get("messages") or []
        # newest first; equal timestamps fall back to storage order
        ranked = sorted(
            enumerate(messages),
            key=lambda pair: (as_utc(pair[1]["created_at"]), pair[0]),
            reverse=True,
        )
        skip = (page - 1) * page_size
        window = [message for _, message in ranked[skip:skip + page_size]]
        window.reverse()
        return window, len(messages)

    async def search_messages(self, user_id: str, query: str, limit: int = SEARCH_LIMIT) -> List[Dict[str, Any]]:
        query = (query or "").strip()
        if len(query) < MIN_QUERY_LENGTH:
            raise InvalidArgument(f"Search query must be at least {MIN_QUERY_LENGTH} characters")
        escaped = re.escape(query)
        pattern = re.compile(escaped, re.IGNORECASE)
        cursor = self.collection.find(
            {"participants": user_id, "messages.text": {"$regex": escaped, "$options": "i"}},
            {"messages": 1},
        )
        matches = []
        for conv in await cursor.to_list(length=None):
            for message in conv.get("messages") or []:
                if pattern.search(message.get("text") or ""):
                    matches.append({"conversation_id": conv["_id"], "message": message})
        matches.sort(key=lambda match: as_utc(match["message"]["created_at"]), reverse=True)
        return matches[:limit]

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _locate(conv: Dict[str, Any], message_id: ObjectId, user_id: str) -> Tuple[int, Dict[str, Any]]:
        if user_id in conv.get("participants", []):
            for index, message in enumerate(conv.get("messages") or []):
                if message.get("_id") == message_id:
                    return index, message
        raise NotFound("Message not found")

    @staticmethod
    def _last_message_fields(conv, message, status, stamp_field, now) -> Dict[str, Any]:
        last = conv.get("last_message")
        if last and last.get("_id") == message["_id"]:
            return {"last_message.status": status, f"last_message.{stamp_field}": now}
        return {}

    async def _update_with_retry(self, conversation: Dict[str, Any], mutate: Mutation) -> Any:
        conv = conversation
        for attempt in range(MAX_UPDATE_ATTEMPTS):
            if attempt:
                conv = await self.get_by_id(conversation["_id"])
                if conv is None:
                    raise NotFound("Conversation not found")
            try:
                update, result = mutate(conv)
            except NotFound:
                # the snapshot may predate the message, so look again once
                if attempt:
                    raise
                logger.debug("Snapshot of conversation %s is missing the target, re-reading", conv["_id"])
                continue
            if update is None:
                return result
            update.setdefault("$inc", {})["version"] = 1
            outcome = await self.collection.update_one(
                {"_id": conv["_id"], "version": conv.get("version", 0)},
                update,
            )
            if outcome.modified_count:
                return result
            logger.debug("Version conflict on conversation %s (attempt %d)", conv["_id"], attempt + 1)
        raise ConflictError("Conversation was modified concurrently, please retry")
