import logging
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId

from pairchat.exceptions import InvalidArgument, NotFound
from pairchat.models.message import MessageDocument
from pairchat.realtime import hub as events
from pairchat.realtime.hub import RealtimeHub
from pairchat.repositories.conversation_repository import (
    SEARCH_LIMIT,
    ConversationRepository,
    clamp_paging,
)
from pairchat.repositories.user_repository import UserRepository
from pairchat.schemas.message import MessageOut, MessagePage, Pagination, Participant, SearchResult
from pairchat.services.image_store import MESSAGE_FOLDER, ImageStore
from pairchat.utils.ids import as_utc, parse_object_id, utcnow

logger = logging.getLogger(__name__)

MAX_TEXT_LENGTH = 1000


class ChatService:

    def __init__(
        self,
        conversation_repo: ConversationRepository,
        user_repo: UserRepository,
        hub: RealtimeHub,
        image_store: ImageStore,
    ) -> None:
        self._conversations = conversation_repo
        self._users = user_repo
        self._hub = hub
        self._images = image_store

    async def send_message(
        self,
        sender_id: str,
        receiver_id: str,
        text: Optional[str] = None,
        image: Optional[str] = None,
        client_message_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Validate, persist and fan out one message.

        Not idempotent: two calls store two messages. Everything that can
        fail (validation, receiver lookup, upload) runs before the write.
        """
        parse_object_id(receiver_id, "receiver ID")
        text = (text or "").strip()
        if not text and not image:
            raise InvalidArgument("Either text or image is required")
        if len(text) > MAX_TEXT_LENGTH:
            raise InvalidArgument(f"Message cannot exceed {MAX_TEXT_LENGTH} characters", fields=["text"])
        if sender_id == receiver_id:
            raise InvalidArgument("Cannot send a message to yourself")
        if not await self._users.exists(receiver_id):
            raise NotFound("Receiver not found")

        image_url = await self._images.upload(image, MESSAGE_FOLDER) if image else None

        message: MessageDocument = {
            "_id": ObjectId(),
            "sender_id": sender_id,
            "receiver_id": receiver_id,
            "text": text,
            "image": image_url,
            "status": "sent",
            "read_at": None,
            "delivered_at": None,
            "client_message_id": client_message_id,
            "created_at": utcnow(),
        }
        conversation, _ = await self._conversations.append_or_create(message)

        stored = await self._reload_message(conversation["_id"], message["_id"])
        projected = await self.project_message(stored, conversation["_id"])

        pushed = await self._hub.emit_to_users([receiver_id, sender_id], events.NEW_MESSAGE, projected)
        logger.info(
            "Message %s stored in conversation %s, pushed to %d connection(s)",
            message["_id"], conversation["_id"], pushed,
        )
        return projected

    async def project_message(self, message: Dict[str, Any], conversation_id: ObjectId) -> Dict[str, Any]:
        users = await self._users_by_id([message["sender_id"], message["receiver_id"]])
        return MessageOut.from_document(message, conversation_id, users).dump()

    async def get_messages(self, user_id: str, peer_id: str, page: int = 1, limit: int = 50) -> Dict[str, Any]:
        parse_object_id(peer_id, "user ID")
        page, limit = clamp_paging(page, limit)
        conversation = await self._conversations.find_conversation(user_id, peer_id)
        if conversation is None:
            return MessagePage(messages=[], pagination=Pagination(page=1, total_pages=0, total=0)).dump()
        messages, total = self._conversations.list_messages(conversation, page, limit)
        return MessagePage(
            messages=[MessageOut.from_document(m, conversation["_id"]) for m in messages],
            pagination=Pagination(page=page, total_pages=-(-total // limit), total=total),
        ).dump()

    async def mark_as_read(self, reader_id: str, message_id: str) -> Dict[str, Any]:
        oid = parse_object_id(message_id, "message ID")
        conversation = await self._conversations.find_by_message(oid, reader_id)
        if conversation is None:
            raise NotFound("Message not found")
        message = await self._conversations.mark_one_read(conversation, oid, reader_id)
        await self._hub.emit_to_user(
            message["sender_id"],
            events.MESSAGE_READ,
            {"messageId": str(oid), "readAt": as_utc(message.get("read_at"))},
        )
        return message

    async def mark_all_read(self, reader_id: str, peer_id: str) -> int:
        parse_object_id(peer_id, "user ID")
        conversation = await self._conversations.find_conversation(reader_id, peer_id)
        if conversation is None:
            raise NotFound("Conversation not found")
        count = await self._conversations.mark_all_read(conversation, reader_id)
        await self._hub.emit_to_user(
            peer_id,
            events.ALL_MESSAGES_READ,
            {"userId": reader_id, "conversationId": str(conversation["_id"])},
        )
        return count

    async def mark_delivered(self, receiver_id: str, message_id: str) -> Optional[Dict[str, Any]]:
        oid = parse_object_id(message_id, "message ID")
        conversation = await self._conversations.find_by_message(oid, receiver_id)
        if conversation is None:
            raise NotFound("Message not found")
        message = await self._conversations.mark_delivered(conversation, oid, receiver_id)
        if message is not None:
            await self._hub.emit_to_user(
                message["sender_id"],
                events.MESSAGE_DELIVERED,
                {"messageId": str(oid), "deliveredAt": as_utc(message.get("delivered_at"))},
            )
        return message

    async def search_messages(self, user_id: str, query: str, limit: int = SEARCH_LIMIT) -> List[Dict[str, Any]]:
        matches = await self._conversations.search_messages(user_id, query, limit=limit)
        users = await self._users_by_id(match["message"]["sender_id"] for match in matches)
        results = []
        for match in matches:
            sender = users.get(match["message"]["sender_id"])
            results.append(
                SearchResult(
                    message=MessageOut.from_document(match["message"], match["conversation_id"]),
                    conversation_id=str(match["conversation_id"]),
                    sender=Participant.from_user(sender) if sender else None,
                ).dump()
            )
        return results

    async def notify_typing(self, user_id: str, receiver_id: str, is_typing: bool) -> int:
        # only the addressed peer hears about it, never a broadcast
        return await self._hub.emit_to_user(
            receiver_id, events.USER_TYPING, {"userId": user_id, "isTyping": is_typing}
        )

    async def _reload_message(self, conversation_id: ObjectId, message_id: ObjectId) -> Dict[str, Any]:
        conversation = await self._conversations.get_by_id(conversation_id)
        for message in (conversation or {}).get("messages") or []:
            if message.get("_id") == message_id:
                return message
        raise NotFound("Message not found")

    async def _users_by_id(self, user_ids: Iterable[str]) -> Dict[str, dict]:
        return {user["_id"]: user for user in await self._users.get_users_by_ids(user_ids)}
