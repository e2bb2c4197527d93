import logging
from typing import Any, Dict, Optional

from pairchat.client.api import ApiError, ChatApiClient
from pairchat.client.realtime import RealtimeClient
from pairchat.client.store import ChatStore, normalize_id

logger = logging.getLogger(__name__)


class ChatSession:
    """
    Client-side glue: optimistic sends over REST, realtime events into the
    store, and the acknowledgements a client owes the server (delivered,
    read).
    """

    def __init__(
        self,
        api: ChatApiClient,
        store: ChatStore,
        realtime: Optional[RealtimeClient] = None,
        *,
        auto_mark_read: bool = True,
    ) -> None:
        self.api = api
        self.store = store
        self.realtime = realtime
        self.auto_mark_read = auto_mark_read
        self.last_error: Optional[Dict[str, Any]] = None
        self._handlers = {
            "newMessage": self._on_new_message,
            "user-typing": self._on_user_typing,
            "messageRead": self._on_message_read,
            "allMessagesRead": self._on_all_messages_read,
            "messageDelivered": self._on_message_delivered,
            "getOnlineUsers": self._on_online_users,
            "userStatusChanged": self._on_user_status_changed,
            "connect_error": self._on_error,
            "error": self._on_error,
        }

    async def load_users(self) -> None:
        self.store.set_users(await self.api.sidebar())

    async def open_conversation(self, peer_id: str, page: int = 1, limit: int = 50) -> Dict[str, Any]:
        await self.stop_typing()
        self.store.select_peer(peer_id)
        data = await self.api.get_messages(peer_id, page=page, limit=limit)
        self.store.set_messages(data.get("messages") or [])
        return data

    async def send_message(self, text: Optional[str] = None, image: Optional[str] = None) -> Dict[str, Any]:
        """
        Show the message at once, then swap in the server copy. On any
        failure the optimistic entry is removed and the error re-raised.
        """
        pending = self.store.add_pending(text, image)
        try:
            message = await self.api.send_message(
                pending["receiverId"],
                text=text,
                image=image,
                client_message_id=pending["clientMessageId"],
            )
        except BaseException:
            self.store.discard_pending(pending["_id"])
            raise
        self.store.confirm_pending(pending["_id"], message)
        return message

    async def start_typing(self) -> None:
        await self._emit_typing("typing-start")

    async def stop_typing(self) -> None:
        await self._emit_typing("typing-stop")

    async def handle_event(self, event: str, data: Dict[str, Any]) -> None:
        handler = self._handlers.get(event)
        if handler is None:
            logger.debug("Ignoring unknown realtime event %s", event)
            return
        await handler(data)

    async def _emit_typing(self, event: str) -> None:
        peer = self.store.selected_peer_id
        if self.realtime is None or not self.realtime.connected or peer is None:
            return
        await self.realtime.send(event, {"receiverId": peer})

    async def _on_new_message(self, message: Dict[str, Any]) -> None:
        outcome = self.store.receive_message(message)
        sender = normalize_id(message.get("senderId"))
        if normalize_id(message.get("receiverId")) != self.store.me_id:
            return

        if self.realtime is not None and self.realtime.connected:
            await self.realtime.send("message-delivered", {"messageId": message["_id"]})

        if outcome == "appended" and self.auto_mark_read and sender == self.store.selected_peer_id:
            try:
                await self.api.mark_read(message["_id"])
            except ApiError as exc:
                logger.warning("Failed to mark message %s as read: %s", message["_id"], exc.message)
            else:
                self.store.apply_read_receipt(message["_id"])

    async def _on_user_typing(self, data: Dict[str, Any]) -> None:
        user_id = data.get("userId")
        if user_id and user_id == self.store.selected_peer_id:
            self.store.set_typing(user_id, bool(data.get("isTyping")))

    async def _on_message_read(self, data: Dict[str, Any]) -> None:
        self.store.apply_read_receipt(data.get("messageId"), data.get("readAt"))

    async def _on_all_messages_read(self, data: Dict[str, Any]) -> None:
        self.store.apply_all_read(normalize_id(data.get("userId")))

    async def _on_message_delivered(self, data: Dict[str, Any]) -> None:
        self.store.apply_delivery_receipt(data.get("messageId"), data.get("deliveredAt"))

    async def _on_online_users(self, data: Any) -> None:
        self.store.set_online_users(data if isinstance(data, list) else [])

    async def _on_user_status_changed(self, data: Dict[str, Any]) -> None:
        self.store.set_user_status(data.get("userId"), bool(data.get("isOnline")), data.get("lastSeen"))

    async def _on_error(self, data: Dict[str, Any]) -> None:
        logger.warning("Realtime error: %s", data.get("message"))
        self.last_error = data
