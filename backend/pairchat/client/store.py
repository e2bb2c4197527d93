"""Client-side conversation state.

``ChatStore`` keeps the messages of the selected conversation and merges
three sources into it without duplicates: optimistic local inserts, REST
responses and realtime pushes. Matching an incoming message to a local
entry goes, in order:

    1. authoritative ``_id``
    2. ``clientMessageId`` correlation token of a pending entry
    3. soft match: pending entry with the same text, image presence and
       participants created less than 5 seconds apart
    4. otherwise the message is appended
"""
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from pairchat.models.message import STATUS_RANK, status_advances


PENDING_PREFIX = "temp-"
SENDING = "sending"
SOFT_MATCH_WINDOW = timedelta(seconds=5)
TYPING_TIMEOUT = 3.0


def parse_time(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def normalize_id(value: Any) -> Optional[str]:
    # ids may arrive populated ({"_id": ..., "fullName": ...}) or bare
    if isinstance(value, dict):
        value = value.get("_id")
    return str(value) if value is not None else None


class ChatStore:

    def __init__(self, me_id: str, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.me_id = me_id
        self.selected_peer_id: Optional[str] = None
        self.messages: List[Dict[str, Any]] = []
        self.users: List[Dict[str, Any]] = []
        self.online_users: Set[str] = set()
        self._typing_until: Dict[str, float] = {}
        self._clock = clock

    # ------------------------------------------------------------------
    # conversation selection
    # ------------------------------------------------------------------

    def select_peer(self, peer_id: Optional[str]) -> None:
        self.selected_peer_id = peer_id
        self.messages = []
        self._typing_until.clear()

    def set_messages(self, messages: List[Dict[str, Any]]) -> None:
        self.messages = list(messages)

    def set_users(self, users: List[Dict[str, Any]]) -> None:
        self.users = list(users)

    def belongs_to_current(self, message: Dict[str, Any]) -> bool:
        peer = self.selected_peer_id
        if peer is None:
            return False
        sender = normalize_id(message.get("senderId"))
        receiver = normalize_id(message.get("receiverId"))
        return (sender, receiver) in ((peer, self.me_id), (self.me_id, peer))

    # ------------------------------------------------------------------
    # optimistic sends
    # ------------------------------------------------------------------

    def add_pending(self, text: Optional[str] = None, image: Optional[str] = None) -> Dict[str, Any]:
        if self.selected_peer_id is None:
            raise ValueError("No conversation selected")
        pending = {
            "_id": f"{PENDING_PREFIX}{uuid.uuid4().hex}",
            "clientMessageId": uuid.uuid4().hex,
            "senderId": self.me_id,
            "receiverId": self.selected_peer_id,
            "text": (text or "").strip(),
            "image": image or None,
            "status": SENDING,
            "createdAt": datetime.now(timezone.utc).isoformat(),
        }
        self.messages.append(pending)
        return pending

    def confirm_pending(self, pending_id: str, message: Dict[str, Any]) -> None:
        """Swap a pending entry for the server's copy of it."""
        pending_index = self._index_of(pending_id)
        if self._index_of(message["_id"]) is not None:
            # the realtime push already landed
            if pending_index is not None:
                del self.messages[pending_index]
            return
        if pending_index is not None:
            self.messages[pending_index] = message
        elif self.belongs_to_current(message):
            self.messages.append(message)

    def discard_pending(self, pending_id: str) -> bool:
        index = self._index_of(pending_id)
        if index is None:
            return False
        del self.messages[index]
        return True

    # ------------------------------------------------------------------
    # realtime events
    # ------------------------------------------------------------------

    def receive_message(self, message: Dict[str, Any]) -> str:
        """
        Merge a pushed message. Returns what happened: ``ignored``,
        ``updated``, ``replaced`` (a pending entry) or ``appended``.
        """
        if not self.belongs_to_current(message):
            self._bump_sidebar(message)
            return "ignored"

        index = self._index_of(message["_id"])
        if index is not None:
            self.messages[index] = self._merge(self.messages[index], message)
            return "updated"

        index = self._match_pending(message)
        if index is not None:
            self.messages[index] = message
            return "replaced"

        self.messages.append(message)
        return "appended"

    def apply_status(self, message_id: str, status: str, **stamps: Any) -> bool:
        index = self._index_of(message_id)
        if index is None:
            return False
        current = self.messages[index]
        if not status_advances(current.get("status", SENDING), status):
            return False
        self.messages[index] = {**current, "status": status, **stamps}
        return True

    def apply_read_receipt(self, message_id: str, read_at: Any = None) -> bool:
        return self.apply_status(message_id, "read", readAt=read_at)

    def apply_delivery_receipt(self, message_id: str, delivered_at: Any = None) -> bool:
        return self.apply_status(message_id, "delivered", deliveredAt=delivered_at)

    def apply_all_read(self, reader_id: str) -> int:
        count = 0
        for index, message in enumerate(self.messages):
            if (
                normalize_id(message.get("senderId")) == self.me_id
                and normalize_id(message.get("receiverId")) == reader_id
                and message.get("status") in ("sent", "delivered")
            ):
                self.messages[index] = {**message, "status": "read"}
                count += 1
        return count

    def set_typing(self, user_id: str, is_typing: bool) -> None:
        if is_typing:
            self._typing_until[user_id] = self._clock() + TYPING_TIMEOUT
        else:
            self._typing_until.pop(user_id, None)

    def is_typing(self, user_id: str) -> bool:
        until = self._typing_until.get(user_id)
        if until is None:
            return False
        if self._clock() >= until:
            # stop events can get lost, so expire on our own
            del self._typing_until[user_id]
            return False
        return True

    def typing_users(self) -> List[str]:
        return [user_id for user_id in list(self._typing_until) if self.is_typing(user_id)]

    def set_online_users(self, user_ids: List[str]) -> None:
        self.online_users = set(user_ids)

    def set_user_status(self, user_id: str, is_online: bool, last_seen: Any = None) -> None:
        if is_online:
            self.online_users.add(user_id)
        else:
            self.online_users.discard(user_id)
        for user in self.users:
            if user.get("_id") == user_id:
                user["isOnline"] = is_online
                if last_seen is not None:
                    user["lastSeen"] = last_seen

    def clear(self) -> None:
        self.select_peer(None)
        self.users = []
        self.online_users = set()

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _index_of(self, message_id: Any) -> Optional[int]:
        for index, message in enumerate(self.messages):
            if message.get("_id") == message_id:
                return index
        return None

    def _match_pending(self, message: Dict[str, Any]) -> Optional[int]:
        token = message.get("clientMessageId")
        if token:
            for index, local in enumerate(self.messages):
                if local.get("status") == SENDING and local.get("clientMessageId") == token:
                    return index

        created = parse_time(message.get("createdAt"))
        for index, local in enumerate(self.messages):
            if local.get("status") != SENDING:
                continue
            if (
                local.get("text") == (message.get("text") or "")
                and bool(local.get("image")) == bool(message.get("image"))
                and normalize_id(local.get("senderId")) == normalize_id(message.get("senderId"))
                and normalize_id(local.get("receiverId")) == normalize_id(message.get("receiverId"))
            ):
                local_created = parse_time(local.get("createdAt"))
                if created and local_created and abs(created - local_created) < SOFT_MATCH_WINDOW:
                    return index
        return None

    @staticmethod
    def _merge(existing: Dict[str, Any], incoming: Dict[str, Any]) -> Dict[str, Any]:
        merged = {**existing, **incoming}
        # status never goes backwards, whatever order events arrive in
        if STATUS_RANK.get(existing.get("status"), -1) > STATUS_RANK.get(incoming.get("status"), -1):
            for key in ("status", "readAt", "deliveredAt"):
                if key in existing:
                    merged[key] = existing[key]
        return merged

    def _bump_sidebar(self, message: Dict[str, Any]) -> None:
        if normalize_id(message.get("receiverId")) != self.me_id:
            return
        sender = normalize_id(message.get("senderId"))
        for user in self.users:
            if user.get("_id") == sender:
                user["unreadCount"] = int(user.get("unreadCount") or 0) + 1
                user["lastMessage"] = message
