"""Fan-out of realtime events to registered connections.

Delivery is best effort and at most once per connection: there is no
acknowledgement, retry or queue. A recipient that is not connected simply
misses the event and catches up through the REST fetch path.
"""
import asyncio
import logging
from typing import Any, Iterable, List

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder

from pairchat.realtime.presence import PresenceRegistry

logger = logging.getLogger(__name__)

# outbound event names
NEW_MESSAGE = "newMessage"
USER_TYPING = "user-typing"
MESSAGE_READ = "messageRead"
ALL_MESSAGES_READ = "allMessagesRead"
MESSAGE_DELIVERED = "messageDelivered"
ONLINE_USERS = "getOnlineUsers"
USER_STATUS_CHANGED = "userStatusChanged"
CONNECT_ERROR = "connect_error"
ERROR = "error"


def envelope(event: str, data: Any) -> dict:
    return {"type": event, "data": jsonable_encoder(data)}


class RealtimeHub:

    def __init__(self, registry: PresenceRegistry[WebSocket] | None = None) -> None:
        self.registry: PresenceRegistry[WebSocket] = registry if registry is not None else PresenceRegistry()

    async def send(self, websocket: WebSocket, event: str, data: Any) -> bool:
        return await self._send_raw(websocket, event, envelope(event, data))

    async def emit_to_user(self, user_id: str, event: str, data: Any) -> int:
        return await self._send_many(self.registry.lookup(user_id), event, data)

    async def emit_to_users(self, user_ids: Iterable[str], event: str, data: Any) -> int:
        targets: List[WebSocket] = []
        for user_id in dict.fromkeys(user_ids):
            targets.extend(self.registry.lookup(user_id))
        return await self._send_many(targets, event, data)

    async def broadcast(self, event: str, data: Any) -> int:
        return await self._send_many(self.registry.all_connections(), event, data)

    async def broadcast_online_users(self) -> int:
        return await self.broadcast(ONLINE_USERS, self.registry.online_user_ids())

    async def _send_many(self, connections: List[WebSocket], event: str, data: Any) -> int:
        if not connections:
            return 0
        message = envelope(event, data)
        results = await asyncio.gather(
            *(self._send_raw(conn, event, message) for conn in connections)
        )
        return sum(results)

    @staticmethod
    async def _send_raw(websocket: WebSocket, event: str, message: dict) -> bool:
        try:
            await websocket.send_json(message)
            return True
        except Exception as exc:  # dead sockets are skipped
            logger.warning("Failed to deliver %s: %s", event, exc)
            return False
