import logging
from typing import Optional

from fastapi import WebSocket

from pairchat.realtime import hub as events
from pairchat.realtime.hub import RealtimeHub
from pairchat.repositories.user_repository import UserRepository
from pairchat.schemas.user import UserPublic

logger = logging.getLogger(__name__)


class PresenceService:
    """Keeps the registry, the stored isOnline/lastSeen flags and clients in step."""

    def __init__(self, user_repo: UserRepository, hub: RealtimeHub) -> None:
        self._users = user_repo
        self._hub = hub

    async def connect(self, user_id: str, websocket: WebSocket) -> None:
        came_online = self._hub.registry.register(user_id, websocket)
        if came_online:
            try:
                await self._users.set_online(user_id, True)
            except Exception:
                self._hub.registry.deregister(user_id, websocket)
                raise
        logger.info("User %s connected (%d open connection(s))", user_id, len(self._hub.registry.lookup(user_id)))
        await self._hub.broadcast_online_users()

    async def disconnect(self, user_id: str, websocket: WebSocket) -> None:
        went_offline = self._hub.registry.deregister(user_id, websocket)
        if went_offline:
            await self._users.set_online(user_id, False)
            if self._hub.registry.is_online(user_id):
                # reconnected while the offline flag was being written
                await self._users.set_online(user_id, True)
        logger.info("User %s disconnected (offline=%s)", user_id, went_offline)
        await self._hub.broadcast_online_users()

    async def set_status(self, user_id: str, is_online: bool) -> Optional[UserPublic]:
        user = await self._users.set_online(user_id, is_online)
        if user is None:
            return None
        public = UserPublic.from_document(user)
        await self._hub.broadcast(
            events.USER_STATUS_CHANGED,
            {"userId": public.id, "isOnline": public.is_online, "lastSeen": public.last_seen},
        )
        return public
