import asyncio
import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from pairchat.config import get_settings
from pairchat.database.connection import mongo_db_dependency
from pairchat.exceptions import AuthenticationError, ChatError, InvalidArgument
from pairchat.realtime import hub as events
from pairchat.realtime.hub import RealtimeHub
from pairchat.repositories.user_repository import UserRepository
from pairchat.routers.messages import get_chat_service
from pairchat.routers.users import get_presence_service
from pairchat.services.chat_service import ChatService
from pairchat.services.presence_service import PresenceService
from pairchat.utils.dependencies import get_hub
from pairchat.utils.security import SESSION_COOKIE, decode_access_token

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])

AUTH_FAILED_CLOSE_CODE = 4401

TYPING_EVENTS = {"typing-start": True, "typing-stop": False}
DELIVERED_EVENT = "message-delivered"
AUTH_EVENT = "auth"


async def authenticate(websocket: WebSocket, users: UserRepository) -> str:
    """
    Resolve the connecting user from a verifiable token.

    The token comes from ``?token=``, the session cookie, or a first
    ``auth`` frame sent within the handshake timeout. A bare user id is
    never accepted.
    """
    token = websocket.query_params.get("token") or websocket.cookies.get(SESSION_COOKIE)
    if not token:
        timeout = get_settings().WS_AUTH_TIMEOUT_SECONDS
        try:
            raw = await asyncio.wait_for(websocket.receive_text(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise AuthenticationError("Authentication error - handshake timed out") from exc
        frame = _parse_frame(raw)
        if frame is None or frame.get("type") != AUTH_EVENT:
            raise AuthenticationError("Authentication error - No token provided")
        token = (frame.get("data") or {}).get("token")
        if not token:
            raise AuthenticationError("Authentication error - No token provided")

    payload = decode_access_token(token)
    if not await users.exists(payload["sub"]):
        raise AuthenticationError("Authentication error - User not found")
    return payload["sub"]


def _parse_frame(raw: str) -> dict | None:
    try:
        frame = json.loads(raw)
    except ValueError:
        return None
    return frame if isinstance(frame, dict) else None


async def handle_frame(raw: str, user_id: str, websocket: WebSocket, service: ChatService, hub: RealtimeHub) -> None:
    frame = _parse_frame(raw)
    try:
        if frame is None:
            raise InvalidArgument("Invalid message payload")
        event = frame.get("type")
        data: Any = frame.get("data") or {}
        if not isinstance(data, dict):
            raise InvalidArgument("Invalid message payload")

        if event in TYPING_EVENTS:
            receiver_id = data.get("receiverId")
            if not receiver_id:
                raise InvalidArgument("receiverId is required")
            await service.notify_typing(user_id, str(receiver_id), TYPING_EVENTS[event])
        elif event == DELIVERED_EVENT:
            message_id = data.get("messageId")
            if not message_id:
                raise InvalidArgument("messageId is required")
            await service.mark_delivered(user_id, str(message_id))
        else:
            raise InvalidArgument(f"Unknown event: {event}")
    except ChatError as exc:
        await hub.send(websocket, events.ERROR, exc.to_payload())


@router.websocket("/ws")
async def realtime_socket(
    websocket: WebSocket,
    db=Depends(mongo_db_dependency),
    service: ChatService = Depends(get_chat_service),
    presence: PresenceService = Depends(get_presence_service),
    hub: RealtimeHub = Depends(get_hub),
):
    await websocket.accept()

    # Authenticating
    try:
        user_id = await authenticate(websocket, UserRepository(db))
    except AuthenticationError as exc:
        logger.info("Realtime authentication failed: %s", exc.message)
        await hub.send(websocket, events.CONNECT_ERROR, {"message": "Authentication error", "kind": exc.kind, "detail": exc.message})
        await websocket.close(code=AUTH_FAILED_CLOSE_CODE, reason="AuthenticationError")
        return
    except WebSocketDisconnect:
        return

    # Open
    try:
        await presence.connect(user_id, websocket)
        while True:
            raw = await websocket.receive_text()
            await handle_frame(raw, user_id, websocket, service, hub)
    except WebSocketDisconnect:
        pass
    finally:
        # Closed
        await presence.disconnect(user_id, websocket)
