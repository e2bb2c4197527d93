import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlencode

import websockets
from websockets.exceptions import WebSocketException

logger = logging.getLogger(__name__)

EventHandler = Callable[[str, dict], Awaitable[None]]

MAX_RECONNECT_ATTEMPTS = 5
RECONNECT_DELAY = 1.0
RECONNECT_DELAY_MAX = 5.0


class RealtimeClient:
    """
    Keeps one WebSocket open to ``/ws`` and feeds every event to ``on_event``.

    Reconnects on its own with exponential backoff. After
    ``max_attempts`` failed reconnects in a row, or on an authentication
    error, it stops and calls ``on_give_up``; the user has to refresh
    (re-authenticate) from there.
    """

    def __init__(
        self,
        url: str,
        token: str,
        on_event: EventHandler,
        *,
        on_give_up: Optional[Callable[[], Awaitable[None]]] = None,
        max_attempts: int = MAX_RECONNECT_ATTEMPTS,
        delay: float = RECONNECT_DELAY,
        max_delay: float = RECONNECT_DELAY_MAX,
        connect: Callable[..., Any] = websockets.connect,
    ) -> None:
        self._url = f"{url}?{urlencode({'token': token})}"
        self._on_event = on_event
        self._on_give_up = on_give_up
        self.max_attempts = max_attempts
        self.delay = delay
        self.max_delay = max_delay
        self._connect = connect
        self._ws = None
        self._closed = False
        self.connected = False
        self.auth_failed = False
        self.gave_up = False

    async def send(self, event: str, data: dict) -> None:
        if self._ws is None:
            raise ConnectionError("Realtime connection is not open")
        await self._ws.send(json.dumps({"type": event, "data": data}))

    async def run(self) -> None:
        failures = 0
        while True:
            try:
                async with self._connect(self._url) as ws:
                    self._ws = ws
                    self.connected = True
                    failures = 0
                    async for raw in ws:
                        await self._dispatch(raw)
                        if self.auth_failed:
                            break
            except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
                logger.warning("Realtime connection lost: %s", exc)
            finally:
                self._ws = None
                self.connected = False

            if self._closed:
                return
            if self.auth_failed:
                logger.error("Realtime authentication failed, not reconnecting")
                break
            failures += 1
            if failures > self.max_attempts:
                logger.error("Realtime reconnection failed after %d attempts", self.max_attempts)
                break
            await asyncio.sleep(min(self.delay * 2 ** (failures - 1), self.max_delay))

        self.gave_up = True
        if self._on_give_up is not None:
            await self._on_give_up()

    async def close(self) -> None:
        self._closed = True
        if self._ws is not None:
            await self._ws.close()

    async def _dispatch(self, raw: Any) -> None:
        try:
            frame = json.loads(raw)
        except ValueError:
            frame = None
        if not isinstance(frame, dict):
            logger.warning("Dropping malformed realtime frame")
            return
        event = frame.get("type")
        if event == "connect_error":
            self.auth_failed = True
        await self._on_event(event, frame.get("data") or {})
