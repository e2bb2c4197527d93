"""Tests for the reconnecting realtime client."""
import asyncio
import json
from contextlib import asynccontextmanager

import pytest

from pairchat.client.realtime import RealtimeClient


class FakeSocket:

    def __init__(self, *frames):
        self.frames = list(frames)
        self.sent = []
        self.closed = False

    async def send(self, raw):
        self.sent.append(json.loads(raw))

    async def close(self):
        self.closed = True

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for frame in self.frames:
            if self.closed:
                return
            yield frame


class FakeConnector:
    """Hands out the scripted sockets (or errors) in order, then refuses."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.urls = []

    def __call__(self, url):
        self.urls.append(url)
        outcome = self.outcomes.pop(0) if self.outcomes else OSError("connection refused")
        return self._open(outcome)

    @asynccontextmanager
    async def _open(self, outcome):
        if isinstance(outcome, BaseException):
            raise outcome
        yield outcome


def frame(event, data):
    return json.dumps({"type": event, "data": data})


class Recorder:

    def __init__(self):
        self.events = []
        self.gave_up = 0

    async def on_event(self, event, data):
        self.events.append((event, data))

    async def on_give_up(self):
        self.gave_up += 1


def make_client(connector, recorder, **kwargs):
    return RealtimeClient(
        "ws://chat.test/ws",
        "tok",
        recorder.on_event,
        on_give_up=recorder.on_give_up,
        delay=0,
        max_delay=0,
        connect=connector,
        **kwargs,
    )


class TestRealtimeClient:

    @pytest.mark.asyncio
    async def test_gives_up_after_bounded_attempts(self):
        connector = FakeConnector()
        recorder = Recorder()
        client = make_client(connector, recorder, max_attempts=3)

        await client.run()

        assert len(connector.urls) == 4
        assert client.gave_up
        assert recorder.gave_up == 1
        assert connector.urls[0] == "ws://chat.test/ws?token=tok"

    @pytest.mark.asyncio
    async def test_open_timeout_counts_as_failed_attempt(self):
        connector = FakeConnector(asyncio.TimeoutError(), asyncio.TimeoutError())
        recorder = Recorder()
        client = make_client(connector, recorder, max_attempts=1)

        await client.run()

        assert len(connector.urls) == 2
        assert recorder.gave_up == 1

    @pytest.mark.asyncio
    async def test_auth_failure_stops_immediately(self):
        connector = FakeConnector(FakeSocket(
            frame("connect_error", {"message": "Authentication error"}),
            frame("getOnlineUsers", ["never"]),
        ))
        recorder = Recorder()
        client = make_client(connector, recorder)

        await client.run()

        assert len(connector.urls) == 1
        assert client.auth_failed and client.gave_up
        assert recorder.events == [("connect_error", {"message": "Authentication error"})]

    @pytest.mark.asyncio
    async def test_reconnects_after_drop_and_resets_attempts(self):
        first = FakeSocket(frame("getOnlineUsers", ["a"]), "garbage", "[1, 2]")
        second = FakeSocket(frame("newMessage", {"_id": "m1"}))
        connector = FakeConnector(OSError("blip"), first, OSError("blip"), second)
        recorder = Recorder()
        # three failures in total, never more than two in a row
        client = make_client(connector, recorder, max_attempts=2)

        async def on_event(event, data):
            await recorder.on_event(event, data)
            if event == "newMessage":
                await client.close()

        client._on_event = on_event
        await client.run()

        assert recorder.events == [("getOnlineUsers", ["a"]), ("newMessage", {"_id": "m1"})]
        assert not client.gave_up
        assert recorder.gave_up == 0
        assert second.closed

    @pytest.mark.asyncio
    async def test_send_requires_open_connection(self):
        client = make_client(FakeConnector(), Recorder())

        with pytest.raises(ConnectionError):
            await client.send("typing-start", {"receiverId": "b"})

    @pytest.mark.asyncio
    async def test_send_wraps_in_envelope(self):
        socket = FakeSocket(frame("getOnlineUsers", []))
        connector = FakeConnector(socket)
        recorder = Recorder()
        client = make_client(connector, recorder)

        async def on_event(event, data):
            await client.send("typing-start", {"receiverId": "b"})
            await client.close()

        client._on_event = on_event
        await client.run()

        assert socket.sent == [{"type": "typing-start", "data": {"receiverId": "b"}}]
