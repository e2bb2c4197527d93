"""Tests for the presence registry, the hub fan-out and presence bookkeeping."""
import pytest

from conftest import FakeConnection, run_sync
from pairchat.realtime.hub import RealtimeHub, envelope
from pairchat.realtime.presence import PresenceRegistry
from pairchat.repositories.user_repository import UserRepository
from pairchat.services.presence_service import PresenceService


class TestPresenceRegistry:

    def test_first_connection_brings_user_online(self):
        registry = PresenceRegistry()
        assert registry.register("u1", "tab-a") is True
        assert registry.register("u1", "tab-b") is False
        assert registry.is_online("u1")
        assert sorted(registry.lookup("u1")) == ["tab-a", "tab-b"]
        assert len(registry) == 2

    def test_user_stays_online_until_last_connection_closes(self):
        registry = PresenceRegistry()
        registry.register("u1", "tab-a")
        registry.register("u1", "tab-b")

        assert registry.deregister("u1", "tab-a") is False
        assert registry.is_online("u1")
        assert registry.deregister("u1", "tab-b") is True
        assert not registry.is_online("u1")
        assert registry.lookup("u1") == []

    def test_deregister_unknown_connection_is_noop(self):
        registry = PresenceRegistry()
        registry.register("u1", "tab-a")

        assert registry.deregister("u1", "stale") is False
        assert registry.deregister("nobody", "tab-a") is False
        assert registry.is_online("u1")

    def test_online_user_ids(self):
        registry = PresenceRegistry()
        registry.register("u1", "a")
        registry.register("u2", "b")
        registry.register("u2", "c")

        assert sorted(registry.online_user_ids()) == ["u1", "u2"]
        assert len(registry.all_connections()) == 3

    def test_registries_are_independent(self):
        first, second = PresenceRegistry(), PresenceRegistry()
        first.register("u1", "a")
        assert not second.is_online("u1")


class TestRealtimeHub:

    def test_envelope_encodes_payload(self):
        assert envelope("newMessage", {"a": 1}) == {"type": "newMessage", "data": {"a": 1}}

    @pytest.mark.asyncio
    async def test_emit_to_users_deduplicates(self):
        hub = RealtimeHub()
        conn = FakeConnection()
        hub.registry.register("u1", conn)

        sent = await hub.emit_to_users(["u1", "u1"], "newMessage", {"x": 1})

        assert sent == 1
        assert len(conn.sent) == 1

    @pytest.mark.asyncio
    async def test_dead_connection_does_not_block_others(self):
        hub = RealtimeHub()
        dead, alive = FakeConnection(broken=True), FakeConnection()
        hub.registry.register("u1", dead)
        hub.registry.register("u2", alive)

        sent = await hub.broadcast("getOnlineUsers", ["u1", "u2"])

        assert sent == 1
        assert alive.sent == [{"type": "getOnlineUsers", "data": ["u1", "u2"]}]

    @pytest.mark.asyncio
    async def test_emit_to_offline_user_is_silent(self):
        hub = RealtimeHub()
        assert await hub.emit_to_user("ghost", "newMessage", {}) == 0


class TestPresenceService:

    @pytest.fixture
    def presence(self, db, hub):
        return PresenceService(UserRepository(db), hub)

    @pytest.mark.asyncio
    async def test_connect_and_disconnect_update_flags(self, presence, db, hub, create_user):
        user_id, _ = await create_user("Alice")
        first, second = FakeConnection(), FakeConnection()

        await presence.connect(user_id, first)
        await presence.connect(user_id, second)
        assert (await UserRepository(db).get_user_by_id(user_id))["is_online"] is True

        await presence.disconnect(user_id, first)
        assert (await UserRepository(db).get_user_by_id(user_id))["is_online"] is True

        await presence.disconnect(user_id, second)
        stored = await UserRepository(db).get_user_by_id(user_id)
        assert stored["is_online"] is False
        assert stored["last_seen"] is not None

    @pytest.mark.asyncio
    async def test_online_list_broadcast_on_connect(self, presence, create_user):
        alice, _ = await create_user("Alice")
        bob, _ = await create_user("Bob")
        alice_conn, bob_conn = FakeConnection(), FakeConnection()

        await presence.connect(alice, alice_conn)
        await presence.connect(bob, bob_conn)

        assert sorted(alice_conn.events("getOnlineUsers")[-1]["data"]) == sorted([alice, bob])
        assert sorted(bob_conn.events("getOnlineUsers")[-1]["data"]) == sorted([alice, bob])

    @pytest.mark.asyncio
    async def test_set_status_broadcasts_change(self, presence, hub, create_user):
        alice, _ = await create_user("Alice")
        watcher = FakeConnection()
        hub.registry.register("someone", watcher)

        public = await presence.set_status(alice, False)

        assert public.is_online is False
        event = watcher.events("userStatusChanged")[0]["data"]
        assert event["userId"] == alice
        assert event["isOnline"] is False
        assert event["lastSeen"] is not None

    @pytest.mark.asyncio
    async def test_failed_online_write_leaves_no_registration(self, db, hub, create_user, monkeypatch):
        alice, _ = await create_user("Alice")
        users = UserRepository(db)

        async def storage_down(user_id, is_online):
            raise RuntimeError("storage down")

        monkeypatch.setattr(users, "set_online", storage_down)
        presence = PresenceService(users, hub)

        with pytest.raises(RuntimeError, match="storage down"):
            await presence.connect(alice, FakeConnection())

        assert not hub.registry.is_online(alice)
        assert len(hub.registry) == 0

    @pytest.mark.asyncio
    async def test_reconnect_during_offline_write_stays_online(self, db, hub, create_user, monkeypatch):
        alice, _ = await create_user("Alice")
        users = UserRepository(db)
        presence = PresenceService(users, hub)
        first, second = FakeConnection(), FakeConnection()
        await presence.connect(alice, first)
        write_flag = users.set_online

        async def reconnect_mid_write(user_id, is_online):
            if not is_online:
                # the new tab registers and its online write lands first
                hub.registry.register(user_id, second)
                await write_flag(user_id, True)
            return await write_flag(user_id, is_online)

        monkeypatch.setattr(users, "set_online", reconnect_mid_write)

        await presence.disconnect(alice, first)

        assert hub.registry.lookup(alice) == [second]
        assert (await UserRepository(db).get_user_by_id(alice))["is_online"] is True

    def test_set_status_unknown_user(self, presence):
        # ObjectId-shaped but absent
        assert run_sync(presence.set_status("0" * 24, True)) is None
