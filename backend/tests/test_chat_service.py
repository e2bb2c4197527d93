"""Tests for the message pipeline: validation, persistence and realtime fan-out."""
import pytest
from bson import ObjectId

from conftest import FakeConnection
from pairchat.exceptions import InvalidArgument, InvalidOperation, NotFound, UploadFailed
from pairchat.repositories.conversation_repository import ConversationRepository
from pairchat.repositories.user_repository import UserRepository
from pairchat.services.chat_service import MAX_TEXT_LENGTH, ChatService


@pytest.fixture
def service(db, hub, image_store):
    return ChatService(ConversationRepository(db), UserRepository(db), hub, image_store)


@pytest.fixture
def users(make_user):
    alice, _ = make_user("Alice")
    bob, _ = make_user("Bob")
    return alice, bob


def connect(hub, user_id):
    conn = FakeConnection()
    hub.registry.register(user_id, conn)
    return conn


class TestSendMessage:

    @pytest.mark.asyncio
    async def test_pushes_to_receiver_and_sender_once(self, service, hub, users):
        alice, bob = users
        alice_conn, bob_conn = connect(hub, alice), connect(hub, bob)

        message = await service.send_message(alice, bob, text="  hello  ")

        assert message["text"] == "hello"
        assert message["status"] == "sent"
        assert message["image"] is None
        assert message["sender"]["fullName"] == "Alice"
        assert message["receiver"]["fullName"] == "Bob"
        assert [e["data"]["_id"] for e in bob_conn.events("newMessage")] == [message["_id"]]
        assert [e["data"]["_id"] for e in alice_conn.events("newMessage")] == [message["_id"]]

    @pytest.mark.asyncio
    async def test_offline_receiver_still_persists(self, service, db, hub, users):
        alice, bob = users
        alice_conn = connect(hub, alice)

        message = await service.send_message(alice, bob, text="are you there?")

        conversation = await ConversationRepository(db).find_conversation(alice, bob)
        assert conversation["unread_count"][bob] == 1
        assert str(conversation["messages"][0]["_id"]) == message["_id"]
        assert len(alice_conn.events("newMessage")) == 1

    @pytest.mark.asyncio
    async def test_every_connection_of_a_user_receives(self, service, hub, users):
        alice, bob = users
        tabs = [connect(hub, bob), connect(hub, bob)]

        await service.send_message(alice, bob, text="both tabs")

        assert [len(tab.events("newMessage")) for tab in tabs] == [1, 1]

    @pytest.mark.asyncio
    async def test_correlation_token_round_trips(self, service, users):
        alice, bob = users
        message = await service.send_message(alice, bob, text="hi", client_message_id="local-1")
        assert message["clientMessageId"] == "local-1"

    @pytest.mark.asyncio
    async def test_requires_text_or_image(self, service, db, users):
        alice, bob = users

        with pytest.raises(InvalidArgument, match="Either text or image is required"):
            await service.send_message(alice, bob, text="   ")
        assert await ConversationRepository(db).find_conversation(alice, bob) is None

    @pytest.mark.asyncio
    async def test_rejects_long_text(self, service, users):
        alice, bob = users
        with pytest.raises(InvalidArgument):
            await service.send_message(alice, bob, text="x" * (MAX_TEXT_LENGTH + 1))

    @pytest.mark.asyncio
    async def test_rejects_self_send(self, service, users):
        alice, _ = users
        with pytest.raises(InvalidArgument):
            await service.send_message(alice, alice, text="me")

    @pytest.mark.asyncio
    async def test_unknown_and_malformed_receiver(self, service, users):
        alice, _ = users
        with pytest.raises(NotFound, match="Receiver not found"):
            await service.send_message(alice, str(ObjectId()), text="hi")
        with pytest.raises(InvalidArgument):
            await service.send_message(alice, "not-an-id", text="hi")

    @pytest.mark.asyncio
    async def test_image_is_uploaded_first(self, service, image_store, users):
        alice, bob = users

        message = await service.send_message(alice, bob, image="data:image/png;base64,aGk=")

        assert message["image"].startswith("https://images.test/")
        assert message["text"] == ""
        assert len(image_store.uploads) == 1

    @pytest.mark.asyncio
    async def test_failed_upload_stores_nothing(self, service, db, hub, image_store, users):
        alice, bob = users
        bob_conn = connect(hub, bob)
        image_store.fail_with = "Image upload failed: provider down"

        with pytest.raises(UploadFailed):
            await service.send_message(alice, bob, text="look", image="data:image/png;base64,aGk=")

        assert await ConversationRepository(db).find_conversation(alice, bob) is None
        assert bob_conn.sent == []


class TestReceipts:

    @pytest.mark.asyncio
    async def test_mark_as_read_notifies_sender(self, service, hub, users):
        alice, bob = users
        alice_conn = connect(hub, alice)
        message = await service.send_message(alice, bob, text="read me")

        await service.mark_as_read(bob, message["_id"])

        receipts = alice_conn.events("messageRead")
        assert len(receipts) == 1
        assert receipts[0]["data"]["messageId"] == message["_id"]
        assert receipts[0]["data"]["readAt"] is not None

    @pytest.mark.asyncio
    async def test_sender_cannot_mark_own_message(self, service, users):
        alice, bob = users
        message = await service.send_message(alice, bob, text="mine")

        with pytest.raises(InvalidOperation):
            await service.mark_as_read(alice, message["_id"])

    @pytest.mark.asyncio
    async def test_mark_as_read_unknown_message(self, service, users):
        _, bob = users
        with pytest.raises(NotFound):
            await service.mark_as_read(bob, str(ObjectId()))

    @pytest.mark.asyncio
    async def test_mark_all_read_notifies_peer(self, service, hub, users):
        alice, bob = users
        alice_conn = connect(hub, alice)
        await service.send_message(alice, bob, text="one")
        await service.send_message(alice, bob, text="two")

        count = await service.mark_all_read(bob, alice)

        assert count == 2
        events = alice_conn.events("allMessagesRead")
        assert len(events) == 1
        assert events[0]["data"]["userId"] == bob

    @pytest.mark.asyncio
    async def test_mark_all_read_without_conversation(self, service, users):
        alice, bob = users
        with pytest.raises(NotFound, match="Conversation not found"):
            await service.mark_all_read(bob, alice)

    @pytest.mark.asyncio
    async def test_delivery_receipt_sent_once(self, service, hub, users):
        alice, bob = users
        alice_conn = connect(hub, alice)
        message = await service.send_message(alice, bob, text="delivered?")

        assert (await service.mark_delivered(bob, message["_id"]))["status"] == "delivered"
        assert await service.mark_delivered(bob, message["_id"]) is None
        assert len(alice_conn.events("messageDelivered")) == 1


class TestQueries:

    @pytest.mark.asyncio
    async def test_get_messages_without_conversation(self, service, users):
        alice, bob = users
        page = await service.get_messages(alice, bob)
        assert page == {"messages": [], "pagination": {"page": 1, "totalPages": 0, "total": 0}}

    @pytest.mark.asyncio
    async def test_get_messages_pagination(self, service, users):
        alice, bob = users
        for i in range(3):
            await service.send_message(alice, bob, text=f"m{i}")

        page = await service.get_messages(bob, alice, page=1, limit=2)

        assert page["pagination"] == {"page": 1, "totalPages": 2, "total": 3}
        assert len(page["messages"]) == 2

    @pytest.mark.asyncio
    async def test_search_includes_sender(self, service, users):
        alice, bob = users
        await service.send_message(alice, bob, text="meet at noon")

        results = await service.search_messages(bob, "noon")

        assert len(results) == 1
        assert results[0]["message"]["text"] == "meet at noon"
        assert results[0]["sender"]["fullName"] == "Alice"

    @pytest.mark.asyncio
    async def test_typing_reaches_only_the_peer(self, service, create_user, hub, users):
        alice, bob = users
        carol, _ = await create_user("Carol")
        alice_conn, bob_conn, carol_conn = connect(hub, alice), connect(hub, bob), connect(hub, carol)

        await service.notify_typing(alice, bob, True)

        assert bob_conn.events("user-typing") == [
            {"type": "user-typing", "data": {"userId": alice, "isTyping": True}}
        ]
        assert alice_conn.sent == []
        assert carol_conn.sent == []
