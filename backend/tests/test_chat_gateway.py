# tests/test_chat_gateway.py — WebSocket chat gateway and session registry
import pytest
import pytest_asyncio

from chat_service import ChatService, ConversationCreate
from models import ConversationType
from routers.chat_gateway import (
    AUTH_FAILED_CLOSE_CODE, ChatConnection, ChatSessionRegistry, room_for,
)
from tests.conftest import FakeWebSocket, get_auth_headers, get_token


# ============================================================
# REGISTRY
# ============================================================

class TestChatSessionRegistry:
    def test_first_and_last_connection(self):
        registry = ChatSessionRegistry()
        a = ChatConnection(websocket=None, user_id="u1", user={})
        b = ChatConnection(websocket=None, user_id="u1", user={})

        assert registry.register(a) is True
        assert registry.register(b) is False
        assert registry.is_online("u1")

        assert registry.unregister(a.id) == (a, False)
        assert registry.unregister(b.id) == (b, True)
        assert not registry.is_online("u1")

    def test_unregister_unknown_connection(self):
        assert ChatSessionRegistry().unregister("nope") == (None, False)

    def test_rooms_follow_connections(self):
        registry = ChatSessionRegistry()
        conn = ChatConnection(websocket=None, user_id="u1", user={})
        registry.register(conn)
        registry.join(conn.id, "conversation:c1")
        assert registry.room_connections("conversation:c1") == [conn]

        registry.unregister(conn.id)
        assert registry.room_connections("conversation:c1") == []
        assert registry.get_stats() == {"total_connections": 0, "online_users": 0, "rooms": 0}

    def test_leave_drops_empty_room(self):
        registry = ChatSessionRegistry()
        conn = ChatConnection(websocket=None, user_id="u1", user={})
        registry.register(conn)
        registry.join(conn.id, "conversation:c1")
        registry.leave(conn.id, "conversation:c1")
        assert conn.rooms == set()
        assert registry.get_stats()["rooms"] == 0

    def test_join_ignores_unknown_connection(self):
        registry = ChatSessionRegistry()
        registry.join("ghost", "conversation:c1")
        assert registry.get_stats()["rooms"] == 0


# ============================================================
# GATEWAY
# ============================================================

@pytest_asyncio.fixture
async def conversation(db_session, test_user, other_user):
    data = ConversationCreate(title="Team", type=ConversationType.GROUP, participant_ids=[other_user.id])
    return await ChatService.create_conversation(db_session, data, test_user.id)


async def connect(gateway, user):
    ws = FakeWebSocket(token=get_token(user))
    connection = await gateway.connect(ws)
    assert connection is not None
    return ws, connection


@pytest.mark.asyncio
class TestConnect:
    async def test_connect_joins_conversation_rooms(self, chat_gateway, test_user, conversation):
        ws, connection = await connect(chat_gateway, test_user)

        assert ws.accepted
        connected = ws.events("connected")[0]
        assert connected["user_id"] == test_user.id
        assert connected["conversations"] == [conversation["id"]]
        assert room_for(conversation["id"]) in connection.rooms

    async def test_invalid_token_closes_with_4001(self, chat_gateway):
        ws = FakeWebSocket(token="not-a-jwt")
        assert await chat_gateway.connect(ws) is None
        assert ws.close_code == AUTH_FAILED_CLOSE_CODE
        assert chat_gateway.registry.get_stats()["total_connections"] == 0

    async def test_missing_token_closes_with_4001(self, chat_gateway):
        ws = FakeWebSocket()
        assert await chat_gateway.connect(ws) is None
        assert ws.close_code == AUTH_FAILED_CLOSE_CODE

    async def test_authorization_header_accepted(self, chat_gateway, test_user):
        ws = FakeWebSocket(headers={"authorization": get_auth_headers(test_user)["Authorization"]})
        assert await chat_gateway.connect(ws) is not None

    async def test_presence_only_on_first_and_last_connection(self, chat_gateway, test_user, other_user):
        observer, _ = await connect(chat_gateway, other_user)

        _, first = await connect(chat_gateway, test_user)
        _, second = await connect(chat_gateway, test_user)
        assert len(observer.events("user-online")) == 1

        await chat_gateway.disconnect(first)
        assert observer.events("user-offline") == []
        await chat_gateway.disconnect(second)
        assert observer.events("user-offline") == [{"type": "user-offline", "user_id": test_user.id}]

        # Disconnecting twice is a no-op
        await chat_gateway.disconnect(second)
        assert len(observer.events("user-offline")) == 1


@pytest.mark.asyncio
class TestEvents:
    async def test_send_message_reaches_room_members_only(
        self, chat_gateway, test_user, other_user, third_user, conversation,
    ):
        sender_ws, sender = await connect(chat_gateway, test_user)
        member_ws, _ = await connect(chat_gateway, other_user)
        outsider_ws, _ = await connect(chat_gateway, third_user)

        await chat_gateway.handle_event(sender, {
            "type": "send-message", "conversation_id": conversation["id"], "content": "hello",
        })

        assert member_ws.events("new-message")[0]["message"]["content"] == "hello"
        assert len(sender_ws.events("new-message")) == 1
        assert len(sender_ws.events("message-sent")) == 1
        assert outsider_ws.events("new-message") == []

    async def test_send_message_queues_notification_for_offline_member(
        self, chat_gateway, test_user, other_user, conversation, dispatcher,
    ):
        _, sender = await connect(chat_gateway, test_user)
        await chat_gateway.handle_event(sender, {
            "type": "send-message", "conversation_id": conversation["id"], "content": "ping?",
        })
        stats = await dispatcher.get_stats()
        assert stats["notifications"]["delayed"] == 1

    async def test_online_member_not_notified(
        self, chat_gateway, test_user, other_user, conversation, dispatcher,
    ):
        _, sender = await connect(chat_gateway, test_user)
        await connect(chat_gateway, other_user)
        await chat_gateway.handle_event(sender, {
            "type": "send-message", "conversation_id": conversation["id"], "content": "ping?",
        })
        stats = await dispatcher.get_stats()
        assert stats["notifications"]["delayed"] == 0

    async def test_non_participant_send_gets_error(self, chat_gateway, third_user, conversation):
        ws, connection = await connect(chat_gateway, third_user)
        await chat_gateway.handle_event(connection, {
            "type": "send-message", "conversation_id": conversation["id"], "content": "let me in",
        })
        assert ws.events("error")[0]["message"] == "You are not a participant in this conversation"

    async def test_invalid_payload_gets_error(self, chat_gateway, test_user, conversation):
        ws, connection = await connect(chat_gateway, test_user)
        await chat_gateway.handle_event(connection, {
            "type": "send-message", "conversation_id": conversation["id"], "content": "",
        })
        assert ws.events("error")[0]["message"].startswith("Invalid send-message payload")

    async def test_unknown_event(self, chat_gateway, test_user):
        ws, connection = await connect(chat_gateway, test_user)
        await chat_gateway.handle_event(connection, {"type": "dance"})
        assert ws.events("error")[0]["message"] == "Unknown event type: dance"

    async def test_non_object_frame(self, chat_gateway, test_user):
        ws, connection = await connect(chat_gateway, test_user)
        await chat_gateway.handle_event(connection, ["send-message"])
        assert ws.events("error")[0]["message"] == "Event must be a JSON object"

    async def test_unregistered_connection_rejected(self, chat_gateway, test_user):
        ws = FakeWebSocket()
        stray = ChatConnection(websocket=ws, user_id=test_user.id, user={})
        await chat_gateway.handle_event(stray, {"type": "ping"})
        assert ws.events("error")[0]["message"] == "Not authenticated"

    async def test_typing_excludes_sender(self, chat_gateway, test_user, other_user, conversation):
        sender_ws, sender = await connect(chat_gateway, test_user)
        member_ws, _ = await connect(chat_gateway, other_user)

        await chat_gateway.handle_event(sender, {"type": "typing-start", "conversation_id": conversation["id"]})
        await chat_gateway.handle_event(sender, {"type": "typing-stop", "conversation_id": conversation["id"]})

        assert [e["is_typing"] for e in member_ws.events("user-typing")] == [True, False]
        assert sender_ws.events("user-typing") == []

    async def test_typing_requires_conversation_id(self, chat_gateway, test_user):
        ws, connection = await connect(chat_gateway, test_user)
        await chat_gateway.handle_event(connection, {"type": "typing-start"})
        assert ws.events("error")[0]["message"] == "conversation_id is required"

    async def test_leave_and_rejoin(self, chat_gateway, test_user, other_user, conversation):
        ws, connection = await connect(chat_gateway, test_user)
        member_ws, _ = await connect(chat_gateway, other_user)
        room = room_for(conversation["id"])

        await chat_gateway.handle_event(connection, {"type": "leave-conversation", "conversation_id": conversation["id"]})
        assert room not in connection.rooms
        assert len(ws.events("left-conversation")) == 1
        assert len(member_ws.events("user-left")) == 1

        await chat_gateway.handle_event(connection, {"type": "join-conversation", "conversation_id": conversation["id"]})
        assert room in connection.rooms
        assert len(ws.events("joined-conversation")) == 1

    async def test_join_requires_membership(self, chat_gateway, third_user, conversation):
        ws, connection = await connect(chat_gateway, third_user)
        await chat_gateway.handle_event(connection, {"type": "join-conversation", "conversation_id": conversation["id"]})
        assert ws.events("error")
        assert room_for(conversation["id"]) not in connection.rooms

    async def test_mark_as_read_broadcasts(self, chat_gateway, test_user, other_user, conversation):
        _, connection = await connect(chat_gateway, test_user)
        member_ws, _ = await connect(chat_gateway, other_user)
        await chat_gateway.handle_event(connection, {"type": "mark-as-read", "conversation_id": conversation["id"]})
        event = member_ws.events("conversation-read")[0]
        assert event["user_id"] == test_user.id
        assert event["read_at"]

    async def test_ping(self, chat_gateway, test_user):
        ws, connection = await connect(chat_gateway, test_user)
        await chat_gateway.handle_event(connection, {"type": "ping"})
        assert len(ws.events("pong")) == 1


@pytest.mark.asyncio
class TestServerPush:
    async def test_notify_user_reaches_every_connection(self, chat_gateway, test_user):
        first, _ = await connect(chat_gateway, test_user)
        second, _ = await connect(chat_gateway, test_user)

        delivered = await chat_gateway.notify_user(test_user.id, {"title": "Hi"})
        assert delivered == 2
        assert first.events("notification")[0]["notification"] == {"title": "Hi"}
        assert len(second.events("notification")) == 1

    async def test_notify_offline_user(self, chat_gateway):
        assert await chat_gateway.notify_user("nobody", {"title": "Hi"}) == 0

    async def test_failed_send_drops_connection(self, chat_gateway, test_user, other_user):
        observer, _ = await connect(chat_gateway, other_user)
        _, connection = await connect(chat_gateway, test_user)
        connection.websocket.fail_sends = True
        await chat_gateway.notify_user(test_user.id, {"title": "Hi"})
        assert not chat_gateway.registry.is_online(test_user.id)
        assert observer.events("user-offline") == [{"type": "user-offline", "user_id": test_user.id}]

        # The serve loop's own disconnect afterwards does not repeat it
        await chat_gateway.disconnect(connection)
        assert len(observer.events("user-offline")) == 1


@pytest.mark.asyncio
async def test_stats_endpoint(client, chat_gateway, test_user):
    await connect(chat_gateway, test_user)
    resp = await client.get("/ws/stats")
    assert resp.status_code == 200
    assert resp.json()["total_connections"] == 1
