# tests/test_chat.py — Conversations, participants and messages over REST
import pytest
import pytest_asyncio

from chat_service import ChatService, ConversationCreate, MessageCreate
from exceptions import BadRequestError, ForbiddenError, NotFoundError
from models import ConversationType, Project
from tests.conftest import get_auth_headers


async def create_group(client, owner, members, title="Team chat"):
    resp = await client.post("/api/v1/chat/conversations", json={
        "title": title,
        "type": "group",
        "participant_ids": [m.id for m in members],
    }, headers=get_auth_headers(owner))
    assert resp.status_code == 201
    return resp.json()


async def post_message(client, user, conversation_id, content, reply_to_id=None):
    body = {"conversation_id": conversation_id, "content": content}
    if reply_to_id:
        body["reply_to_id"] = reply_to_id
    return await client.post("/api/v1/chat/messages", json=body, headers=get_auth_headers(user))


@pytest.mark.asyncio
class TestConversations:
    async def test_create_group_conversation(self, client, test_user, other_user):
        conversation = await create_group(client, test_user, [other_user, other_user, test_user])

        roles = {p["user_id"]: p["role"] for p in conversation["participants"]}
        assert roles == {test_user.id: "admin", other_user.id: "member"}
        assert conversation["type"] == "group"
        assert conversation["created_by_id"] == test_user.id

    async def test_project_conversation_requires_project_id(self, client, test_user):
        resp = await client.post("/api/v1/chat/conversations", json={
            "title": "Proj", "type": "project",
        }, headers=get_auth_headers(test_user))
        assert resp.status_code == 400
        assert "request_id" in resp.json()

    async def test_unknown_participant(self, client, test_user):
        resp = await client.post("/api/v1/chat/conversations", json={
            "title": "x", "type": "group", "participant_ids": ["nobody"],
        }, headers=get_auth_headers(test_user))
        assert resp.status_code == 404

    async def test_list_includes_last_message(self, client, test_user, other_user):
        conversation = await create_group(client, test_user, [other_user])
        await post_message(client, test_user, conversation["id"], "first")
        await post_message(client, other_user, conversation["id"], "second")

        resp = await client.get("/api/v1/chat/conversations", headers=get_auth_headers(other_user))
        assert resp.status_code == 200
        items = resp.json()
        assert len(items) == 1
        assert items[0]["message_count"] == 2
        assert items[0]["last_message"]["content"] == "second"

    async def test_list_only_own_conversations(self, client, test_user, other_user, third_user):
        await create_group(client, test_user, [other_user])
        resp = await client.get("/api/v1/chat/conversations", headers=get_auth_headers(third_user))
        assert resp.json() == []

    async def test_non_participant_cannot_read(self, client, test_user, other_user, third_user):
        conversation = await create_group(client, test_user, [other_user])
        resp = await client.get(
            f"/api/v1/chat/conversations/{conversation['id']}", headers=get_auth_headers(third_user),
        )
        assert resp.status_code == 403

    async def test_missing_conversation(self, client, test_user):
        resp = await client.get("/api/v1/chat/conversations/missing", headers=get_auth_headers(test_user))
        assert resp.status_code == 404

    async def test_requires_auth(self, client):
        resp = await client.get("/api/v1/chat/conversations")
        assert resp.status_code in (401, 403)


@pytest.mark.asyncio
class TestMessages:
    async def test_send_and_list_in_order(self, client, test_user, other_user):
        conversation = await create_group(client, test_user, [other_user])
        for text in ("one", "two", "three"):
            resp = await post_message(client, test_user, conversation["id"], text)
            assert resp.status_code == 201

        resp = await client.get(
            f"/api/v1/chat/conversations/{conversation['id']}/messages",
            headers=get_auth_headers(other_user),
        )
        assert [m["content"] for m in resp.json()] == ["one", "two", "three"]
        assert resp.json()[0]["sender"]["id"] == test_user.id

    async def test_non_participant_cannot_send(self, client, test_user, other_user, third_user):
        conversation = await create_group(client, test_user, [other_user])
        resp = await post_message(client, third_user, conversation["id"], "hi")
        assert resp.status_code == 403

    async def test_reply_must_be_in_same_conversation(self, client, test_user, other_user):
        first = await create_group(client, test_user, [other_user], title="A")
        second = await create_group(client, test_user, [other_user], title="B")
        message = (await post_message(client, test_user, first["id"], "hello")).json()

        resp = await post_message(client, test_user, second["id"], "reply", reply_to_id=message["id"])
        assert resp.status_code == 400

        resp = await post_message(client, other_user, first["id"], "reply", reply_to_id=message["id"])
        assert resp.status_code == 201
        assert resp.json()["reply_to"]["content"] == "hello"

    async def test_empty_content_rejected(self, client, test_user, other_user):
        conversation = await create_group(client, test_user, [other_user])
        resp = await post_message(client, test_user, conversation["id"], "")
        assert resp.status_code == 422

    async def test_sender_can_delete(self, client, test_user, other_user):
        conversation = await create_group(client, test_user, [other_user])
        message = (await post_message(client, other_user, conversation["id"], "oops")).json()

        resp = await client.delete(f"/api/v1/chat/messages/{message['id']}", headers=get_auth_headers(other_user))
        assert resp.status_code == 200
        assert resp.json() == {"status": "deleted", "id": message["id"]}

    async def test_member_cannot_delete_others_message(self, client, test_user, other_user, third_user):
        conversation = await create_group(client, test_user, [other_user, third_user])
        message = (await post_message(client, other_user, conversation["id"], "mine")).json()

        resp = await client.delete(f"/api/v1/chat/messages/{message['id']}", headers=get_auth_headers(third_user))
        assert resp.status_code == 403
        # Conversation admins may moderate
        resp = await client.delete(f"/api/v1/chat/messages/{message['id']}", headers=get_auth_headers(test_user))
        assert resp.status_code == 200

    async def test_deleting_replied_message_keeps_reply(self, client, test_user, other_user):
        conversation = await create_group(client, test_user, [other_user])
        original = (await post_message(client, test_user, conversation["id"], "original")).json()
        await post_message(client, other_user, conversation["id"], "reply", reply_to_id=original["id"])

        await client.delete(f"/api/v1/chat/messages/{original['id']}", headers=get_auth_headers(test_user))
        resp = await client.get(
            f"/api/v1/chat/conversations/{conversation['id']}/messages", headers=get_auth_headers(test_user),
        )
        messages = resp.json()
        assert len(messages) == 1
        assert messages[0]["reply_to_id"] is None

    async def test_mark_as_read(self, client, test_user, other_user):
        conversation = await create_group(client, test_user, [other_user])
        message = (await post_message(client, test_user, conversation["id"], "read me")).json()

        resp = await client.post(
            f"/api/v1/chat/conversations/{conversation['id']}/read", headers=get_auth_headers(other_user),
        )
        assert resp.json()["last_read_message_id"] == message["id"]

        # Reading again with nothing new leaves the cursor where it was
        resp = await client.post(
            f"/api/v1/chat/conversations/{conversation['id']}/read", headers=get_auth_headers(other_user),
        )
        assert resp.json()["last_read_message_id"] == message["id"]

        resp = await client.get(
            f"/api/v1/chat/conversations/{conversation['id']}", headers=get_auth_headers(other_user),
        )
        cursors = {p["user_id"]: p["last_read_message_id"] for p in resp.json()["participants"]}
        assert cursors[other_user.id] == message["id"]

    async def test_offline_participants_get_delayed_notification(self, client, test_user, other_user, dispatcher):
        conversation = await create_group(client, test_user, [other_user])
        await post_message(client, test_user, conversation["id"], "are you there?")

        stats = await dispatcher.get_stats()
        assert stats["notifications"]["delayed"] == 1
        job_id = (await dispatcher.redis.zrange("collabute:notifications:delayed", 0, -1))[0]
        job = await dispatcher.get_queue("notifications").get_job(job_id)
        assert job.data["user_id"] == other_user.id
        assert job.data["data"]["sender_name"] == "Test User"
        assert job.data["data"]["preview"] == "are you there?"


@pytest.mark.asyncio
class TestParticipants:
    async def test_admin_adds_participant(self, client, test_user, other_user, third_user):
        conversation = await create_group(client, test_user, [other_user])
        resp = await client.post(
            f"/api/v1/chat/conversations/{conversation['id']}/participants",
            json={"user_id": third_user.id}, headers=get_auth_headers(test_user),
        )
        assert resp.status_code == 201
        assert resp.json()["role"] == "member"

        resp = await client.post(
            f"/api/v1/chat/conversations/{conversation['id']}/participants",
            json={"user_id": third_user.id}, headers=get_auth_headers(test_user),
        )
        assert resp.status_code == 400

    async def test_member_cannot_add(self, client, test_user, other_user, third_user):
        conversation = await create_group(client, test_user, [other_user])
        resp = await client.post(
            f"/api/v1/chat/conversations/{conversation['id']}/participants",
            json={"user_id": third_user.id}, headers=get_auth_headers(other_user),
        )
        assert resp.status_code == 403

    async def test_participant_can_leave(self, client, test_user, other_user):
        conversation = await create_group(client, test_user, [other_user])
        resp = await client.delete(
            f"/api/v1/chat/conversations/{conversation['id']}/participants/{other_user.id}",
            headers=get_auth_headers(other_user),
        )
        assert resp.status_code == 200

        resp = await post_message(client, other_user, conversation["id"], "still here?")
        assert resp.status_code == 403

    async def test_member_cannot_remove_others(self, client, test_user, other_user, third_user):
        conversation = await create_group(client, test_user, [other_user, third_user])
        resp = await client.delete(
            f"/api/v1/chat/conversations/{conversation['id']}/participants/{third_user.id}",
            headers=get_auth_headers(other_user),
        )
        assert resp.status_code == 403

    async def test_remove_unknown_participant(self, client, test_user, other_user, third_user):
        conversation = await create_group(client, test_user, [other_user])
        resp = await client.delete(
            f"/api/v1/chat/conversations/{conversation['id']}/participants/{third_user.id}",
            headers=get_auth_headers(test_user),
        )
        assert resp.status_code == 404


# ============================================================
# SERVICE
# ============================================================

@pytest_asyncio.fixture
async def project(db_session, test_user):
    project = Project(title="Apollo", slug="apollo-a1b2c3", description="", owner_id=test_user.id)
    db_session.add(project)
    await db_session.commit()
    return project


@pytest.mark.asyncio
class TestChatService:
    async def test_project_conversation_needs_membership(self, db_session, project, other_user):
        data = ConversationCreate(title="Apollo chat", type=ConversationType.PROJECT, project_id=project.id)
        with pytest.raises(ForbiddenError):
            await ChatService.create_conversation(db_session, data, other_user.id)

    async def test_project_conversation_unknown_project(self, db_session, test_user):
        data = ConversationCreate(title="x", type=ConversationType.PROJECT, project_id="missing")
        with pytest.raises(NotFoundError):
            await ChatService.create_conversation(db_session, data, test_user.id)

    async def test_owner_creates_project_conversation(self, db_session, project, test_user):
        data = ConversationCreate(title="Apollo chat", type=ConversationType.PROJECT, project_id=project.id)
        conversation = await ChatService.create_conversation(db_session, data, test_user.id)
        assert conversation["project_id"] == project.id
        assert await ChatService.conversation_ids_for_user(db_session, test_user.id) == [conversation["id"]]

    async def test_invalid_reply_checked_before_membership(self, db_session, test_user, other_user):
        data = ConversationCreate(title="x", type=ConversationType.PRIVATE, participant_ids=[other_user.id])
        conversation = await ChatService.create_conversation(db_session, data, test_user.id)

        with pytest.raises(BadRequestError):
            await ChatService.send_message(
                db_session,
                MessageCreate(conversation_id=conversation["id"], content="hi", reply_to_id="missing"),
                "not-a-member",
            )

    async def test_ensure_participant_is_idempotent(self, db_session, test_user, other_user):
        data = ConversationCreate(title="x", type=ConversationType.GROUP)
        conversation = await ChatService.create_conversation(db_session, data, test_user.id)

        await ChatService.ensure_participant(db_session, conversation["id"], other_user.id)
        await ChatService.ensure_participant(db_session, conversation["id"], other_user.id)
        await db_session.commit()

        ids = await ChatService.participant_ids(db_session, conversation["id"])
        assert sorted(ids) == sorted([test_user.id, other_user.id])

    async def test_mark_as_read_empty_conversation(self, db_session, test_user):
        data = ConversationCreate(title="x", type=ConversationType.GROUP)
        conversation = await ChatService.create_conversation(db_session, data, test_user.id)
        result = await ChatService.mark_as_read(db_session, conversation["id"], test_user.id)
        assert result["last_read_message_id"] is None
