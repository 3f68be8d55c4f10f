# chat_service.py — Conversations, participants and messages
"""
Persistence and authorization rules for chat, shared by the REST router and
the WebSocket gateway. Every check re-reads the database, so a participant
removed in one process is refused everywhere on their next action.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy import select, func, update
from sqlalchemy.ext.asyncio import AsyncSession

from exceptions import BadRequestError, ForbiddenError, NotFoundError
from models import (
    Conversation, ConversationParticipant, ConversationType, Message,
    ParticipantRole, Project, ProjectCollaborator, User, utcnow,
)

logger = logging.getLogger("collabute.chat")


# --- Schemas ---

class ConversationCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    type: ConversationType
    project_id: Optional[str] = None
    participant_ids: List[str] = Field(default_factory=list)


class MessageCreate(BaseModel):
    conversation_id: str
    content: str = Field(..., min_length=1, max_length=10000)
    reply_to_id: Optional[str] = None


# --- Serializers ---

def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _enum(value) -> str:
    return value.value if hasattr(value, "value") else str(value)


def user_summary(u: Optional[User]) -> Optional[Dict[str, Any]]:
    if u is None:
        return None
    return {
        "id": u.id,
        "email": u.email,
        "display_name": u.display_name,
        "avatar_url": u.avatar_url,
    }


async def _users_by_id(db: AsyncSession, user_ids: Iterable[str]) -> Dict[str, User]:
    ids = set(user_ids)
    if not ids:
        return {}
    result = await db.execute(select(User).where(User.id.in_(ids)))
    return {u.id: u for u in result.scalars().all()}


async def _messages_out(db: AsyncSession, messages: List[Message]) -> List[Dict[str, Any]]:
    reply_ids = {m.reply_to_id for m in messages if m.reply_to_id}
    replies: Dict[str, Message] = {}
    if reply_ids:
        result = await db.execute(select(Message).where(Message.id.in_(reply_ids)))
        replies = {m.id: m for m in result.scalars().all()}
    users = await _users_by_id(
        db, {m.sender_id for m in messages} | {r.sender_id for r in replies.values()}
    )

    out = []
    for m in messages:
        reply = replies.get(m.reply_to_id) if m.reply_to_id else None
        out.append({
            "id": m.id,
            "conversation_id": m.conversation_id,
            "sender_id": m.sender_id,
            "sender": user_summary(users.get(m.sender_id)),
            "content": m.content,
            "reply_to_id": m.reply_to_id,
            "reply_to": {
                "id": reply.id,
                "content": reply.content,
                "sender": user_summary(users.get(reply.sender_id)),
            } if reply else None,
            "created_at": _iso(m.created_at),
        })
    return out


async def message_out(db: AsyncSession, message: Message) -> Dict[str, Any]:
    return (await _messages_out(db, [message]))[0]


async def conversation_out(db: AsyncSession, conversation: Conversation) -> Dict[str, Any]:
    result = await db.execute(
        select(ConversationParticipant)
        .where(ConversationParticipant.conversation_id == conversation.id)
        .order_by(ConversationParticipant.joined_at)
    )
    participants = result.scalars().all()
    users = await _users_by_id(db, [p.user_id for p in participants])
    return {
        "id": conversation.id,
        "title": conversation.title,
        "type": _enum(conversation.type),
        "project_id": conversation.project_id,
        "created_by_id": conversation.created_by_id,
        "created_at": _iso(conversation.created_at),
        "updated_at": _iso(conversation.updated_at),
        "participants": [
            {
                "user_id": p.user_id,
                "role": _enum(p.role),
                "joined_at": _iso(p.joined_at),
                "last_read_message_id": p.last_read_message_id,
                "user": user_summary(users.get(p.user_id)),
            }
            for p in participants
        ],
    }


# ============================================================
# SERVICE
# ============================================================

class ChatService:
    """Chat operations. All methods take the caller's user id and re-check access."""

    # --- lookups ---

    @staticmethod
    async def _get_conversation(db: AsyncSession, conversation_id: str) -> Conversation:
        result = await db.execute(select(Conversation).where(Conversation.id == conversation_id))
        conversation = result.scalar_one_or_none()
        if not conversation:
            raise NotFoundError("Conversation not found")
        return conversation

    @staticmethod
    async def _get_participant(
        db: AsyncSession, conversation_id: str, user_id: str,
    ) -> Optional[ConversationParticipant]:
        result = await db.execute(
            select(ConversationParticipant).where(
                ConversationParticipant.conversation_id == conversation_id,
                ConversationParticipant.user_id == user_id,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def require_participant(db: AsyncSession, conversation_id: str, user_id: str) -> Conversation:
        """Return the conversation if `user_id` participates in it"""
        conversation = await ChatService._get_conversation(db, conversation_id)
        if not await ChatService._get_participant(db, conversation_id, user_id):
            raise ForbiddenError("You are not a participant in this conversation")
        return conversation

    @staticmethod
    async def conversation_ids_for_user(db: AsyncSession, user_id: str) -> List[str]:
        result = await db.execute(
            select(ConversationParticipant.conversation_id)
            .where(ConversationParticipant.user_id == user_id)
        )
        return list(result.scalars().all())

    @staticmethod
    async def participant_ids(db: AsyncSession, conversation_id: str) -> List[str]:
        result = await db.execute(
            select(ConversationParticipant.user_id)
            .where(ConversationParticipant.conversation_id == conversation_id)
        )
        return list(result.scalars().all())

    # --- conversations ---

    @staticmethod
    async def create_conversation(db: AsyncSession, data: ConversationCreate, user_id: str) -> Dict[str, Any]:
        if data.type == ConversationType.PROJECT and not data.project_id:
            raise BadRequestError("Project ID is required for project conversations")

        if data.project_id:
            project = (await db.execute(
                select(Project).where(Project.id == data.project_id)
            )).scalar_one_or_none()
            if not project:
                raise NotFoundError("Project not found")
            is_collaborator = project.owner_id == user_id or (await db.execute(
                select(ProjectCollaborator.id).where(
                    ProjectCollaborator.project_id == project.id,
                    ProjectCollaborator.user_id == user_id,
                )
            )).scalar_one_or_none() is not None
            if not is_collaborator:
                raise ForbiddenError("You are not authorized to create conversations in this project")

        member_ids = []
        for pid in data.participant_ids:
            if pid != user_id and pid not in member_ids:
                member_ids.append(pid)
        known = await _users_by_id(db, member_ids)
        missing = [pid for pid in member_ids if pid not in known]
        if missing:
            raise NotFoundError(f"User {missing[0]} not found")

        conversation = Conversation(
            title=data.title,
            type=data.type,
            project_id=data.project_id,
            created_by_id=user_id,
        )
        db.add(conversation)
        await db.flush()

        db.add(ConversationParticipant(
            conversation_id=conversation.id, user_id=user_id, role=ParticipantRole.ADMIN,
        ))
        for pid in member_ids:
            db.add(ConversationParticipant(
                conversation_id=conversation.id, user_id=pid, role=ParticipantRole.MEMBER,
            ))
        await db.commit()

        logger.info(f"Conversation {conversation.id} created by {user_id} ({len(member_ids) + 1} participants)")
        return await conversation_out(db, conversation)

    @staticmethod
    async def find_conversations(
        db: AsyncSession,
        user_id: str,
        page: int = 1,
        limit: int = 20,
        type: Optional[ConversationType] = None,
        project_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        member_of = select(ConversationParticipant.conversation_id).where(
            ConversationParticipant.user_id == user_id
        )
        query = select(Conversation).where(Conversation.id.in_(member_of))
        if type:
            query = query.where(Conversation.type == type)
        if project_id:
            query = query.where(Conversation.project_id == project_id)
        query = query.order_by(Conversation.updated_at.desc()).offset((page - 1) * limit).limit(limit)
        conversations = (await db.execute(query)).scalars().all()
        if not conversations:
            return []

        ids = [c.id for c in conversations]
        counts = dict((await db.execute(
            select(Message.conversation_id, func.count(Message.id))
            .where(Message.conversation_id.in_(ids))
            .group_by(Message.conversation_id)
        )).all())

        out = []
        for c in conversations:
            item = await conversation_out(db, c)
            last = (await db.execute(
                select(Message)
                .where(Message.conversation_id == c.id)
                .order_by(Message.created_at.desc())
                .limit(1)
            )).scalar_one_or_none()
            item["last_message"] = await message_out(db, last) if last else None
            item["message_count"] = counts.get(c.id, 0)
            out.append(item)
        return out

    @staticmethod
    async def find_conversation(db: AsyncSession, conversation_id: str, user_id: str) -> Dict[str, Any]:
        conversation = await ChatService.require_participant(db, conversation_id, user_id)
        return await conversation_out(db, conversation)

    # --- messages ---

    @staticmethod
    async def send_message(db: AsyncSession, data: MessageCreate, user_id: str) -> Dict[str, Any]:
        if data.reply_to_id:
            reply_to = (await db.execute(
                select(Message).where(Message.id == data.reply_to_id)
            )).scalar_one_or_none()
            if not reply_to or reply_to.conversation_id != data.conversation_id:
                raise BadRequestError("Invalid reply-to message")

        conversation = await ChatService.require_participant(db, data.conversation_id, user_id)

        message = Message(
            conversation_id=conversation.id,
            sender_id=user_id,
            content=data.content,
            reply_to_id=data.reply_to_id,
        )
        db.add(message)
        conversation.updated_at = utcnow()
        await db.commit()
        return await message_out(db, message)

    @staticmethod
    async def get_messages(
        db: AsyncSession, conversation_id: str, user_id: str, page: int = 1, limit: int = 50,
    ) -> List[Dict[str, Any]]:
        await ChatService.require_participant(db, conversation_id, user_id)
        result = await db.execute(
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.created_at.asc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return await _messages_out(db, list(result.scalars().all()))

    @staticmethod
    async def delete_message(db: AsyncSession, message_id: str, user_id: str) -> Dict[str, Any]:
        message = (await db.execute(
            select(Message).where(Message.id == message_id)
        )).scalar_one_or_none()
        if not message:
            raise NotFoundError("Message not found")

        if message.sender_id != user_id:
            participant = await ChatService._get_participant(db, message.conversation_id, user_id)
            if not participant or participant.role != ParticipantRole.ADMIN:
                raise ForbiddenError("You are not authorized to delete this message")

        out = await message_out(db, message)
        # Detach replies and read cursors before the row goes
        await db.execute(
            update(Message).where(Message.reply_to_id == message.id).values(reply_to_id=None)
        )
        await db.execute(
            update(ConversationParticipant)
            .where(ConversationParticipant.last_read_message_id == message.id)
            .values(last_read_message_id=None)
        )
        await db.delete(message)
        await db.commit()
        logger.info(f"Message {message_id} deleted by {user_id}")
        return out

    # --- participants ---

    @staticmethod
    async def add_participant(
        db: AsyncSession, conversation_id: str, participant_id: str, user_id: str,
    ) -> Dict[str, Any]:
        await ChatService._get_conversation(db, conversation_id)

        caller = await ChatService._get_participant(db, conversation_id, user_id)
        if not caller or caller.role != ParticipantRole.ADMIN:
            raise ForbiddenError("Only admins can add participants")

        target = (await db.execute(select(User).where(User.id == participant_id))).scalar_one_or_none()
        if not target:
            raise NotFoundError("User not found")

        if await ChatService._get_participant(db, conversation_id, participant_id):
            raise BadRequestError("User is already a participant")

        participant = ConversationParticipant(
            conversation_id=conversation_id, user_id=participant_id, role=ParticipantRole.MEMBER,
        )
        db.add(participant)
        await db.commit()
        return {
            "conversation_id": conversation_id,
            "user_id": participant_id,
            "role": _enum(participant.role),
            "joined_at": _iso(participant.joined_at),
            "user": user_summary(target),
        }

    @staticmethod
    async def ensure_participant(
        db: AsyncSession, conversation_id: str, user_id: str,
        role: ParticipantRole = ParticipantRole.MEMBER,
    ) -> None:
        """Idempotent membership for system-managed conversations"""
        if not await ChatService._get_participant(db, conversation_id, user_id):
            db.add(ConversationParticipant(conversation_id=conversation_id, user_id=user_id, role=role))
            await db.flush()

    @staticmethod
    async def remove_participant(
        db: AsyncSession, conversation_id: str, participant_id: str, user_id: str,
    ) -> Dict[str, str]:
        await ChatService._get_conversation(db, conversation_id)

        caller = await ChatService._get_participant(db, conversation_id, user_id)
        target = await ChatService._get_participant(db, conversation_id, participant_id)
        if not target:
            raise NotFoundError("Participant not found")

        can_remove = (caller is not None and caller.role == ParticipantRole.ADMIN) or user_id == participant_id
        if not can_remove:
            raise ForbiddenError("You are not authorized to remove this participant")

        await db.delete(target)
        await db.commit()
        return {"message": "Participant removed successfully"}

    @staticmethod
    async def mark_as_read(db: AsyncSession, conversation_id: str, user_id: str) -> Dict[str, Any]:
        await ChatService.require_participant(db, conversation_id, user_id)

        latest = (await db.execute(
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.created_at.desc())
            .limit(1)
        )).scalar_one_or_none()

        if latest:
            participant = await ChatService._get_participant(db, conversation_id, user_id)
            participant.last_read_message_id = latest.id
            await db.commit()

        return {
            "message": "Conversation marked as read",
            "last_read_message_id": latest.id if latest else None,
        }
