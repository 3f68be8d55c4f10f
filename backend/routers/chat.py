# routers/chat.py — Conversations and messages over REST
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, CurrentUser
from chat_service import ChatService, ConversationCreate, MessageCreate
from database import get_db_session
from models import ConversationType
from routers.chat_gateway import gateway, room_for

router = APIRouter(prefix="/api/v1/chat", tags=["Chat"])


class ParticipantAdd(BaseModel):
    user_id: str = Field(..., min_length=1)


# ============================================================
# CONVERSATIONS
# ============================================================

@router.post("/conversations", status_code=201)
async def create_conversation(
    data: ConversationCreate,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    conversation = await ChatService.create_conversation(db, data, user.id)
    # Live connections of the members start receiving the room's events
    for participant in conversation["participants"]:
        for connection in gateway.registry.connections_for_user(participant["user_id"]):
            gateway.registry.join(connection.id, room_for(conversation["id"]))
    return conversation


@router.get("/conversations")
async def list_conversations(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    type: Optional[ConversationType] = Query(None),
    project_id: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    return await ChatService.find_conversations(
        db, user.id, page=page, limit=limit, type=type, project_id=project_id,
    )


@router.get("/conversations/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    return await ChatService.find_conversation(db, conversation_id, user.id)


# ============================================================
# MESSAGES
# ============================================================

@router.post("/messages", status_code=201)
async def send_message(
    data: MessageCreate,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    message = await ChatService.send_message(db, data, user.id)
    participant_ids = await ChatService.participant_ids(db, data.conversation_id)
    await gateway.broadcast_message(message)
    await gateway.notify_offline_participants(message, participant_ids)
    return message


@router.get("/conversations/{conversation_id}/messages")
async def list_messages(
    conversation_id: str,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    return await ChatService.get_messages(db, conversation_id, user.id, page=page, limit=limit)


@router.delete("/messages/{message_id}")
async def delete_message(
    message_id: str,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    message = await ChatService.delete_message(db, message_id, user.id)
    await gateway.emit_to_room(room_for(message["conversation_id"]), "message-deleted", {
        "message_id": message["id"],
        "conversation_id": message["conversation_id"],
    })
    return {"status": "deleted", "id": message["id"]}


# ============================================================
# PARTICIPANTS
# ============================================================

@router.post("/conversations/{conversation_id}/participants", status_code=201)
async def add_participant(
    conversation_id: str,
    data: ParticipantAdd,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    participant = await ChatService.add_participant(db, conversation_id, data.user_id, user.id)
    for connection in gateway.registry.connections_for_user(data.user_id):
        gateway.registry.join(connection.id, room_for(conversation_id))
    return participant


@router.delete("/conversations/{conversation_id}/participants/{participant_id}")
async def remove_participant(
    conversation_id: str,
    participant_id: str,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    result = await ChatService.remove_participant(db, conversation_id, participant_id, user.id)
    for connection in gateway.registry.connections_for_user(participant_id):
        gateway.registry.leave(connection.id, room_for(conversation_id))
    return result


@router.post("/conversations/{conversation_id}/read")
async def mark_conversation_read(
    conversation_id: str,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    return await ChatService.mark_as_read(db, conversation_id, user.id)
