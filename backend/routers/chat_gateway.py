# routers/chat_gateway.py — Real-time chat over WebSocket
"""
One WebSocket per client device at /ws/chat. Frames are JSON objects with a
`type` field naming the event; every other field is the event payload.

A user may hold several connections at once. Presence events (`user-online`,
`user-offline`) fire only on the first connection and after the last one
closes. Each conversation is a room named `conversation:{id}`; a connection
joins the rooms of all its user's conversations when it authenticates.
"""
import uuid
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from auth import AuthService
from chat_service import ChatService, MessageCreate, user_summary
from database import async_session_maker
from exceptions import AppError, BadRequestError, QueueUnavailableError

router = APIRouter(tags=["WebSocket"])
logger = logging.getLogger("collabute.ws")

AUTH_FAILED_CLOSE_CODE = 4001


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def room_for(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


@dataclass
class ChatConnection:
    websocket: Any
    user_id: str
    user: Dict[str, Any]
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    rooms: Set[str] = field(default_factory=set)


# ============================================================
# SESSION REGISTRY
# ============================================================

class ChatSessionRegistry:
    """Tracks live connections per user and per room.

    Methods never await, so each mutation completes without interleaving
    on the event loop.
    """

    def __init__(self):
        self._connections: Dict[str, ChatConnection] = {}  # connection_id -> connection
        self._user_connections: Dict[str, Set[str]] = {}  # user_id -> {connection_ids}
        self._rooms: Dict[str, Set[str]] = {}  # room -> {connection_ids}

    def register(self, connection: ChatConnection) -> bool:
        """Add a connection. Returns True if it is the user's first."""
        self._connections[connection.id] = connection
        ids = self._user_connections.setdefault(connection.user_id, set())
        first = not ids
        ids.add(connection.id)
        return first

    def unregister(self, connection_id: str) -> Tuple[Optional[ChatConnection], bool]:
        """Remove a connection. Returns (connection, True if it was the user's last)."""
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return None, False
        for room in connection.rooms:
            members = self._rooms.get(room)
            if members is not None:
                members.discard(connection_id)
                if not members:
                    del self._rooms[room]
        ids = self._user_connections.get(connection.user_id, set())
        ids.discard(connection_id)
        last = not ids
        if last:
            self._user_connections.pop(connection.user_id, None)
        return connection, last

    def join(self, connection_id: str, room: str) -> None:
        connection = self._connections.get(connection_id)
        if connection is None:
            return
        connection.rooms.add(room)
        self._rooms.setdefault(room, set()).add(connection_id)

    def leave(self, connection_id: str, room: str) -> None:
        connection = self._connections.get(connection_id)
        if connection is not None:
            connection.rooms.discard(room)
        members = self._rooms.get(room)
        if members is not None:
            members.discard(connection_id)
            if not members:
                del self._rooms[room]

    def get(self, connection_id: str) -> Optional[ChatConnection]:
        return self._connections.get(connection_id)

    def connections_for_user(self, user_id: str) -> List[ChatConnection]:
        return [self._connections[cid] for cid in self._user_connections.get(user_id, ()) if cid in self._connections]

    def room_connections(self, room: str) -> List[ChatConnection]:
        return [self._connections[cid] for cid in self._rooms.get(room, ()) if cid in self._connections]

    def all_connections(self) -> List[ChatConnection]:
        return list(self._connections.values())

    def is_online(self, user_id: str) -> bool:
        return bool(self._user_connections.get(user_id))

    def online_users(self) -> List[str]:
        return list(self._user_connections.keys())

    def get_stats(self) -> Dict[str, int]:
        return {
            "total_connections": len(self._connections),
            "online_users": len(self._user_connections),
            "rooms": len(self._rooms),
        }


# ============================================================
# GATEWAY
# ============================================================

class ChatGateway:
    """Authenticates sockets, routes client events and fans out server events"""

    def __init__(self, registry: Optional[ChatSessionRegistry] = None):
        self.registry = registry or ChatSessionRegistry()
        self.session_factory = async_session_maker
        # Set during application startup once Redis is reachable
        self.dispatcher = None
        self._handlers = {
            "send-message": self._on_send_message,
            "join-conversation": self._on_join_conversation,
            "leave-conversation": self._on_leave_conversation,
            "typing-start": self._on_typing_start,
            "typing-stop": self._on_typing_stop,
            "mark-as-read": self._on_mark_as_read,
            "ping": self._on_ping,
        }

    # --- transport ---

    async def _send(self, connection: ChatConnection, event: str, payload: Dict[str, Any]) -> bool:
        try:
            await connection.websocket.send_json({"type": event, **payload})
            return True
        except Exception as e:
            logger.warning(f"WS send failed for connection {connection.id[:8]}: {e}")
            return False

    async def _emit_to(self, connections: List[ChatConnection], event: str, payload: Dict[str, Any]) -> None:
        stale = []
        for connection in connections:
            if not await self._send(connection, event, payload):
                stale.append(connection)
        # Dead sockets leave through disconnect() so presence stays consistent
        for connection in stale:
            await self.disconnect(connection)

    async def emit_to_room(
        self, room: str, event: str, payload: Dict[str, Any], exclude: Optional[str] = None,
    ) -> None:
        targets = [c for c in self.registry.room_connections(room) if c.id != exclude]
        await self._emit_to(targets, event, payload)

    async def _error(self, connection: ChatConnection, message: str) -> None:
        await self._send(connection, "error", {"message": message})

    # --- lifecycle ---

    @staticmethod
    def _extract_token(websocket: WebSocket) -> Optional[str]:
        token = websocket.query_params.get("token")
        if token:
            return token
        header = websocket.headers.get("authorization") or ""
        if header.lower().startswith("bearer "):
            return header[7:].strip()
        return None

    async def connect(self, websocket: WebSocket) -> Optional[ChatConnection]:
        """Authenticate and register a socket; closes it with 4001 on failure"""
        await websocket.accept()
        try:
            token = self._extract_token(websocket)
            async with self.session_factory() as db:
                user = await AuthService.resolve_token_user(token, db) if token else None
                conversation_ids = (
                    await ChatService.conversation_ids_for_user(db, user.id) if user else []
                )
        except Exception as e:
            logger.error(f"WS authentication error: {e}")
            user = None

        if user is None:
            await websocket.close(code=AUTH_FAILED_CLOSE_CODE)
            return None

        connection = ChatConnection(websocket=websocket, user_id=user.id, user=user_summary(user))
        first = self.registry.register(connection)
        for conversation_id in conversation_ids:
            self.registry.join(connection.id, room_for(conversation_id))

        await self._send(connection, "connected", {
            "user_id": user.id,
            "message": "Connected to chat",
            "conversations": conversation_ids,
            "timestamp": _now(),
        })
        logger.info(f"WS connected: user={user.id[:8]} connection={connection.id[:8]}")

        if first:
            others = [c for c in self.registry.all_connections() if c.user_id != user.id]
            await self._emit_to(others, "user-online", {"user_id": user.id})
        return connection

    async def disconnect(self, connection: ChatConnection) -> None:
        removed, last = self.registry.unregister(connection.id)
        if removed is None:
            return
        logger.info(f"WS disconnected: user={connection.user_id[:8]} connection={connection.id[:8]}")
        if last:
            await self._emit_to(self.registry.all_connections(), "user-offline", {"user_id": connection.user_id})

    async def handle_event(self, connection: ChatConnection, data: Any) -> None:
        if not isinstance(data, dict):
            await self._error(connection, "Event must be a JSON object")
            return
        event = data.get("type", "")
        handler = self._handlers.get(event)
        if handler is None:
            await self._error(connection, f"Unknown event type: {event}")
            return
        if self.registry.get(connection.id) is None:
            await self._error(connection, "Not authenticated")
            return
        try:
            await handler(connection, data)
        except AppError as e:
            await self._error(connection, e.message)
        except ValidationError as e:
            await self._error(connection, f"Invalid {event} payload: {e.errors()[0]['msg']}")
        except Exception as e:
            logger.error(f"WS {event} handler failed for user {connection.user_id[:8]}: {e}")
            await self._error(connection, "Internal server error")

    async def serve(self, websocket: WebSocket) -> None:
        connection = await self.connect(websocket)
        if connection is None:
            return
        try:
            while True:
                try:
                    data = await websocket.receive_json()
                except ValueError:
                    await self._error(connection, "Malformed JSON frame")
                    continue
                await self.handle_event(connection, data)
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error(f"WebSocket error: {e}")
        finally:
            await self.disconnect(connection)

    # --- client events ---

    @staticmethod
    def _conversation_id(data: Dict[str, Any]) -> str:
        conversation_id = data.get("conversation_id")
        if not conversation_id or not isinstance(conversation_id, str):
            raise BadRequestError("conversation_id is required")
        return conversation_id

    async def _on_send_message(self, connection: ChatConnection, data: Dict[str, Any]) -> None:
        request = MessageCreate.model_validate(data)
        async with self.session_factory() as db:
            message = await ChatService.send_message(db, request, connection.user_id)
            participant_ids = await ChatService.participant_ids(db, request.conversation_id)

        await self.broadcast_message(message)
        await self._send(connection, "message-sent", {"message_id": message["id"]})
        await self.notify_offline_participants(message, participant_ids)

    async def _on_join_conversation(self, connection: ChatConnection, data: Dict[str, Any]) -> None:
        conversation_id = self._conversation_id(data)
        async with self.session_factory() as db:
            await ChatService.require_participant(db, conversation_id, connection.user_id)

        room = room_for(conversation_id)
        self.registry.join(connection.id, room)
        await self._send(connection, "joined-conversation", {"conversation_id": conversation_id})
        await self.emit_to_room(room, "user-joined", {
            "user_id": connection.user_id, "conversation_id": conversation_id,
        })

    async def _on_leave_conversation(self, connection: ChatConnection, data: Dict[str, Any]) -> None:
        conversation_id = self._conversation_id(data)
        room = room_for(conversation_id)
        self.registry.leave(connection.id, room)
        await self._send(connection, "left-conversation", {"conversation_id": conversation_id})
        await self.emit_to_room(room, "user-left", {
            "user_id": connection.user_id, "conversation_id": conversation_id,
        })

    async def _typing(self, connection: ChatConnection, data: Dict[str, Any], is_typing: bool) -> None:
        conversation_id = self._conversation_id(data)
        await self.emit_to_room(room_for(conversation_id), "user-typing", {
            "user_id": connection.user_id,
            "conversation_id": conversation_id,
            "is_typing": is_typing,
        }, exclude=connection.id)

    async def _on_typing_start(self, connection: ChatConnection, data: Dict[str, Any]) -> None:
        await self._typing(connection, data, True)

    async def _on_typing_stop(self, connection: ChatConnection, data: Dict[str, Any]) -> None:
        await self._typing(connection, data, False)

    async def _on_mark_as_read(self, connection: ChatConnection, data: Dict[str, Any]) -> None:
        conversation_id = self._conversation_id(data)
        async with self.session_factory() as db:
            await ChatService.mark_as_read(db, conversation_id, connection.user_id)
        await self.emit_to_room(room_for(conversation_id), "conversation-read", {
            "user_id": connection.user_id,
            "conversation_id": conversation_id,
            "read_at": _now(),
        })

    async def _on_ping(self, connection: ChatConnection, data: Dict[str, Any]) -> None:
        await self._send(connection, "pong", {"timestamp": _now()})

    # --- server-side fan-out ---

    async def broadcast_message(self, message: Dict[str, Any]) -> None:
        """Deliver a persisted message to its conversation room"""
        await self.emit_to_room(room_for(message["conversation_id"]), "new-message", {
            "message": message,
            "conversation_id": message["conversation_id"],
        })

    async def notify_offline_participants(self, message: Dict[str, Any], participant_ids: List[str]) -> None:
        """Queue delayed message_received notifications for participants with no live connection"""
        if self.dispatcher is None:
            return
        sender = message.get("sender") or {}
        for user_id in participant_ids:
            if user_id == message["sender_id"] or self.registry.is_online(user_id):
                continue
            try:
                await self.dispatcher.send_message_received_notification(user_id, {
                    "conversation_id": message["conversation_id"],
                    "message_id": message["id"],
                    "sender_id": message["sender_id"],
                    "sender_name": sender.get("display_name") or sender.get("email") or "Someone",
                    "preview": message["content"][:100],
                })
            except QueueUnavailableError as e:
                logger.warning(f"Could not queue message notification for {user_id}: {e}")

    async def notify_user(self, user_id: str, notification: Dict[str, Any]) -> int:
        """Push a notification to every live connection of `user_id`"""
        connections = self.registry.connections_for_user(user_id)
        await self._emit_to(connections, "notification", {"notification": notification})
        return len(connections)


# Global gateway
gateway = ChatGateway()


@router.websocket("/ws/chat")
async def chat_websocket(websocket: WebSocket):
    """Chat WebSocket endpoint; authenticate with ?token= or an Authorization header"""
    await gateway.serve(websocket)


@router.get("/ws/stats")
async def websocket_stats():
    """Get WebSocket connection statistics"""
    return gateway.registry.get_stats()
