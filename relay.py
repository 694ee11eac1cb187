"""Event handlers for the encrypted room relay.

The relay never decrypts anything: chat and reaction payloads are opaque blobs that
are stamped with server-assigned identifiers and forwarded to the room.
"""
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from backend import epoch_millis
from errors import ProtocolError, RoomRequired, RoomNotFound, UsernameRequired, AlreadyInRoom, InvalidPayload
from manager import ConnectionManager, Session, SessionState
from schemas.rooms import (
    GetSaltRequest, JoinRoomRequest, EncryptedPayload, AddReactionRequest,
    RoomSalt, ChatEnvelope, MessageSent, ReactionUpdate,
)
from logging_config import get_logger

logger = get_logger(__name__)


def format_time(now: datetime = None) -> str:
    return (now or datetime.now()).strftime("%H:%M")


def make_message_id(connection_id: str) -> str:
    return f"{connection_id}-{epoch_millis()}"


def _parse(model, data, error=InvalidPayload):
    try:
        return model.model_validate(data if data is not None else {})
    except ValidationError as e:
        logger.warning(f"Rejected {model.__name__}: {e.error_count()} validation errors")
        raise error()


class RelayEngine:
    def __init__(self, manager: ConnectionManager):
        self.manager = manager
        self.registry = manager.registry
        self.handlers = {
            "createRoom": self.on_create_room,
            "getSalt": self.on_get_salt,
            "joinRoom": self.on_join_room,
            "chatMessage": self.on_chat_message,
            "addReactionEncrypted": self.on_add_reaction,
            "typing": self.on_typing,
            "stopTyping": self.on_stop_typing,
            "leaveRoom": self.on_leave_room,
        }

    async def dispatch(self, session: Session, event: str, data: Any = None):
        handler = self.handlers.get(event)
        try:
            if handler is None:
                raise ProtocolError(f"Unknown event: {event}")
            await handler(session, data)
        except ProtocolError as e:
            logger.warning(f"{event} from {session.connection_id} rejected: {e.message}")
            await self.manager.send(session, "errorMessage", e.message)

    async def on_create_room(self, session: Session, data: Any):
        if session.state != SessionState.UNBOUND:
            raise AlreadyInRoom()
        if not isinstance(data, str) or not data.strip():
            raise UsernameRequired()
        username = data.strip()
        code, salt = self.registry.create_room()
        self.manager.bind(session, username, code)

        await self.manager.send(session, "roomCreated", code)
        await self.manager.send(session, "roomSalt", RoomSalt(room=code, salt=salt).model_dump())
        await self.manager.send(session, "systemMessage", f"Created & joined room {code}")
        await self.broadcast_count(code)

    async def on_get_salt(self, session: Session, data: Any):
        request = _parse(GetSaltRequest, data, RoomRequired)
        salt = self.registry.get_or_create_salt(request.room)
        await self.manager.send(session, "roomSalt", RoomSalt(room=request.room, salt=salt).model_dump())

    async def on_join_room(self, session: Session, data: Any):
        request = _parse(JoinRoomRequest, data, RoomRequired)
        if not request.room:
            raise RoomRequired()
        if session.state != SessionState.UNBOUND:
            raise AlreadyInRoom()
        if not self.registry.room_exists(request.room):
            raise RoomNotFound()
        username = (request.username or "").strip()
        if not username:
            raise UsernameRequired()
        self.manager.bind(session, username, request.room)

        await self.manager.send(session, "systemMessage", f"Joined room {request.room}")
        await self.manager.broadcast_except(request.room, "systemMessage", f"{username} joined", session)
        await self.broadcast_count(request.room)

    async def on_chat_message(self, session: Session, data: Any):
        if not session.is_bound:
            return
        encrypted = _parse(EncryptedPayload, data)
        message_id = make_message_id(session.connection_id)
        envelope = ChatEnvelope(
            username=session.username,
            encrypted=encrypted,
            time=format_time(),
            messageId=message_id,
        )
        logger.debug(f"Relaying message {message_id} in room {session.room}")
        await self.manager.send(session, "messageSent", MessageSent(messageId=message_id).model_dump())
        await self.manager.broadcast(session.room, "chatMessage", envelope.model_dump())

    async def on_add_reaction(self, session: Session, data: Any):
        if not session.is_bound:
            return
        request = _parse(AddReactionRequest, data, lambda: InvalidPayload("Invalid reaction payload"))
        history = self.registry.record_reaction(session.room, request.messageId, request.encryptedCipher.model_dump())
        update = ReactionUpdate(messageId=request.messageId, history=history)
        await self.manager.broadcast(session.room, "reactionUpdate", update.model_dump())

    async def on_typing(self, session: Session, data: Any):
        if not session.is_bound:
            return
        await self.manager.broadcast_except(session.room, "typing", session.username, session)

    async def on_stop_typing(self, session: Session, data: Any):
        if not session.is_bound:
            return
        await self.manager.broadcast_except(session.room, "stopTyping", session.username, session)

    async def on_leave_room(self, session: Session, data: Any = None):
        await self.depart(session, "left")

    async def on_disconnect(self, session: Session):
        if not session.is_bound:
            session.state = SessionState.CLOSED
            return
        await self.depart(session, "disconnected")

    async def depart(self, session: Session, verb: str):
        if not session.is_bound:
            return
        room, username = session.room, session.username
        remaining = self.manager.release(session)
        if remaining:
            await self.manager.broadcast(room, "systemMessage", f"{username} {verb}")
            await self.broadcast_count(room)

    async def broadcast_count(self, room: str):
        await self.manager.broadcast(room, "userCountUpdate", self.manager.member_count(room))
