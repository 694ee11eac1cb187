import asyncio
import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import WebSocket

from backend import RoomRegistry
from errors import AlreadyInRoom
from logging_config import get_logger

logger = get_logger(__name__)


class SessionState(str, Enum):
    UNBOUND = "unbound"
    BOUND = "bound"
    CLOSED = "closed"


@dataclass
class Session:
    """Per-connection state. A connection binds to at most one room for its lifetime."""

    websocket: WebSocket
    connection_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: SessionState = SessionState.UNBOUND
    username: Optional[str] = None
    room: Optional[str] = None
    color: Optional[str] = None

    @property
    def is_bound(self) -> bool:
        return self.state == SessionState.BOUND


class ConnectionManager:
    """Tracks live sessions and fans events out to the sockets of a room.

    All registry mutations run synchronously inside a handler, so on a single
    event loop each bind/release is atomic with respect to other connections.
    """

    def __init__(self, registry: RoomRegistry):
        self.registry = registry
        # room code -> {connection_id: Session}
        self.room_connections: Dict[str, Dict[str, Session]] = {}

    def open(self, websocket: WebSocket) -> Session:
        session = Session(websocket=websocket)
        logger.debug(f"Opened session {session.connection_id}")
        return session

    def bind(self, session: Session, username: str, room: str) -> int:
        """Move a session from UNBOUND to BOUND in `room`. Returns the new member count."""
        if session.state != SessionState.UNBOUND:
            raise AlreadyInRoom()
        color = self.registry.assign_color(room, session.connection_id)
        count = self.registry.add_member(room, session.connection_id, username, color)
        session.username = username
        session.room = room
        session.color = color
        session.state = SessionState.BOUND
        self.room_connections.setdefault(room, {})[session.connection_id] = session
        logger.info(f"User {session.connection_id} ({username}) joined room {room}, {count} members")
        return count

    def release(self, session: Session) -> Optional[int]:
        """Move a BOUND session to CLOSED. Returns the remaining member count, or None if it was not bound."""
        if session.state != SessionState.BOUND:
            session.state = SessionState.CLOSED
            return None
        room = session.room
        local = self.room_connections.get(room)
        if local is not None:
            local.pop(session.connection_id, None)
            if not local:
                del self.room_connections[room]
                logger.debug(f"No more local connections in room {room}")
        remaining = self.registry.remove_member(room, session.connection_id)
        session.state = SessionState.CLOSED
        logger.info(f"User {session.connection_id} ({session.username}) left room {room}, {remaining} remaining")
        return remaining

    def member_count(self, room: str) -> int:
        return self.registry.member_count(room)

    async def send(self, session: Session, event: str, data: Any = None) -> bool:
        try:
            await session.websocket.send_text(json.dumps({"type": event, "data": data}))
            return True
        except Exception as e:
            logger.warning(f"Error sending {event} to connection {session.connection_id}: {e}")
            return False

    async def broadcast(self, room: str, event: str, data: Any = None):
        await self._fan_out(room, event, data, exclude=None)

    async def broadcast_except(self, room: str, event: str, data: Any, exclude: Session):
        await self._fan_out(room, event, data, exclude=exclude.connection_id)

    async def _fan_out(self, room: str, event: str, data: Any, exclude: Optional[str]):
        targets = [s for cid, s in self.room_connections.get(room, {}).items() if cid != exclude]
        if not targets:
            return
        results = await asyncio.gather(*[self.send(s, event, data) for s in targets], return_exceptions=True)
        failed = sum(1 for r in results if r is not True)
        if failed:
            logger.warning(f"Broadcast of {event} to room {room} failed for {failed}/{len(targets)} connections")
        else:
            logger.debug(f"Broadcast {event} to {len(targets)} connections in room {room}")
