"""Client-side room session.

Holds everything a chat client needs to speak the relay protocol without a
rendering surface: an explicit UI state, the derived room key, the chat
transcript indexed by message id, and a queue of payloads that arrived
before the key was available. Rendering hooks receive `(kind, payload)` events.
"""
import asyncio
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from chat_client.constants import TYPING_DEBOUNCE_SECONDS, UNABLE_TO_DECRYPT, AWAITING_KEY
from chat_client.crypto import derive_room_key, encrypt, decrypt
from chat_client.reactions import ADD, seal_reaction, badges
from logging_config import get_logger

logger = get_logger(__name__)

Sender = Callable[[str, Any], Awaitable[None]]
Listener = Callable[[str, Any], None]


class UiState(str, Enum):
    LOBBY = "lobby"
    AWAITING_SALT = "awaiting_salt"
    JOINING = "joining"
    CHAT = "chat"
    LEFT = "left"


class ClientInputError(ValueError):
    pass


@dataclass
class ChatLine:
    message_id: str
    username: str
    time: str
    encrypted: dict
    own: bool = False
    text: Optional[str] = None
    decrypted: bool = False
    delivered: bool = False
    reactions: List[Tuple[str, int]] = field(default_factory=list)

    @property
    def display_text(self) -> str:
        if not self.decrypted:
            return AWAITING_KEY
        return self.text if self.text is not None else UNABLE_TO_DECRYPT


class ClientSession:
    def __init__(self, username: str, send: Sender, listener: Optional[Listener] = None,
                 derive=derive_room_key, typing_debounce: float = TYPING_DEBOUNCE_SECONDS):
        self.username = username
        self._send = send
        self._listener = listener
        self._derive = derive
        self.typing_debounce = typing_debounce

        self.state = UiState.LOBBY
        self.is_creator = False
        self.room: Optional[str] = None
        self.salt: Optional[str] = None
        self.key: Optional[bytes] = None
        self._password: Optional[str] = None

        self.lines: "OrderedDict[str, ChatLine]" = OrderedDict()
        self.pending: "OrderedDict[str, ChatLine]" = OrderedDict()
        self.pending_reactions: Dict[str, list] = {}
        self.reactions: Dict[str, List[Tuple[str, int]]] = {}
        self.acked: set = set()

        self.system_messages: List[str] = []
        self.errors: List[str] = []
        self.user_count = 0
        self.typing_user: Optional[str] = None
        self._typing_timer: Optional[asyncio.Task] = None

        self.handlers = {
            "roomCreated": self.on_room_created,
            "roomSalt": self.on_room_salt,
            "systemMessage": self.on_system_message,
            "userCountUpdate": self.on_user_count,
            "chatMessage": self.on_chat_message,
            "messageSent": self.on_message_sent,
            "reactionUpdate": self.on_reaction_update,
            "typing": self.on_typing,
            "stopTyping": self.on_stop_typing,
            "errorMessage": self.on_error,
        }

    def _notify(self, kind: str, payload: Any = None):
        if self._listener is not None:
            self._listener(kind, payload)

    # Outgoing

    async def create_room(self, password: str):
        if self.state != UiState.LOBBY:
            raise ClientInputError("Already in a room")
        if not password or not password.strip():
            raise ClientInputError("Enter room password")
        self._password = password.strip()
        self.is_creator = True
        self.state = UiState.AWAITING_SALT
        await self._send("createRoom", self.username)

    async def request_join(self, room: str, password: str):
        if self.state != UiState.LOBBY:
            raise ClientInputError("Already in a room")
        room = (room or "").strip().upper()
        if not room:
            raise ClientInputError("Enter Room Code")
        if not password or not password.strip():
            raise ClientInputError("Enter Room Password")
        self._password = password.strip()
        self.is_creator = False
        self.state = UiState.AWAITING_SALT
        await self._send("getSalt", {"room": room})

    async def send_text(self, text: str) -> bool:
        text = (text or "").strip()
        if not text:
            return False
        if self.state != UiState.CHAT or self.key is None:
            raise ClientInputError("Not in a room")
        await self._send("chatMessage", encrypt(self.key, text))
        await self.stop_typing()
        return True

    async def react(self, message_id: str, emoji: str, action: str = ADD):
        if self.key is None:
            raise ClientInputError("Missing key")
        if not message_id or not emoji:
            raise ClientInputError("Pick a message and an emoji")
        payload = seal_reaction(self.key, emoji, self.username, action)
        await self._send("addReactionEncrypted", {"messageId": message_id, "encryptedCipher": payload})

    async def keystroke(self):
        """Announce typing and re-arm the timer that announces it stopped."""
        if self.state != UiState.CHAT:
            return
        await self._send("typing", None)
        self._cancel_typing_timer()
        self._typing_timer = asyncio.ensure_future(self._stop_typing_later())

    async def _stop_typing_later(self):
        await asyncio.sleep(self.typing_debounce)
        self._typing_timer = None
        await self._send("stopTyping", None)

    def _cancel_typing_timer(self):
        if self._typing_timer is not None and not self._typing_timer.done():
            self._typing_timer.cancel()
        self._typing_timer = None

    async def stop_typing(self):
        self._cancel_typing_timer()
        if self.state == UiState.CHAT:
            await self._send("stopTyping", None)

    async def leave(self):
        self._cancel_typing_timer()
        if self.state in (UiState.JOINING, UiState.CHAT):
            await self._send("leaveRoom", None)
        self.state = UiState.LEFT
        self._notify("state", self.state)

    # Incoming

    async def handle(self, event: str, data: Any = None):
        handler = self.handlers.get(event)
        if handler is None:
            logger.debug(f"Ignoring unknown server event {event}")
            return
        await handler(data)

    async def on_room_created(self, code):
        self.room = code
        self._notify("room", code)

    async def on_room_salt(self, data):
        if self.state != UiState.AWAITING_SALT or self._password is None:
            logger.debug("Ignoring unexpected roomSalt")
            return
        room, salt = data["room"], data["salt"]
        password, self._password = self._password, None

        loop = asyncio.get_running_loop()
        self.key = await loop.run_in_executor(None, self._derive, password, salt)
        self.salt = salt
        if self.room is None:
            self.room = room
        logger.info(f"Derived key for room {room}")

        self._drain_pending()
        if self.is_creator:
            self._enter_chat()
        else:
            # CHAT only once the relay confirms the bind with "Joined room {code}"
            self.state = UiState.JOINING
            await self._send("joinRoom", {"username": self.username, "room": room})

    def _enter_chat(self):
        self.state = UiState.CHAT
        self._notify("state", self.state)

    def _drain_pending(self):
        for message_id, line in list(self.pending.items()):
            self._decrypt_line(line)
            del self.pending[message_id]
            self._notify("decrypted", line)
        for message_id, history in list(self.pending_reactions.items()):
            del self.pending_reactions[message_id]
            self._apply_reactions(message_id, history)

    def _decrypt_line(self, line: ChatLine):
        line.text = decrypt(self.key, line.encrypted)
        line.decrypted = True

    async def on_system_message(self, text):
        if self.state == UiState.JOINING and text == f"Joined room {self.room}":
            self._enter_chat()
        self.system_messages.append(text)
        self._notify("system", text)

    async def on_user_count(self, count):
        self.user_count = int(count)
        self._notify("count", self.user_count)

    async def on_chat_message(self, data):
        line = ChatLine(
            message_id=data["messageId"],
            username=data["username"],
            time=data["time"],
            encrypted=data["encrypted"],
            own=data["username"] == self.username,
            delivered=data["messageId"] in self.acked,
        )
        self.lines[line.message_id] = line
        if self.key is not None:
            self._decrypt_line(line)
        else:
            self.pending[line.message_id] = line
        self._notify("message", line)

    async def on_message_sent(self, data):
        message_id = data["messageId"]
        self.acked.add(message_id)
        line = self.lines.get(message_id)
        if line is not None:
            line.delivered = True
            self._notify("delivered", line)

    async def on_reaction_update(self, data):
        message_id, history = data.get("messageId"), data.get("history")
        if not message_id or not isinstance(history, list):
            return
        if self.key is None:
            self.pending_reactions[message_id] = history
            return
        self._apply_reactions(message_id, history)

    def _apply_reactions(self, message_id: str, history: list):
        pairs = badges(self.key, history)
        self.reactions[message_id] = pairs
        line = self.lines.get(message_id)
        if line is not None:
            line.reactions = pairs
            self._notify("reactions", line)

    async def on_typing(self, user):
        self.typing_user = user
        self._notify("typing", user)

    async def on_stop_typing(self, user=None):
        self.typing_user = None
        self._notify("typing", None)

    async def on_error(self, text):
        self.errors.append(text)
        if self.state in (UiState.AWAITING_SALT, UiState.JOINING):
            self._reset_to_lobby()
        self._notify("error", text)

    def _reset_to_lobby(self):
        self._password = None
        self.key = None
        self.salt = None
        self.room = None
        self.is_creator = False
        self.state = UiState.LOBBY
        self._notify("state", self.state)
