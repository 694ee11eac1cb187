from pydantic import BaseModel, ConfigDict
from typing import Any, Optional


class Frame(BaseModel):
    type: str
    data: Any = None


class GetSaltRequest(BaseModel):
    room: Optional[str] = None


class JoinRoomRequest(BaseModel):
    username: Optional[str] = None
    room: Optional[str] = None


class EncryptedPayload(BaseModel):
    # Opaque AES-GCM blob, only presence is checked
    model_config = ConfigDict(extra="allow")

    iv: str
    cipher: str


class AddReactionRequest(BaseModel):
    messageId: str
    encryptedCipher: EncryptedPayload


class RoomSalt(BaseModel):
    room: str
    salt: str


class ChatEnvelope(BaseModel):
    username: str
    encrypted: EncryptedPayload
    time: str
    messageId: str


class MessageSent(BaseModel):
    messageId: str


class ReactionEntry(BaseModel):
    ciphertext: EncryptedPayload
    time: int


class ReactionUpdate(BaseModel):
    messageId: str
    history: list[ReactionEntry]


class RoomDetailsResponse(BaseModel):
    room_id: str
    exists: bool
    online_users_count: int
