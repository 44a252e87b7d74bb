# models/schemas.py
from pydantic import BaseModel, Field, field_validator
from typing import Any, List, Literal

SIGNAL_TYPES = ("offer", "answer", "ice-candidate")


# Inbound websocket envelopes
class JoinRoomRequest(BaseModel):
    roomId: str
    displayName: str

    @field_validator("roomId", "displayName")
    @classmethod
    def not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value

class SignalRequest(BaseModel):
    targetParticipantId: str
    payload: Any

class ChatMessageRequest(BaseModel):
    body: str = Field(min_length=1)


# Outbound websocket envelopes
class ParticipantInfo(BaseModel):
    id: str
    displayName: str

class ConnectedEvent(BaseModel):
    type: Literal["connected"] = "connected"
    id: str

class RoomJoinedEvent(BaseModel):
    type: Literal["room-joined"] = "room-joined"
    roomId: str
    participants: List[ParticipantInfo]

class UserJoinedEvent(BaseModel):
    type: Literal["user-joined"] = "user-joined"
    id: str
    displayName: str
    participantCount: int

class UserLeftEvent(BaseModel):
    type: Literal["user-left"] = "user-left"
    id: str
    displayName: str
    participantCount: int

class SignalEvent(BaseModel):
    type: str
    fromParticipantId: str
    payload: Any

class ChatMessageEvent(BaseModel):
    type: Literal["chat-message"] = "chat-message"
    fromParticipantId: str
    displayName: str
    body: str
    timestamp: str

class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    message: str


# HTTP responses
class CreateRoomResponse(BaseModel):
    roomId: str

class RoomSummary(BaseModel):
    id: str
    participants: int
    created: str

class RoomListResponse(BaseModel):
    rooms: List[RoomSummary]
    total: int

class RoomInfo(BaseModel):
    id: str
    numParticipants: int
    participants: List[ParticipantInfo]
    created: str

class ParticipantListResponse(BaseModel):
    roomId: str
    participants: List[ParticipantInfo]
    total: int

class IceServer(BaseModel):
    urls: str

class IceServersResponse(BaseModel):
    iceServers: List[IceServer]
