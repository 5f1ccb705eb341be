from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from .rooms import Participant, ParticipantRole, Room, RoomStatus


class CreateRoomRequest(BaseModel):
    name: Optional[str] = Field(None, max_length=120)
    maxParticipants: Optional[int] = Field(None, ge=2, le=100)


class RoomInfo(BaseModel):
    id: str
    code: str
    name: Optional[str] = None
    status: RoomStatus
    currentParticipants: int
    maxParticipants: int
    lastActivityAt: Optional[datetime] = None
    createdAt: datetime
    updatedAt: datetime

    @classmethod
    def from_room(cls, room: Room) -> "RoomInfo":
        return cls(
            id=room.id,
            code=room.code,
            name=room.name,
            status=room.status,
            currentParticipants=room.current_participants,
            maxParticipants=room.max_participants,
            lastActivityAt=room.last_activity_at,
            createdAt=room.created_at,
            updatedAt=room.updated_at,
        )


class ParticipantInfo(BaseModel):
    id: str
    userId: str
    role: ParticipantRole
    isActive: bool
    joinedAt: Optional[datetime] = None

    @classmethod
    def from_participant(cls, participant: Participant) -> "ParticipantInfo":
        return cls(
            id=participant.id,
            userId=participant.user_id,
            role=participant.role,
            isActive=participant.is_active,
            joinedAt=participant.joined_at,
        )


class RoomResponse(BaseModel):
    room: RoomInfo
    isHost: bool


class RoomWithParticipants(RoomResponse):
    participants: List[ParticipantInfo]


class MessageResponse(BaseModel):
    message: str


# --- websocket envelope ---

class JoinMessage(BaseModel):
    type: Literal["join"] = "join"
    roomCode: Optional[str] = Field(None, min_length=1, max_length=64)


class LeaveMessage(BaseModel):
    type: Literal["leave"] = "leave"
    roomCode: Optional[str] = Field(None, min_length=1, max_length=64)


class ChatMessage(BaseModel):
    type: Literal["chat"] = "chat"
    message: str = Field(..., min_length=1, max_length=2000)


class ErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    code: str
    message: str
