from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from .config import DEFAULT_MAX_PARTICIPANTS


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class RoomStatus(str, Enum):
    active = "active"
    inactive = "inactive"


class ParticipantRole(str, Enum):
    host = "host"
    participant = "participant"


@dataclass
class Room:
    code: str
    name: Optional[str] = None
    status: RoomStatus = RoomStatus.active
    current_participants: int = 0
    max_participants: int = DEFAULT_MAX_PARTICIPANTS
    id: str = field(default_factory=new_id)
    last_activity_at: Optional[datetime] = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == RoomStatus.active

    @property
    def is_full(self) -> bool:
        return self.current_participants >= self.max_participants

    def touch(self) -> None:
        now = utcnow()
        self.last_activity_at = now
        self.updated_at = now


@dataclass
class Participant:
    """One membership row. Rejoining inserts a new row instead of reviving this one."""

    user_id: str
    room_id: str
    role: ParticipantRole = ParticipantRole.participant
    is_active: bool = True
    id: str = field(default_factory=new_id)
    joined_at: Optional[datetime] = field(default_factory=utcnow)
    left_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_host(self) -> bool:
        return self.role == ParticipantRole.host

    def deactivate(self) -> None:
        self.is_active = False
        self.left_at = utcnow()


@dataclass
class RoomAccess:
    room: Room
    is_host: bool
