from __future__ import annotations

import abc
import asyncio
from dataclasses import replace
from typing import Dict, List, Optional

from .errors import DuplicateRoomCode
from .rooms import Participant, ParticipantRole, Room, utcnow


class RoomRepository(abc.ABC):
    """Storage seam for Room and Participant records.

    Implementations return detached copies: a record only changes in the
    store through ``update_room`` / ``update_participant``.
    """

    @abc.abstractmethod
    async def get_room_by_code(self, code: str) -> Optional[Room]: ...

    @abc.abstractmethod
    async def insert_room(self, room: Room) -> Room: ...

    @abc.abstractmethod
    async def update_room(self, room: Room) -> Room: ...

    @abc.abstractmethod
    async def get_active_participant(self, user_id: str, room_id: str) -> Optional[Participant]: ...

    @abc.abstractmethod
    async def get_participant(self, user_id: str, room_id: str,
                              role: Optional[ParticipantRole] = None) -> Optional[Participant]: ...

    @abc.abstractmethod
    async def insert_participant(self, participant: Participant) -> Participant: ...

    @abc.abstractmethod
    async def update_participant(self, participant: Participant) -> Participant: ...

    @abc.abstractmethod
    async def count_active_participants(self, room_id: str) -> int: ...

    @abc.abstractmethod
    async def list_active_participants(self, room_id: str) -> List[Participant]: ...

    @abc.abstractmethod
    async def deactivate_participants(self, room_id: str) -> int: ...

    @abc.abstractmethod
    async def list_participant_history(self, room_id: str) -> List[Participant]:
        """Every row for the room, active or not, in insertion order."""


class InMemoryRoomRepository(RoomRepository):
    def __init__(self):
        self._rooms: Dict[str, Room] = {}
        self._codes: Dict[str, str] = {}
        self._participants: Dict[str, Participant] = {}
        self._lock = asyncio.Lock()

    async def get_room_by_code(self, code: str) -> Optional[Room]:
        async with self._lock:
            room_id = self._codes.get(code)
            if room_id is None:
                return None
            return replace(self._rooms[room_id])

    async def insert_room(self, room: Room) -> Room:
        async with self._lock:
            if room.code in self._codes:
                raise DuplicateRoomCode(room.code)
            self._rooms[room.id] = replace(room)
            self._codes[room.code] = room.id
            return replace(room)

    async def update_room(self, room: Room) -> Room:
        async with self._lock:
            if room.id not in self._rooms:
                raise KeyError(f"room {room.id} does not exist")
            room.updated_at = utcnow()
            self._rooms[room.id] = replace(room)
            return replace(room)

    async def get_active_participant(self, user_id: str, room_id: str) -> Optional[Participant]:
        async with self._lock:
            for p in self._participants.values():
                if p.user_id == user_id and p.room_id == room_id and p.is_active:
                    return replace(p)
            return None

    async def get_participant(self, user_id: str, room_id: str,
                              role: Optional[ParticipantRole] = None) -> Optional[Participant]:
        async with self._lock:
            for p in self._participants.values():
                if p.user_id != user_id or p.room_id != room_id:
                    continue
                if role is not None and p.role != role:
                    continue
                return replace(p)
            return None

    async def insert_participant(self, participant: Participant) -> Participant:
        async with self._lock:
            self._participants[participant.id] = replace(participant)
            return replace(participant)

    async def update_participant(self, participant: Participant) -> Participant:
        async with self._lock:
            if participant.id not in self._participants:
                raise KeyError(f"participant {participant.id} does not exist")
            self._participants[participant.id] = replace(participant)
            return replace(participant)

    async def count_active_participants(self, room_id: str) -> int:
        async with self._lock:
            return sum(1 for p in self._participants.values()
                       if p.room_id == room_id and p.is_active)

    async def list_active_participants(self, room_id: str) -> List[Participant]:
        async with self._lock:
            active = [replace(p) for p in self._participants.values()
                      if p.room_id == room_id and p.is_active]
        return sorted(active, key=lambda p: p.joined_at or p.created_at)

    async def deactivate_participants(self, room_id: str) -> int:
        async with self._lock:
            changed = 0
            for p in self._participants.values():
                if p.room_id == room_id and p.is_active:
                    p.deactivate()
                    changed += 1
            return changed

    async def list_participant_history(self, room_id: str) -> List[Participant]:
        async with self._lock:
            return [replace(p) for p in self._participants.values() if p.room_id == room_id]
