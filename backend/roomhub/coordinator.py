from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Dict, List, Optional, Tuple

from .codes import generate_room_code
from .config import Settings
from .errors import (
    DuplicateRoomCode,
    NotInRoom,
    NotRoomHost,
    RoomCodeUnavailable,
    RoomFull,
    RoomNotFound,
)
from .grace import GracePeriodScheduler
from .repository import RoomRepository
from .rooms import Participant, ParticipantRole, Room, RoomAccess, RoomStatus

logger = logging.getLogger("roomhub.coordinator")


@dataclass
class RoomOptions:
    name: Optional[str] = None
    max_participants: Optional[int] = None


@dataclass
class _RoomGuard:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class RoomLifecycleCoordinator:
    """Membership transitions for rooms, plus the grace period that delays closure.

    When the host walks out of an empty room the room is not closed right
    away: a grace period is armed and a later join cancels it. Every join
    cancels unconditionally, which is what closes the window between "room
    became empty" and "room is finalized".

    Scheduler calls happen in the same step as the membership write they
    belong to, with no await in between.
    """

    def __init__(self, repository: RoomRepository,
                 scheduler: Optional[GracePeriodScheduler] = None,
                 settings: Optional[Settings] = None,
                 code_factory: Callable[[], str] = generate_room_code):
        self.settings = settings or Settings()
        self._code_factory = code_factory
        self.repository = repository
        self.scheduler = scheduler or GracePeriodScheduler(self.settings.grace_period_seconds)
        self._pinned = set(self.settings.pinned_room_codes)
        self._guards: Dict[str, _RoomGuard] = {}

    @asynccontextmanager
    async def _room_guard(self, code: str) -> AsyncIterator[None]:
        entry = self._guards.get(code)
        if entry is None:
            entry = self._guards[code] = _RoomGuard()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._guards.pop(code, None)

    def is_pinned(self, code: str) -> bool:
        return code in self._pinned

    def has_grace_period(self, code: str) -> bool:
        return self.scheduler.has(code)

    async def create_room(self, owner_user_id: str,
                          options: Optional[RoomOptions] = None) -> RoomAccess:
        options = options or RoomOptions()
        max_participants = options.max_participants or self.settings.default_max_participants

        room = None
        for _ in range(self.settings.room_code_attempts):
            code = self._code_factory()
            if await self.repository.get_room_by_code(code) is not None:
                continue
            try:
                room = await self.repository.insert_room(Room(
                    code=code,
                    name=options.name,
                    status=RoomStatus.active,
                    current_participants=1,
                    max_participants=max_participants,
                ))
            except DuplicateRoomCode:
                # taken between the lookup and the insert
                continue
            break
        if room is None:
            raise RoomCodeUnavailable(self.settings.room_code_attempts)

        await self.repository.insert_participant(Participant(
            user_id=owner_user_id,
            room_id=room.id,
            role=ParticipantRole.host,
        ))
        logger.info(f"Room created: {room.code} by {owner_user_id}, max_participants: {max_participants}")
        return RoomAccess(room=room, is_host=True)

    async def get_room(self, code: str) -> Tuple[Room, List[Participant]]:
        room = await self._load_active_room(code)
        participants = await self.repository.list_active_participants(room.id)
        return room, participants

    async def list_participants(self, code: str) -> List[Participant]:
        _, participants = await self.get_room(code)
        return participants

    async def join_room(self, user_id: str, code: str) -> RoomAccess:
        async with self._room_guard(code):
            room = await self._load_active_room(code)
            if room.is_full:
                raise RoomFull(f"Room is full (max {room.max_participants} participants)")

            existing = await self.repository.get_active_participant(user_id, room.id)
            if existing is not None:
                # duplicate join from a reconnecting client
                self._cancel_grace_period(code, user_id)
                return RoomAccess(room=room, is_host=existing.is_host)

            # a host reconnecting on a fresh row keeps the host role
            was_host = await self.repository.get_participant(
                user_id, room.id, role=ParticipantRole.host) is not None
            role = ParticipantRole.host if was_host else ParticipantRole.participant
            await self.repository.insert_participant(Participant(user_id=user_id, room_id=room.id, role=role))
            room.current_participants += 1
            room.touch()
            room = await self.repository.update_room(room)
            self._cancel_grace_period(code, user_id)

        logger.info(f"User {user_id} joined room {code}, total_participants={room.current_participants}")
        return RoomAccess(room=room, is_host=was_host)

    async def leave_room(self, user_id: str, code: str) -> Room:
        async with self._room_guard(code):
            room = await self.repository.get_room_by_code(code)
            if room is None:
                raise RoomNotFound()

            participant = await self.repository.get_active_participant(user_id, room.id)
            if participant is None:
                raise NotInRoom()

            participant.deactivate()
            await self.repository.update_participant(participant)
            room.current_participants = max(0, room.current_participants - 1)
            room.touch()
            room = await self.repository.update_room(room)
            logger.info(f"User {user_id} left room {code}, total_participants={room.current_participants}")

            if not (participant.is_host or self.settings.close_on_any_last_leave):
                return room
            if await self.repository.count_active_participants(room.id) > 0:
                return room
            if self.is_pinned(code):
                logger.info(f"Room {code} is pinned, staying active with no participants")
                return room

            logger.info(f"Room {code} is empty, starting grace period ({self.scheduler.duration}s)")
            self.scheduler.start(code, self._finalize_room_closure)
        return room

    async def delete_room(self, user_id: str, code: str) -> None:
        async with self._room_guard(code):
            room = await self.repository.get_room_by_code(code)
            if room is None:
                raise RoomNotFound()

            host = await self.repository.get_participant(user_id, room.id, role=ParticipantRole.host)
            if host is None:
                raise NotRoomHost()

            closed = await self.repository.deactivate_participants(room.id)
            room.status = RoomStatus.inactive
            room.current_participants = 0
            await self.repository.update_room(room)
        # A pending grace timer is left alone; finalize sees the room inactive.
        logger.info(f"Room {code} deleted by host {user_id}, {closed} participants removed")

    async def ensure_pinned_rooms(self) -> List[Room]:
        rooms = []
        for code in sorted(self._pinned):
            room = await self.repository.get_room_by_code(code)
            if room is None:
                room = await self.repository.insert_room(Room(
                    code=code,
                    name=f"Pinned room {code}",
                    current_participants=0,
                    max_participants=self.settings.default_max_participants,
                ))
                logger.info(f"Pinned room {code} created")
            elif not room.is_active:
                logger.warning(f"Pinned room {code} exists but is inactive; leaving it closed")
            rooms.append(room)
        return rooms

    async def _load_active_room(self, code: str) -> Room:
        room = await self.repository.get_room_by_code(code)
        if room is None or not room.is_active:
            raise RoomNotFound()
        return room

    def _cancel_grace_period(self, code: str, user_id: str) -> None:
        if self.scheduler.cancel(code):
            logger.info(f"Grace period cancelled for room {code} - user {user_id} joined")

    async def _finalize_room_closure(self, code: str) -> None:
        async with self._room_guard(code):
            room = await self.repository.get_room_by_code(code)
            if room is None:
                logger.warning(f"Finalize: room {code} not found, skipping")
                return
            if not room.is_active:
                logger.info(f"Finalize: room {code} already inactive, skipping")
                return

            remaining = await self.repository.count_active_participants(room.id)
            if remaining:
                logger.warning(
                    f"Room {code} has {remaining} active participants after grace period "
                    f"without a cancel, keeping active"
                )
                return

            room.status = RoomStatus.inactive
            room.current_participants = 0
            await self.repository.update_room(room)
        logger.info(f"Room {code} marked as inactive after grace period (no participants rejoined)")
