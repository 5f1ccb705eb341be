from __future__ import annotations


class RoomError(Exception):
    """Base class for lifecycle errors surfaced to callers."""

    status_code = 400
    code = "room_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class RoomNotFound(RoomError):
    status_code = 404
    code = "room_not_found"

    def __init__(self, message: str = "Room not found"):
        super().__init__(message)


class NotInRoom(RoomNotFound):
    """Caller has no active membership in the room."""

    code = "not_in_room"

    def __init__(self, message: str = "You are not in this room"):
        super().__init__(message)


class RoomFull(RoomError):
    status_code = 400
    code = "room_full"

    def __init__(self, message: str = "Room is full"):
        super().__init__(message)


class NotRoomHost(RoomError):
    status_code = 403
    code = "forbidden"

    def __init__(self, message: str = "Only the host can delete the room"):
        super().__init__(message)


class RoomCodeUnavailable(RoomError):
    status_code = 503
    code = "room_code_unavailable"

    def __init__(self, attempts: int):
        super().__init__(f"Could not allocate a unique room code after {attempts} attempts")
        self.attempts = attempts


class DuplicateRoomCode(Exception):
    """Raised by a repository when a room code is already taken."""
