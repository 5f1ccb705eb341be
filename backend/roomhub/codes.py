from __future__ import annotations

import re
import secrets

ROOM_CODE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
ROOM_CODE_LENGTH = 6

_ROOM_CODE_RE = re.compile(r"^[A-Z0-9]{%d}$" % ROOM_CODE_LENGTH)


def generate_room_code(length: int = ROOM_CODE_LENGTH) -> str:
    # 36^6 ~ 2.2e9 codes; collisions are retried by the coordinator
    return "".join(secrets.choice(ROOM_CODE_ALPHABET) for _ in range(length))


def is_valid_room_code(code: str) -> bool:
    return bool(_ROOM_CODE_RE.match(code))
