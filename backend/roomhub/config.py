from __future__ import annotations

import os
from typing import List, Mapping, Optional

from pydantic import BaseModel, Field

DEFAULT_GRACE_PERIOD_SECONDS = 60.0
DEFAULT_MAX_PARTICIPANTS = 50


def _as_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _as_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseModel):
    grace_period_seconds: float = Field(DEFAULT_GRACE_PERIOD_SECONDS, ge=0)
    default_max_participants: int = Field(DEFAULT_MAX_PARTICIPANTS, ge=1)
    room_code_attempts: int = Field(32, ge=1)
    # Host-only closure unless enabled
    close_on_any_last_leave: bool = False
    pinned_room_codes: List[str] = Field(default_factory=list)
    log_level: str = "INFO"
    log_to_file: bool = False
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        values = {}
        if env.get("GRACE_PERIOD_SECONDS"):
            values["grace_period_seconds"] = float(env["GRACE_PERIOD_SECONDS"])
        if env.get("DEFAULT_MAX_PARTICIPANTS"):
            values["default_max_participants"] = int(env["DEFAULT_MAX_PARTICIPANTS"])
        if env.get("ROOM_CODE_ATTEMPTS"):
            values["room_code_attempts"] = int(env["ROOM_CODE_ATTEMPTS"])
        values["close_on_any_last_leave"] = _as_bool(env.get("CLOSE_ON_ANY_LAST_LEAVE"))
        values["pinned_room_codes"] = _as_list(env.get("PINNED_ROOM_CODES"))
        values["log_level"] = env.get("LOG_LEVEL", "INFO").upper()
        values["log_to_file"] = _as_bool(env.get("LOG_TO_FILE"))
        if env.get("CORS_ORIGINS"):
            values["cors_origins"] = _as_list(env["CORS_ORIGINS"])
        return cls(**values)
