from __future__ import annotations

import os
from dataclasses import dataclass
from typing import FrozenSet, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


@dataclass(frozen=True)
class Settings:
    app_title: str = "Room Booking API"
    log_level: str = "INFO"
    admin_user_ids: FrozenSet[str] = frozenset()
    schedule_timezone: str = "UTC"
    seed_file: Optional[str] = None

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.schedule_timezone)


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build settings from the environment. When no mapping is given, a .env file
    in the working directory is loaded first (existing variables win).
    """
    if environ is None:
        load_dotenv()
        environ = os.environ

    log_level = environ.get("BOOKING_LOG_LEVEL", "INFO").strip().upper()
    if log_level not in _LOG_LEVELS:
        raise ValueError(f"BOOKING_LOG_LEVEL must be one of {sorted(_LOG_LEVELS)}, got {log_level!r}")

    tz_name = environ.get("BOOKING_SCHEDULE_TIMEZONE", "UTC").strip() or "UTC"
    try:
        ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"BOOKING_SCHEDULE_TIMEZONE is not a known timezone: {tz_name!r}") from exc

    admins = frozenset(
        part.strip()
        for part in environ.get("BOOKING_ADMIN_USER_IDS", "").split(",")
        if part.strip()
    )

    return Settings(
        app_title=environ.get("BOOKING_APP_TITLE", "Room Booking API"),
        log_level=log_level,
        admin_user_ids=admins,
        schedule_timezone=tz_name,
        seed_file=environ.get("BOOKING_SEED_FILE") or None,
    )
