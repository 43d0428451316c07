from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import List, Optional

from fastapi import FastAPI
from pydantic import BaseModel, Field

from api import create_router
from events import BookingEventBus
from models import Profile, Room, RoomType, UserRole
from repository import (
    InMemoryBookingRepository,
    InMemoryProfileRepository,
    InMemoryRoomRepository,
)
from services import BookingService, RoomService
from settings import load_settings

logger = logging.getLogger(__name__)


# -----------------------------
# Seed data (optional JSON file)
# -----------------------------
class SeedRoom(BaseModel):
    room_id: str = Field(..., min_length=1)
    name: str
    type: RoomType = RoomType.CLASSROOM
    capacity: int = Field(..., ge=1)
    building: str
    floor: str
    equipment: List[str] = Field(default_factory=list)
    description: Optional[str] = None
    is_active: bool = True


class SeedProfile(BaseModel):
    user_id: str = Field(..., min_length=1)
    email: str
    full_name: str
    role: UserRole
    department: str
    phone: Optional[str] = None


class SeedData(BaseModel):
    rooms: List[SeedRoom] = Field(default_factory=list)
    profiles: List[SeedProfile] = Field(default_factory=list)


def load_seed(
    path: str, rooms: InMemoryRoomRepository, profiles: InMemoryProfileRepository
) -> SeedData:
    data = SeedData.model_validate(json.loads(Path(path).read_text(encoding="utf-8")))
    for r in data.rooms:
        rooms.add(Room(**r.model_dump()))
    for p in data.profiles:
        profiles.add(Profile(**p.model_dump()))
    logger.info("Loaded %d room(s) and %d profile(s) from %s", len(data.rooms), len(data.profiles), path)
    return data


# Wire up dependencies
settings = load_settings()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

_repo = InMemoryBookingRepository()
_rooms = InMemoryRoomRepository()
_profiles = InMemoryProfileRepository()
_events = BookingEventBus()
_service = BookingService(_repo, _rooms, _events, admin_user_ids=settings.admin_user_ids)
_room_service = RoomService(_rooms)

if settings.seed_file:
    load_seed(settings.seed_file, _rooms, _profiles)

app = FastAPI(title=settings.app_title, version="1.0.0")
app.include_router(create_router(_service, _room_service, _profiles, settings))
