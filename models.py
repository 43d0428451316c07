from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


# -----------------------------
# Shared time helpers
# -----------------------------
def parse_iso8601_tz(ts: str) -> datetime:
    """
    Parse ISO-8601 timestamp with timezone into an aware datetime.
    Accepts 'Z' suffix by converting it to '+00:00'.
    """
    if not isinstance(ts, str) or not ts.strip():
        raise ValueError("timestamp must be a non-empty string")

    s = ts.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"

    dt = datetime.fromisoformat(s)  # expects offset like +02:00 or +00:00
    if dt.tzinfo is None or dt.utcoffset() is None:
        raise ValueError("timestamp must include a timezone offset")
    return dt


def to_utc(dt: datetime) -> datetime:
    # dt is aware
    return dt.astimezone(timezone.utc)


def utc_iso_z(dt: datetime) -> str:
    # dt is aware, UTC
    return dt.isoformat().replace("+00:00", "Z")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# -----------------------------
# Domain model
# -----------------------------
class InvalidRangeError(ValueError):
    """Raised when a time range is empty, reversed or not timezone-aware."""


@dataclass(frozen=True)
class TimeRange:
    """
    Half-open interval [start, end) stored in UTC.
    A range ending exactly when another starts does NOT overlap it.
    """

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        for bound in (self.start, self.end):
            if bound.tzinfo is None or bound.utcoffset() is None:
                raise InvalidRangeError("range bounds must be timezone-aware")
        if not (self.start < self.end):
            raise InvalidRangeError("start must be before end")
        object.__setattr__(self, "start", to_utc(self.start))
        object.__setattr__(self, "end", to_utc(self.end))

    @classmethod
    def parse(cls, start: str, end: str) -> "TimeRange":
        return cls(parse_iso8601_tz(start), parse_iso8601_tz(end))

    def overlaps(self, other: "TimeRange") -> bool:
        return self.start < other.end and other.start < self.end

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class RoomType(str, Enum):
    CLASSROOM = "classroom"
    LAB = "lab"


class UserRole(str, Enum):
    FACULTY = "faculty"
    STUDENT = "student"


@dataclass(frozen=True)
class Room:
    room_id: str
    name: str
    capacity: int
    building: str
    floor: str
    type: RoomType = RoomType.CLASSROOM
    equipment: List[str] = field(default_factory=list)
    description: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if self.capacity < 1:
            raise ValueError("room capacity must be a positive integer")


@dataclass(frozen=True)
class Profile:
    # role is display data; authorization never looks at it
    user_id: str
    email: str
    full_name: str
    role: UserRole
    department: str
    phone: Optional[str] = None


@dataclass(frozen=True)
class Booking:
    booking_id: str
    room_id: str
    user_id: str
    title: str
    range: TimeRange
    attendee_count: int
    status: BookingStatus = BookingStatus.CONFIRMED
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_confirmed(self) -> bool:
        return self.status is BookingStatus.CONFIRMED

    def with_status(self, status: BookingStatus, when: datetime) -> "Booking":
        return replace(self, status=status, updated_at=when)


# -----------------------------
# API models (transport layer)
# -----------------------------
class CreateBookingIn(BaseModel):
    room_id: str = Field(..., min_length=1)
    title: str
    description: Optional[str] = None
    start: str
    end: str
    attendee_count: int

    @field_validator("start", "end")
    @classmethod
    def must_be_iso8601_with_tz(cls, v: str) -> str:
        # Validate format + timezone presence early; actual comparison happens in service.
        parse_iso8601_tz(v)
        return v

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("title must not be empty")
        return v.strip()

    @field_validator("description")
    @classmethod
    def blank_description_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return v


class ConflictCheckIn(BaseModel):
    room_id: str = Field(..., min_length=1)
    start: str
    end: str
    exclude_booking_id: Optional[str] = None

    @field_validator("start", "end")
    @classmethod
    def must_be_iso8601_with_tz(cls, v: str) -> str:
        parse_iso8601_tz(v)
        return v


class RoomOut(BaseModel):
    room_id: str
    name: str
    type: RoomType
    capacity: int
    building: str
    floor: str
    equipment: List[str]
    description: Optional[str]
    is_active: bool

    @classmethod
    def from_room(cls, r: Room) -> "RoomOut":
        return cls(
            room_id=r.room_id,
            name=r.name,
            type=r.type,
            capacity=r.capacity,
            building=r.building,
            floor=r.floor,
            equipment=list(r.equipment),
            description=r.description,
            is_active=r.is_active,
        )


class OwnerOut(BaseModel):
    user_id: str
    full_name: str
    role: UserRole

    @classmethod
    def from_profile(cls, p: Profile) -> "OwnerOut":
        return cls(user_id=p.user_id, full_name=p.full_name, role=p.role)


class BookingOut(BaseModel):
    booking_id: str
    room_id: str
    user_id: str
    title: str
    description: Optional[str]
    start: str  # ISO-8601 with timezone (we return UTC with Z)
    end: str
    attendee_count: int
    status: BookingStatus
    created_at: str
    updated_at: str
    owner: Optional[OwnerOut] = None
    room: Optional[RoomOut] = None

    @classmethod
    def from_booking(
        cls, b: Booking, owner: Optional[Profile] = None, room: Optional[Room] = None
    ) -> "BookingOut":
        return cls(
            booking_id=b.booking_id,
            room_id=b.room_id,
            user_id=b.user_id,
            title=b.title,
            description=b.description,
            start=utc_iso_z(b.range.start),
            end=utc_iso_z(b.range.end),
            attendee_count=b.attendee_count,
            status=b.status,
            created_at=utc_iso_z(to_utc(b.created_at)),
            updated_at=utc_iso_z(to_utc(b.updated_at)),
            owner=OwnerOut.from_profile(owner) if owner is not None else None,
            room=RoomOut.from_room(room) if room is not None else None,
        )


class ProfileOut(BaseModel):
    user_id: str
    email: str
    full_name: str
    role: UserRole
    department: str
    phone: Optional[str]

    @classmethod
    def from_profile(cls, p: Profile) -> "ProfileOut":
        return cls(
            user_id=p.user_id,
            email=p.email,
            full_name=p.full_name,
            role=p.role,
            department=p.department,
            phone=p.phone,
        )


class RoomScheduleOut(BaseModel):
    room: RoomOut
    bookings: List[BookingOut]


class ConflictErrorOut(BaseModel):
    message: str
    conflicts: List[BookingOut]
