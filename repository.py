from __future__ import annotations

from datetime import datetime
from threading import Lock
from typing import Dict, Iterable, List, Optional

from models import Booking, BookingStatus, Profile, Room, TimeRange
from rules import find_conflicts


class StorageConstraintViolation(Exception):
    """Raised by the store when an insert would break the per-room exclusion constraint."""

    def __init__(self, room_id: str, conflicts: List[Booking]) -> None:
        super().__init__(f"confirmed bookings overlap in room {room_id}")
        self.room_id = room_id
        self.conflicts = conflicts


class StatusMismatch(Exception):
    def __init__(self, booking_id: str, actual: BookingStatus) -> None:
        super().__init__(f"booking {booking_id} is {actual.value}")
        self.booking_id = booking_id
        self.actual = actual


class InMemoryBookingRepository:
    def __init__(self) -> None:
        self._items: Dict[str, Booking] = {}
        self._lock = Lock()

    def get(self, booking_id: str) -> Optional[Booking]:
        with self._lock:
            return self._items.get(booking_id)

    def query(
        self,
        room_id: Optional[str] = None,
        statuses: Optional[Iterable[BookingStatus]] = None,
        overlapping: Optional[TimeRange] = None,
        user_id: Optional[str] = None,
    ) -> List[Booking]:
        """Filtered snapshot ordered by start. Every filter left as None matches all."""
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            items = [
                b
                for b in self._items.values()
                if (room_id is None or b.room_id == room_id)
                and (wanted is None or b.status in wanted)
                and (overlapping is None or overlapping.overlaps(b.range))
                and (user_id is None or b.user_id == user_id)
            ]
        items.sort(key=lambda b: (b.range.start, b.range.end))
        return items

    def insert(self, booking: Booking) -> Booking:
        """
        Insert the booking, enforcing the exclusion constraint on (room_id, range)
        for confirmed rows. The overlap check and the write happen under one lock,
        so two overlapping confirmed inserts can never both succeed.
        """
        with self._lock:
            if booking.booking_id in self._items:
                raise ValueError(f"duplicate booking id {booking.booking_id}")
            if booking.is_confirmed:
                same_room = (b for b in self._items.values() if b.room_id == booking.room_id)
                conflicts = find_conflicts(booking.range, same_room)
                if conflicts:
                    raise StorageConstraintViolation(booking.room_id, conflicts)
            self._items[booking.booking_id] = booking
            return booking

    def update_status(
        self,
        booking_id: str,
        status: BookingStatus,
        when: datetime,
        expected: Optional[BookingStatus] = None,
    ) -> Optional[Booking]:
        """
        Return the updated booking, or None when it does not exist.
        With `expected` set, the write only happens if the stored status still matches.
        """
        with self._lock:
            current = self._items.get(booking_id)
            if current is None:
                return None
            if expected is not None and current.status is not expected:
                raise StatusMismatch(booking_id, current.status)
            updated = current.with_status(status, when)
            self._items[booking_id] = updated
            return updated

    def reset(self) -> None:
        """Clear all bookings. For testing only."""
        with self._lock:
            self._items.clear()


class InMemoryRoomRepository:
    def __init__(self) -> None:
        self._items: Dict[str, Room] = {}
        self._lock = Lock()

    def add(self, room: Room) -> Room:
        with self._lock:
            self._items[room.room_id] = room
            return room

    def get(self, room_id: str) -> Optional[Room]:
        with self._lock:
            return self._items.get(room_id)

    def list_active(self) -> List[Room]:
        with self._lock:
            rooms = [r for r in self._items.values() if r.is_active]
        rooms.sort(key=lambda r: (r.building, r.name))
        return rooms

    def reset(self) -> None:
        """Clear all rooms. For testing only."""
        with self._lock:
            self._items.clear()


class InMemoryProfileRepository:
    def __init__(self) -> None:
        self._items: Dict[str, Profile] = {}
        self._lock = Lock()

    def add(self, profile: Profile) -> Profile:
        with self._lock:
            self._items[profile.user_id] = profile
            return profile

    def get(self, user_id: str) -> Optional[Profile]:
        with self._lock:
            return self._items.get(user_id)

    def reset(self) -> None:
        """Clear all profiles. For testing only."""
        with self._lock:
            self._items.clear()
