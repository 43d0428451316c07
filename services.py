from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple
from uuid import uuid4
from zoneinfo import ZoneInfo

from events import BookingEvent, BookingEventBus, ChangeType
from models import (
    Booking,
    BookingStatus,
    CreateBookingIn,
    Room,
    RoomType,
    TimeRange,
    utcnow,
)
from repository import (
    InMemoryBookingRepository,
    InMemoryRoomRepository,
    StatusMismatch,
    StorageConstraintViolation,
)
from rules import find_conflicts, validate_capacity

logger = logging.getLogger(__name__)


class BookingError(Exception):
    """Base class for domain/service errors."""


class StartInPastError(BookingError):
    pass


class RoomInactiveError(BookingError):
    pass


class BookingConflictError(BookingError):
    def __init__(self, conflicts: List[Booking]) -> None:
        super().__init__(f"{len(conflicts)} conflicting booking(s)")
        self.conflicts = conflicts


class NotFoundError(BookingError):
    pass


class ForbiddenError(BookingError):
    pass


class AlreadyCancelledError(BookingError):
    pass


class NotCancellableError(BookingError):
    """Only confirmed bookings can move to cancelled."""


class BookingScope(str, Enum):
    UPCOMING = "upcoming"
    PAST = "past"
    ALL = "all"


class RoomService:
    def __init__(self, rooms: InMemoryRoomRepository) -> None:
        self._rooms = rooms

    def find_room(self, room_id: str) -> Optional[Room]:
        return self._rooms.get(room_id)

    def get_room(self, room_id: str) -> Room:
        room = self._rooms.get(room_id)
        if room is None:
            raise NotFoundError(f"room {room_id} not found")
        return room

    def list_rooms(
        self,
        search: Optional[str] = None,
        room_type: Optional[RoomType] = None,
        building: Optional[str] = None,
    ) -> List[Room]:
        rooms = self._rooms.list_active()

        if search:
            needle = search.lower()
            rooms = [
                r
                for r in rooms
                if needle in r.name.lower()
                or needle in r.building.lower()
                or (r.description is not None and needle in r.description.lower())
                or any(needle in item.lower() for item in r.equipment)
            ]
        if room_type is not None:
            rooms = [r for r in rooms if r.type is room_type]
        if building is not None:
            rooms = [r for r in rooms if r.building == building]
        return rooms

    def buildings(self) -> List[str]:
        return sorted({r.building for r in self._rooms.list_active()})


class BookingService:
    def __init__(
        self,
        repo: InMemoryBookingRepository,
        rooms: InMemoryRoomRepository,
        events: BookingEventBus,
        admin_user_ids: FrozenSet[str] = frozenset(),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repo = repo
        self._rooms = rooms
        self._events = events
        self._admins = admin_user_ids
        self._clock = clock

    def _room(self, room_id: str) -> Room:
        room = self._rooms.get(room_id)
        if room is None:
            raise NotFoundError(f"room {room_id} not found")
        return room

    def check_conflicts(
        self, room_id: str, candidate: TimeRange, exclude_booking_id: Optional[str] = None
    ) -> List[Booking]:
        self._room(room_id)
        existing = self._repo.query(
            room_id=room_id,
            statuses=[BookingStatus.CONFIRMED],
            overlapping=candidate,
        )
        return find_conflicts(candidate, existing, exclude_booking_id)

    def create_booking(self, payload: CreateBookingIn, user_id: str) -> Booking:
        room = self._room(payload.room_id)

        # Rule: only active rooms take bookings
        if not room.is_active:
            raise RoomInactiveError(f"room {room.room_id} is not active")

        # Rule: start must be before end (raises InvalidRangeError)
        candidate = TimeRange.parse(payload.start, payload.end)

        # Rule: bookings cannot be in the past (start >= now)
        now = self._clock()
        if candidate.start < now:
            raise StartInPastError()

        validate_capacity(payload.attendee_count, room.capacity)

        # Early answer for the caller; the store re-checks atomically on insert.
        conflicts = self.check_conflicts(room.room_id, candidate)
        if conflicts:
            logger.info(
                "Booking rejected for room %s: %d conflict(s)", room.room_id, len(conflicts)
            )
            raise BookingConflictError(conflicts)

        booking = Booking(
            booking_id=f"bkg_{uuid4().hex}",
            room_id=room.room_id,
            user_id=user_id,
            title=payload.title,
            description=payload.description,
            range=candidate,
            attendee_count=payload.attendee_count,
            status=BookingStatus.CONFIRMED,
            created_at=now,
            updated_at=now,
        )

        try:
            self._repo.insert(booking)
        except StorageConstraintViolation as exc:
            logger.info(
                "Booking rejected by store for room %s: lost race against %s",
                room.room_id,
                ", ".join(b.booking_id for b in exc.conflicts),
            )
            raise BookingConflictError(exc.conflicts) from exc

        logger.info("Booking %s created for room %s by %s", booking.booking_id, room.room_id, user_id)
        self._events.publish(BookingEvent(ChangeType.INSERT, booking))
        return booking

    def cancel_booking(self, booking_id: str, requester_id: str) -> Booking:
        current = self._repo.get(booking_id)
        if current is None:
            raise NotFoundError(f"booking {booking_id} not found")
        if current.user_id != requester_id and requester_id not in self._admins:
            raise ForbiddenError()
        if current.status is BookingStatus.CANCELLED:
            raise AlreadyCancelledError()
        if current.status is not BookingStatus.CONFIRMED:
            raise NotCancellableError(f"booking {booking_id} is {current.status.value}")

        try:
            cancelled = self._repo.update_status(
                booking_id,
                BookingStatus.CANCELLED,
                self._clock(),
                expected=BookingStatus.CONFIRMED,
            )
        except StatusMismatch as exc:
            # another request changed the status between read and write
            if exc.actual is BookingStatus.CANCELLED:
                raise AlreadyCancelledError() from exc
            raise NotCancellableError(str(exc)) from exc
        if cancelled is None:
            raise NotFoundError(f"booking {booking_id} not found")

        logger.info("Booking %s cancelled by %s", booking_id, requester_id)
        self._events.publish(BookingEvent(ChangeType.UPDATE, cancelled))
        return cancelled

    def get_booking(self, booking_id: str) -> Booking:
        booking = self._repo.get(booking_id)
        if booking is None:
            raise NotFoundError(f"booking {booking_id} not found")
        return booking

    def list_bookings_for_room(self, room_id: str) -> List[Booking]:
        self._room(room_id)
        return self._repo.query(room_id=room_id)

    def list_user_bookings(
        self, user_id: str, scope: BookingScope = BookingScope.UPCOMING
    ) -> List[Booking]:
        """Bookings owned by the user, newest first."""
        now = self._clock()
        if scope is BookingScope.UPCOMING:
            items = [
                b
                for b in self._repo.query(user_id=user_id, statuses=[BookingStatus.CONFIRMED])
                if b.range.start >= now
            ]
        elif scope is BookingScope.PAST:
            items = [b for b in self._repo.query(user_id=user_id) if b.range.end < now]
        else:
            items = self._repo.query(user_id=user_id)
        items.reverse()
        return items

    def daily_schedule(self, day: date, tz: ZoneInfo) -> List[Tuple[Room, List[Booking]]]:
        """
        Confirmed bookings touching the calendar day in tz, grouped per room.
        Rooms come in catalogue order, only rooms with bookings are listed.
        """
        day_start = datetime.combine(day, time.min, tzinfo=tz)
        window = TimeRange(day_start, day_start + timedelta(days=1))

        grouped: Dict[str, List[Booking]] = {}
        for b in self._repo.query(statuses=[BookingStatus.CONFIRMED], overlapping=window):
            grouped.setdefault(b.room_id, []).append(b)

        schedule = []
        for room_id, bookings in grouped.items():
            room = self._rooms.get(room_id)
            if room is None:
                continue
            schedule.append((room, bookings))
        schedule.sort(key=lambda entry: (entry[0].building, entry[0].name))
        return schedule
