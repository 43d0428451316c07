from __future__ import annotations

from typing import Iterable, List, Optional

from models import Booking, TimeRange


class InvalidAttendeeCountError(ValueError):
    pass


class CapacityExceededError(ValueError):
    def __init__(self, capacity: int) -> None:
        super().__init__(f"attendee count exceeds room capacity of {capacity}")
        self.capacity = capacity


def find_conflicts(
    candidate: TimeRange,
    existing: Iterable[Booking],
    exclude_booking_id: Optional[str] = None,
) -> List[Booking]:
    """
    Return every confirmed booking overlapping the candidate range, ordered by start.

    The caller passes the bookings of a single room. Cancelled and pending
    bookings never conflict, and the booking being edited is skipped.
    """
    conflicts = [
        b
        for b in existing
        if b.is_confirmed
        and b.booking_id != exclude_booking_id
        and candidate.overlaps(b.range)
    ]
    conflicts.sort(key=lambda b: (b.range.start, b.range.end))
    return conflicts


def validate_capacity(attendee_count: int, capacity: int) -> None:
    if attendee_count < 1:
        raise InvalidAttendeeCountError("attendee count must be at least 1")
    if attendee_count > capacity:
        raise CapacityExceededError(capacity)
