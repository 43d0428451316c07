import threading
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from events import BookingEventBus, ChangeType
from models import Booking, BookingStatus, CreateBookingIn, Room, TimeRange
from repository import (
    InMemoryBookingRepository,
    InMemoryRoomRepository,
    StatusMismatch,
    StorageConstraintViolation,
)
from services import (
    AlreadyCancelledError,
    BookingConflictError,
    BookingScope,
    BookingService,
    ForbiddenError,
    NotCancellableError,
    NotFoundError,
    RoomInactiveError,
)
from rules import CapacityExceededError

NOW = datetime(2030, 1, 1, 8, 0, tzinfo=timezone.utc)


class RacingBookingRepository(InMemoryBookingRepository):
    """Holds every conflict pre-check until both racers have taken their snapshot."""

    def __init__(self, parties: int) -> None:
        super().__init__()
        self.barrier = threading.Barrier(parties, timeout=5)

    def query(self, *args, **kwargs):
        snapshot = super().query(*args, **kwargs)
        self.barrier.wait()
        return snapshot


def make_service(repo=None, admins=frozenset()):
    repo = repo or InMemoryBookingRepository()
    rooms = InMemoryRoomRepository()
    rooms.add(Room(room_id="r1", name="Lab 1", capacity=20, building="Main", floor="2"))
    rooms.add(Room(room_id="r2", name="Lab 2", capacity=20, building="Main", floor="2"))
    rooms.add(Room(room_id="closed", name="Old Lab", capacity=20, building="Main", floor="0", is_active=False))
    events = BookingEventBus()
    service = BookingService(repo, rooms, events, admin_user_ids=admins, clock=lambda: NOW)
    return service, repo, events


def request(room_id="r1", start="2030-01-01T09:00:00Z", end="2030-01-01T10:00:00Z", attendees=5):
    return CreateBookingIn(
        room_id=room_id, title="Lab session", start=start, end=end, attendee_count=attendees
    )


def test_overlapping_create_reports_existing_booking():
    service, _, _ = make_service()
    first = service.create_booking(request(), "u1")

    with pytest.raises(BookingConflictError) as excinfo:
        service.create_booking(request(start="2030-01-01T09:30:00Z", end="2030-01-01T10:30:00Z"), "u2")
    assert excinfo.value.conflicts == [first]

def test_capacity_exceeded_persists_nothing():
    service, repo, _ = make_service()
    with pytest.raises(CapacityExceededError):
        service.create_booking(request(attendees=21), "u1")
    assert repo.query() == []

def test_inactive_and_unknown_rooms():
    service, repo, _ = make_service()
    with pytest.raises(RoomInactiveError):
        service.create_booking(request(room_id="closed"), "u1")
    with pytest.raises(NotFoundError):
        service.create_booking(request(room_id="nope"), "u1")
    assert repo.query() == []

def test_store_rejects_race_loser_after_clean_precheck():
    service, repo, _ = make_service(RacingBookingRepository(parties=2))
    results, errors = [], []

    def attempt(user_id, start, end):
        try:
            results.append(service.create_booking(request(start=start, end=end), user_id))
        except BookingConflictError as exc:
            errors.append(exc)

    threads = [
        threading.Thread(target=attempt, args=("u1", "2030-01-01T09:00:00Z", "2030-01-01T10:00:00Z")),
        threading.Thread(target=attempt, args=("u2", "2030-01-01T09:30:00Z", "2030-01-01T10:30:00Z")),
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(results) == 1
    assert len(errors) == 1
    assert isinstance(errors[0].__cause__, StorageConstraintViolation)
    assert errors[0].conflicts == results
    assert InMemoryBookingRepository.query(repo, statuses=[BookingStatus.CONFIRMED]) == results

def test_many_concurrent_creates_exactly_one_wins():
    service, repo, _ = make_service()
    start_gate = threading.Barrier(8, timeout=5)
    outcomes = []

    def attempt(i):
        start_gate.wait()
        try:
            service.create_booking(request(), f"u{i}")
            outcomes.append("ok")
        except BookingConflictError:
            outcomes.append("conflict")

    threads = [threading.Thread(target=attempt, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("ok") == 1
    assert outcomes.count("conflict") == 7
    assert len(repo.query(room_id="r1", statuses=[BookingStatus.CONFIRMED])) == 1

def test_store_insert_enforces_exclusion_directly():
    service, repo, _ = make_service()
    first = service.create_booking(request(), "u1")
    clash = first.__class__(
        booking_id="manual",
        room_id="r1",
        user_id="u2",
        title="Sneaky",
        range=TimeRange.parse("2030-01-01T09:59:00Z", "2030-01-01T11:00:00Z"),
        attendee_count=1,
    )
    with pytest.raises(StorageConstraintViolation) as excinfo:
        repo.insert(clash)
    assert excinfo.value.conflicts == [first]
    assert repo.get("manual") is None

def test_cancel_by_owner_and_admin():
    service, _, _ = make_service(admins=frozenset({"admin"}))
    mine = service.create_booking(request(), "u1")
    other = service.create_booking(request(room_id="r2"), "u2")

    assert service.cancel_booking(mine.booking_id, "u1").status is BookingStatus.CANCELLED
    assert service.cancel_booking(other.booking_id, "admin").status is BookingStatus.CANCELLED

def test_cancel_rules():
    service, repo, _ = make_service()
    booking = service.create_booking(request(), "u1")

    with pytest.raises(NotFoundError):
        service.cancel_booking("missing", "u1")
    with pytest.raises(ForbiddenError):
        service.cancel_booking(booking.booking_id, "u2")

    cancelled = service.cancel_booking(booking.booking_id, "u1")
    with pytest.raises(AlreadyCancelledError):
        service.cancel_booking(booking.booking_id, "u1")
    assert repo.get(booking.booking_id) == cancelled

def test_cancel_leaves_other_bookings_untouched():
    service, repo, _ = make_service()
    a = service.create_booking(request(), "u1")
    b = service.create_booking(request(start="2030-01-01T10:00:00Z", end="2030-01-01T11:00:00Z"), "u2")

    service.cancel_booking(a.booking_id, "u1")
    assert repo.get(b.booking_id) == b

def test_events_published_after_commit():
    service, _, events = make_service()
    seen = []
    unsubscribe = events.subscribe(lambda e: seen.append((e.change, e.booking.status)))

    booking = service.create_booking(request(), "u1")
    with pytest.raises(BookingConflictError):
        service.create_booking(request(), "u2")
    service.cancel_booking(booking.booking_id, "u1")

    assert seen == [
        (ChangeType.INSERT, BookingStatus.CONFIRMED),
        (ChangeType.UPDATE, BookingStatus.CANCELLED),
    ]

    unsubscribe()
    service.create_booking(request(), "u3")
    assert len(seen) == 2

def test_failing_subscriber_does_not_fail_commit():
    service, repo, events = make_service()

    def broken(event):
        raise RuntimeError("listener down")

    events.subscribe(broken)
    booking = service.create_booking(request(), "u1")
    assert repo.get(booking.booking_id) == booking

def test_user_bookings_scopes():
    service, _, _ = make_service()
    service._clock = lambda: datetime(2029, 12, 31, tzinfo=timezone.utc)
    past = service.create_booking(request(start="2030-01-01T05:00:00Z", end="2030-01-01T06:00:00Z"), "u1")
    service._clock = lambda: NOW
    upcoming = service.create_booking(request(start="2030-01-02T09:00:00Z", end="2030-01-02T10:00:00Z"), "u1")

    assert service.list_user_bookings("u1", BookingScope.UPCOMING) == [upcoming]
    assert service.list_user_bookings("u1", BookingScope.PAST) == [past]
    assert service.list_user_bookings("u1", BookingScope.ALL) == [upcoming, past]
    assert service.list_user_bookings("u2", BookingScope.ALL) == []

def test_daily_schedule_uses_local_calendar_day():
    service, _, _ = make_service()
    # 23:30 UTC on Jan 1 is already Jan 2 in Helsinki (UTC+2)
    late = service.create_booking(request(start="2030-01-01T23:30:00Z", end="2030-01-02T00:30:00Z"), "u1")
    service.create_booking(request(room_id="r2", start="2030-01-01T12:00:00Z", end="2030-01-01T13:00:00Z"), "u1")

    schedule = service.daily_schedule(date(2030, 1, 2), ZoneInfo("Europe/Helsinki"))
    assert [(room.room_id, bookings) for room, bookings in schedule] == [("r1", [late])]

def test_concurrent_cancels_exactly_one_wins():
    service, repo, events = make_service()
    booking = service.create_booking(request(), "u1")
    updates = []
    events.subscribe(lambda e: updates.append(e) if e.change is ChangeType.UPDATE else None)

    gate = threading.Barrier(6, timeout=5)
    outcomes = []

    def attempt():
        gate.wait()
        try:
            service.cancel_booking(booking.booking_id, "u1")
            outcomes.append("ok")
        except AlreadyCancelledError:
            outcomes.append("already")

    threads = [threading.Thread(target=attempt) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("ok") == 1
    assert outcomes.count("already") == 5
    assert len(updates) == 1
    assert repo.get(booking.booking_id).status is BookingStatus.CANCELLED

def test_update_status_rejects_unexpected_current_status():
    service, repo, _ = make_service()
    booking = service.create_booking(request(), "u1")
    repo.update_status(booking.booking_id, BookingStatus.CANCELLED, NOW, expected=BookingStatus.CONFIRMED)

    with pytest.raises(StatusMismatch) as excinfo:
        repo.update_status(booking.booking_id, BookingStatus.CANCELLED, NOW, expected=BookingStatus.CONFIRMED)
    assert excinfo.value.actual is BookingStatus.CANCELLED

def test_cancel_maps_lost_status_race_to_already_cancelled(monkeypatch):
    service, repo, _ = make_service()
    booking = service.create_booking(request(), "u1")
    # another request cancels between this request's read and its write
    repo.update_status(booking.booking_id, BookingStatus.CANCELLED, NOW)
    monkeypatch.setattr(repo, "get", lambda booking_id: booking)

    with pytest.raises(AlreadyCancelledError) as excinfo:
        service.cancel_booking(booking.booking_id, "u1")
    assert isinstance(excinfo.value.__cause__, StatusMismatch)

def test_pending_booking_cannot_be_cancelled():
    service, repo, events = make_service()
    pending = repo.insert(
        Booking(
            booking_id="pending",
            room_id="r1",
            user_id="u1",
            title="Awaiting approval",
            range=TimeRange.parse("2030-01-01T09:00:00Z", "2030-01-01T10:00:00Z"),
            attendee_count=3,
            status=BookingStatus.PENDING,
        )
    )
    seen = []
    events.subscribe(seen.append)

    with pytest.raises(NotCancellableError):
        service.cancel_booking(pending.booking_id, "u1")
    assert repo.get("pending").status is BookingStatus.PENDING
    assert seen == []
