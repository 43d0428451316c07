from __future__ import annotations

from datetime import date
from typing import Callable, List, NoReturn, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, status

from models import (
    Booking,
    BookingOut,
    ConflictCheckIn,
    ConflictErrorOut,
    CreateBookingIn,
    InvalidRangeError,
    Profile,
    ProfileOut,
    RoomOut,
    RoomScheduleOut,
    RoomType,
    TimeRange,
)
from repository import InMemoryProfileRepository
from rules import CapacityExceededError, InvalidAttendeeCountError
from services import (
    AlreadyCancelledError,
    BookingConflictError,
    BookingScope,
    BookingService,
    ForbiddenError,
    NotCancellableError,
    NotFoundError,
    RoomInactiveError,
    RoomService,
    StartInPastError,
)
from settings import Settings


def _raise_http(
    exc: Exception, present: Callable[[Booking], BookingOut] = BookingOut.from_booking
) -> NoReturn:
    if isinstance(exc, BookingConflictError):
        body = ConflictErrorOut(
            message="Overlap conflict: booking overlaps an existing booking in this room.",
            conflicts=[present(b) for b in exc.conflicts],
        )
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=body.model_dump(mode="json"))
    if isinstance(exc, InvalidRangeError):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
            detail=f"Validation error: {exc}.",
        )
    if isinstance(exc, StartInPastError):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
            detail="Validation error: booking start cannot be in the past.",
        )
    if isinstance(exc, CapacityExceededError):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
            detail=f"Validation error: attendee count exceeds room capacity of {exc.capacity}.",
        )
    if isinstance(exc, InvalidAttendeeCountError):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
            detail="Validation error: attendee count must be at least 1.",
        )
    if isinstance(exc, RoomInactiveError):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Room is not available for booking.",
        )
    if isinstance(exc, AlreadyCancelledError):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Booking is already cancelled.",
        )
    if isinstance(exc, NotCancellableError):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Only confirmed bookings can be cancelled.",
        )
    if isinstance(exc, ForbiddenError):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the booking owner or an administrator can cancel this booking.",
        )
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    raise exc


def create_router(
    service: BookingService,
    rooms: RoomService,
    profiles: InMemoryProfileRepository,
    settings: Settings,
) -> APIRouter:
    router = APIRouter()

    def current_user(x_user_id: Optional[str] = Header(default=None)) -> Profile:
        if not x_user_id:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Missing X-User-Id header.",
            )
        profile = profiles.get(x_user_id)
        if profile is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Unknown user.",
            )
        return profile

    def with_owner(b: Booking) -> BookingOut:
        return BookingOut.from_booking(b, owner=profiles.get(b.user_id))

    def with_room(b: Booking) -> BookingOut:
        return BookingOut.from_booking(b, room=rooms.find_room(b.room_id))

    @router.get("/me", response_model=ProfileOut)
    def read_me(user: Profile = Depends(current_user)) -> ProfileOut:
        return ProfileOut.from_profile(user)

    @router.get("/me/bookings", response_model=List[BookingOut])
    def list_my_bookings(
        scope: BookingScope = Query(BookingScope.UPCOMING),
        user: Profile = Depends(current_user),
    ) -> List[BookingOut]:
        return [with_room(b) for b in service.list_user_bookings(user.user_id, scope)]

    @router.get("/rooms", response_model=List[RoomOut])
    def list_rooms(
        q: Optional[str] = Query(None),
        type: Optional[RoomType] = Query(None),
        building: Optional[str] = Query(None),
    ) -> List[RoomOut]:
        return [RoomOut.from_room(r) for r in rooms.list_rooms(q, type, building)]

    @router.get("/buildings", response_model=List[str])
    def list_buildings() -> List[str]:
        return rooms.buildings()

    @router.get("/rooms/{room_id}", response_model=RoomOut)
    def read_room(room_id: str = Path(..., min_length=1)) -> RoomOut:
        try:
            return RoomOut.from_room(rooms.get_room(room_id))
        except NotFoundError as exc:
            _raise_http(exc)

    @router.get("/rooms/{room_id}/bookings", response_model=List[BookingOut])
    def list_bookings_for_room(room_id: str = Path(..., min_length=1)) -> List[BookingOut]:
        try:
            return [BookingOut.from_booking(b) for b in service.list_bookings_for_room(room_id)]
        except NotFoundError as exc:
            _raise_http(exc)

    @router.get("/schedule", response_model=List[RoomScheduleOut])
    def daily_schedule(day: date = Query(...)) -> List[RoomScheduleOut]:
        return [
            RoomScheduleOut(
                room=RoomOut.from_room(room),
                bookings=[with_owner(b) for b in bookings],
            )
            for room, bookings in service.daily_schedule(day, settings.tz)
        ]

    @router.post("/bookings/conflicts", response_model=List[BookingOut])
    def check_conflicts(payload: ConflictCheckIn) -> List[BookingOut]:
        try:
            candidate = TimeRange.parse(payload.start, payload.end)
            conflicts = service.check_conflicts(
                payload.room_id, candidate, payload.exclude_booking_id
            )
        except (InvalidRangeError, NotFoundError) as exc:
            _raise_http(exc)
        return [with_owner(b) for b in conflicts]

    @router.post("/bookings", response_model=BookingOut, status_code=status.HTTP_201_CREATED)
    def create_booking(
        payload: CreateBookingIn, user: Profile = Depends(current_user)
    ) -> BookingOut:
        try:
            return BookingOut.from_booking(service.create_booking(payload, user.user_id))
        except (
            BookingConflictError,
            InvalidRangeError,
            StartInPastError,
            CapacityExceededError,
            InvalidAttendeeCountError,
            RoomInactiveError,
            NotFoundError,
        ) as exc:
            _raise_http(exc, with_owner)

    @router.get("/bookings/{booking_id}", response_model=BookingOut)
    def read_booking(booking_id: str = Path(..., min_length=1)) -> BookingOut:
        try:
            return BookingOut.from_booking(service.get_booking(booking_id))
        except NotFoundError as exc:
            _raise_http(exc)

    @router.post("/bookings/{booking_id}/cancel", response_model=BookingOut)
    def cancel_booking(
        booking_id: str = Path(..., min_length=1), user: Profile = Depends(current_user)
    ) -> BookingOut:
        try:
            return BookingOut.from_booking(service.cancel_booking(booking_id, user.user_id))
        except (NotFoundError, ForbiddenError, AlreadyCancelledError, NotCancellableError) as exc:
            _raise_http(exc)

    return router
