"""
Booking change notifications.

Subscribers are told about committed inserts and status updates so displayed
schedules can refresh. Nothing here is consulted when deciding conflicts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Callable, List

from models import Booking

logger = logging.getLogger(__name__)


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"


@dataclass(frozen=True)
class BookingEvent:
    change: ChangeType
    booking: Booking


Subscriber = Callable[[BookingEvent], None]


class BookingEventBus:
    def __init__(self) -> None:
        self._subscribers: List[Subscriber] = []
        self._lock = Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback; returns a function that removes it again."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: BookingEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)

        logger.debug(
            "Publishing %s for booking %s to %d subscriber(s)",
            event.change.value,
            event.booking.booking_id,
            len(subscribers),
        )
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                # change is already committed at this point
                logger.exception(
                    "Subscriber failed handling %s for booking %s",
                    event.change.value,
                    event.booking.booking_id,
                )

    def clear(self) -> None:
        """Drop all subscribers. For testing only."""
        with self._lock:
            self._subscribers.clear()
