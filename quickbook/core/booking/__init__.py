"""Booking storage and commit."""

from .repository import (
    BookingRecord,
    BookingRepository,
    EventRecord,
    InMemoryBookingRepository,
    ScheduleSnapshot,
)
from .committer import BookingCommitter

__all__ = [
    # Storage port
    "BookingRecord",
    "BookingRepository",
    "EventRecord",
    "InMemoryBookingRepository",
    "ScheduleSnapshot",
    # Committer
    "BookingCommitter",
]
