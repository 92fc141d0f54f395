"""Working hours, conflicts and slot search."""

from .model import (
    BookedInterval,
    SalonInfo,
    ServiceInfo,
    SlotCandidate,
    StaffSchedule,
    WorkingHours,
)
from .finder import DateWindow, SlotFinder, SlotSearchResult, TimePreference

__all__ = [
    # Model
    "BookedInterval",
    "SalonInfo",
    "ServiceInfo",
    "SlotCandidate",
    "StaffSchedule",
    "WorkingHours",
    # Finder
    "DateWindow",
    "SlotFinder",
    "SlotSearchResult",
    "TimePreference",
]
