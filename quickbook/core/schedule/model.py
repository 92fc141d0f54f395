"""Working-hours and conflict model.

Pure data and interval arithmetic over salon opening hours, staff weekly
schedules and existing bookings. Times are salon-local wall-clock values
(naive datetimes); bookings are half-open intervals [start, end).
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Iterable, Optional
from zoneinfo import ZoneInfo


WEEKDAYS = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)


def parse_clock(value: str) -> time:
    """Parse "HH:MM" (or "HH:MM:SS") into a time."""
    return time.fromisoformat(value.strip())


def weekday_name(day: date) -> str:
    """Lowercase English weekday name for a date."""
    return WEEKDAYS[day.weekday()]


def overlaps(
    start_a: datetime,
    end_a: datetime,
    start_b: datetime,
    end_b: datetime,
) -> bool:
    """Check whether two half-open intervals intersect."""
    return start_a < end_b and start_b < end_a


@dataclass(frozen=True)
class WorkingHours:
    """Daily opening window."""

    start: time
    end: time

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["WorkingHours"]:
        """Build from {"start": "HH:MM", "end": "HH:MM"}; None for a day off."""
        if not data or not data.get("start") or not data.get("end"):
            return None
        return cls(start=parse_clock(data["start"]), end=parse_clock(data["end"]))


@dataclass(frozen=True)
class ServiceInfo:
    """Catalog entry of a bookable service."""

    id: str
    name: str
    duration_minutes: int

    @property
    def duration(self) -> timedelta:
        return timedelta(minutes=self.duration_minutes)


@dataclass(frozen=True)
class SalonInfo:
    """Salon-wide scheduling facts."""

    id: str
    timezone: str = "UTC"
    opens: Optional[time] = None
    closes: Optional[time] = None

    def local_now(self) -> datetime:
        """Current salon-local wall-clock time as a naive datetime."""
        return datetime.now(ZoneInfo(self.timezone)).replace(tzinfo=None)


@dataclass(frozen=True)
class StaffSchedule:
    """A staff member's skills and weekly working hours."""

    staff_id: str
    name: str
    specializations: frozenset[str] = frozenset()
    weekly_hours: dict[str, WorkingHours] = field(default_factory=dict)

    @classmethod
    def from_record(
        cls,
        staff_id: str,
        name: str,
        specializations: Iterable[str],
        working_hours: Optional[dict],
    ) -> "StaffSchedule":
        """Build from stored columns, skipping days without valid hours."""
        weekly = {}
        for day, hours in (working_hours or {}).items():
            parsed = WorkingHours.from_dict(hours)
            if parsed is not None:
                weekly[day.lower()] = parsed
        return cls(
            staff_id=staff_id,
            name=name,
            specializations=frozenset(str(s) for s in specializations),
            weekly_hours=weekly,
        )

    def can_perform(self, service_id: str) -> bool:
        return service_id in self.specializations

    def hours_on(self, day: date) -> Optional[WorkingHours]:
        return self.weekly_hours.get(weekday_name(day))


@dataclass(frozen=True)
class BookedInterval:
    """Time already taken by a confirmed booking."""

    staff_id: str
    start_time: datetime
    end_time: datetime


@dataclass(frozen=True)
class SlotCandidate:
    """A schedulable (staff, interval) pair."""

    staff_id: str
    service_id: str
    start_time: datetime
    end_time: datetime
    staff_name: str = ""

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "staff_id": self.staff_id,
            "service_id": self.service_id,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "staff_name": self.staff_name,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SlotCandidate":
        """Create from stored dict."""
        return cls(
            staff_id=data["staff_id"],
            service_id=data["service_id"],
            start_time=datetime.fromisoformat(data["start_time"]),
            end_time=datetime.fromisoformat(data["end_time"]),
            staff_name=data.get("staff_name", ""),
        )


def working_window(
    schedule: StaffSchedule,
    salon: SalonInfo,
    day: date,
) -> Optional[tuple[datetime, datetime]]:
    """Intersect the staff member's hours with the salon's for one day.

    Returns None when the person is off or the intersection is empty.
    """
    hours = schedule.hours_on(day)
    if hours is None:
        return None

    start = max(hours.start, salon.opens) if salon.opens else hours.start
    end = min(hours.end, salon.closes) if salon.closes else hours.end

    if start >= end:
        return None

    return datetime.combine(day, start), datetime.combine(day, end)


def free_intervals(
    window: tuple[datetime, datetime],
    busy: Iterable[BookedInterval],
) -> list[tuple[datetime, datetime]]:
    """Subtract booked intervals from a working window."""
    window_start, window_end = window
    cursor = window_start
    free: list[tuple[datetime, datetime]] = []

    for interval in sorted(busy, key=lambda b: b.start_time):
        if interval.end_time <= window_start or interval.start_time >= window_end:
            continue
        if interval.start_time > cursor:
            free.append((cursor, interval.start_time))
        cursor = max(cursor, interval.end_time)
        if cursor >= window_end:
            break

    if cursor < window_end:
        free.append((cursor, window_end))

    return free
