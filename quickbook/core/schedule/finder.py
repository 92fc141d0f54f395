"""
Slot Finder.

Read-only search for bookable (staff, interval) pairs:

1. Staff who perform the service and work that day (within salon hours)
2. Free intervals = working window minus CONFIRMED bookings
3. Candidate starts stepped by the service duration
4. Ranked by distance to the preferred time, or earliest first if flexible
5. One candidate per start time (lowest staff id wins), truncated
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import TYPE_CHECKING, Iterator, Optional

from quickbook.config import settings
from .model import ServiceInfo, SlotCandidate, free_intervals, working_window

if TYPE_CHECKING:
    from quickbook.core.booking.repository import BookingRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DateWindow:
    """Inclusive range of calendar days."""

    start: date
    end: date

    def __post_init__(self):
        if self.end < self.start:
            raise ValueError(f"Window ends before it starts: {self.start} > {self.end}")

    @classmethod
    def single(cls, day: date) -> "DateWindow":
        return cls(day, day)

    def days(self) -> Iterator[date]:
        day = self.start
        while day <= self.end:
            yield day
            day += timedelta(days=1)

    def bounds(self) -> tuple[datetime, datetime]:
        """Half-open datetime range covering every day of the window."""
        return (
            datetime.combine(self.start, time.min),
            datetime.combine(self.end + timedelta(days=1), time.min),
        )


@dataclass(frozen=True)
class TimePreference:
    """Exact preferred time, or None for "any time"."""

    preferred_time: Optional[time] = None

    @property
    def is_flexible(self) -> bool:
        return self.preferred_time is None


@dataclass
class SlotSearchResult:
    """Slots found, and whether the search had to go past the requested day."""

    candidates: list[SlotCandidate]
    window: DateWindow
    widened: bool = False


class SlotFinder:
    """Finds free slots for a service."""

    def __init__(self, repository: "BookingRepository"):
        self._repository = repository

    async def find_slots(
        self,
        salon_id: str,
        service: ServiceInfo,
        date_window: DateWindow,
        time_preference: TimePreference,
        max_results: int = 3,
        now: Optional[datetime] = None,
    ) -> list[SlotCandidate]:
        """
        Find up to max_results ranked candidates.

        Args:
            salon_id: Salon identifier
            service: Service to book (its duration sets the granularity)
            date_window: Days to search
            time_preference: Exact time, or flexible
            max_results: Maximum candidates returned
            now: Salon-local "now"; earlier starts are skipped

        Returns:
            Ranked candidates; empty when nothing is free
        """
        if service.duration_minutes <= 0 or max_results <= 0:
            return []

        salon = await self._repository.get_salon(salon_id)
        if salon is None:
            logger.warning(f"Slot search for unknown salon {salon_id}")
            return []

        now = now or salon.local_now()
        window_start, window_end = date_window.bounds()
        snapshot = await self._repository.get_schedule(
            salon_id, service.id, window_start, window_end
        )

        candidates: list[SlotCandidate] = []
        for day in date_window.days():
            for staff in sorted(snapshot.staff, key=lambda s: s.staff_id):
                if not staff.can_perform(service.id):
                    continue
                window = working_window(staff, salon, day)
                if window is None:
                    continue

                for free_start, free_end in free_intervals(window, snapshot.busy_for(staff.staff_id)):
                    cursor = free_start
                    while cursor + service.duration <= free_end:
                        if cursor >= now:
                            candidates.append(
                                SlotCandidate(
                                    staff_id=staff.staff_id,
                                    service_id=service.id,
                                    start_time=cursor,
                                    end_time=cursor + service.duration,
                                    staff_name=staff.name,
                                )
                            )
                        cursor += service.duration

        ranked = self._rank(candidates, time_preference)

        results: list[SlotCandidate] = []
        seen_starts: set[datetime] = set()
        for candidate in ranked:
            if candidate.start_time in seen_starts:
                continue
            seen_starts.add(candidate.start_time)
            results.append(candidate)
            if len(results) >= max_results:
                break

        logger.debug(
            f"Slot search {service.name} {date_window.start}..{date_window.end}: "
            f"{len(candidates)} candidates, returning {len(results)}"
        )
        return results

    async def search(
        self,
        salon_id: str,
        service: ServiceInfo,
        day: date,
        time_preference: TimePreference,
        widen_days: Optional[int] = None,
        max_results: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> SlotSearchResult:
        """
        Search the requested day, then the following days if it is full.

        The wider search keeps the same time preference.
        """
        widen_days = settings.slot_search_widen_days if widen_days is None else widen_days
        max_results = max_results or settings.max_offered_slots

        requested = DateWindow.single(day)
        candidates = await self.find_slots(
            salon_id, service, requested, time_preference, max_results, now
        )
        if candidates or widen_days <= 0:
            return SlotSearchResult(candidates, requested)

        wider = DateWindow(day + timedelta(days=1), day + timedelta(days=widen_days))
        candidates = await self.find_slots(
            salon_id, service, wider, time_preference, max_results, now
        )
        logger.info(
            f"No slots on {day}, widened to {wider.end}: {len(candidates)} found"
        )
        return SlotSearchResult(candidates, wider, widened=True)

    @staticmethod
    def _rank(
        candidates: list[SlotCandidate],
        preference: TimePreference,
    ) -> list[SlotCandidate]:
        if preference.is_flexible:
            return sorted(candidates, key=lambda c: (c.start_time, c.staff_id))

        def distance(candidate: SlotCandidate) -> timedelta:
            target = datetime.combine(candidate.start_time.date(), preference.preferred_time)
            return abs(candidate.start_time - target)

        # Earlier days first, then closeness to the preferred time on that day
        return sorted(
            candidates,
            key=lambda c: (c.start_time.date(), distance(c), c.start_time, c.staff_id),
        )
