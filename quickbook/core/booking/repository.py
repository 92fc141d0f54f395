"""
Booking storage port.

The core needs exactly three things from storage: a read of staff hours and
confirmed bookings in a window, a transactional insert that re-checks the
no-overlap rule, and the inbound event ledger. BookingRepository names
those; InMemoryBookingRepository implements them in-process for tests and
local runs.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from quickbook.core.errors import DuplicateEvent, SlotConflict
from quickbook.core.schedule.model import (
    BookedInterval,
    SalonInfo,
    ServiceInfo,
    StaffSchedule,
    overlaps,
)
from quickbook.models.database import generate_booking_code

logger = logging.getLogger(__name__)


@dataclass
class BookingRecord:
    """A committed booking."""

    id: str
    booking_code: str
    salon_id: str
    staff_id: str
    service_id: str
    customer_handle: str
    start_time: datetime
    end_time: datetime
    status: str = "confirmed"
    created_via: str = "assistant"

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "booking_code": self.booking_code,
            "salon_id": self.salon_id,
            "staff_id": self.staff_id,
            "service_id": self.service_id,
            "customer_handle": self.customer_handle,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "status": self.status,
            "created_via": self.created_via,
        }


@dataclass
class EventRecord:
    """Inbound event ledger entry."""

    transport_event_id: str
    processed_at: datetime
    reply: Optional[dict] = None


@dataclass
class ScheduleSnapshot:
    """Staff able to perform a service plus their confirmed bookings in a window."""

    staff: list[StaffSchedule] = field(default_factory=list)
    bookings: list[BookedInterval] = field(default_factory=list)

    def busy_for(self, staff_id: str) -> list[BookedInterval]:
        return [b for b in self.bookings if b.staff_id == staff_id]


class BookingRepository(ABC):
    """Storage operations used by the booking core."""

    @abstractmethod
    async def get_salon(self, salon_id: str) -> Optional[SalonInfo]:
        """Salon scheduling facts, or None if unknown."""

    @abstractmethod
    async def list_services(self, salon_id: str) -> list[ServiceInfo]:
        """Active services of a salon."""

    @abstractmethod
    async def get_schedule(
        self,
        salon_id: str,
        service_id: str,
        start: datetime,
        end: datetime,
    ) -> ScheduleSnapshot:
        """Active staff who perform service_id, and their CONFIRMED bookings
        overlapping [start, end)."""

    @abstractmethod
    async def insert_booking(
        self,
        salon_id: str,
        staff_id: str,
        service_id: str,
        customer_handle: str,
        start_time: datetime,
        end_time: datetime,
    ) -> BookingRecord:
        """
        Insert a CONFIRMED booking after re-checking overlap in the same
        transaction.

        Raises:
            SlotConflict: The staff member already has an overlapping booking
        """

    @abstractmethod
    async def get_event(self, transport_event_id: str) -> Optional[EventRecord]:
        """Ledger entry for an event id, or None."""

    @abstractmethod
    async def record_event(
        self,
        transport_event_id: str,
        processed_at: datetime,
        reply: Optional[dict] = None,
    ) -> None:
        """
        Insert a ledger entry if absent.

        Raises:
            DuplicateEvent: An entry with that id already exists
        """

    @abstractmethod
    async def purge_events(self, older_than: datetime) -> int:
        """Delete ledger entries processed before older_than; returns the count."""


class InMemoryBookingRepository(BookingRepository):
    """
    Process-local repository.

    Inserts are serialized per staff member with an asyncio lock, which is
    the in-process equivalent of the SQL implementation's row lock.
    """

    def __init__(self):
        self._salons: dict[str, SalonInfo] = {}
        self._services: dict[str, list[ServiceInfo]] = defaultdict(list)
        self._staff: dict[str, list[StaffSchedule]] = defaultdict(list)
        self._bookings: list[BookingRecord] = []
        self._events: dict[str, EventRecord] = {}
        self._staff_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # === Seeding ===

    def add_salon(self, salon: SalonInfo) -> SalonInfo:
        self._salons[salon.id] = salon
        return salon

    def add_service(self, salon_id: str, service: ServiceInfo) -> ServiceInfo:
        self._services[salon_id].append(service)
        return service

    def add_staff(self, salon_id: str, staff: StaffSchedule) -> StaffSchedule:
        self._staff[salon_id].append(staff)
        return staff

    @property
    def bookings(self) -> list[BookingRecord]:
        return list(self._bookings)

    # === Reads ===

    async def get_salon(self, salon_id: str) -> Optional[SalonInfo]:
        return self._salons.get(salon_id)

    async def list_services(self, salon_id: str) -> list[ServiceInfo]:
        return list(self._services.get(salon_id, []))

    async def get_schedule(
        self,
        salon_id: str,
        service_id: str,
        start: datetime,
        end: datetime,
    ) -> ScheduleSnapshot:
        staff = [s for s in self._staff.get(salon_id, []) if s.can_perform(service_id)]
        staff_ids = {s.staff_id for s in staff}
        bookings = [
            BookedInterval(b.staff_id, b.start_time, b.end_time)
            for b in self._bookings
            if b.salon_id == salon_id
            and b.status == "confirmed"
            and b.staff_id in staff_ids
            and overlaps(b.start_time, b.end_time, start, end)
        ]
        return ScheduleSnapshot(staff=staff, bookings=bookings)

    # === Writes ===

    async def insert_booking(
        self,
        salon_id: str,
        staff_id: str,
        service_id: str,
        customer_handle: str,
        start_time: datetime,
        end_time: datetime,
    ) -> BookingRecord:
        async with self._staff_locks[staff_id]:
            conflicting = [
                b for b in self._bookings
                if b.staff_id == staff_id
                and b.status == "confirmed"
                and overlaps(b.start_time, b.end_time, start_time, end_time)
            ]
            # Yield inside the critical section so concurrent callers really contend
            await asyncio.sleep(0)
            if conflicting:
                raise SlotConflict(staff_id, start_time, end_time)

            record = BookingRecord(
                id=str(uuid.uuid4()),
                booking_code=generate_booking_code(),
                salon_id=salon_id,
                staff_id=staff_id,
                service_id=service_id,
                customer_handle=customer_handle,
                start_time=start_time,
                end_time=end_time,
            )
            self._bookings.append(record)
            return record

    async def get_event(self, transport_event_id: str) -> Optional[EventRecord]:
        return self._events.get(transport_event_id)

    async def record_event(
        self,
        transport_event_id: str,
        processed_at: datetime,
        reply: Optional[dict] = None,
    ) -> None:
        if transport_event_id in self._events:
            raise DuplicateEvent(transport_event_id, self._events[transport_event_id].reply)
        self._events[transport_event_id] = EventRecord(transport_event_id, processed_at, reply)

    async def purge_events(self, older_than: datetime) -> int:
        expired = [k for k, v in self._events.items() if v.processed_at < older_than]
        for key in expired:
            del self._events[key]
        return len(expired)
