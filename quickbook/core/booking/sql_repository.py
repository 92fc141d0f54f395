"""
SQLAlchemy implementation of the booking storage port.

Every method runs in its own short transaction. The booking insert locks
the staff row before re-checking overlap, so two commits for the same staff
member are serialized by the database; the partial unique index on
(staff_id, start_time) catches anything that slips past.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quickbook.core.errors import DuplicateEvent, SlotConflict, StorageUnavailable
from quickbook.core.schedule.model import (
    BookedInterval,
    SalonInfo,
    ServiceInfo,
    StaffSchedule,
    parse_clock,
)
from quickbook.models.database import (
    Booking,
    BookingStatus,
    InboundEvent,
    Salon,
    Service,
    Staff,
    generate_booking_code,
)
from .repository import BookingRecord, BookingRepository, EventRecord, ScheduleSnapshot

logger = logging.getLogger(__name__)


def _as_uuid(value: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _to_record(booking: Booking) -> BookingRecord:
    return BookingRecord(
        id=str(booking.id),
        booking_code=booking.booking_code,
        salon_id=str(booking.salon_id),
        staff_id=str(booking.staff_id),
        service_id=str(booking.service_id),
        customer_handle=booking.customer_handle,
        start_time=booking.start_time,
        end_time=booking.end_time,
        status=booking.status.value,
        created_via=booking.created_via,
    )


class SqlBookingRepository(BookingRepository):
    """Booking storage backed by the relational database."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        """Initialize repository.

        Args:
            session_factory: Session factory (defaults to the app's engine)
        """
        if session_factory is None:
            from quickbook.infra.database import async_session_factory
            session_factory = async_session_factory
        self._session_factory = session_factory

    # === Reads ===

    async def get_salon(self, salon_id: str) -> Optional[SalonInfo]:
        salon_uuid = _as_uuid(salon_id)
        if salon_uuid is None:
            return None

        try:
            async with self._session_factory() as session:
                salon = await session.get(Salon, salon_uuid)
        except SQLAlchemyError as e:
            logger.error(f"Failed to load salon {salon_id}: {e}")
            raise StorageUnavailable(str(e)) from e

        if salon is None:
            return None

        return SalonInfo(
            id=str(salon.id),
            timezone=salon.timezone or "UTC",
            opens=parse_clock(salon.working_hours_start) if salon.working_hours_start else None,
            closes=parse_clock(salon.working_hours_end) if salon.working_hours_end else None,
        )

    async def list_services(self, salon_id: str) -> list[ServiceInfo]:
        salon_uuid = _as_uuid(salon_id)
        if salon_uuid is None:
            return []

        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(Service)
                    .where(Service.salon_id == salon_uuid, Service.is_active.is_(True))
                    .order_by(Service.name)
                )
                services = result.scalars().all()
        except SQLAlchemyError as e:
            logger.error(f"Failed to list services for salon {salon_id}: {e}")
            raise StorageUnavailable(str(e)) from e

        return [
            ServiceInfo(id=str(s.id), name=s.name, duration_minutes=s.duration_minutes)
            for s in services
        ]

    async def get_schedule(
        self,
        salon_id: str,
        service_id: str,
        start: datetime,
        end: datetime,
    ) -> ScheduleSnapshot:
        salon_uuid = _as_uuid(salon_id)
        if salon_uuid is None:
            return ScheduleSnapshot()

        try:
            async with self._session_factory() as session:
                staff_rows = (
                    await session.execute(
                        select(Staff).where(
                            Staff.salon_id == salon_uuid,
                            Staff.is_active.is_(True),
                        )
                    )
                ).scalars().all()

                staff = [
                    StaffSchedule.from_record(
                        staff_id=str(row.id),
                        name=row.name,
                        specializations=row.specializations or [],
                        working_hours=row.working_hours,
                    )
                    for row in staff_rows
                ]
                staff = [s for s in staff if s.can_perform(service_id)]
                if not staff:
                    return ScheduleSnapshot()

                booking_rows = (
                    await session.execute(
                        select(Booking).where(
                            Booking.staff_id.in_([uuid.UUID(s.staff_id) for s in staff]),
                            Booking.status == BookingStatus.CONFIRMED,
                            Booking.start_time < end,
                            Booking.end_time > start,
                        )
                    )
                ).scalars().all()
        except SQLAlchemyError as e:
            logger.error(f"Failed to load schedule for salon {salon_id}: {e}")
            raise StorageUnavailable(str(e)) from e

        bookings = [
            BookedInterval(str(b.staff_id), b.start_time, b.end_time) for b in booking_rows
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
        staff_uuid = _as_uuid(staff_id)
        if staff_uuid is None:
            raise SlotConflict(staff_id, start_time, end_time)

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    # Serializes concurrent commits for this staff member
                    locked = await session.scalar(
                        select(Staff.id).where(Staff.id == staff_uuid).with_for_update()
                    )
                    if locked is None:
                        raise SlotConflict(staff_id, start_time, end_time)

                    existing = await session.scalar(
                        select(Booking.id)
                        .where(
                            Booking.staff_id == staff_uuid,
                            Booking.status == BookingStatus.CONFIRMED,
                            Booking.start_time < end_time,
                            Booking.end_time > start_time,
                        )
                        .limit(1)
                    )
                    if existing is not None:
                        raise SlotConflict(staff_id, start_time, end_time)

                    booking = Booking(
                        booking_code=generate_booking_code(),
                        salon_id=uuid.UUID(salon_id),
                        staff_id=staff_uuid,
                        service_id=uuid.UUID(service_id),
                        customer_handle=customer_handle,
                        start_time=start_time,
                        end_time=end_time,
                        status=BookingStatus.CONFIRMED,
                        created_via="assistant",
                    )
                    session.add(booking)
                    await session.flush()
                    record = _to_record(booking)
        except IntegrityError as e:
            logger.info(f"Unique index rejected booking for staff {staff_id}: {e}")
            raise SlotConflict(staff_id, start_time, end_time) from e
        except SQLAlchemyError as e:
            logger.error(f"Failed to insert booking: {e}")
            raise StorageUnavailable(str(e)) from e

        return record

    async def get_event(self, transport_event_id: str) -> Optional[EventRecord]:
        try:
            async with self._session_factory() as session:
                row = await session.get(InboundEvent, transport_event_id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to read event ledger: {e}")
            raise StorageUnavailable(str(e)) from e

        if row is None:
            return None
        return EventRecord(row.transport_event_id, row.processed_at, row.reply)

    async def record_event(
        self,
        transport_event_id: str,
        processed_at: datetime,
        reply: Optional[dict] = None,
    ) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(
                        InboundEvent(
                            transport_event_id=transport_event_id,
                            processed_at=processed_at,
                            reply=reply,
                        )
                    )
        except IntegrityError as e:
            raise DuplicateEvent(transport_event_id) from e
        except SQLAlchemyError as e:
            logger.error(f"Failed to write event ledger: {e}")
            raise StorageUnavailable(str(e)) from e

    async def purge_events(self, older_than: datetime) -> int:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        delete(InboundEvent).where(InboundEvent.processed_at < older_than)
                    )
        except SQLAlchemyError as e:
            logger.error(f"Failed to purge event ledger: {e}")
            raise StorageUnavailable(str(e)) from e

        return result.rowcount or 0
