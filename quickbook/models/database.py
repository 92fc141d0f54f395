"""
Database Models

SQLAlchemy ORM models for salons, their service catalog, staff schedules,
bookings and the inbound event ledger.
"""

import secrets
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, List

from sqlalchemy import (
    JSON, Boolean, DateTime, ForeignKey, Index, Integer, Numeric, String,
    Uuid, Enum as SQLEnum, text
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )


def generate_booking_code() -> str:
    """Short customer-facing booking reference, e.g. BK-3F9A1C07D2."""
    return f"BK-{secrets.token_hex(5).upper()}"


class BookingStatus(str, Enum):
    """Booking status enumeration."""
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class Salon(Base, TimestampMixin):
    """
    Salon model (Tenant).

    Opening hours bound every staff schedule; bookings are stored in the
    salon's local wall-clock time.
    """

    __tablename__ = "salons"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    timezone: Mapped[str] = mapped_column(String(50), default="UTC")
    working_hours_start: Mapped[Optional[str]] = mapped_column(String(5), nullable=True)
    working_hours_end: Mapped[Optional[str]] = mapped_column(String(5), nullable=True)

    services: Mapped[List["Service"]] = relationship("Service", back_populates="salon")
    staff: Mapped[List["Staff"]] = relationship("Staff", back_populates="salon")

    def __repr__(self) -> str:
        return f"<Salon(id={self.id}, name='{self.name}')>"


class Service(Base, TimestampMixin):
    """Bookable service offered by a salon."""

    __tablename__ = "services"
    __table_args__ = (
        Index("idx_service_salon", "salon_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    salon_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("salons.id", ondelete="CASCADE"),
        nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    salon: Mapped["Salon"] = relationship("Salon", back_populates="services")

    def __repr__(self) -> str:
        return f"<Service(id={self.id}, name='{self.name}', duration={self.duration_minutes})>"


class Staff(Base, TimestampMixin):
    """
    Staff member (master) who performs services.

    specializations: list of service ids this person can perform.
    working_hours: weekday name -> {"start": "HH:MM", "end": "HH:MM"}.
    """

    __tablename__ = "staff"
    __table_args__ = (
        Index("idx_staff_salon", "salon_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    salon_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("salons.id", ondelete="CASCADE"),
        nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    specializations: Mapped[list] = mapped_column(JSON, default=list)
    working_hours: Mapped[dict] = mapped_column(JSON, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    salon: Mapped["Salon"] = relationship("Salon", back_populates="staff")
    bookings: Mapped[List["Booking"]] = relationship("Booking", back_populates="staff")

    def __repr__(self) -> str:
        return f"<Staff(id={self.id}, name='{self.name}')>"


class Booking(Base, TimestampMixin):
    """
    Booking model.

    Only CONFIRMED rows take part in conflict checks. The partial unique
    index backs up the commit-time overlap check for identical starts.
    """

    __tablename__ = "bookings"
    __table_args__ = (
        Index("idx_booking_salon", "salon_id"),
        Index("idx_booking_staff_start", "staff_id", "start_time"),
        Index(
            "uq_booking_staff_start_confirmed",
            "staff_id",
            "start_time",
            unique=True,
            postgresql_where=text("status = 'CONFIRMED'"),
            sqlite_where=text("status = 'CONFIRMED'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_code: Mapped[str] = mapped_column(
        String(20),
        unique=True,
        nullable=False,
        default=generate_booking_code
    )
    salon_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("salons.id", ondelete="CASCADE"),
        nullable=False
    )
    staff_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("staff.id", ondelete="CASCADE"),
        nullable=False
    )
    service_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("services.id", ondelete="CASCADE"),
        nullable=False
    )
    customer_handle: Mapped[str] = mapped_column(String(255), nullable=False)
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[BookingStatus] = mapped_column(
        SQLEnum(BookingStatus),
        default=BookingStatus.CONFIRMED
    )
    created_via: Mapped[str] = mapped_column(String(50), default="assistant")

    staff: Mapped["Staff"] = relationship("Staff", back_populates="bookings")

    def __repr__(self) -> str:
        return (
            f"<Booking(id={self.id}, code={self.booking_code}, staff_id={self.staff_id}, "
            f"start={self.start_time}, status={self.status.value})>"
        )


class InboundEvent(Base):
    """
    Inbound event ledger.

    One row per processed transport event id. The reply that was sent is
    kept so a redelivery gets the same acknowledgement.
    """

    __tablename__ = "inbound_events"
    __table_args__ = (
        Index("idx_inbound_event_processed", "processed_at"),
    )

    transport_event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    processed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    reply: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<InboundEvent(id='{self.transport_event_id}', "
            f"processed_at={self.processed_at})>"
        )
