"""Booking Committer - the only path that creates Booking rows."""

import logging
from datetime import datetime

from quickbook.core.errors import SlotConflict
from .repository import BookingRecord, BookingRepository

logger = logging.getLogger(__name__)


class BookingCommitter:
    """
    Writes confirmed bookings.

    The overlap check runs inside the repository transaction at commit time,
    whatever was true when the slot was offered.
    """

    def __init__(self, repository: BookingRepository):
        self._repository = repository

    async def commit(
        self,
        salon_id: str,
        staff_id: str,
        service_id: str,
        customer_handle: str,
        start_time: datetime,
        end_time: datetime,
    ) -> BookingRecord:
        """
        Commit a booking.

        Returns:
            The stored booking

        Raises:
            SlotConflict: The interval is no longer free for this staff member
            StorageUnavailable: The store could not be reached
        """
        if start_time >= end_time:
            raise ValueError(f"Empty booking interval {start_time} - {end_time}")

        try:
            booking = await self._repository.insert_booking(
                salon_id=salon_id,
                staff_id=staff_id,
                service_id=service_id,
                customer_handle=customer_handle,
                start_time=start_time,
                end_time=end_time,
            )
        except SlotConflict:
            logger.info(
                f"Commit conflict: staff={staff_id} {start_time:%Y-%m-%d %H:%M} "
                f"customer={customer_handle}"
            )
            raise

        logger.info(
            f"Booking committed: id={booking.id}, code={booking.booking_code}, staff={staff_id}, "
            f"start={start_time:%Y-%m-%d %H:%M}"
        )
        return booking

