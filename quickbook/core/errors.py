"""Domain errors raised by the booking conversation core.

All of them are recoverable from the customer's point of view: the event
router turns each into a reply instead of letting it reach the transport.
"""

from typing import Optional


class BookingAssistantError(Exception):
    """Base class for booking core errors."""
    pass


class DuplicateEvent(BookingAssistantError):
    """Transport event id was already admitted."""

    def __init__(self, transport_event_id: str, reply: Optional[dict] = None):
        super().__init__(f"Event {transport_event_id} already processed")
        self.transport_event_id = transport_event_id
        self.reply = reply


class IncompleteIntent(BookingAssistantError):
    """Intent lacks fields required to search for slots."""

    def __init__(self, missing: list[str]):
        super().__init__(f"Intent incomplete, missing: {', '.join(missing)}")
        self.missing = missing


class OracleError(BookingAssistantError):
    """Language model call failed to produce a usable intent."""
    pass


class OracleTimeout(OracleError):
    """Language model did not answer within the configured bound."""
    pass


class OracleUnparsable(OracleError):
    """Language model answered with something that is not the intent schema."""
    pass


class NoSlotsAvailable(BookingAssistantError):
    """No slot exists in the searched window."""
    pass


class InvalidPayload(BookingAssistantError):
    """Button payload does not match any option currently on offer."""

    def __init__(self, payload_id: str, reason: str):
        super().__init__(f"Invalid payload '{payload_id}': {reason}")
        self.payload_id = payload_id
        self.reason = reason


class SlotConflict(BookingAssistantError):
    """Requested interval overlaps a confirmed booking of the same staff member."""

    def __init__(self, staff_id: str, start_time, end_time):
        super().__init__(
            f"Staff {staff_id} is already booked between {start_time} and {end_time}"
        )
        self.staff_id = staff_id
        self.start_time = start_time
        self.end_time = end_time


class StorageUnavailable(BookingAssistantError):
    """Backing store could not be reached for this turn."""
    pass
