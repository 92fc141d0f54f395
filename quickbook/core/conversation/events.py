"""Inbound transport events, as seen by the router."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .models import ConversationKey


class EventType(str, Enum):
    TEXT = "text"
    INTERACTIVE_REPLY = "interactive_reply"


@dataclass(frozen=True)
class TransportEvent:
    """A normalized message from the messaging platform."""

    transport_event_id: str
    key: ConversationKey
    type: EventType
    text: Optional[str] = None
    payload_id: Optional[str] = None

    def __post_init__(self):
        if not self.transport_event_id:
            raise ValueError("transport_event_id is required")
        if self.type == EventType.TEXT and not (self.text and self.text.strip()):
            raise ValueError("text events need a non-empty text")
        if self.type == EventType.INTERACTIVE_REPLY and not self.payload_id:
            raise ValueError("interactive replies need a payload_id")
