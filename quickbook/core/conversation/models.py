"""
Conversation data models.

ConversationState is the short-lived memory between turns of one
customer's booking conversation with one salon. It is disposable: losing it
only means the customer is asked to restate.
"""

import json
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from quickbook.core.intent.types import BookingIntent
from quickbook.core.schedule.model import SlotCandidate
from .state import ConversationPhase


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def _short_token(nbytes: int = 4) -> str:
    return secrets.token_hex(nbytes)


@dataclass(frozen=True)
class ConversationKey:
    """One customer talking to one salon."""

    salon_id: str
    customer_handle: str

    def __str__(self) -> str:
        return f"{self.salon_id}:{self.customer_handle}"


@dataclass
class OfferedSlot:
    """A slot shown on an interactive card, tagged with its payload id."""

    slot_id: str
    candidate: SlotCandidate

    def to_dict(self) -> dict:
        return {"slot_id": self.slot_id, "candidate": self.candidate.to_dict()}

    @classmethod
    def from_dict(cls, data: dict) -> "OfferedSlot":
        return cls(
            slot_id=data["slot_id"],
            candidate=SlotCandidate.from_dict(data["candidate"]),
        )


@dataclass
class ConversationState:
    """
    Per-conversation state stored between turns.

    offer_token changes every time a new card is sent, so buttons from an
    older card stop resolving. version increases on every save.
    """

    salon_id: str
    customer_handle: str
    phase: ConversationPhase = ConversationPhase.IDLE
    pending_intent: BookingIntent = field(default_factory=BookingIntent)

    offered_slots: list[OfferedSlot] = field(default_factory=list)
    offer_token: Optional[str] = None
    selected_slot_id: Optional[str] = None

    version: int = 0
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    expires_at: Optional[datetime] = None

    @property
    def key(self) -> ConversationKey:
        return ConversationKey(self.salon_id, self.customer_handle)

    @property
    def selected_slot(self) -> Optional[OfferedSlot]:
        if self.selected_slot_id is None:
            return None
        return self.find_slot(self.selected_slot_id)

    def find_slot(self, slot_id: str) -> Optional[OfferedSlot]:
        for offered in self.offered_slots:
            if offered.slot_id == slot_id:
                return offered
        return None

    def offer(self, candidates: list[SlotCandidate]) -> list[OfferedSlot]:
        """Replace the current card with new candidates under a fresh token."""
        self.offer_token = _short_token()
        self.offered_slots = [
            OfferedSlot(slot_id=f"{self.offer_token}{index}", candidate=candidate)
            for index, candidate in enumerate(candidates)
        ]
        self.selected_slot_id = None
        return self.offered_slots

    def clear_offer(self) -> None:
        self.offered_slots = []
        self.offer_token = None
        self.selected_slot_id = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or _utcnow()) >= self.expires_at

    def touch(self, ttl_seconds: int) -> None:
        """Bump version and push the inactivity deadline forward."""
        now = _utcnow()
        self.version += 1
        self.updated_at = now
        self.expires_at = now + timedelta(seconds=ttl_seconds)

    def to_json(self) -> str:
        """Serialize to JSON string."""
        data = {
            "salon_id": self.salon_id,
            "customer_handle": self.customer_handle,
            "phase": self.phase.value,
            "pending_intent": self.pending_intent.to_dict(),
            "offered_slots": [s.to_dict() for s in self.offered_slots],
            "offer_token": self.offer_token,
            "selected_slot_id": self.selected_slot_id,
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }
        return json.dumps(data)

    @classmethod
    def from_json(cls, json_str: str) -> "ConversationState":
        """Deserialize from JSON string."""
        data = json.loads(json_str)
        return cls(
            salon_id=data["salon_id"],
            customer_handle=data["customer_handle"],
            phase=ConversationPhase(data.get("phase", ConversationPhase.IDLE.value)),
            pending_intent=BookingIntent.from_dict(data.get("pending_intent") or {}),
            offered_slots=[OfferedSlot.from_dict(s) for s in data.get("offered_slots", [])],
            offer_token=data.get("offer_token"),
            selected_slot_id=data.get("selected_slot_id"),
            version=data.get("version", 0),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            expires_at=(
                datetime.fromisoformat(data["expires_at"]) if data.get("expires_at") else None
            ),
        )
