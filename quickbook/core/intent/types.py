"""Booking intent types."""

from dataclasses import dataclass, field
from datetime import date, time
from typing import Optional

from quickbook.core.errors import IncompleteIntent


SUPPORTED_LANGUAGES = ("en", "ru", "es", "pt", "he")


@dataclass
class BookingIntent:
    """What the customer wants to book, as far as we know so far."""

    service_name: Optional[str] = None
    service_id: Optional[str] = None     # Set once the name matches the catalog
    preferred_date: Optional[date] = None
    preferred_time: Optional[time] = None
    is_flexible: bool = False            # No exact time pinned
    language: str = "en"

    def missing_fields(self) -> list[str]:
        """Required fields that are still unknown."""
        missing = []
        if not self.service_id:
            missing.append("service")
        if self.preferred_date is None:
            missing.append("date")
        if self.preferred_time is None and not self.is_flexible:
            missing.append("time")
        return missing

    @property
    def is_complete(self) -> bool:
        return not self.missing_fields()

    def require_complete(self) -> None:
        """Raise IncompleteIntent unless a slot search can run."""
        missing = self.missing_fields()
        if missing:
            raise IncompleteIntent(missing)

    def merge(self, other: "BookingIntent") -> "BookingIntent":
        """Merge a newer turn into this one, preferring values set in other."""
        if other.service_name:
            service_name, service_id = other.service_name, other.service_id
        else:
            service_name, service_id = self.service_name, self.service_id

        if other.preferred_time is not None:
            preferred_time, is_flexible = other.preferred_time, other.is_flexible
        else:
            preferred_time = self.preferred_time
            is_flexible = self.is_flexible or other.is_flexible

        return BookingIntent(
            service_name=service_name,
            service_id=service_id,
            preferred_date=other.preferred_date or self.preferred_date,
            preferred_time=preferred_time,
            is_flexible=is_flexible,
            language=other.language or self.language,
        )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "service_name": self.service_name,
            "service_id": self.service_id,
            "preferred_date": self.preferred_date.isoformat() if self.preferred_date else None,
            "preferred_time": (
                self.preferred_time.strftime("%H:%M") if self.preferred_time else None
            ),
            "is_flexible": self.is_flexible,
            "language": self.language,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BookingIntent":
        """Create from stored dict."""
        return cls(
            service_name=data.get("service_name"),
            service_id=data.get("service_id"),
            preferred_date=(
                date.fromisoformat(data["preferred_date"])
                if data.get("preferred_date") else None
            ),
            preferred_time=(
                time.fromisoformat(data["preferred_time"])
                if data.get("preferred_time") else None
            ),
            is_flexible=data.get("is_flexible", False),
            language=data.get("language", "en"),
        )


@dataclass
class ExtractionContext:
    """Inputs besides the message text that shape an extraction."""

    known_services: list = field(default_factory=list)   # list[ServiceInfo]
    prior_intent: Optional[BookingIntent] = None
    today: Optional[date] = None
