"""Intent extraction module."""

from .types import BookingIntent, ExtractionContext, SUPPORTED_LANGUAGES
from .matching import match_service, resolve_day_of_week, detect_language
from .extractor import IntentExtractor, get_intent_extractor

__all__ = [
    # Types
    "BookingIntent",
    "ExtractionContext",
    "SUPPORTED_LANGUAGES",
    # Matching
    "match_service",
    "resolve_day_of_week",
    "detect_language",
    # Extractor
    "IntentExtractor",
    "get_intent_extractor",
]
