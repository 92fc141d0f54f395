"""Catalog matching and language detection helpers for extracted intents."""

import re
from datetime import date, timedelta
from typing import Optional, Sequence

from quickbook.core.schedule.model import WEEKDAYS, ServiceInfo


_CYRILLIC = re.compile(r"[Ѐ-ӿ]")
_HEBREW = re.compile(r"[֐-׿]")
_SPANISH = re.compile(r"[áéíóúüñ¿¡]")
_PORTUGUESE = re.compile(r"[ãõç]")


def match_service(
    name: Optional[str],
    services: Sequence[ServiceInfo],
) -> Optional[ServiceInfo]:
    """
    Resolve a free-text service name against the salon catalog.

    Tries, in order: exact (case-insensitive) name, name containing the
    query or query containing the name, then the best keyword overlap.

    Args:
        name: Service name as extracted from the message
        services: Salon catalog

    Returns:
        Matching ServiceInfo or None when nothing plausible matches
    """
    if not name:
        return None

    query = name.strip().lower()
    if not query:
        return None

    for service in services:
        if service.name.lower() == query:
            return service

    for service in services:
        candidate = service.name.lower()
        if query in candidate or candidate in query:
            return service

    query_words = set(query.split())
    best: Optional[ServiceInfo] = None
    best_score = 0.0
    for service in services:
        name_words = set(service.name.lower().split())
        common = query_words & name_words
        if not common:
            continue
        score = len(common) / len(query_words)
        if score > best_score:
            best, best_score = service, score

    return best


def resolve_day_of_week(day_name: Optional[str], today: date) -> Optional[date]:
    """Next occurrence of a weekday, counting today."""
    if not day_name:
        return None
    key = day_name.strip().lower()
    if key not in WEEKDAYS:
        return None
    offset = (WEEKDAYS.index(key) - today.weekday()) % 7
    return today + timedelta(days=offset)


def detect_language(text: str) -> str:
    """
    Script-based language guess.

    Cyrillic -> ru, Hebrew -> he, Spanish diacritics -> es,
    Portuguese diacritics -> pt, anything else -> en.
    """
    normalized = text.lower()

    if _CYRILLIC.search(normalized):
        return "ru"
    if _HEBREW.search(normalized):
        return "he"
    if _SPANISH.search(normalized):
        return "es"
    if _PORTUGUESE.search(normalized):
        return "pt"
    return "en"
