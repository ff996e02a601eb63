"""Deterministic date / time parsing for short user replies."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
import re

_WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]

_AMPM_RE = re.compile(r"\b(\d{1,2})(?::([0-5]\d))?\s*(a\.?m\.?|p\.?m\.?)(?![a-z])", re.IGNORECASE)
_CLOCK_RE = re.compile(r"\b([01]?\d|2[0-3]):([0-5]\d)\b")
_ISO_DATE_RE = re.compile(r"\b(\d{4})-(\d{2})-(\d{2})\b")

# Vague day parts map to a conventional hour but are never treated as explicit.
_DAY_PARTS = {"morning": "09:00", "afternoon": "14:00", "evening": "18:00", "tonight": "20:00"}


@dataclass(frozen=True)
class TimeMatch:
    value: str  # HH:MM, 24-hour
    confidence: float
    explicit: bool


def parse_time(text: str) -> TimeMatch | None:
    """Find a time of day in `text`.

    >>> parse_time("9am").value
    '09:00'
    >>> parse_time("let's say 2:30 PM").value
    '14:30'
    """
    lowered = text.lower()

    m = _AMPM_RE.search(lowered)
    if m:
        hour, minute = int(m.group(1)), int(m.group(2) or 0)
        if 1 <= hour <= 12:
            is_pm = m.group(3).startswith("p")
            if hour == 12:
                hour = 12 if is_pm else 0
            elif is_pm:
                hour += 12
            return TimeMatch(f"{hour:02d}:{minute:02d}", 0.9, True)

    m = _CLOCK_RE.search(lowered)
    if m:
        return TimeMatch(f"{int(m.group(1)):02d}:{m.group(2)}", 0.9, True)

    if re.search(r"\b(noon|midday)\b", lowered):
        return TimeMatch("12:00", 0.9, True)
    if re.search(r"\bmidnight\b", lowered):
        return TimeMatch("00:00", 0.9, True)

    for word, value in _DAY_PARTS.items():
        if re.search(rf"\b{word}\b", lowered):
            return TimeMatch(value, 0.6, False)
    return None


def resolve_date(text: str | None, *, today: date) -> date | None:
    """Resolve an ISO date or a relative expression against `today`.

    Weekday names mean the next such day (never today).
    """
    if not text:
        return None
    lowered = text.lower()

    m = _ISO_DATE_RE.search(lowered)
    if m:
        try:
            return date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
        except ValueError:
            return None
    if "day after tomorrow" in lowered:
        return today + timedelta(days=2)
    if re.search(r"\btomorrow\b", lowered):
        return today + timedelta(days=1)
    if re.search(r"\b(today|tonight)\b", lowered):
        return today
    if re.search(r"\bnext week\b", lowered):
        return today + timedelta(days=7)
    for index, name in enumerate(_WEEKDAYS):
        if re.search(rf"\b{name}\b", lowered):
            ahead = (index - today.weekday()) % 7 or 7
            return today + timedelta(days=ahead)
    return None


def display_time(value: str) -> str:
    """'14:30' -> '2:30 PM'."""
    hour, minute = (int(part) for part in value.split(":"))
    suffix = "AM" if hour < 12 else "PM"
    return f"{hour % 12 or 12}:{minute:02d} {suffix}"
