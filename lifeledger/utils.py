from __future__ import annotations
from datetime import date, datetime, timezone
import uuid


def utcnow() -> datetime:
    """UTC-naive now; every stored timestamp uses this convention."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


def canonical_name(name: str | None) -> str:
    """
    Identity key for a person: trimmed and case-folded.
    "Alice", "alice " and "ALICE" all map to "alice".
    """
    return (name or "").strip().casefold()


def fold_title(title: str | None) -> str:
    return (title or "").strip().casefold()


def first_title_line(text: str, limit: int = 80) -> str:
    """
    First non-empty line, stripped; fallback to empty string.
    """
    for line in text.splitlines():
        s = line.strip().lstrip("#").strip()
        if s:
            return (s[:limit]).rstrip()
    return ""


def time_of_day(now: datetime) -> str:
    hour = now.hour
    if hour < 6:
        return "late_night"
    if hour < 12:
        return "morning"
    if hour < 17:
        return "afternoon"
    if hour < 21:
        return "evening"
    return "night"


def parse_iso_date(value) -> date | None:
    """
    Accept a date, a datetime or an ISO 'YYYY-MM-DD...' string; anything else is None.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            return None
    return None


def add_years(d: date, years: int) -> date:
    """Same calendar day `years` later; Feb 29 lands on Feb 28 in common years."""
    try:
        return d.replace(year=d.year + years)
    except ValueError:
        return d.replace(year=d.year + years, day=28)
