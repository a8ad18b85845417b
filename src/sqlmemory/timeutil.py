"""Human-friendly time references for recency queries.

Supports:
- ISO format: "2025-01-15", "2025-01-15T14:30:00"
- Relative: "7 days ago", "2 weeks ago", "1 month ago"
- Named: "today", "yesterday", "last week", "last month", "last year"
"""

import re
from datetime import datetime, timezone

from dateutil import parser as dateparser
from dateutil.relativedelta import relativedelta

_AGO_PATTERN = re.compile(r"^(\d+)\s*(second|minute|hour|day|week|month|year)s?\s+ago$")

_NAMED_OFFSETS = {
    "last week": relativedelta(weeks=1),
    "last month": relativedelta(months=1),
    "last year": relativedelta(years=1),
}

# (unit, seconds) from largest to smallest; months and years are approximate
_UNITS = (
    ("year", 365 * 86400),
    ("month", 30 * 86400),
    ("week", 7 * 86400),
    ("day", 86400),
    ("hour", 3600),
    ("minute", 60),
)


def parse_time_reference(ref: str, now: datetime | None = None) -> datetime:
    """Parse a time reference into a timezone-aware UTC datetime.

    Args:
        ref: Time reference string
        now: Reference point for relative times (default: utcnow)

    Raises:
        ValueError: If the reference cannot be parsed
    """
    if now is None:
        now = datetime.now(timezone.utc)
    text = ref.strip().lower()

    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if text == "today":
        return midnight
    if text == "yesterday":
        return midnight - relativedelta(days=1)
    if text in _NAMED_OFFSETS:
        return now - _NAMED_OFFSETS[text]

    if match := _AGO_PATTERN.match(text):
        amount, unit = int(match.group(1)), match.group(2)
        return now - relativedelta(**{f"{unit}s": amount})

    try:
        parsed = dateparser.parse(ref.strip())
    except (ValueError, OverflowError) as e:
        raise ValueError(f"Cannot parse time reference: {ref}") from e
    if parsed is None:
        raise ValueError(f"Cannot parse time reference: {ref}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_relative_time(dt: datetime, now: datetime | None = None) -> str:
    """Format a datetime like "2 days ago" or "just now"."""
    if now is None:
        now = datetime.now(timezone.utc)

    seconds = int((now - dt).total_seconds())
    if seconds < 0:
        return "in the future"

    for unit, size in _UNITS:
        if seconds >= size:
            amount = seconds // size
            return f"{amount} {unit}{'s' if amount != 1 else ''} ago"
    return "just now"
