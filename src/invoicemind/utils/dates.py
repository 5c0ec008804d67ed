"""Date helpers for German and ISO invoice dates."""

import re
from datetime import UTC, date, datetime

GERMAN_DATE_PATTERN = re.compile(r"(\d{1,2})\.(\d{1,2})\.(\d{2,4})")
ISO_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def parse_german_date(value: str) -> str | None:
    """Parse a DD.MM.YYYY or DD.MM.YY date into ISO format.

    Two-digit years above 50 are read as 19xx, the rest as 20xx.

    Args:
        value: Text containing a German formatted date

    Returns:
        The ISO date (YYYY-MM-DD), or None if no valid date was found
    """
    if not value:
        return None

    match = GERMAN_DATE_PATTERN.search(value)
    if not match:
        return None

    day, month, year = match.groups()
    if len(year) == 2:
        year = f"19{year}" if int(year) > 50 else f"20{year}"
    elif len(year) == 3:
        return None

    try:
        parsed = date(int(year), int(month), int(day))
    except ValueError:
        return None

    return parsed.isoformat()


def normalize_date(value: str) -> str | None:
    """Normalize a date in German, ISO or ISO-timestamp form to YYYY-MM-DD."""
    if not value:
        return None

    german = parse_german_date(value)
    if german:
        return german

    candidate = value.strip()
    if ISO_DATE_PATTERN.match(candidate):
        try:
            return date.fromisoformat(candidate).isoformat()
        except ValueError:
            return None

    try:
        return datetime.fromisoformat(candidate).date().isoformat()
    except ValueError:
        return None


def now_iso() -> str:
    """Current UTC timestamp in ISO 8601 format."""
    return datetime.now(UTC).isoformat()


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO timestamp, treating naive values as UTC."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def days_between(start: str, end: str) -> int:
    """Whole days between two ISO timestamps or dates, ignoring order."""
    delta = parse_timestamp(end) - parse_timestamp(start)
    return abs(delta).days
