"""Shared utility functions used by services.

parse_datetime:  lenient date/datetime parsing (returns None on bad input)
"""
from datetime import date, datetime, timezone


def parse_datetime(value):
    """Parse a date or datetime value to a timezone-aware UTC datetime.

    Returns None for empty/invalid input. Supports:
    - datetime / date objects
    - YYYY-MM-DD (ISO date, midnight UTC)
    - YYYY-MM-DDTHH:MM:SS[+HH:MM|Z] (ISO datetime)
    - DD.MM.YYYY (European format)

    Naive values are interpreted as UTC so that comparisons between form
    input and configured thresholds never mix aware and naive datetimes.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except (ValueError, TypeError):
            try:
                parsed = datetime.strptime(text, "%d.%m.%Y")
            except (ValueError, TypeError):
                return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
