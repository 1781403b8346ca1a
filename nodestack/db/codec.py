"""Timestamp codec shared by SQLite-friendly repositories.

Timestamps are stored as ISO-8601 text in UTC so that lexical ordering matches
chronological ordering on every supported backend.
"""

from datetime import datetime, timezone


def db_format_timestamp(value: datetime | None) -> str | None:
    """Serialize a timestamp as UTC ISO-8601 text.

    Args:
        value: Timestamp to serialize. Naive values are treated as UTC.

    Returns:
        str | None: ISO-8601 text, or None when value is None.

    Raises:
        RuntimeError: This helper does not raise runtime errors.
    """

    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def db_parse_timestamp(value: object) -> datetime | None:
    """Parse a stored timestamp back into an aware UTC datetime."""

    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
