"""Timestamp helpers shared by the parser, fingerprinting and the sync worker."""
from datetime import datetime, timezone


def to_iso_utc(value: datetime) -> str:
    """
    Format a datetime as ISO 8601 UTC with millisecond precision.

    Naive datetimes are taken to be UTC. Sub-millisecond precision is
    truncated, e.g. ``2025-11-15T18:00:00.000Z``.

    Args:
        value: Datetime to format

    Returns:
        ISO 8601 string ending in ``Z``
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    millis = value.microsecond // 1000
    return value.strftime('%Y-%m-%dT%H:%M:%S') + f'.{millis:03d}Z'


def parse_iso_timestamp(value: str) -> datetime:
    """
    Parse an ISO 8601 timestamp into an aware UTC datetime.

    Accepts a ``Z`` suffix, numeric offsets and any fractional precision.
    Timestamps without an offset are read as UTC.

    Raises:
        ValueError: If the value is not an ISO 8601 timestamp
    """
    if not value:
        raise ValueError("Empty timestamp")

    text = value.strip()
    if text.endswith(('Z', 'z')):
        text = text[:-1] + '+00:00'

    # fromisoformat only accepts 3 or 6 fractional digits before 3.11
    if '.' in text:
        head, _, tail = text.partition('.')
        digits = ''
        while tail and tail[0].isdigit():
            digits += tail[0]
            tail = tail[1:]
        text = f"{head}.{digits[:6].ljust(6, '0')}{tail}"

    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)
