"""
Canonical UID generation for event deduplication.

The same event is often published by several feeds with cosmetically
different titles, locations and timestamp encodings. Normalizing those
fields and hashing the result gives every real-world event one stable
identity, which is the dedup key of the canonical events table.

16^12 possible UIDs keeps the collision chance around 1 in 280 million
for a million events.
"""
import hashlib
import json
import re
from typing import Dict, Iterable, Optional

from processor.models import ParsedEvent
from processor.timestamps import parse_iso_timestamp, to_iso_utc

UID_LENGTH = 12

_WHITESPACE_RE = re.compile(r'\s+')
_COMMA_RE = re.compile(r',\s*')
_LUMA_PREFIX_RE = re.compile(r'https?://(www\.)?lu\.ma/', re.IGNORECASE)
_TRAILING_SLASHES_RE = re.compile(r'/+$')
_TRAILING_PUNCTUATION_RE = re.compile(r'[!?.]+$')
_VALID_UID_RE = re.compile(r'^[0-9a-f]{12}$')


def normalize_location(location: Optional[str]) -> str:
    """
    Normalize a location string for consistent hashing.

    Handles URLs, addresses and spacing differences. Luma event pages
    reached through different URL spellings collapse to ``luma/<slug>``.

    Args:
        location: Free text address or URL

    Returns:
        Normalized location, empty string if missing
    """
    if not location:
        return ''

    value = location.lower().strip()
    value = _WHITESPACE_RE.sub(' ', value)
    value = _COMMA_RE.sub(',', value)
    value = _LUMA_PREFIX_RE.sub('luma/', value)
    return _TRAILING_SLASHES_RE.sub('', value)


def normalize_title(title: Optional[str]) -> str:
    """
    Normalize an event title for consistent hashing.

    Args:
        title: Event title

    Returns:
        Normalized title, empty string if missing
    """
    if not title:
        return ''

    value = title.lower().strip()
    value = _WHITESPACE_RE.sub(' ', value)
    value = (
        value.replace('‘', "'")
        .replace('’', "'")
        .replace('“', '"')
        .replace('”', '"')
        .replace('–', '-')
    )
    return _TRAILING_PUNCTUATION_RE.sub('', value)


def canonical_uid(event: ParsedEvent) -> str:
    """
    Generate the canonical UID of an event.

    Args:
        event: Parsed event

    Returns:
        12 character lowercase hex string

    Raises:
        ValueError: If the event start time is not an ISO 8601 timestamp
    """
    # Absorbs millisecond and zone suffix variations of the same instant
    starts_at = to_iso_utc(parse_iso_timestamp(event.starts_at))

    normalized = {
        'title': normalize_title(event.title),
        'location': normalize_location(event.location),
        'startsAt': starts_at,
    }
    serialized = json.dumps(
        normalized,
        sort_keys=True,
        separators=(',', ':'),
        ensure_ascii=False
    )

    digest = hashlib.sha256(serialized.encode('utf-8')).hexdigest()
    return digest[:UID_LENGTH]


def is_valid_canonical_uid(uid: str) -> bool:
    """Check that a UID is exactly 12 lowercase hex characters."""
    if not isinstance(uid, str):
        return False
    return bool(_VALID_UID_RE.fullmatch(uid))


def generate_canonical_uids(events: Iterable[ParsedEvent]) -> Dict[str, ParsedEvent]:
    """
    Group events by canonical UID, keeping the first occurrence.

    Earlier sources win when the same event appears in several feeds.

    Args:
        events: Parsed events in source order

    Returns:
        Insertion-ordered mapping of UID to the first event seen
    """
    uid_map: Dict[str, ParsedEvent] = {}
    for event in events:
        uid_map.setdefault(canonical_uid(event), event)
    return uid_map


def are_events_duplicate(event1: ParsedEvent, event2: ParsedEvent) -> bool:
    """Check whether two events share a canonical UID."""
    return canonical_uid(event1) == canonical_uid(event2)
