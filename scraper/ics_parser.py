"""iCalendar (ICS) parser producing ParsedEvent objects."""
import logging
import re
from datetime import datetime, time, timezone
from typing import Dict, Iterator, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from processor.models import ParsedEvent
from processor.timestamps import parse_iso_timestamp, to_iso_utc

logger = logging.getLogger(__name__)

CALENDAR_MARKER = 'BEGIN:VCALENDAR'

_LINE_SPLIT_RE = re.compile(r'\r?\n')
_EVENT_URL_RE = re.compile(r'https://lu\.ma/[^\s\\]+')
_ADDRESS_RE = re.compile(r'Address:\s*([^\n]+)')


def decode_ics_lines(ics_text: str) -> Iterator[Tuple[str, str]]:
    """
    Decode raw ICS text into logical ``(key, value)`` property lines.

    Folded lines (RFC 5545 section 3.1) start with a space or tab and are
    joined to the previous logical line. The join inserts a single space,
    except when either side contains ``https://`` so that folded URLs
    survive intact.

    Args:
        ics_text: Raw calendar document

    Yields:
        Tuples of property key (including any parameters) and raw value
    """
    pending: Optional[List[str]] = None

    for line in _LINE_SPLIT_RE.split(ics_text):
        if line[:1] in (' ', '\t'):
            if pending is None:
                continue
            continuation = line[1:]
            if 'https://' in pending[1] or 'https://' in continuation:
                pending[1] += continuation
            else:
                pending[1] += ' ' + continuation
            continue

        if pending is not None:
            yield pending[0], pending[1]
            pending = None

        line = line.rstrip()
        if ':' in line:
            key, _, value = line.partition(':')
            pending = [key, value]

    if pending is not None:
        yield pending[0], pending[1]


def unescape_value(value: str) -> str:
    """Undo ICS text escaping for newlines, backslashes and commas."""
    return value.replace('\\n', '\n').replace('\\\\', '\\').replace('\\,', ',')


def split_property_key(key: str) -> Tuple[str, Dict[str, str]]:
    """
    Split a property key into its name and parameters.

    ``DTSTART;TZID=Europe/Berlin`` gives ``('DTSTART', {'TZID': 'Europe/Berlin'})``.
    """
    name, *raw_params = key.split(';')
    params = {}
    for raw in raw_params:
        param, _, param_value = raw.partition('=')
        params[param.strip().upper()] = param_value.strip().strip('"')
    return name.strip().upper(), params


def parse_dtstart(value: str, tzid: Optional[str] = None) -> Optional[datetime]:
    """
    Parse a DTSTART value into an aware UTC datetime.

    Supports the UTC form ``YYYYMMDDTHHMMSSZ`` and the bare forms
    ``YYYYMMDD`` and ``YYYYMMDDTHHMM[SS]``. Bare values are read in the
    ``TZID`` zone when one is given, otherwise in local time.

    Args:
        value: DTSTART property value
        tzid: Optional TZID parameter

    Returns:
        UTC datetime, or None if the value cannot be parsed
    """
    value = value.strip()

    try:
        if 'T' in value and value.endswith('Z'):
            seconds = value[13:15]
            parsed = datetime(
                int(value[0:4]),
                int(value[4:6]),
                int(value[6:8]),
                int(value[9:11]),
                int(value[11:13]),
                int(seconds) if seconds.isdigit() else 0,
                tzinfo=timezone.utc
            )
            return parsed

        digits = value.replace('T', '').replace('Z', '')
        if len(digits) < 8:
            return None

        hour = minute = second = 0
        if len(digits) >= 12:
            hour = int(digits[8:10])
            minute = int(digits[10:12])
        if len(digits) >= 14:
            second = int(digits[12:14])

        local = datetime(
            int(digits[0:4]),
            int(digits[4:6]),
            int(digits[6:8]),
            hour,
            minute,
            second
        )
    except ValueError:
        return None

    zone = _load_zone(tzid)
    if zone is not None:
        return local.replace(tzinfo=zone).astimezone(timezone.utc)
    return local.astimezone(timezone.utc)


def _load_zone(tzid: Optional[str]) -> Optional[ZoneInfo]:
    if not tzid:
        return None
    try:
        return ZoneInfo(tzid)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown TZID '{tzid}', using local time")
        return None


def process_event_property(key: str, value: str, event: Dict[str, Optional[str]]) -> None:
    """
    Apply one decoded property line to the event being assembled.

    Args:
        key: Property key, possibly with parameters
        value: Raw property value
        event: Fields collected so far for the current VEVENT
    """
    name, params = split_property_key(key)
    value = unescape_value(value)

    if name == 'SUMMARY':
        event['title'] = value

    elif name == 'DTSTART':
        tzid = params.get('TZID')
        starts_at = parse_dtstart(value, tzid)
        if starts_at is None:
            logger.warning(f"Could not parse date: {value}")
            return
        event['starts_at'] = to_iso_utc(starts_at)
        if tzid:
            event['timezone'] = tzid

    elif name == 'LOCATION':
        event['location'] = value

    elif name == 'DESCRIPTION':
        url_match = _EVENT_URL_RE.search(value)
        if url_match:
            event['source_url'] = url_match.group(0).rstrip('\\')

        location = event.get('location')
        if not location or location.startswith('http'):
            address_match = _ADDRESS_RE.search(value)
            if address_match:
                event['location'] = address_match.group(1).strip()

    elif name == 'GEO':
        coords = value.split(';')
        if len(coords) == 2:
            event['latitude'] = coords[0]
            event['longitude'] = coords[1]


def parse_ics(ics_text: str, now: Optional[datetime] = None) -> List[ParsedEvent]:
    """
    Extract upcoming events from an ICS document.

    Events are kept when they have a title, a location and a start on or
    after local midnight today. Documents that are not calendars, or that
    fail to parse, produce an empty list.

    Args:
        ics_text: Raw calendar document
        now: Reference time, defaults to the current local time

    Returns:
        ParsedEvent objects sorted by start time
    """
    if CALENDAR_MARKER not in ics_text:
        logger.warning("Document does not appear to be iCal data")
        return []

    if now is None or now.tzinfo is None:
        # Resolve the offset at midnight itself, which differs from now's on DST change days
        local_date = (now or datetime.now()).date()
        today = datetime.combine(local_date, time.min).astimezone()
    else:
        today = datetime.combine(now.date(), time.min, tzinfo=now.tzinfo)

    events: List[ParsedEvent] = []

    try:
        current: Dict[str, Optional[str]] = {}
        in_event = False

        for key, value in decode_ics_lines(ics_text):
            if key == 'BEGIN' and value.strip() == 'VEVENT':
                in_event = True
                current = {}
            elif key == 'END' and value.strip() == 'VEVENT' and in_event:
                event = _admit_event(current, today)
                if event:
                    events.append(event)
                in_event = False
                current = {}
            elif in_event:
                process_event_property(key, value, current)

        events.sort(key=lambda e: parse_iso_timestamp(e.starts_at))
        return events

    except Exception as e:
        logger.error(f"Error parsing ICS data: {e}", exc_info=True)
        return []


def _admit_event(fields: Dict[str, Optional[str]], today: datetime) -> Optional[ParsedEvent]:
    starts_at = fields.get('starts_at')
    if not starts_at or parse_iso_timestamp(starts_at) < today:
        return None
    if not fields.get('title') or not fields.get('location'):
        return None

    return ParsedEvent(
        title=fields['title'],
        starts_at=starts_at,
        location=fields['location'],
        latitude=fields.get('latitude'),
        longitude=fields.get('longitude'),
        source_url=fields.get('source_url'),
        timezone=fields.get('timezone')
    )
