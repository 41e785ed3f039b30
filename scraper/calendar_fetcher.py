"""Calendar feed fetching and source resolution."""
import logging
from typing import List, Optional, Sequence

import requests

from processor.models import ParsedEvent
from scraper.ics_parser import CALENDAR_MARKER, parse_ics

logger = logging.getLogger(__name__)


class IcsCalendarFetcher:
    """Fetches ICS feeds over HTTP and parses their events."""

    ACCEPT_HEADER = 'text/calendar, text/plain, */*'

    def __init__(self, timeout: int = 30, session: Optional[requests.Session] = None):
        """
        Initialize the calendar fetcher.

        Args:
            timeout: HTTP request timeout in seconds (default: 30)
            session: Optional requests session to reuse connections
        """
        self.timeout = timeout
        self.session = session or requests.Session()

    def fetch_all_calendar_events(self, calendar_urls: Sequence[str]) -> List[ParsedEvent]:
        """
        Fetch and parse events from every calendar URL, one after another.

        A calendar that fails to download or is not iCal data is logged
        and skipped; the remaining calendars are still fetched.

        Args:
            calendar_urls: ICS feed URLs

        Returns:
            Events from all calendars, in calendar order
        """
        all_events: List[ParsedEvent] = []

        for url in calendar_urls:
            ics_text = self.fetch_calendar(url)
            if ics_text is None:
                continue
            events = parse_ics(ics_text)
            logger.debug(f"Parsed {len(events)} events from {url}")
            all_events.extend(events)

        return all_events

    def fetch_calendar(self, url: str) -> Optional[str]:
        """
        Download a single calendar feed.

        No retries are made; a failed calendar is picked up by the next
        scheduled run.

        Args:
            url: ICS feed URL

        Returns:
            Calendar text, or None if the request failed or the payload
            is not a calendar
        """
        try:
            response = self.session.get(
                url,
                headers={'Accept': self.ACCEPT_HEADER},
                timeout=self.timeout
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.warning(f"Failed to fetch calendar {url}: {e}")
            return None

        ics_text = response.text
        if CALENDAR_MARKER not in ics_text:
            logger.warning(f"Response doesn't appear to be iCal data from {url}")
            return None

        return ics_text


class CalendarSourceResolver:
    """Resolves the calendar URLs a sync run should read."""

    def __init__(self, store, fallback_urls: Sequence[str] = ()):
        """
        Args:
            store: Store exposing ``get_active_calendars()``
            fallback_urls: URLs used when no active calendar is registered
        """
        self.store = store
        self.fallback_urls = list(fallback_urls)

    def get_calendar_urls(self) -> List[str]:
        """
        Return the URLs of all active calendars.

        Falls back to the configured URLs when the calendars table has no
        active rows. Store errors propagate to the caller.
        """
        calendars = self.store.get_active_calendars()
        urls = [calendar['url'] for calendar in calendars if calendar.get('url')]

        if not urls:
            logger.info(
                f"No active calendars registered, using {len(self.fallback_urls)} "
                f"fallback calendar URLs"
            )
            return list(self.fallback_urls)

        logger.info(f"Loaded {len(urls)} calendar URLs from the calendars table")
        return urls
