"""Geocode resolution for event locations."""
import json
import logging
from typing import Callable, Dict, Optional, Tuple
from urllib.parse import quote

import requests

from processor.canonical_uid import normalize_location
from processor.models import (
    GEOCODE_CACHED,
    GEOCODE_FAILED,
    GEOCODE_SUCCESS,
    GeocodeResult,
    ParsedEvent,
)
from processor.timestamps import to_iso_utc, utc_now

logger = logging.getLogger(__name__)

Coordinates = Tuple[float, float]

# (venue token, city tokens, (lat, lng)); first match wins
KNOWN_VENUES = [
    ('zo house', ('bangalore', 'koramangala'), (12.932658, 77.634402)),
    ('zo house', ('san francisco', 'sf'), (37.7817309, -122.401198)),
    ('zo house', ('whitefield',), (12.9725, 77.745)),
]


class MapboxGeocoder:
    """Forward geocoding through the Mapbox Geocoding API."""

    BASE_URL = "https://api.mapbox.com/geocoding/v5/mapbox.places"

    def __init__(
        self,
        access_token: str,
        timeout: int = 30,
        session: Optional[requests.Session] = None
    ):
        """
        Args:
            access_token: Mapbox access token
            timeout: HTTP request timeout in seconds (default: 30)
            session: Optional requests session
        """
        self.access_token = access_token
        self.timeout = timeout
        self.session = session or requests.Session()

    def geocode(self, location: str) -> Optional[Coordinates]:
        """
        Look up coordinates for a free text place name.

        Args:
            location: Place name or address

        Returns:
            (lat, lng) of the first result, or None when nothing usable
            came back
        """
        if not self.access_token:
            logger.warning("Mapbox token not available for geocoding")
            return None

        url = f"{self.BASE_URL}/{quote(location, safe='')}.json"
        response = self.session.get(
            url,
            params={'access_token': self.access_token},
            timeout=self.timeout
        )

        if not response.ok:
            logger.warning(
                f"Geocoding API error: {response.status_code} {response.reason}"
            )
            return None

        body = response.text
        if not body.strip():
            logger.warning("Empty response from geocoding API")
            return None

        try:
            data = json.loads(body)
        except ValueError:
            logger.warning(f"Invalid JSON from geocoding API: {body[:200]}")
            return None

        features = data.get('features') if isinstance(data, dict) else None
        if not features:
            return None

        center = features[0].get('center') or []
        if len(center) < 2:
            logger.warning(f"Geocoding result without center for '{location}'")
            return None

        lng, lat = center[:2]
        return float(lat), float(lng)


class GeocodeCache:
    """
    Remembers geocode outcomes per normalized location.

    Built once per process and handed to the resolver, so repeated
    locations within a run hit the provider only once.
    """

    def __init__(self):
        self._entries: Dict[str, Optional[Coordinates]] = {}

    def get(self, location: str) -> Tuple[bool, Optional[Coordinates]]:
        key = normalize_location(location)
        if key in self._entries:
            return True, self._entries[key]
        return False, None

    def put(self, location: str, coords: Optional[Coordinates]) -> None:
        self._entries[normalize_location(location)] = coords

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class GeocodeResolver:
    """Resolves event coordinates, absorbing every provider failure."""

    def __init__(
        self,
        provider,
        cache: Optional[GeocodeCache] = None,
        clock: Callable = utc_now
    ):
        """
        Args:
            provider: Object with ``geocode(location) -> (lat, lng) | None``
            cache: Optional cache shared across resolutions
            clock: Returns the current aware datetime
        """
        self.provider = provider
        self.cache = cache
        self.clock = clock

    def resolve(self, event: ParsedEvent) -> GeocodeResult:
        """
        Resolve coordinates for an event.

        Existing feed coordinates win, URL locations are never geocoded,
        known venues skip the provider, then the cache and the provider
        are consulted.

        Args:
            event: Parsed event

        Returns:
            GeocodeResult with status success, failed or cached
        """
        attempted_at = to_iso_utc(self.clock())

        if event.latitude and event.longitude:
            try:
                return GeocodeResult(
                    lat=float(event.latitude),
                    lng=float(event.longitude),
                    status=GEOCODE_CACHED,
                    attempted_at=attempted_at
                )
            except ValueError:
                logger.warning(
                    f"Ignoring malformed GEO for '{event.title}': "
                    f"{event.latitude};{event.longitude}"
                )

        location = event.location or ''
        if not location.strip() or location.startswith('http'):
            return self._failed(attempted_at)

        venue_coords = lookup_known_venue(location)
        if venue_coords:
            lat, lng = venue_coords
            return GeocodeResult(lat, lng, GEOCODE_SUCCESS, attempted_at)

        if self.cache is not None:
            hit, cached_coords = self.cache.get(location)
            if hit:
                if cached_coords is None:
                    return self._failed(attempted_at)
                lat, lng = cached_coords
                return GeocodeResult(lat, lng, GEOCODE_CACHED, attempted_at)

        try:
            coords = self.provider.geocode(location)
        except Exception as e:
            logger.warning(f"Geocoding failed for '{location}': {e}")
            coords = None

        if self.cache is not None:
            self.cache.put(location, coords)

        if coords is None:
            logger.debug(f"Geocoding failed for '{location}'")
            return self._failed(attempted_at)

        lat, lng = coords
        return GeocodeResult(lat, lng, GEOCODE_SUCCESS, attempted_at)

    @staticmethod
    def _failed(attempted_at: str) -> GeocodeResult:
        return GeocodeResult(
            lat=None,
            lng=None,
            status=GEOCODE_FAILED,
            attempted_at=attempted_at
        )


def lookup_known_venue(location: str) -> Optional[Coordinates]:
    """Return pre-registered coordinates for a recognized venue, if any."""
    lowered = location.lower()
    for venue, cities, coords in KNOWN_VENUES:
        if venue in lowered and any(city in lowered for city in cities):
            return coords
    return None
