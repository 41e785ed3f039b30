"""
Canonical event sync worker.

Syncs events from iCal feeds into the canonical events table:

- dry-run mode that only writes audit records
- idempotent upserts keyed by canonical UID, safe to re-run
- geocoding with a 24 hour retry cooldown
- one change log entry per insert, update or dry-run decision; record
  writes and their entry land in a single store transaction
"""
import json
import logging
import time
from dataclasses import asdict
from datetime import timedelta
from typing import Callable, Optional

from processor.canonical_uid import canonical_uid
from processor.exceptions import CalendarNotFoundError, SyncSetupError
from processor.geocoder import GeocodeCache, GeocodeResolver, MapboxGeocoder
from processor.models import (
    CHANGE_DRY_RUN,
    CHANGE_INSERT,
    CHANGE_UPDATE,
    GEOCODE_FAILED,
    CanonicalEventRecord,
    ChangeLogEntry,
    ParsedEvent,
    SyncStats,
)
from processor.timestamps import parse_iso_timestamp, to_iso_utc, utc_now
from scraper.calendar_fetcher import CalendarSourceResolver, IcsCalendarFetcher
from storage.dynamodb_manager import DynamoDBEventStore

logger = logging.getLogger(__name__)

GEOCODE_RETRY_COOLDOWN = timedelta(hours=24)
DEFAULT_TIMEZONE = 'UTC'

OUTCOME_INSERTED = 'inserted'
OUTCOME_UPDATED = 'updated'
OUTCOME_SKIPPED = 'skipped'
OUTCOME_DRY_RUN = 'dry-run'


class CanonicalEventSyncWorker:
    """Drives a sync run from calendar sources to the canonical events store."""

    def __init__(
        self,
        store,
        fetcher,
        source_resolver,
        geocoder: GeocodeResolver,
        settings,
        clock: Callable = utc_now
    ):
        """
        Args:
            store: Canonical events store (see storage.dynamodb_manager)
            fetcher: Object with ``fetch_all_calendar_events(urls)``
            source_resolver: Object with ``get_calendar_urls()``
            geocoder: Resolver used for inserts and geocode retries
            settings: WorkerSettings with the dry-run and write flags
            clock: Returns the current aware datetime
        """
        self.store = store
        self.fetcher = fetcher
        self.source_resolver = source_resolver
        self.geocoder = geocoder
        self.settings = settings
        self.clock = clock

    def sync(
        self,
        dry_run: Optional[bool] = None,
        calendar_id: Optional[str] = None,
        verbose: bool = False
    ) -> SyncStats:
        """
        Run a full sync.

        Args:
            dry_run: Override the configured dry-run default
            calendar_id: Only process calendar URLs containing this value
            verbose: Log every per-event decision at INFO

        Returns:
            SyncStats for the run

        Raises:
            CalendarNotFoundError: If ``calendar_id`` matches no calendar
            SyncSetupError: If apply mode is requested with a restricted store
        """
        start_time = time.monotonic()
        is_dry_run = self._resolve_dry_run(dry_run)
        stats = SyncStats(dry_run_only=is_dry_run)
        log = logger.info if verbose else logger.debug

        try:
            logger.info(
                "Starting canonical event sync",
                extra={
                    'dry_run': is_dry_run,
                    'writes_enabled': self.settings.writes_enabled,
                    'calendar_id': calendar_id
                }
            )

            if not is_dry_run and not self.store.has_elevated_access:
                raise SyncSetupError(
                    "Apply mode requires a store client with elevated access"
                )

            calendar_urls = self.source_resolver.get_calendar_urls()
            log(f"Fetched {len(calendar_urls)} calendar URLs from config")

            if calendar_id:
                calendar_urls = [url for url in calendar_urls if calendar_id in url]
                if not calendar_urls:
                    raise CalendarNotFoundError(calendar_id)

            if not calendar_urls:
                logger.warning("No calendar URLs configured, nothing to sync")
                stats.duration_ms = _elapsed_ms(start_time)
                return stats

            log(f"Processing {len(calendar_urls)} calendar(s)")
            events = self.fetcher.fetch_all_calendar_events(calendar_urls)
            log(f"Fetched {len(events)} events from iCal feeds")

            for event in events:
                try:
                    outcome = self.process_event(event, is_dry_run, verbose)
                except Exception as e:
                    logger.error(
                        f"Error processing event '{event.title}': {e}",
                        exc_info=True
                    )
                    stats.errors += 1
                    continue

                stats.processed += 1
                if outcome == OUTCOME_INSERTED:
                    stats.inserted += 1
                elif outcome == OUTCOME_UPDATED:
                    stats.updated += 1
                else:
                    stats.skipped += 1

            stats.duration_ms = _elapsed_ms(start_time)
            logger.info(f"Sync complete: {asdict(stats)}")
            return stats

        except Exception as e:
            stats.duration_ms = _elapsed_ms(start_time)
            logger.error(f"Fatal error during sync: {e}", exc_info=True)
            raise

    def process_event(self, event: ParsedEvent, is_dry_run: bool, verbose: bool = False) -> str:
        """
        Sync a single event.

        Returns:
            One of ``inserted``, ``updated``, ``skipped`` or ``dry-run``

        Raises:
            Exception: Store errors propagate to the per-event boundary
        """
        log = logger.info if verbose else logger.debug
        uid = canonical_uid(event)
        log(f"Processing event: '{event.title}' (UID: {uid})")

        existing = self.store.find_by_canonical_uid(uid)

        if is_dry_run:
            self._log_dry_run(uid, existing, event, log)
            return OUTCOME_DRY_RUN

        if existing is None:
            self._insert_new_event(uid, event, log)
            return OUTCOME_INSERTED

        return self._update_existing_event(existing, event, log)

    def should_retry_geocode(self, record: CanonicalEventRecord) -> bool:
        """
        Decide whether a stored event needs another geocoding attempt.

        Incomplete or failed geocodes are retried at most once per cooldown.
        """
        incomplete = (
            record.lat is None
            or record.lng is None
            or record.geocode_status == GEOCODE_FAILED
        )
        if not incomplete:
            return False

        if not record.geocode_attempted_at:
            return True

        last_attempt = parse_iso_timestamp(record.geocode_attempted_at)
        return self.clock() - last_attempt > GEOCODE_RETRY_COOLDOWN

    def _resolve_dry_run(self, dry_run: Optional[bool]) -> bool:
        is_dry_run = self.settings.dry_run if dry_run is None else dry_run
        if not is_dry_run and not self.settings.writes_enabled:
            logger.warning(
                "Canonical event writes are disabled, running in dry-run mode"
            )
            return True
        return is_dry_run

    def _log_dry_run(
        self,
        uid: str,
        existing: Optional[CanonicalEventRecord],
        event: ParsedEvent,
        log
    ) -> None:
        action = 'would-update' if existing else 'would-insert'

        self.store.append_change_log(ChangeLogEntry(
            canonical_event_id=existing.id if existing else None,
            change_type=CHANGE_DRY_RUN,
            payload={
                'action': action,
                'canonical_uid': uid,
                'event_name': event.title,
                'location': event.location,
                'starts_at': event.starts_at,
            }
        ))

        log(f"DRY-RUN: {uid} - {action}")

    def _insert_new_event(self, uid: str, event: ParsedEvent, log) -> None:
        geocode = self.geocoder.resolve(event)
        if geocode.status == GEOCODE_FAILED:
            log(f"Geocoding failed for '{event.location}'")

        record = CanonicalEventRecord(
            canonical_uid=uid,
            title=event.title,
            description=event.source_url or None,
            location_raw=event.location,
            lat=geocode.lat,
            lng=geocode.lng,
            geocode_status=geocode.status,
            geocode_attempted_at=geocode.attempted_at,
            starts_at=event.starts_at,
            tz=event.timezone or DEFAULT_TIMEZONE,
            source_refs=[{
                'event_url': event.source_url,
                'fetched_at': to_iso_utc(self.clock()),
            }],
            raw_payload=json.dumps(asdict(event)),
            event_version=1,
        )
        self.store.insert(
            record,
            change=ChangeLogEntry(
                change_type=CHANGE_INSERT,
                payload={'event_name': event.title, 'uid': uid}
            )
        )

        log(f"Inserted: {uid} - '{event.title}'")

    def _update_existing_event(
        self,
        existing: CanonicalEventRecord,
        event: ParsedEvent,
        log
    ) -> str:
        if not self.should_retry_geocode(existing):
            log(f"Skipped (already complete or recently attempted): '{event.title}'")
            return OUTCOME_SKIPPED

        geocode = self.geocoder.resolve(event)
        if geocode.status == GEOCODE_FAILED:
            log(f"Geocoding failed again for '{event.location}'")

        self.store.update(
            existing.canonical_uid,
            {
                'lat': geocode.lat,
                'lng': geocode.lng,
                'geocode_status': geocode.status,
                'geocode_attempted_at': geocode.attempted_at,
                'event_version': existing.event_version + 1,
                'updated_at': to_iso_utc(self.clock()),
            },
            expected_version=existing.event_version,
            change=ChangeLogEntry(
                canonical_event_id=existing.id,
                change_type=CHANGE_UPDATE,
                payload={'action': 'geocode_update', 'event_name': event.title}
            )
        )

        log(f"Updated: {existing.id} - '{event.title}'")
        return OUTCOME_UPDATED


def create_sync_worker(settings, dynamodb=None) -> CanonicalEventSyncWorker:
    """
    Wire up a worker from settings.

    Args:
        settings: WorkerSettings
        dynamodb: Optional boto3 DynamoDB resource
    """
    store = DynamoDBEventStore(
        events_table_name=settings.events_table_name,
        changes_table_name=settings.changes_table_name,
        calendars_table_name=settings.calendars_table_name,
        has_elevated_access=settings.store_elevated_access,
        dynamodb=dynamodb
    )
    geocoder = GeocodeResolver(
        provider=MapboxGeocoder(settings.mapbox_token, timeout=settings.timeout_seconds),
        cache=GeocodeCache()
    )

    return CanonicalEventSyncWorker(
        store=store,
        fetcher=IcsCalendarFetcher(timeout=settings.timeout_seconds),
        source_resolver=CalendarSourceResolver(store, settings.fallback_calendar_urls),
        geocoder=geocoder,
        settings=settings
    )


def _elapsed_ms(start_time: float) -> int:
    return int((time.monotonic() - start_time) * 1000)
