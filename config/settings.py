"""Worker configuration read from environment variables."""
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

DEFAULT_FALLBACK_CALENDAR_URLS = [
    'https://api2.luma.com/ics/get?entity=calendar&id=cal-ZVonmjVxLk7F2oM',  # Zo House Bangalore
    'https://api2.luma.com/ics/get?entity=calendar&id=cal-3YNnBTToy9fnnjQ',  # Zo House San Francisco
    'https://api2.luma.com/ics/get?entity=calendar&id=cal-4BIGfE8WhTFQj9H',  # ETHGlobal
]

MAPBOX_TOKEN_VARIABLES = (
    'MAPBOX_TOKEN',
    'MAPBOX_ACCESS_TOKEN',
    'MAPBOX_GL_ACCESS_TOKEN',
)


@dataclass
class WorkerSettings:
    """
    Settings for a sync process, loaded once at start-up.

    Both safety flags default to the non-mutating state: runs are dry
    runs and canonical event writes are disabled.
    """
    dry_run: bool = True
    writes_enabled: bool = False
    events_table_name: str = 'canonical_events'
    changes_table_name: str = 'canonical_event_changes'
    calendars_table_name: Optional[str] = 'calendars'
    store_elevated_access: bool = True
    mapbox_token: str = ''
    fallback_calendar_urls: List[str] = field(
        default_factory=lambda: list(DEFAULT_FALLBACK_CALENDAR_URLS)
    )
    timeout_seconds: int = 30
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'WorkerSettings':
        """
        Build settings from environment variables.

        Args:
            environ: Mapping to read instead of ``os.environ``
        """
        env = os.environ if environ is None else environ

        fallback = env.get('FALLBACK_CALENDAR_URLS')
        if fallback is None:
            fallback_urls = list(DEFAULT_FALLBACK_CALENDAR_URLS)
        else:
            fallback_urls = [url.strip() for url in fallback.split(',') if url.strip()]

        mapbox_token = next(
            (env[name] for name in MAPBOX_TOKEN_VARIABLES if env.get(name)),
            ''
        )

        return cls(
            dry_run=env.get('CANONICAL_DRY_RUN', 'true').lower() != 'false',
            writes_enabled=env.get('FEATURE_CANONICAL_EVENTS_WRITE', 'false').lower() == 'true',
            events_table_name=env.get('EVENTS_TABLE_NAME', 'canonical_events'),
            changes_table_name=env.get('CHANGES_TABLE_NAME', 'canonical_event_changes'),
            calendars_table_name=env.get('CALENDARS_TABLE_NAME', 'calendars') or None,
            store_elevated_access=env.get('STORE_ELEVATED_ACCESS', 'true').lower() != 'false',
            mapbox_token=mapbox_token,
            fallback_calendar_urls=fallback_urls,
            timeout_seconds=int(env.get('TIMEOUT_SECONDS', '30')),
            log_level=env.get('LOG_LEVEL', 'INFO'),
        )

    def feature_flag_state(self) -> Dict[str, Any]:
        """Flag state for start-up logging."""
        return {
            'dry_run': self.dry_run,
            'writes_enabled': self.writes_enabled,
            'worker_writing': self.writes_enabled and not self.dry_run,
            'store_elevated_access': self.store_elevated_access,
            'geocoding_configured': bool(self.mapbox_token),
        }
