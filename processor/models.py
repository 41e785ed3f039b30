"""Data models for canonical event processing."""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


GEOCODE_SUCCESS = 'success'
GEOCODE_FAILED = 'failed'
GEOCODE_CACHED = 'cached'

CHANGE_INSERT = 'insert'
CHANGE_UPDATE = 'update'
CHANGE_DRY_RUN = 'dry-run'


@dataclass
class ParsedEvent:
    """Event extracted from an iCalendar feed."""
    title: str
    starts_at: str
    location: str
    latitude: Optional[str] = None
    longitude: Optional[str] = None
    source_url: Optional[str] = None
    timezone: Optional[str] = None


@dataclass
class GeocodeResult:
    """Outcome of a geocode resolution."""
    lat: Optional[float]
    lng: Optional[float]
    status: str
    attempted_at: str


@dataclass
class CanonicalEventRecord:
    """One persisted row per real-world event."""
    canonical_uid: str
    title: str
    location_raw: str
    starts_at: str
    geocode_status: str
    geocode_attempted_at: Optional[str]
    description: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    tz: str = 'UTC'
    source_refs: List[Dict[str, Any]] = field(default_factory=list)
    raw_payload: Optional[str] = None
    event_version: int = 1
    id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass
class ChangeLogEntry:
    """Append-only audit record of a sync decision."""
    change_type: str
    payload: Dict[str, Any]
    canonical_event_id: Optional[str] = None
    id: Optional[str] = None
    created_at: Optional[str] = None


@dataclass
class SyncStats:
    """Result of a full sync run."""
    processed: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    dry_run_only: bool = True
    duration_ms: int = 0
