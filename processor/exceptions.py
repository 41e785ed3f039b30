"""Exceptions raised by the canonical event sync."""


class SyncError(Exception):
    """Base class for sync errors."""


class SyncSetupError(SyncError):
    """A run cannot start, e.g. a bad calendar filter or missing write access."""


class CalendarNotFoundError(SyncSetupError):
    """The calendar filter matched none of the configured sources."""

    def __init__(self, calendar_id: str):
        super().__init__(f"Calendar {calendar_id} not found")
        self.calendar_id = calendar_id


class StoreError(SyncError):
    """Base class for persistent store errors."""


class StoreAccessError(StoreError):
    """The store client is not allowed to write canonical events."""


class DuplicateCanonicalEventError(StoreError):
    """A record with the same canonical_uid already exists."""

    def __init__(self, canonical_uid: str):
        super().__init__(f"Canonical event {canonical_uid} already exists")
        self.canonical_uid = canonical_uid


class StaleEventVersionError(StoreError):
    """The record changed since it was read."""

    def __init__(self, canonical_uid: str, expected_version: int):
        super().__init__(
            f"Canonical event {canonical_uid} is no longer at version "
            f"{expected_version}"
        )
        self.canonical_uid = canonical_uid
        self.expected_version = expected_version
