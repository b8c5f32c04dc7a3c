"""Source and event persistence."""

from __future__ import annotations

from .errors import TimezoneAwareRequiredError, UnsupportedDialectError
from .events import EventCandidate, EventStore, StoredEvent, collapse_duplicates
from .sources import SourceInfo, SourceRepository
from .storage import (
    DEFAULT_FETCH_INTERVAL_SECONDS,
    MIN_FETCH_INTERVAL_SECONDS,
    Base,
    EventRecord,
    SourceRecord,
    SourceType,
    UTCDateTime,
    init_storage,
)

__all__ = [
    "DEFAULT_FETCH_INTERVAL_SECONDS",
    "MIN_FETCH_INTERVAL_SECONDS",
    "Base",
    "EventCandidate",
    "EventRecord",
    "EventStore",
    "SourceInfo",
    "SourceRecord",
    "SourceRepository",
    "SourceType",
    "StoredEvent",
    "TimezoneAwareRequiredError",
    "UTCDateTime",
    "UnsupportedDialectError",
    "collapse_duplicates",
    "init_storage",
]
