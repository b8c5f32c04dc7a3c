"""Observability primitives for the fetch and forward pipeline.

Provides structured lifecycle logging and error categorisation for fetch
runs, webhook deliveries, and schedule changes. Every event is a single
``[event.type] key=value ...`` line suitable for parsing by log aggregators.
"""

from __future__ import annotations

import enum
import logging
import typing as typ

from sqlalchemy.exc import (
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)

from .errors import (
    CredentialError,
    DeliveryError,
    SourceInactiveError,
    SourceNotFoundError,
    UpstreamError,
)
from .store.errors import TimezoneAwareRequiredError, UnsupportedDialectError

if typ.TYPE_CHECKING:
    import datetime as dt

    from .fetch.worker import FetchResult, FetchWindow

logger = logging.getLogger(__name__)

_HTTP_SERVER_ERROR_THRESHOLD = 500


class PipelineEventType(enum.StrEnum):
    """Structured log event types for pipeline observability."""

    FETCH_STARTED = "fetch.started"
    FETCH_COMPLETED = "fetch.completed"
    FETCH_SKIPPED = "fetch.skipped"
    FETCH_FAILED = "fetch.failed"
    FORWARD_COMPLETED = "forward.completed"
    FORWARD_FAILED = "forward.failed"
    SOURCE_DEACTIVATED = "source.deactivated"
    SCHEDULE_CREATED = "schedule.created"
    SCHEDULE_REMOVED = "schedule.removed"


class ErrorCategory(enum.StrEnum):
    """Categories for error classification in alerts."""

    TRANSIENT = "transient"
    CLIENT_ERROR = "client_error"
    CREDENTIAL = "credential"
    CONFIGURATION = "configuration"
    MISSING_SOURCE = "missing_source"
    INACTIVE_SOURCE = "inactive_source"
    DATABASE_CONNECTIVITY = "database_connectivity"
    DATA_INTEGRITY = "data_integrity"
    DATABASE_ERROR = "database_error"
    UNKNOWN = "unknown"


_EXCEPTION_CATEGORY_MAP: tuple[tuple[type[BaseException], ErrorCategory], ...] = (
    (CredentialError, ErrorCategory.CREDENTIAL),
    (SourceNotFoundError, ErrorCategory.MISSING_SOURCE),
    (SourceInactiveError, ErrorCategory.INACTIVE_SOURCE),
    (UnsupportedDialectError, ErrorCategory.CONFIGURATION),
    (TimezoneAwareRequiredError, ErrorCategory.DATA_INTEGRITY),
    (OperationalError, ErrorCategory.DATABASE_CONNECTIVITY),
    (InterfaceError, ErrorCategory.DATABASE_CONNECTIVITY),
    (IntegrityError, ErrorCategory.DATA_INTEGRITY),
    (SQLAlchemyError, ErrorCategory.DATABASE_ERROR),
)


def categorize_error(exc: BaseException) -> ErrorCategory:
    """Categorize an exception for alerting purposes.

    Upstream and delivery errors without a status (network failures) and
    those with a 5xx status are transient; other statuses are client errors.
    """
    if isinstance(exc, UpstreamError | DeliveryError):
        if exc.status_code is None or exc.status_code >= _HTTP_SERVER_ERROR_THRESHOLD:
            return ErrorCategory.TRANSIENT
        return ErrorCategory.CLIENT_ERROR

    for exc_type, category in _EXCEPTION_CATEGORY_MAP:
        if isinstance(exc, exc_type):
            return category

    return ErrorCategory.UNKNOWN


class PipelineEventLogger:
    """Emit structured pipeline events via Python logging.

    Success events are logged at INFO, skips and deactivations at WARNING,
    and failures at ERROR with the exception attached.
    """

    def log_fetch_started(self, source_id: str, started_at: dt.datetime) -> None:
        """Log the start of a fetch run."""
        logger.info(
            "[%s] source_id=%s started_at=%s",
            PipelineEventType.FETCH_STARTED,
            source_id,
            started_at.isoformat(),
        )

    def log_fetch_completed(
        self,
        result: FetchResult,
        duration: dt.timedelta,
    ) -> None:
        """Log a completed fetch with record and insert counts."""
        window = result.window
        logger.info(
            "[%s] source_id=%s window_start=%s window_end=%s "
            "duration_seconds=%.3f records_received=%d events_inserted=%d",
            PipelineEventType.FETCH_COMPLETED,
            result.source_id,
            window.start.isoformat() if window else None,
            window.end.isoformat() if window else None,
            duration.total_seconds(),
            result.records_received,
            result.events_inserted,
        )

    def log_fetch_skipped(self, source_id: str, window: FetchWindow) -> None:
        """Log a fetch skipped because its window is too short."""
        logger.warning(
            "[%s] source_id=%s window_start=%s window_end=%s "
            "window_seconds=%.3f reason=window_too_short",
            PipelineEventType.FETCH_SKIPPED,
            source_id,
            window.start.isoformat(),
            window.end.isoformat(),
            window.span.total_seconds(),
        )

    def log_fetch_failed(
        self,
        source_id: str,
        error: BaseException,
        duration: dt.timedelta,
    ) -> None:
        """Log a failed fetch with error categorisation."""
        logger.error(
            "[%s] source_id=%s duration_seconds=%.3f "
            "error_type=%s error_category=%s error_message=%s",
            PipelineEventType.FETCH_FAILED,
            source_id,
            duration.total_seconds(),
            type(error).__name__,
            categorize_error(error),
            str(error),
            exc_info=error,
        )

    def log_forward_completed(
        self,
        source_id: str,
        requested: int,
        delivered: int,
        http_attempts: int,
    ) -> None:
        """Log a forward job outcome, including empty selections."""
        logger.info(
            "[%s] source_id=%s events_requested=%d events_delivered=%d "
            "http_attempts=%d",
            PipelineEventType.FORWARD_COMPLETED,
            source_id,
            requested,
            delivered,
            http_attempts,
        )

    def log_forward_failed(
        self,
        source_id: str,
        events: int,
        error: BaseException,
    ) -> None:
        """Log a failed delivery with error categorisation."""
        attempts = getattr(error, "attempts", None)
        logger.error(
            "[%s] source_id=%s events=%d http_attempts=%s "
            "error_type=%s error_category=%s error_message=%s",
            PipelineEventType.FORWARD_FAILED,
            source_id,
            events,
            attempts,
            type(error).__name__,
            categorize_error(error),
            str(error),
        )

    def log_source_deactivated(self, source_id: str, error: BaseException) -> None:
        """Log a source switched off after a credential failure."""
        logger.warning(
            "[%s] source_id=%s error_category=%s reason=%s",
            PipelineEventType.SOURCE_DEACTIVATED,
            source_id,
            categorize_error(error),
            str(error),
        )

    def log_schedule_created(
        self,
        source_id: str,
        cadence: dt.timedelta,
        *,
        replaced: bool,
    ) -> None:
        """Log a trigger installed for a source."""
        logger.info(
            "[%s] source_id=%s cadence_minutes=%d replaced=%s",
            PipelineEventType.SCHEDULE_CREATED,
            source_id,
            int(cadence.total_seconds() // 60),
            replaced,
        )

    def log_schedule_removed(self, source_id: str) -> None:
        """Log a trigger cancelled for a source."""
        logger.info(
            "[%s] source_id=%s",
            PipelineEventType.SCHEDULE_REMOVED,
            source_id,
        )


__all__ = [
    "ErrorCategory",
    "PipelineEventLogger",
    "PipelineEventType",
    "categorize_error",
]
