"""Fetch worker: pull one source's window and store the new events."""

from __future__ import annotations

import dataclasses
import datetime as dt
import typing as typ

from auditrelay.common.time import utcnow
from auditrelay.errors import CredentialError
from auditrelay.logging import get_logger, log_exception
from auditrelay.metrics import MetricName, NullMetricsSink, record_metric
from auditrelay.observability import PipelineEventLogger

from .normalize import normalize_records

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from auditrelay.credentials import CredentialProvider
    from auditrelay.metrics import MetricsSink
    from auditrelay.store.events import EventStore
    from auditrelay.store.sources import SourceInfo, SourceRepository

    from .client import RemoteLogClient
    from .models import RawRecord


logger = get_logger(__name__)


class ForwardEnqueuer(typ.Protocol):
    """Queue capability the fetch worker needs."""

    def enqueue_forward(
        self, source_id: str, event_ids: cabc.Sequence[str]
    ) -> object:
        """Queue a forward job for ``event_ids``."""
        ...


@dataclasses.dataclass(frozen=True, slots=True)
class FetchConfig:
    """Window computation settings for fetch runs.

    Attributes
    ----------
    initial_lookback
        Window length used when a source has never been fetched.
    min_window
        Windows shorter than this are skipped with no side effects.

    """

    initial_lookback: dt.timedelta = dt.timedelta(hours=1)
    min_window: dt.timedelta = dt.timedelta(seconds=60)


@dataclasses.dataclass(frozen=True, slots=True)
class FetchWindow:
    """Half-open time window ``[start, end)`` requested from the source."""

    start: dt.datetime
    end: dt.datetime

    @property
    def span(self) -> dt.timedelta:
        """Return the window length."""
        return self.end - self.start

    @classmethod
    def for_source(
        cls,
        watermark: dt.datetime | None,
        now: dt.datetime,
        initial_lookback: dt.timedelta,
    ) -> FetchWindow:
        """Start at the watermark, or ``initial_lookback`` before ``now``."""
        start = watermark if watermark is not None else now - initial_lookback
        return cls(start=start, end=now)


@dataclasses.dataclass(frozen=True, slots=True)
class FetchResult:
    """Outcome of one fetch run."""

    source_id: str
    window: FetchWindow | None = None
    records_received: int = 0
    event_ids: tuple[str, ...] = ()
    skipped: bool = False

    @property
    def events_inserted(self) -> int:
        """Return how many new events the run stored."""
        return len(self.event_ids)


class FetchWorker:
    """Pull remote audit events for a source and persist the new ones.

    One run loads the source, computes the window from its watermark, pulls
    and normalises the remote records, inserts them idempotently, advances
    the watermark, and queues a forward job for whatever was new.
    """

    def __init__(  # noqa: PLR0913
        self,
        sources: SourceRepository,
        events: EventStore,
        credentials: CredentialProvider,
        client: RemoteLogClient,
        queue: ForwardEnqueuer,
        *,
        config: FetchConfig | None = None,
        metrics: MetricsSink | None = None,
        event_logger: PipelineEventLogger | None = None,
        clock: cabc.Callable[[], dt.datetime] = utcnow,
    ) -> None:
        """Create a worker bound to its storage, remote client, and queue."""
        self._sources = sources
        self._events = events
        self._credentials = credentials
        self._client = client
        self._queue = queue
        self._config = config or FetchConfig()
        self._metrics = metrics or NullMetricsSink()
        self._event_logger = event_logger or PipelineEventLogger()
        self._clock = clock

    async def process(self, source_id: str) -> FetchResult:
        """Run one fetch for ``source_id``.

        Raises
        ------
        SourceNotFoundError, SourceInactiveError
            When the source cannot be fetched; terminal for the job.
        CredentialError
            When credentials are rejected; the source is deactivated first.
        UpstreamError
            When the remote API cannot be read; retried by the queue.

        """
        started_at = self._clock()
        self._event_logger.log_fetch_started(source_id, started_at)
        try:
            result = await self._process_inner(source_id, started_at)
        except BaseException as exc:
            self._event_logger.log_fetch_failed(
                source_id, exc, self._clock() - started_at
            )
            raise

        if result.skipped:
            return result

        duration = self._clock() - started_at
        self._event_logger.log_fetch_completed(result, duration)
        record_metric(
            self._metrics,
            MetricName.EVENTS_FETCHED,
            result.events_inserted,
            source_id=source_id,
        )
        record_metric(
            self._metrics,
            MetricName.FETCH_DURATION_MS,
            duration.total_seconds() * 1000,
            source_id=source_id,
        )
        return result

    async def _process_inner(
        self, source_id: str, now: dt.datetime
    ) -> FetchResult:
        source = await self._sources.require_active(source_id)
        window = FetchWindow.for_source(
            source.watermark, now, self._config.initial_lookback
        )
        if window.span < self._config.min_window:
            self._event_logger.log_fetch_skipped(source.id, window)
            return FetchResult(source_id=source.id, window=window, skipped=True)

        records = await self._pull(source, window)
        candidates = normalize_records(records, now=now)
        event_ids = await self._events.insert_new(source.id, candidates)
        await self._sources.advance_watermark(source.id, window.end)
        if event_ids:
            self._enqueue_forward(source.id, event_ids)

        return FetchResult(
            source_id=source.id,
            window=window,
            records_received=len(records),
            event_ids=tuple(event_ids),
        )

    def _enqueue_forward(self, source_id: str, event_ids: list[str]) -> None:
        """Queue delivery; on failure name the stored events left behind.

        The events are committed and the watermark has moved, so a retried
        fetch will not find them again. The ids are logged for re-driving.
        """
        try:
            self._queue.enqueue_forward(source_id, event_ids)
        except Exception as exc:
            log_exception(
                logger,
                f"Failed to enqueue forward job for source {source_id}; "
                f"stranded event_ids={','.join(event_ids)}",
                exc,
            )
            raise

    async def _pull(self, source: SourceInfo, window: FetchWindow) -> list[RawRecord]:
        """Authorise and read the window, deactivating on credential faults."""
        try:
            credentials = await self._credentials.resolve(source)
            grant = await self._client.authorize(credentials)
            return await self._client.fetch(grant, window.start, window.end)
        except CredentialError as exc:
            if await self._sources.deactivate(source.id):
                self._event_logger.log_source_deactivated(source.id, exc)
            raise


__all__ = [
    "FetchConfig",
    "FetchResult",
    "FetchWindow",
    "FetchWorker",
    "ForwardEnqueuer",
]
