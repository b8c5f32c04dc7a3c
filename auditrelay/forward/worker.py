"""Forward worker: deliver stored events to the source's webhook."""

from __future__ import annotations

import dataclasses
import logging
import typing as typ

from sqlalchemy.exc import SQLAlchemyError

from auditrelay.common.time import utcnow
from auditrelay.errors import DeliveryError
from auditrelay.metrics import MetricName, NullMetricsSink, record_metric
from auditrelay.observability import PipelineEventLogger

from .payload import build_batch

if typ.TYPE_CHECKING:
    import collections.abc as cabc
    import datetime as dt

    from auditrelay.metrics import MetricsSink
    from auditrelay.store.events import EventStore
    from auditrelay.store.sources import SourceRepository

    from .delivery import DeliveryClient

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True, slots=True)
class ForwardResult:
    """Outcome of one forward run."""

    source_id: str
    requested: int
    delivered: int = 0
    http_attempts: int = 0


class ForwardWorker:
    """Deliver a forward job's undelivered events in one webhook request."""

    def __init__(  # noqa: PLR0913
        self,
        sources: SourceRepository,
        events: EventStore,
        delivery: DeliveryClient,
        *,
        metrics: MetricsSink | None = None,
        event_logger: PipelineEventLogger | None = None,
        clock: cabc.Callable[[], dt.datetime] = utcnow,
    ) -> None:
        """Create a worker bound to storage and a delivery client."""
        self._sources = sources
        self._events = events
        self._delivery = delivery
        self._metrics = metrics or NullMetricsSink()
        self._event_logger = event_logger or PipelineEventLogger()
        self._clock = clock

    async def process(
        self, source_id: str, event_ids: cabc.Sequence[str]
    ) -> ForwardResult:
        """Deliver the still-undelivered subset of ``event_ids``.

        Events that are already delivered, unknown, or owned by another
        source are skipped; an empty selection completes without a request.

        Raises
        ------
        SourceNotFoundError, SourceInactiveError
            When the source cannot receive deliveries; terminal for the job.
        DeliveryError
            When the webhook does not accept the batch. The attempt is
            recorded on every selected event before the error propagates.

        """
        source = await self._sources.require_active(source_id)
        pending = await self._events.load_undelivered(source.id, event_ids)
        if not pending:
            self._event_logger.log_forward_completed(
                source.id, requested=len(event_ids), delivered=0, http_attempts=0
            )
            record_metric(
                self._metrics, MetricName.EVENTS_FORWARDED, 0, source_id=source.id
            )
            return ForwardResult(source_id=source.id, requested=len(event_ids))

        batch = build_batch(source.id, pending)
        selected = [event.id for event in pending]
        try:
            receipt = await self._delivery.deliver(source.webhook_url, batch)
        except DeliveryError as exc:
            await self._record_failure(source.id, selected)
            self._event_logger.log_forward_failed(source.id, len(selected), exc)
            record_metric(
                self._metrics, MetricName.EVENTS_FORWARDED, 0, source_id=source.id
            )
            record_metric(
                self._metrics,
                MetricName.EVENTS_FORWARD_FAILED,
                len(selected),
                source_id=source.id,
            )
            raise

        delivered = await self._events.mark_delivered(
            source.id, selected, attempted_at=self._clock()
        )
        self._event_logger.log_forward_completed(
            source.id,
            requested=len(event_ids),
            delivered=delivered,
            http_attempts=receipt.attempts,
        )
        record_metric(
            self._metrics, MetricName.EVENTS_FORWARDED, delivered, source_id=source.id
        )
        return ForwardResult(
            source_id=source.id,
            requested=len(event_ids),
            delivered=delivered,
            http_attempts=receipt.attempts,
        )

    async def _record_failure(self, source_id: str, event_ids: list[str]) -> None:
        """Stamp the failed attempt without masking the delivery error."""
        try:
            await self._events.record_failed_attempt(
                source_id, event_ids, attempted_at=self._clock()
            )
        except SQLAlchemyError:
            logger.exception(
                "Failed to record delivery attempt for %d events of source %s",
                len(event_ids),
                source_id,
            )


__all__ = ["ForwardResult", "ForwardWorker"]
