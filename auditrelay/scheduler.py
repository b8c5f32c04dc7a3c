"""Per-source periodic triggers that enqueue fetch jobs.

Each active source owns one asyncio task that sleeps for the source's
cadence and then enqueues a fetch. :meth:`FetchScheduler.reconcile` keeps
the set of tasks aligned with the active sources; :meth:`FetchScheduler.run`
reconciles once a minute. Triggers live only in memory and are rebuilt from
the database after a restart.
"""

from __future__ import annotations

import asyncio
import dataclasses
import datetime as dt
import typing as typ

from sqlalchemy.exc import SQLAlchemyError

from auditrelay.logging import get_logger, log_exception, log_info, log_warning
from auditrelay.observability import PipelineEventLogger

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from auditrelay.store.sources import SourceRepository

logger = get_logger(__name__)

RECONCILE_INTERVAL = dt.timedelta(minutes=1)


def fetch_cadence(fetch_interval_seconds: int) -> dt.timedelta:
    """Return the trigger period: whole minutes of the interval, at least one."""
    return dt.timedelta(minutes=max(1, fetch_interval_seconds // 60))


class FetchEnqueuer(typ.Protocol):
    """Queue capability the scheduler needs."""

    def enqueue_fetch(self, source_id: str) -> object:
        """Queue a fetch job for ``source_id``."""
        ...


@dataclasses.dataclass(slots=True)
class ReconcileSummary:
    """Trigger changes made by one reconciliation."""

    created: int = 0
    replaced: int = 0
    removed: int = 0
    kept: int = 0


@dataclasses.dataclass(slots=True)
class _Trigger:
    cadence: dt.timedelta
    task: asyncio.Task[None]


class FetchScheduler:
    """Keep exactly one periodic fetch trigger per active source.

    ``reconcile`` and ``schedule_source`` hold the same lock, so trigger
    changes never interleave. Enqueue failures and source-listing failures
    are logged and absorbed; the next tick tries again.
    """

    def __init__(
        self,
        sources: SourceRepository,
        queue: FetchEnqueuer,
        *,
        reconcile_interval: dt.timedelta = RECONCILE_INTERVAL,
        sleep: cabc.Callable[[float], cabc.Awaitable[None]] = asyncio.sleep,
        event_logger: PipelineEventLogger | None = None,
    ) -> None:
        self._sources = sources
        self._queue = queue
        self._reconcile_interval = reconcile_interval
        self._sleep = sleep
        self._event_logger = event_logger or PipelineEventLogger()
        self._triggers: dict[str, _Trigger] = {}
        self._lock = asyncio.Lock()

    @property
    def tracked(self) -> dict[str, dt.timedelta]:
        """Return a snapshot of tracked source ids and their cadences."""
        return {source_id: t.cadence for source_id, t in self._triggers.items()}

    def cadence_for(self, source_id: str) -> dt.timedelta | None:
        """Return the cadence of the trigger for ``source_id``, if any."""
        trigger = self._triggers.get(source_id)
        return None if trigger is None else trigger.cadence

    async def reconcile(self) -> ReconcileSummary:
        """Align triggers with the currently active sources."""
        summary = ReconcileSummary()
        async with self._lock:
            try:
                sources = await self._sources.list_active()
            except SQLAlchemyError as exc:
                log_exception(logger, "Failed to list active sources", exc)
                return summary

            active_ids = set()
            for source in sources:
                active_ids.add(source.id)
                cadence = fetch_cadence(source.fetch_interval_seconds)
                current = self._triggers.get(source.id)
                if current is None:
                    self._install(source.id, cadence)
                    summary.created += 1
                elif current.cadence != cadence:
                    self._install(source.id, cadence)
                    summary.replaced += 1
                else:
                    summary.kept += 1

            for source_id in list(self._triggers):
                if source_id not in active_ids:
                    self._cancel(source_id)
                    summary.removed += 1

        if summary.created or summary.replaced or summary.removed:
            log_info(
                logger,
                "Reconciled schedules: created=%d replaced=%d removed=%d kept=%d",
                summary.created,
                summary.replaced,
                summary.removed,
                summary.kept,
            )
        return summary

    async def schedule_source(self, source_id: str) -> bool:
        """Re-read one source and (re)install its trigger immediately.

        An absent or inactive source loses its trigger. An active one gets a
        fresh trigger and one fetch enqueued right away. Returns ``True``
        when the source is scheduled.
        """
        async with self._lock:
            try:
                source = await self._sources.get(source_id)
            except SQLAlchemyError as exc:
                log_exception(logger, f"Failed to load source {source_id}", exc)
                return False
            if source is None or not source.active:
                self._cancel(source_id)
                return False
            self._install(source.id, fetch_cadence(source.fetch_interval_seconds))
        self.fire(source_id)
        return True

    def remove_schedule(self, source_id: str) -> bool:
        """Cancel the trigger for ``source_id``; returns whether one existed."""
        return self._cancel(source_id)

    def fire(self, source_id: str) -> bool:
        """Enqueue one fetch for ``source_id``; failures are logged only."""
        try:
            self._queue.enqueue_fetch(source_id)
        except Exception as exc:  # noqa: BLE001 - a failed enqueue must not stop the trigger
            log_warning(logger, "Failed to enqueue fetch for source %s: %s", source_id, exc)
            return False
        return True

    async def run(self) -> None:
        """Reconcile forever, once per reconcile interval."""
        while True:
            try:
                await self.reconcile()
            except Exception as exc:  # noqa: BLE001 - the loop must survive any tick
                log_exception(logger, "Schedule reconciliation failed", exc)
            await self._sleep(self._reconcile_interval.total_seconds())

    async def stop_all(self) -> None:
        """Cancel every trigger and wait for the tasks to finish."""
        tasks = [trigger.task for trigger in self._triggers.values()]
        for source_id in list(self._triggers):
            self._cancel(source_id)
        await asyncio.gather(*tasks, return_exceptions=True)

    def _install(self, source_id: str, cadence: dt.timedelta) -> None:
        replaced = self._cancel(source_id, log=False)
        task = asyncio.create_task(
            self._trigger_loop(source_id, cadence), name=f"fetch-trigger:{source_id}"
        )
        self._triggers[source_id] = _Trigger(cadence=cadence, task=task)
        self._event_logger.log_schedule_created(source_id, cadence, replaced=replaced)

    def _cancel(self, source_id: str, *, log: bool = True) -> bool:
        trigger = self._triggers.pop(source_id, None)
        if trigger is None:
            return False
        trigger.task.cancel()
        if log:
            self._event_logger.log_schedule_removed(source_id)
        return True

    async def _trigger_loop(self, source_id: str, cadence: dt.timedelta) -> None:
        period = cadence.total_seconds()
        while True:
            await self._sleep(period)
            self.fire(source_id)


__all__ = [
    "RECONCILE_INTERVAL",
    "FetchEnqueuer",
    "FetchScheduler",
    "ReconcileSummary",
    "fetch_cadence",
]
