"""Unit tests for the per-source fetch scheduler."""

from __future__ import annotations

import asyncio
import datetime as dt
import typing as typ

import pytest
import pytest_asyncio

from auditrelay.scheduler import FetchScheduler, fetch_cadence
from auditrelay.store import SourceRepository
from tests.helpers.fakes import (
    RecordingLogger,
    RecordingQueue,
    add_source,
    delete_source,
    update_source,
)

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

_WAIT_TIMEOUT_S = 5.0


class _ControlledSleep:
    """Sleep replacement: the first ``immediate`` calls return, later ones block."""

    def __init__(self, *, immediate: int = 0) -> None:
        self.delays: list[float] = []
        self.immediate = immediate

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.immediate > 0:
            self.immediate -= 1
            await asyncio.sleep(0)
            return
        await asyncio.Event().wait()

    async def wait_for_calls(self, delay: float, count: int = 1) -> None:
        async def _poll() -> None:
            while self.delays.count(delay) < count:
                await asyncio.sleep(0.01)

        await asyncio.wait_for(_poll(), _WAIT_TIMEOUT_S)


async def _wait_until(predicate: cabc.Callable[[], bool]) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), _WAIT_TIMEOUT_S)


class _Harness:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        sleep: _ControlledSleep | None = None,
        queue: RecordingQueue | None = None,
    ) -> None:
        self.sleep = sleep or _ControlledSleep()
        self.queue = queue or RecordingQueue()
        self.scheduler = FetchScheduler(
            SourceRepository(session_factory), self.queue, sleep=self.sleep
        )


@pytest_asyncio.fixture
async def harness(
    session_factory: async_sessionmaker[AsyncSession],
) -> typ.AsyncIterator[_Harness]:
    """Yield a scheduler whose triggers never elapse on their own."""
    built = _Harness(session_factory)
    yield built
    await built.scheduler.stop_all()


@pytest.mark.parametrize(
    ("interval", "minutes"),
    [(60, 1), (90, 1), (300, 5), (359, 5), (3600, 60)],
)
def test_fetch_cadence_truncates_to_whole_minutes(interval: int, minutes: int) -> None:
    """The trigger period is floor(interval / 60) minutes."""
    assert fetch_cadence(interval) == dt.timedelta(minutes=minutes)


@pytest.mark.asyncio
async def test_reconcile_creates_one_trigger_per_active_source(
    session_factory: async_sessionmaker[AsyncSession], harness: _Harness
) -> None:
    """Active sources gain triggers; inactive ones do not."""
    await add_source(session_factory, source_id="a", fetch_interval_seconds=300)
    await add_source(session_factory, source_id="b", fetch_interval_seconds=90)
    await add_source(session_factory, source_id="c", active=False)

    summary = await harness.scheduler.reconcile()

    assert (summary.created, summary.replaced, summary.removed) == (2, 0, 0)
    assert harness.scheduler.tracked == {
        "a": dt.timedelta(minutes=5),
        "b": dt.timedelta(minutes=1),
    }
    assert harness.queue.fetches == []


@pytest.mark.asyncio
async def test_reconcile_is_idempotent(
    session_factory: async_sessionmaker[AsyncSession], harness: _Harness
) -> None:
    """A second pass with no changes keeps every trigger."""
    await add_source(session_factory, source_id="a")
    await harness.scheduler.reconcile()

    summary = await harness.scheduler.reconcile()

    assert (summary.created, summary.replaced, summary.kept) == (0, 0, 1)
    assert len(harness.scheduler.tracked) == 1


@pytest.mark.asyncio
async def test_reconcile_replaces_changed_cadence_and_removes_stale(
    session_factory: async_sessionmaker[AsyncSession], harness: _Harness
) -> None:
    """Interval changes replace the trigger; deleted or inactive sources lose it."""
    await add_source(session_factory, source_id="a", fetch_interval_seconds=300)
    await add_source(session_factory, source_id="b")
    await add_source(session_factory, source_id="c")
    await harness.scheduler.reconcile()

    await update_source(session_factory, "a", fetch_interval_seconds=600)
    await update_source(session_factory, "b", active=False)
    await delete_source(session_factory, "c")
    summary = await harness.scheduler.reconcile()

    assert (summary.replaced, summary.removed) == (1, 2)
    assert harness.scheduler.tracked == {"a": dt.timedelta(minutes=10)}


@pytest.mark.asyncio
async def test_schedule_source_fires_immediately(
    session_factory: async_sessionmaker[AsyncSession], harness: _Harness
) -> None:
    """Registering a source enqueues one fetch without waiting a period."""
    await add_source(session_factory, source_id="a", fetch_interval_seconds=120)

    assert await harness.scheduler.schedule_source("a") is True

    assert harness.queue.fetches == ["a"]
    assert harness.scheduler.cadence_for("a") == dt.timedelta(minutes=2)


@pytest.mark.asyncio
async def test_schedule_source_unschedules_inactive_and_missing(
    session_factory: async_sessionmaker[AsyncSession], harness: _Harness
) -> None:
    """Inactive or missing sources end up without a trigger."""
    await add_source(session_factory, source_id="a")
    await harness.scheduler.reconcile()
    await update_source(session_factory, "a", active=False)

    assert await harness.scheduler.schedule_source("a") is False
    assert await harness.scheduler.schedule_source("ghost") is False

    assert harness.scheduler.tracked == {}
    assert harness.queue.fetches == []


@pytest.mark.asyncio
async def test_trigger_enqueues_after_each_period(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """Each elapsed period enqueues one fetch for the source."""
    await add_source(session_factory, source_id="a", fetch_interval_seconds=300)
    harness = _Harness(session_factory, sleep=_ControlledSleep(immediate=2))

    await harness.scheduler.reconcile()
    await harness.sleep.wait_for_calls(300.0, count=3)

    assert harness.queue.fetches == ["a", "a"]
    await harness.scheduler.stop_all()


@pytest.mark.asyncio
async def test_enqueue_failure_is_logged_and_trigger_survives(
    session_factory: async_sessionmaker[AsyncSession],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A broker outage is logged; the trigger keeps running."""
    recorder = RecordingLogger()
    monkeypatch.setattr("auditrelay.scheduler.logger", recorder)
    await add_source(session_factory, source_id="a")
    harness = _Harness(
        session_factory,
        sleep=_ControlledSleep(immediate=1),
        queue=RecordingQueue(fail_fetch=True),
    )

    await harness.scheduler.reconcile()
    await harness.sleep.wait_for_calls(300.0, count=2)

    assert harness.scheduler.tracked == {"a": dt.timedelta(minutes=5)}
    warnings = recorder.messages("WARNING")
    assert warnings == ["Failed to enqueue fetch for source a: broker unavailable"]
    await harness.scheduler.stop_all()


@pytest.mark.asyncio
async def test_stop_all_cancels_every_trigger(
    session_factory: async_sessionmaker[AsyncSession], harness: _Harness
) -> None:
    """stop_all leaves no trigger behind."""
    await add_source(session_factory, source_id="a")
    await add_source(session_factory, source_id="b")
    await harness.scheduler.reconcile()

    await harness.scheduler.stop_all()

    assert harness.scheduler.tracked == {}
    assert harness.scheduler.remove_schedule("a") is False


@pytest.mark.asyncio
async def test_run_reconciles_then_waits_one_interval(
    session_factory: async_sessionmaker[AsyncSession], harness: _Harness
) -> None:
    """The run loop picks up sources and sleeps for the reconcile interval."""
    await add_source(session_factory, source_id="a")

    loop_task = asyncio.create_task(harness.scheduler.run())
    try:
        await harness.sleep.wait_for_calls(60.0)
        await _wait_until(lambda: "a" in harness.scheduler.tracked)
    finally:
        loop_task.cancel()
        await asyncio.gather(loop_task, return_exceptions=True)
