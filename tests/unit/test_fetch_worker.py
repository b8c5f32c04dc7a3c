"""Unit tests for the fetch worker."""

from __future__ import annotations

import datetime as dt
import logging
import typing as typ

import pytest

from auditrelay.errors import CredentialError, SourceInactiveError, UpstreamError
from auditrelay.fetch import FetchConfig, FetchWindow, FetchWorker
from auditrelay.metrics import MetricName
from auditrelay.store import EventStore, SourceRepository
from tests.helpers.fakes import (
    BASE_TIME,
    FakeCredentialProvider,
    FakeRemoteClient,
    FrozenClock,
    RecordingLogger,
    RecordingMetricsSink,
    RecordingQueue,
    add_source,
    make_activity,
)

if typ.TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


class _Harness:
    """Wire a fetch worker against real storage and fake collaborators."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: FakeRemoteClient,
        *,
        credentials: FakeCredentialProvider | None = None,
        metrics: RecordingMetricsSink | None = None,
    ) -> None:
        self.sources = SourceRepository(session_factory)
        self.events = EventStore(session_factory)
        self.client = client
        self.credentials = credentials or FakeCredentialProvider()
        self.queue = RecordingQueue()
        self.metrics = metrics or RecordingMetricsSink()
        self.clock = FrozenClock()
        self.worker = FetchWorker(
            self.sources,
            self.events,
            self.credentials,
            client,
            self.queue,
            config=FetchConfig(),
            metrics=self.metrics,
            clock=self.clock,
        )


def test_window_starts_at_watermark_or_lookback() -> None:
    """Windows begin at the watermark, or one lookback before now."""
    watermark = BASE_TIME - dt.timedelta(minutes=5)
    lookback = dt.timedelta(hours=1)

    resumed = FetchWindow.for_source(watermark, BASE_TIME, lookback)
    first = FetchWindow.for_source(None, BASE_TIME, lookback)

    assert resumed.start == watermark
    assert resumed.span == dt.timedelta(minutes=5)
    assert first.start == BASE_TIME - lookback
    assert first.end == BASE_TIME


@pytest.mark.asyncio
async def test_first_fetch_uses_initial_lookback(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """A never-fetched source reads the last hour and advances its watermark."""
    await add_source(session_factory)
    harness = _Harness(
        session_factory, FakeRemoteClient([make_activity("a"), make_activity("b")])
    )

    result = await harness.worker.process("source-1")

    assert harness.client.windows == [(BASE_TIME - dt.timedelta(hours=1), BASE_TIME)]
    assert result.records_received == 2
    assert result.events_inserted == 2
    assert harness.queue.forwards == [("source-1", list(result.event_ids))]
    source = await harness.sources.get("source-1")
    assert source is not None
    assert source.watermark == BASE_TIME


@pytest.mark.asyncio
async def test_refetching_overlap_only_forwards_new_events(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """Records seen by an earlier run are neither stored nor forwarded again."""
    await add_source(session_factory)
    client = FakeRemoteClient([make_activity("a")])
    harness = _Harness(session_factory, client)
    await harness.worker.process("source-1")

    harness.clock.advance(dt.timedelta(minutes=5))
    client.records = [make_activity("a"), make_activity("b")]
    result = await harness.worker.process("source-1")

    assert result.records_received == 2
    assert result.events_inserted == 1
    assert len(harness.queue.forwards) == 2
    assert len(harness.queue.forwards[1][1]) == 1
    assert await harness.events.count_for_source("source-1") == 2


@pytest.mark.asyncio
async def test_empty_window_advances_watermark_without_forwarding(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """No records still moves the watermark and queues nothing."""
    watermark = BASE_TIME - dt.timedelta(minutes=10)
    await add_source(session_factory, watermark=watermark)
    harness = _Harness(session_factory, FakeRemoteClient())

    result = await harness.worker.process("source-1")

    assert result.events_inserted == 0
    assert harness.queue.forwards == []
    source = await harness.sources.get("source-1")
    assert source is not None
    assert source.watermark == BASE_TIME
    assert harness.metrics.values(MetricName.EVENTS_FETCHED) == [0]


@pytest.mark.asyncio
async def test_short_window_is_skipped_without_side_effects(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """Windows under a minute touch neither the API nor the watermark."""
    watermark = BASE_TIME - dt.timedelta(seconds=30)
    await add_source(session_factory, watermark=watermark)
    harness = _Harness(session_factory, FakeRemoteClient([make_activity("a")]))

    result = await harness.worker.process("source-1")

    assert result.skipped is True
    assert harness.client.windows == []
    assert harness.credentials.resolved == []
    assert harness.metrics.samples == []
    source = await harness.sources.get("source-1")
    assert source is not None
    assert source.watermark == watermark


@pytest.mark.asyncio
async def test_credential_failure_deactivates_source(
    session_factory: async_sessionmaker[AsyncSession],
    caplog: pytest.LogCaptureFixture,
) -> None:
    """A rejected credential switches the source off and fails the run."""
    await add_source(session_factory)
    harness = _Harness(
        session_factory,
        FakeRemoteClient(authorize_error=CredentialError.rejected(401, "invalid")),
    )

    with (
        caplog.at_level(logging.WARNING, logger="auditrelay.observability"),
        pytest.raises(CredentialError),
    ):
        await harness.worker.process("source-1")

    source = await harness.sources.get("source-1")
    assert source is not None
    assert source.active is False
    assert source.watermark is None
    assert "[source.deactivated] source_id=source-1" in caplog.text
    assert "error_category=credential" in caplog.text

    with pytest.raises(SourceInactiveError):
        await harness.worker.process("source-1")


@pytest.mark.asyncio
async def test_undecryptable_credentials_deactivate_source(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """Decryption failures are credential failures too."""
    await add_source(session_factory)
    harness = _Harness(
        session_factory,
        FakeRemoteClient(),
        credentials=FakeCredentialProvider(
            error=CredentialError.undecryptable("source-1")
        ),
    )

    with pytest.raises(CredentialError):
        await harness.worker.process("source-1")

    assert harness.client.authorize_calls == 0
    source = await harness.sources.get("source-1")
    assert source is not None
    assert source.active is False


@pytest.mark.asyncio
async def test_upstream_failure_leaves_source_untouched(
    session_factory: async_sessionmaker[AsyncSession],
    caplog: pytest.LogCaptureFixture,
) -> None:
    """Transient failures propagate without moving the watermark."""
    await add_source(session_factory)
    harness = _Harness(
        session_factory,
        FakeRemoteClient(fetch_error=UpstreamError.exhausted(503, 6)),
    )

    with (
        caplog.at_level(logging.ERROR, logger="auditrelay.observability"),
        pytest.raises(UpstreamError),
    ):
        await harness.worker.process("source-1")

    source = await harness.sources.get("source-1")
    assert source is not None
    assert source.active is True
    assert source.watermark is None
    assert "error_category=transient" in caplog.text


@pytest.mark.asyncio
async def test_failed_forward_enqueue_logs_stranded_events(
    session_factory: async_sessionmaker[AsyncSession],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Stored events whose forward job was lost are named at ERROR."""
    recorder = RecordingLogger()
    monkeypatch.setattr("auditrelay.fetch.worker.logger", recorder)
    await add_source(session_factory)
    harness = _Harness(
        session_factory, FakeRemoteClient([make_activity("a"), make_activity("b")])
    )
    harness.queue.fail_forward = True

    with pytest.raises(ConnectionError, match="broker unavailable"):
        await harness.worker.process("source-1")

    (message,) = recorder.messages("ERROR")
    assert "Failed to enqueue forward job for source source-1" in message
    assert await harness.events.count_for_source("source-1") == 2
    pending = await harness.events.load_undelivered(
        "source-1", message.split("stranded event_ids=")[1].split(",")
    )
    assert len(pending) == 2, "logged ids should address the stored events"


@pytest.mark.asyncio
async def test_metrics_report_inserts_and_duration(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """Successful runs emit both fetch metrics tagged with the source."""
    await add_source(session_factory)
    harness = _Harness(session_factory, FakeRemoteClient([make_activity("a")]))

    await harness.worker.process("source-1")

    names = [name for name, _, _ in harness.metrics.samples]
    assert names == [MetricName.EVENTS_FETCHED, MetricName.FETCH_DURATION_MS]
    assert harness.metrics.values(MetricName.EVENTS_FETCHED) == [1]
    assert all(tags == {"source_id": "source-1"} for _, _, tags in harness.metrics.samples)


@pytest.mark.asyncio
async def test_metrics_sink_failure_does_not_fail_the_run(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """A broken sink is logged and ignored."""
    await add_source(session_factory)
    harness = _Harness(
        session_factory,
        FakeRemoteClient([make_activity("a")]),
        metrics=RecordingMetricsSink(fail=True),
    )

    result = await harness.worker.process("source-1")

    assert result.events_inserted == 1
