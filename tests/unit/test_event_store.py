"""Unit tests for the deduplicating event store."""

from __future__ import annotations

import asyncio
import datetime as dt
import typing as typ

import pytest
from sqlalchemy import func, select

from auditrelay.store import EventCandidate, EventRecord, EventStore, collapse_duplicates
from auditrelay.store.errors import TimezoneAwareRequiredError
from tests.helpers.fakes import BASE_TIME, add_source

if typ.TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


def _candidate(external_id: str, **overrides: object) -> EventCandidate:
    values: dict[str, typ.Any] = {
        "external_id": external_id,
        "occurred_at": BASE_TIME,
        "actor_email": "admin@example.test",
        "actor_ip": "203.0.113.7",
        "event_type": "CHANGE_USER_SETTING",
        "status": "SUCCESS",
        "attributes": {"setting": "2sv"},
    }
    values.update(overrides)
    return EventCandidate(**values)


async def _row_count(session_factory: async_sessionmaker[AsyncSession]) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(EventRecord)) or 0


def test_collapse_duplicates_keeps_first_occurrence() -> None:
    """Repeated external ids inside one batch collapse to the first."""
    first = _candidate("a", status="FIRST")
    unique = collapse_duplicates([first, _candidate("b"), _candidate("a")])

    assert [c.external_id for c in unique] == ["a", "b"]
    assert unique[0] is first


@pytest.mark.asyncio
async def test_insert_new_returns_only_new_ids(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """Overlapping inserts report only rows created by the call."""
    await add_source(session_factory)
    store = EventStore(session_factory)

    first = await store.insert_new("source-1", [_candidate("a"), _candidate("b")])
    second = await store.insert_new("source-1", [_candidate("b"), _candidate("c")])

    assert len(first) == 2
    assert len(second) == 1
    created = await store.get(second[0])
    assert created is not None
    assert created.external_id == "c"
    assert await _row_count(session_factory) == 3


@pytest.mark.asyncio
async def test_insert_new_collapses_in_batch_duplicates(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """A batch repeating an external id stores it once."""
    await add_source(session_factory)
    store = EventStore(session_factory)

    ids = await store.insert_new("source-1", [_candidate("x"), _candidate("x")])

    assert len(ids) == 1
    assert await _row_count(session_factory) == 1


@pytest.mark.asyncio
async def test_same_external_id_is_distinct_per_source(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """The dedup key includes the source id."""
    await add_source(session_factory, source_id="source-1")
    await add_source(session_factory, source_id="source-2")
    store = EventStore(session_factory)

    assert len(await store.insert_new("source-1", [_candidate("shared")])) == 1
    assert len(await store.insert_new("source-2", [_candidate("shared")])) == 1


@pytest.mark.asyncio
async def test_concurrent_inserts_store_each_event_once(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """Two concurrent writers of the same window create each row exactly once."""
    await add_source(session_factory)
    store = EventStore(session_factory, chunk_size=2)
    batch = [_candidate(f"evt-{index}") for index in range(5)]

    first, second = await asyncio.gather(
        store.insert_new("source-1", batch),
        store.insert_new("source-1", list(reversed(batch))),
    )

    assert len(first) + len(second) == 5
    assert set(first).isdisjoint(second)
    assert await _row_count(session_factory) == 5


@pytest.mark.asyncio
async def test_insert_new_with_no_candidates_is_a_no_op(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """An empty candidate list touches nothing."""
    store = EventStore(session_factory)

    assert await store.insert_new("source-1", []) == []


@pytest.mark.asyncio
async def test_naive_timestamps_are_rejected(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """Naive datetimes never reach the database."""
    await add_source(session_factory)
    store = EventStore(session_factory)
    naive = _candidate("naive", occurred_at=dt.datetime(2099, 1, 1))  # noqa: DTZ001

    with pytest.raises(TimezoneAwareRequiredError):
        await store.insert_new("source-1", [naive])


@pytest.mark.asyncio
async def test_load_undelivered_filters_by_source_and_state(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """Selection excludes delivered, foreign, and unknown ids."""
    await add_source(session_factory, source_id="source-1")
    await add_source(session_factory, source_id="source-2")
    store = EventStore(session_factory)
    own = await store.insert_new("source-1", [_candidate("a"), _candidate("b")])
    foreign = await store.insert_new("source-2", [_candidate("c")])
    await store.mark_delivered("source-1", own[:1], attempted_at=BASE_TIME)

    pending = await store.load_undelivered(
        "source-1", [*own, *foreign, "does-not-exist"]
    )

    assert [event.id for event in pending] == own[1:]


@pytest.mark.asyncio
async def test_mark_delivered_transitions_once(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """Delivered events are not updated again by a second success."""
    await add_source(session_factory)
    store = EventStore(session_factory)
    ids = await store.insert_new("source-1", [_candidate("a")])
    later = BASE_TIME + dt.timedelta(minutes=5)

    assert await store.mark_delivered("source-1", ids, attempted_at=BASE_TIME) == 1
    assert await store.mark_delivered("source-1", ids, attempted_at=later) == 0

    event = await store.get(ids[0])
    assert event is not None
    assert event.delivery_attempts == 1
    async with session_factory() as session:
        record = await session.get(EventRecord, ids[0])
        assert record is not None
        assert record.delivered is True
        assert record.last_delivery_attempt_at == BASE_TIME


@pytest.mark.asyncio
async def test_failed_attempts_accumulate_without_delivering(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """Failed attempts bump the counter and leave events pending."""
    await add_source(session_factory)
    store = EventStore(session_factory)
    ids = await store.insert_new("source-1", [_candidate("a")])

    await store.record_failed_attempt("source-1", ids, attempted_at=BASE_TIME)
    await store.record_failed_attempt("source-1", ids, attempted_at=BASE_TIME)

    pending = await store.load_undelivered("source-1", ids)
    assert len(pending) == 1
    assert pending[0].delivery_attempts == 2
