"""Deduplicating event store.

``(source_id, external_id)`` is the only dedup key. New events are written
with a single ``INSERT .. ON CONFLICT DO NOTHING RETURNING id`` statement per
chunk inside one transaction, so overlapping fetch windows and concurrent
fetch jobs for the same source can never produce duplicate rows, and only the
ids of genuinely new rows are reported back for forwarding.
"""

from __future__ import annotations

import dataclasses as dc
import typing as typ

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite

from auditrelay.common.time import utcnow
from auditrelay.store.errors import UnsupportedDialectError
from auditrelay.store.storage import EventRecord, new_id

if typ.TYPE_CHECKING:
    import collections.abc as cabc
    import datetime as dt

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    type SessionFactory = async_sessionmaker[AsyncSession]

_DEFAULT_CHUNK_SIZE = 500

_DIALECT_INSERTS: dict[str, typ.Any] = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


@dc.dataclass(frozen=True, slots=True)
class EventCandidate:
    """A normalised remote event that may or may not be stored yet."""

    external_id: str
    occurred_at: dt.datetime
    actor_email: str
    actor_ip: str | None
    event_type: str
    status: str | None
    attributes: dict[str, typ.Any] = dc.field(default_factory=dict)


@dc.dataclass(frozen=True, slots=True)
class StoredEvent:
    """An event row loaded for delivery."""

    id: str
    source_id: str
    external_id: str
    occurred_at: dt.datetime
    actor_email: str
    actor_ip: str | None
    event_type: str
    status: str | None
    attributes: dict[str, typ.Any]
    delivery_attempts: int

    @classmethod
    def from_record(cls, record: EventRecord) -> StoredEvent:
        """Copy an ORM row into a detached value."""
        return cls(
            id=record.id,
            source_id=record.source_id,
            external_id=record.external_id,
            occurred_at=record.occurred_at,
            actor_email=record.actor_email,
            actor_ip=record.actor_ip,
            event_type=record.event_type,
            status=record.status,
            attributes=dict(record.attributes or {}),
            delivery_attempts=record.delivery_attempts,
        )


def collapse_duplicates(
    candidates: cabc.Iterable[EventCandidate],
) -> list[EventCandidate]:
    """Drop repeated external ids, keeping the first occurrence."""
    seen: set[str] = set()
    unique: list[EventCandidate] = []
    for candidate in candidates:
        if candidate.external_id in seen:
            continue
        seen.add(candidate.external_id)
        unique.append(candidate)
    return unique


def _chunked(
    rows: list[dict[str, typ.Any]], size: int
) -> cabc.Iterator[list[dict[str, typ.Any]]]:
    for start in range(0, len(rows), size):
        yield rows[start : start + size]


class EventStore:
    """Idempotent bulk insert plus delivery-status updates for events."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        chunk_size: int = _DEFAULT_CHUNK_SIZE,
    ) -> None:
        if chunk_size < 1:
            msg = "chunk_size must be positive"
            raise ValueError(msg)
        self._session_factory = session_factory
        self._chunk_size = chunk_size

    async def insert_new(
        self,
        source_id: str,
        candidates: cabc.Sequence[EventCandidate],
    ) -> list[str]:
        """Insert candidates that are not already stored for ``source_id``.

        Parameters
        ----------
        source_id
            Owning source.
        candidates
            Normalised events, possibly overlapping stored rows or each other.

        Returns
        -------
        list[str]
            Internal ids of the rows this call created. Rows that already
            existed, or that a concurrent writer created first, are absent.

        """
        unique = collapse_duplicates(candidates)
        if not unique:
            return []

        ingested_at = utcnow()
        rows = [
            {
                "id": new_id(),
                "source_id": source_id,
                "external_id": candidate.external_id,
                "occurred_at": candidate.occurred_at,
                "actor_email": candidate.actor_email,
                "actor_ip": candidate.actor_ip,
                "event_type": candidate.event_type,
                "status": candidate.status,
                "attributes": candidate.attributes,
                "ingested_at": ingested_at,
                "delivered": False,
                "delivery_attempts": 0,
                "last_delivery_attempt_at": None,
            }
            for candidate in unique
        ]

        inserted: list[str] = []
        async with self._session_factory() as session, session.begin():
            insert = self._insert_for(session)
            for chunk in _chunked(rows, self._chunk_size):
                stmt = (
                    insert(EventRecord)
                    .values(chunk)
                    .on_conflict_do_nothing(index_elements=["source_id", "external_id"])
                    .returning(EventRecord.id)
                )
                inserted.extend((await session.scalars(stmt)).all())
        return inserted

    @staticmethod
    def _insert_for(session: AsyncSession) -> typ.Any:  # noqa: ANN401 - dialect insert constructors share no public base
        dialect_name = session.get_bind().dialect.name
        try:
            return _DIALECT_INSERTS[dialect_name]
        except KeyError:
            raise UnsupportedDialectError(dialect_name) from None

    async def load_undelivered(
        self,
        source_id: str,
        event_ids: cabc.Sequence[str],
    ) -> list[StoredEvent]:
        """Return undelivered events among ``event_ids`` owned by ``source_id``.

        Ids belonging to another source, already delivered, or unknown are
        silently excluded.
        """
        if not event_ids:
            return []
        stmt = (
            select(EventRecord)
            .where(
                EventRecord.id.in_(list(event_ids)),
                EventRecord.source_id == source_id,
                EventRecord.delivered.is_(False),
            )
            .order_by(EventRecord.occurred_at, EventRecord.id)
        )
        async with self._session_factory() as session:
            records = (await session.scalars(stmt)).all()
            return [StoredEvent.from_record(record) for record in records]

    async def mark_delivered(
        self,
        source_id: str,
        event_ids: cabc.Sequence[str],
        *,
        attempted_at: dt.datetime,
    ) -> int:
        """Flag events delivered and count the successful attempt.

        Only undelivered rows transition, so ``delivered`` flips at most once
        per event. Returns the number of rows updated.
        """
        return await self._stamp_attempt(
            source_id, event_ids, attempted_at=attempted_at, delivered=True
        )

    async def record_failed_attempt(
        self,
        source_id: str,
        event_ids: cabc.Sequence[str],
        *,
        attempted_at: dt.datetime,
    ) -> int:
        """Count a failed delivery attempt; events stay undelivered."""
        return await self._stamp_attempt(
            source_id, event_ids, attempted_at=attempted_at, delivered=False
        )

    async def _stamp_attempt(
        self,
        source_id: str,
        event_ids: cabc.Sequence[str],
        *,
        attempted_at: dt.datetime,
        delivered: bool,
    ) -> int:
        if not event_ids:
            return 0
        values: dict[str, typ.Any] = {
            "last_delivery_attempt_at": attempted_at,
            "delivery_attempts": EventRecord.delivery_attempts + 1,
        }
        if delivered:
            values["delivered"] = True
        stmt = (
            update(EventRecord)
            .where(
                EventRecord.id.in_(list(event_ids)),
                EventRecord.source_id == source_id,
                EventRecord.delivered.is_(False),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session, session.begin():
            result = await session.execute(stmt)
        return result.rowcount

    async def get(self, event_id: str) -> StoredEvent | None:
        """Return one stored event by internal id."""
        async with self._session_factory() as session:
            record = await session.get(EventRecord, event_id)
            return None if record is None else StoredEvent.from_record(record)

    async def count_for_source(self, source_id: str) -> int:
        """Return how many events are stored for ``source_id``."""
        stmt = select(EventRecord.id).where(EventRecord.source_id == source_id)
        async with self._session_factory() as session:
            return len((await session.scalars(stmt)).all())


__all__ = [
    "EventCandidate",
    "EventStore",
    "StoredEvent",
    "collapse_duplicates",
]
