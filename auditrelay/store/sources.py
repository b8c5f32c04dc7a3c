"""Read and update access to registered sources."""

from __future__ import annotations

import dataclasses as dc
import typing as typ

from sqlalchemy import or_, select, update

from auditrelay.common.time import utcnow
from auditrelay.errors import SourceInactiveError, SourceNotFoundError
from auditrelay.store.errors import TimezoneAwareRequiredError
from auditrelay.store.storage import SourceRecord

if typ.TYPE_CHECKING:
    import datetime as dt

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    type SessionFactory = async_sessionmaker[AsyncSession]


@dc.dataclass(frozen=True, slots=True)
class SourceInfo:
    """Detached snapshot of a source row handed to workers."""

    id: str
    source_type: str
    credential_ref: str = dc.field(repr=False)
    fetch_interval_seconds: int
    webhook_url: str
    watermark: dt.datetime | None
    active: bool

    @classmethod
    def from_record(cls, record: SourceRecord) -> SourceInfo:
        """Copy the fields workers need out of an ORM row."""
        return cls(
            id=record.id,
            source_type=record.source_type,
            credential_ref=record.credential_ref,
            fetch_interval_seconds=record.fetch_interval_seconds,
            webhook_url=record.webhook_url,
            watermark=record.watermark,
            active=record.active,
        )


class SourceRepository:
    """Source lookups plus the two mutations the pipeline owns."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def get(self, source_id: str) -> SourceInfo | None:
        """Return the source with ``source_id`` or ``None``."""
        async with self._session_factory() as session:
            record = await session.get(SourceRecord, source_id)
            return None if record is None else SourceInfo.from_record(record)

    async def require_active(self, source_id: str) -> SourceInfo:
        """Return the source or raise a terminal error when it cannot run.

        Raises
        ------
        SourceNotFoundError
            When no row exists for ``source_id``.
        SourceInactiveError
            When the source has been deactivated.

        """
        source = await self.get(source_id)
        if source is None:
            raise SourceNotFoundError(source_id)
        if not source.active:
            raise SourceInactiveError(source_id)
        return source

    async def list_active(self) -> list[SourceInfo]:
        """Return every active source ordered by id."""
        async with self._session_factory() as session:
            stmt = (
                select(SourceRecord)
                .where(SourceRecord.active.is_(True))
                .order_by(SourceRecord.id)
            )
            records = (await session.scalars(stmt)).all()
            return [SourceInfo.from_record(record) for record in records]

    async def advance_watermark(self, source_id: str, watermark: dt.datetime) -> bool:
        """Move the watermark forward to ``watermark``.

        The update is conditional so concurrent fetches for one source can
        only ever raise the stored value. Returns ``True`` when the row moved.
        """
        if watermark.tzinfo is None:
            raise TimezoneAwareRequiredError.for_watermark()
        stmt = (
            update(SourceRecord)
            .where(
                SourceRecord.id == source_id,
                or_(
                    SourceRecord.watermark.is_(None),
                    SourceRecord.watermark < watermark,
                ),
            )
            .values(watermark=watermark, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session, session.begin():
            result = await session.execute(stmt)
        return result.rowcount > 0

    async def deactivate(self, source_id: str) -> bool:
        """Mark the source inactive; returns ``True`` if it was active."""
        stmt = (
            update(SourceRecord)
            .where(SourceRecord.id == source_id, SourceRecord.active.is_(True))
            .values(active=False, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session, session.begin():
            result = await session.execute(stmt)
        return result.rowcount > 0


__all__ = ["SourceInfo", "SourceRepository"]
