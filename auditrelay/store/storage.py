"""Persistence models for sources and ingested audit events."""

from __future__ import annotations

import datetime as dt
import enum
import typing as typ
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

if typ.TYPE_CHECKING:
    from sqlalchemy.engine import Dialect
    from sqlalchemy.ext.asyncio import AsyncEngine

from auditrelay.common.time import utcnow
from auditrelay.store.errors import TimezoneAwareRequiredError

MIN_FETCH_INTERVAL_SECONDS = 60
DEFAULT_FETCH_INTERVAL_SECONDS = 300


def new_id() -> str:
    """Return a fresh UUID string primary key."""
    return str(uuid.uuid4())


class SourceType(enum.StrEnum):
    """Remote log APIs a source can pull from."""

    GOOGLE_WORKSPACE = "google_workspace"


class Base(DeclarativeBase):
    """Base declarative class for pipeline models."""


class UTCDateTime(TypeDecorator[dt.datetime]):
    """DateTime wrapper that round-trips UTC tzinfo even on SQLite."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(
        self, value: dt.datetime | None, dialect: Dialect
    ) -> dt.datetime | None:
        """Reject naive values and normalise aware ones to UTC."""
        if value is None:
            return None
        if value.tzinfo is None:
            raise TimezoneAwareRequiredError.for_column()
        return value.astimezone(dt.UTC)

    def process_result_value(
        self, value: dt.datetime | None, dialect: Dialect
    ) -> dt.datetime | None:
        """Ensure result datetimes are UTC and timezone aware."""
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=dt.UTC)
        return value.astimezone(dt.UTC)


class SourceRecord(Base):
    """A credentialed tenant feed pulled on a fixed interval."""

    __tablename__ = "sources"
    __table_args__ = (
        CheckConstraint(
            f"fetch_interval_seconds >= {MIN_FETCH_INTERVAL_SECONDS}",
            name="ck_sources_min_fetch_interval",
        ),
        Index("ix_sources_active", "active"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    source_type: Mapped[str] = mapped_column(
        String(32), default=SourceType.GOOGLE_WORKSPACE.value
    )
    credential_ref: Mapped[str] = mapped_column(Text())
    fetch_interval_seconds: Mapped[int] = mapped_column(
        Integer, default=DEFAULT_FETCH_INTERVAL_SECONDS
    )
    webhook_url: Mapped[str] = mapped_column(String(2048))
    watermark: Mapped[dt.datetime | None] = mapped_column(UTCDateTime(), default=None)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(
        UTCDateTime(), default=utcnow, onupdate=utcnow
    )


class EventRecord(Base):
    """One remote audit event, stored once per source and external id."""

    __tablename__ = "events"
    __table_args__ = (
        UniqueConstraint("source_id", "external_id", name="uq_events_source_external"),
        Index("ix_events_source_delivered", "source_id", "delivered"),
        Index("ix_events_source_time", "source_id", "occurred_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    source_id: Mapped[str] = mapped_column(String(36))
    external_id: Mapped[str] = mapped_column(String(255))
    occurred_at: Mapped[dt.datetime] = mapped_column(UTCDateTime())
    actor_email: Mapped[str] = mapped_column(String(320))
    actor_ip: Mapped[str | None] = mapped_column(String(64), default=None)
    event_type: Mapped[str] = mapped_column(String(128))
    status: Mapped[str | None] = mapped_column(String(64), default=None)
    attributes: Mapped[dict[str, typ.Any]] = mapped_column(JSON, default=dict)
    ingested_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow)
    delivered: Mapped[bool] = mapped_column(Boolean, default=False)
    delivery_attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_delivery_attempt_at: Mapped[dt.datetime | None] = mapped_column(
        UTCDateTime(), default=None
    )


async def init_storage(engine: AsyncEngine) -> None:
    """Create all tables registered with Base if they are absent."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
