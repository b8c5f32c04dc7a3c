"""Configuration for the fetch/forward pipeline.

Usage
-----
Create a configuration with defaults:

>>> config = PipelineConfig()
>>> config.fetch_lane.concurrency
5

Or load from environment variables:

>>> import os
>>> os.environ["AUDITRELAY_MAX_PAGES"] = "20"
>>> PipelineConfig.from_env().max_pages
20

"""

from __future__ import annotations

import dataclasses as dc
import datetime as dt
import os


def _parse_positive_int(env_var: str, default: int) -> int:
    """Read a positive integer env var, falling back to a default."""
    raw = os.environ.get(env_var, "")
    if not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        msg = f"{env_var} must be an integer, got: {raw!r}"
        raise ValueError(msg) from exc
    if value < 1:
        msg = f"{env_var} must be positive, got: {value}"
        raise ValueError(msg)
    return value


def _optional_str(env_var: str) -> str | None:
    raw = os.environ.get(env_var, "").strip()
    return raw or None


@dc.dataclass(frozen=True, slots=True)
class LaneLimits:
    """Admission limits for one queue lane.

    Attributes
    ----------
    concurrency
        Maximum jobs of the lane executing at once across all workers.
    starts_per_second
        Maximum job starts admitted per one-second window.

    """

    concurrency: int
    starts_per_second: int


@dc.dataclass(frozen=True, slots=True)
class PipelineConfig:
    """Runtime settings shared by the scheduler and the lane workers.

    Attributes
    ----------
    database_url
        SQLAlchemy async URL for the source and event tables.
    broker_url
        Redis URL for the Dramatiq broker and rate-limit backend. When unset
        the in-memory stub broker is used (tests and local runs only).
    initial_lookback
        Window length for a source's first pull, when it has no watermark.
    min_window
        Windows shorter than this are skipped without side effects.
    webhook_timeout
        Per-request timeout for webhook delivery.
    fetch_lane, forward_lane
        Admission limits for each lane.
    max_pages
        Upper bound on Reports API pages followed per fetch window.

    """

    database_url: str | None = None
    broker_url: str | None = None
    initial_lookback: dt.timedelta = dt.timedelta(hours=1)
    min_window: dt.timedelta = dt.timedelta(seconds=60)
    webhook_timeout: dt.timedelta = dt.timedelta(seconds=10)
    fetch_lane: LaneLimits = LaneLimits(concurrency=5, starts_per_second=10)
    forward_lane: LaneLimits = LaneLimits(concurrency=5, starts_per_second=20)
    max_pages: int = 10

    @classmethod
    def from_env(cls) -> PipelineConfig:
        """Create configuration from ``AUDITRELAY_*`` environment variables.

        Raises
        ------
        ValueError
            If a numeric variable is not a positive integer. The message names
            the offending variable.

        """
        return cls(
            database_url=_optional_str("AUDITRELAY_DATABASE_URL"),
            broker_url=_optional_str("AUDITRELAY_BROKER_URL"),
            initial_lookback=dt.timedelta(
                seconds=_parse_positive_int("AUDITRELAY_INITIAL_LOOKBACK_SECONDS", 3600)
            ),
            min_window=dt.timedelta(
                seconds=_parse_positive_int("AUDITRELAY_MIN_WINDOW_SECONDS", 60)
            ),
            webhook_timeout=dt.timedelta(
                seconds=_parse_positive_int("AUDITRELAY_WEBHOOK_TIMEOUT_SECONDS", 10)
            ),
            fetch_lane=LaneLimits(
                concurrency=_parse_positive_int("AUDITRELAY_FETCH_CONCURRENCY", 5),
                starts_per_second=_parse_positive_int(
                    "AUDITRELAY_FETCH_STARTS_PER_SECOND", 10
                ),
            ),
            forward_lane=LaneLimits(
                concurrency=_parse_positive_int("AUDITRELAY_FORWARD_CONCURRENCY", 5),
                starts_per_second=_parse_positive_int(
                    "AUDITRELAY_FORWARD_STARTS_PER_SECOND", 20
                ),
            ),
            max_pages=_parse_positive_int("AUDITRELAY_MAX_PAGES", 10),
        )

    def require_database_url(self) -> str:
        """Return the database URL or raise when it is not configured."""
        if self.database_url is None:
            msg = "AUDITRELAY_DATABASE_URL must be set"
            raise ValueError(msg)
        return self.database_url


__all__ = ["LaneLimits", "PipelineConfig"]
