"""Fire-and-forget metrics for the pipeline.

Workers report counts and durations through :func:`record_metric`, which
never lets a sink failure reach the job that produced the measurement.
"""

from __future__ import annotations

import enum
import logging
import typing as typ

if typ.TYPE_CHECKING:
    import collections.abc as cabc

logger = logging.getLogger(__name__)


class MetricName(enum.StrEnum):
    """Metric names emitted by the fetch and forward workers."""

    EVENTS_FETCHED = "events_fetched"
    FETCH_DURATION_MS = "fetch_duration_ms"
    EVENTS_FORWARDED = "events_forwarded"
    EVENTS_FORWARD_FAILED = "events_forward_failed"


class MetricsSink(typ.Protocol):
    """Destination for pipeline measurements."""

    def record(
        self,
        name: str,
        value: float,
        tags: cabc.Mapping[str, str] | None = None,
    ) -> None:
        """Record ``value`` for metric ``name``."""
        ...


class NullMetricsSink:
    """Sink that discards every measurement."""

    def record(
        self,
        name: str,
        value: float,
        tags: cabc.Mapping[str, str] | None = None,
    ) -> None:
        """Discard the measurement."""


class LoggingMetricsSink:
    """Sink that writes each measurement as a structured log line."""

    def record(
        self,
        name: str,
        value: float,
        tags: cabc.Mapping[str, str] | None = None,
    ) -> None:
        """Log the measurement at INFO."""
        rendered = " ".join(f"{key}={val}" for key, val in sorted((tags or {}).items()))
        logger.info("[metric] name=%s value=%s %s", name, value, rendered)


def record_metric(
    sink: MetricsSink,
    name: MetricName,
    value: float,
    **tags: str,
) -> None:
    """Send one measurement to ``sink``, logging and absorbing sink errors."""
    try:
        sink.record(name.value, value, tags)
    except Exception:  # noqa: BLE001 - metrics must never fail a job
        logger.warning("Metrics sink failed to record %s", name, exc_info=True)


__all__ = [
    "LoggingMetricsSink",
    "MetricName",
    "MetricsSink",
    "NullMetricsSink",
    "record_metric",
]
