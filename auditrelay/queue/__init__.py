"""Job queue lanes, admission gates, and outcome tracking.

The actors live in :mod:`auditrelay.queue.actors`, which is not imported
here because importing it installs the process-wide broker.
"""

from __future__ import annotations

from ._broker import ensure_broker_configured, outcome_middleware
from .gates import LaneGate, build_rate_limit_backend
from .jobs import JobQueue
from .lanes import FAILURE_RETENTION, FETCH_RETRY, FORWARD_RETRY, Lane, RetryPolicy
from .middleware import (
    FailedJob,
    FailureLog,
    JobOutcomeMiddleware,
    MemoryFailureLog,
    RedisFailureLog,
)

__all__ = [
    "FAILURE_RETENTION",
    "FETCH_RETRY",
    "FORWARD_RETRY",
    "FailedJob",
    "FailureLog",
    "JobOutcomeMiddleware",
    "JobQueue",
    "Lane",
    "LaneGate",
    "MemoryFailureLog",
    "RedisFailureLog",
    "RetryPolicy",
    "build_rate_limit_backend",
    "ensure_broker_configured",
    "outcome_middleware",
]
