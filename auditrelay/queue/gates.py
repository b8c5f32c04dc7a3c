"""Per-lane admission: bounded concurrency plus a job-start rate.

Gates are built on Dramatiq's rate limiters so every worker process sharing
the Redis backend observes the same limits. Admission waits instead of
raising, so throttled jobs never spend their retry budget.
"""

from __future__ import annotations

import contextlib
import time
import typing as typ

from dramatiq.rate_limits import ConcurrentRateLimiter, WindowRateLimiter
from dramatiq.rate_limits.backends import StubBackend

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from dramatiq.rate_limits import RateLimiter, RateLimiterBackend

    from auditrelay.config import LaneLimits

    from .lanes import Lane

_KEY_PREFIX = "auditrelay"
# Lease on a concurrency slot, so a crashed worker cannot hold it forever.
_SLOT_TTL_MS = 15 * 60 * 1000


def build_rate_limit_backend(broker_url: str | None) -> RateLimiterBackend:
    """Return a Redis backend for ``broker_url`` or an in-process stub."""
    if broker_url:
        from dramatiq.rate_limits.backends import RedisBackend

        return RedisBackend(url=broker_url)
    return StubBackend()


class LaneGate:
    """Admission gate for one lane."""

    def __init__(
        self,
        backend: RateLimiterBackend,
        lane: Lane,
        limits: LaneLimits,
        *,
        poll_interval_s: float = 0.05,
        sleep: cabc.Callable[[float], None] = time.sleep,
    ) -> None:
        self.lane = lane
        self.limits = limits
        self._slots = ConcurrentRateLimiter(
            backend,
            f"{_KEY_PREFIX}:{lane}:concurrency",
            limit=limits.concurrency,
            ttl=_SLOT_TTL_MS,
        )
        self._starts = WindowRateLimiter(
            backend,
            f"{_KEY_PREFIX}:{lane}:starts",
            limit=limits.starts_per_second,
            window=1,
        )
        self._poll_interval_s = poll_interval_s
        self._sleep = sleep

    def _wait_for(self, limiter: RateLimiter) -> None:
        while True:
            with limiter.acquire(raise_on_failure=False) as acquired:
                if acquired:
                    return
            self._sleep(self._poll_interval_s)

    @contextlib.contextmanager
    def admit(self) -> cabc.Iterator[None]:
        """Block until the lane admits one more job, then hold a slot.

        A start token is consumed first (window limiter tokens are never
        returned); the concurrency slot is released when the block exits.
        """
        self._wait_for(self._starts)
        while True:
            with self._slots.acquire(raise_on_failure=False) as acquired:
                if acquired:
                    yield
                    return
            self._sleep(self._poll_interval_s)


__all__ = ["LaneGate", "build_rate_limit_backend"]
