"""Dramatiq middleware reporting job outcomes per lane.

Permanent failures are appended to a :class:`FailureLog`. With the Redis
broker the log is a capped Redis list per lane, so the scheduler process
can inspect failures recorded by any worker process and they survive worker
restarts. The in-memory log serves the stub broker used in tests and local
runs.
"""

from __future__ import annotations

import collections
import dataclasses
import datetime as dt
import threading
import typing as typ

import dramatiq
import msgspec
from redis.exceptions import RedisError

from auditrelay.common.time import utcnow
from auditrelay.logging import (
    get_logger,
    log_error,
    log_exception,
    log_info,
    log_warning,
)

from .lanes import FAILURE_RETENTION, Lane

if typ.TYPE_CHECKING:
    import redis
    from dramatiq.broker import MessageProxy

logger = get_logger(__name__)

FAILURE_KEY_PREFIX = "auditrelay:failures"


@dataclasses.dataclass(frozen=True, slots=True)
class FailedJob:
    """A job that failed permanently (retries exhausted or terminal error)."""

    message_id: str
    lane: str
    actor_name: str
    args: tuple[typ.Any, ...]
    error_type: str
    error_message: str
    retries: int
    failed_at: dt.datetime


class FailureLog(typ.Protocol):
    """Bounded per-lane store of permanent failures."""

    def append(self, failure: FailedJob) -> None:
        """Record ``failure``, evicting the oldest entry beyond the cap."""
        ...

    def recent(self, lane: str) -> list[FailedJob]:
        """Return retained failures for ``lane``, oldest first."""
        ...

    def clear(self) -> None:
        """Forget every retained failure."""
        ...


class MemoryFailureLog:
    """Process-local failure log; visible only inside the recording process."""

    def __init__(self, retain: int = FAILURE_RETENTION) -> None:
        self._retain = retain
        self._failures: dict[str, collections.deque[FailedJob]] = {}
        self._lock = threading.Lock()

    def append(self, failure: FailedJob) -> None:
        with self._lock:
            bucket = self._failures.setdefault(
                failure.lane, collections.deque(maxlen=self._retain)
            )
            bucket.append(failure)

    def recent(self, lane: str) -> list[FailedJob]:
        with self._lock:
            return list(self._failures.get(lane, ()))

    def clear(self) -> None:
        with self._lock:
            self._failures.clear()


class RedisFailureLog:
    """Failure log kept in one capped Redis list per lane.

    New entries are pushed on the head and the list is trimmed to ``retain``
    entries, so the tail always holds the oldest survivor.
    """

    def __init__(
        self,
        client: redis.Redis,
        retain: int = FAILURE_RETENTION,
        *,
        key_prefix: str = FAILURE_KEY_PREFIX,
    ) -> None:
        self._client = client
        self._retain = retain
        self._key_prefix = key_prefix

    def key_for(self, lane: str) -> str:
        """Return the Redis key holding ``lane``'s failures."""
        return f"{self._key_prefix}:{lane}"

    def append(self, failure: FailedJob) -> None:
        key = self.key_for(failure.lane)
        self._client.lpush(key, msgspec.json.encode(failure))
        self._client.ltrim(key, 0, self._retain - 1)

    def recent(self, lane: str) -> list[FailedJob]:
        raw = self._client.lrange(self.key_for(lane), 0, self._retain - 1)
        return [msgspec.json.decode(item, type=FailedJob) for item in reversed(raw)]

    def clear(self) -> None:
        self._client.delete(*(self.key_for(lane) for lane in Lane))


class JobOutcomeMiddleware(dramatiq.Middleware):
    """Log completions and failures; keep the newest failures of each lane.

    Successful messages are not retained. At most ``retain`` permanent
    failures are kept per lane, oldest discarded first.
    """

    def __init__(
        self,
        retain: int = FAILURE_RETENTION,
        *,
        failure_log: FailureLog | None = None,
    ) -> None:
        self.failure_log = failure_log or MemoryFailureLog(retain)

    def after_process_message(
        self,
        broker: dramatiq.Broker,
        message: MessageProxy,
        *,
        result: object | None = None,
        exception: BaseException | None = None,
    ) -> None:
        """Record the outcome of one message execution."""
        lane = message.queue_name
        if exception is None:
            log_info(
                logger,
                "Job %s (%s) on lane %s completed",
                message.message_id,
                message.actor_name,
                lane,
            )
            return

        retries = int(message.options.get("retries", 0))
        if not message.failed:
            log_warning(
                logger,
                "Job %s (%s) on lane %s failed with %s: %s; retry %d scheduled",
                message.message_id,
                message.actor_name,
                lane,
                type(exception).__name__,
                exception,
                retries,
            )
            return

        failure = FailedJob(
            message_id=message.message_id,
            lane=lane,
            actor_name=message.actor_name,
            args=tuple(message.args),
            error_type=type(exception).__name__,
            error_message=str(exception),
            retries=retries,
            failed_at=utcnow(),
        )
        log_error(
            logger,
            "Job %s (%s) on lane %s failed permanently after %d retries: %s: %s",
            message.message_id,
            message.actor_name,
            lane,
            retries,
            failure.error_type,
            failure.error_message,
        )
        try:
            self.failure_log.append(failure)
        except RedisError as exc:
            log_exception(
                logger, f"Failed to retain failure of job {message.message_id}", exc
            )

    def recent_failures(self, lane: str) -> list[FailedJob]:
        """Return retained failures for ``lane``, oldest first."""
        return self.failure_log.recent(lane)

    def clear(self) -> None:
        """Forget every retained failure."""
        self.failure_log.clear()


__all__ = [
    "FAILURE_KEY_PREFIX",
    "FailedJob",
    "FailureLog",
    "JobOutcomeMiddleware",
    "MemoryFailureLog",
    "RedisFailureLog",
]
