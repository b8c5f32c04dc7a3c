"""Queue lanes and their retry policies."""

from __future__ import annotations

import dataclasses as dc
import datetime as dt
import enum

FAILURE_RETENTION = 100


class Lane(enum.StrEnum):
    """Named work lanes; each maps onto a Dramatiq queue."""

    FETCH = "fetch"
    FORWARD = "forward"


@dc.dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Queue-level retry policy for one lane.

    Attributes
    ----------
    attempts
        Total executions allowed, including the first.
    backoff
        Base delay before the first retry; Dramatiq doubles it per retry.

    """

    attempts: int
    backoff: dt.timedelta

    @property
    def max_retries(self) -> int:
        """Return retries after the first execution."""
        return self.attempts - 1

    @property
    def min_backoff_ms(self) -> int:
        """Return the base backoff in milliseconds, as Dramatiq expects."""
        return int(self.backoff.total_seconds() * 1000)

    def message_options(self) -> dict[str, int]:
        """Return ``send_with_options`` keyword arguments for this policy."""
        return {"max_retries": self.max_retries, "min_backoff": self.min_backoff_ms}


FETCH_RETRY = RetryPolicy(attempts=3, backoff=dt.timedelta(seconds=5))
FORWARD_RETRY = RetryPolicy(attempts=5, backoff=dt.timedelta(seconds=5))
