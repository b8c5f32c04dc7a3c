"""Exponential backoff shared by the Reports API client and webhook client.

Both HTTP clients retry a call in place before giving up and letting the
job queue apply its own, coarser retry policy. The in-call retries are driven
by tenacity so the schedule (base delay, doubling, retry cap) is declared in
one place.
"""

from __future__ import annotations

import asyncio
import dataclasses
import typing as typ

from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from tenacity import RetryCallState

    type Sleeper = cabc.Callable[[float], cabc.Awaitable[None]]


@dataclasses.dataclass(frozen=True, slots=True)
class BackoffPolicy:
    """Retry schedule for a single outbound call.

    Attributes
    ----------
    max_retries:
        Retries after the first attempt; ``5`` means up to six attempts.
    base_delay_s:
        Delay before the first retry; each further retry doubles it.
    max_delay_s:
        Upper bound for a single delay.

    """

    max_retries: int = 5
    base_delay_s: float = 1.0
    max_delay_s: float = 60.0

    @property
    def max_attempts(self) -> int:
        """Return the total number of attempts including the first."""
        return self.max_retries + 1


class RetryableStatusError(Exception):
    """Raised inside a retry loop for an HTTP status worth another attempt."""

    def __init__(self, status_code: int, reason: str | None = None) -> None:
        self.status_code = status_code
        self.reason = reason
        detail = f" ({reason})" if reason else ""
        super().__init__(f"HTTP {status_code}{detail}")


def async_retrying(
    policy: BackoffPolicy,
    *,
    retry_on: cabc.Callable[[BaseException], bool],
    sleep: Sleeper | None = None,
    before_sleep: cabc.Callable[[RetryCallState], None] | None = None,
) -> AsyncRetrying:
    """Build a tenacity controller for ``policy``.

    The controller re-raises the last exception once attempts are exhausted
    and raises non-matching exceptions immediately, so callers translate
    plain exceptions rather than ``RetryError``.
    """
    kwargs: dict[str, typ.Any] = {
        "stop": stop_after_attempt(policy.max_attempts),
        "wait": wait_exponential(
            multiplier=policy.base_delay_s,
            max=policy.max_delay_s,
        ),
        "retry": retry_if_exception(retry_on),
        "sleep": sleep or asyncio.sleep,
        "reraise": True,
    }
    if before_sleep is not None:
        kwargs["before_sleep"] = before_sleep
    return AsyncRetrying(**kwargs)


__all__ = ["BackoffPolicy", "RetryableStatusError", "async_retrying"]
