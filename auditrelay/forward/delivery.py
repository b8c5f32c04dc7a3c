"""Webhook delivery client with in-call exponential backoff."""

from __future__ import annotations

import dataclasses
import typing as typ

import httpx

from auditrelay.common.retry import BackoffPolicy, RetryableStatusError, async_retrying
from auditrelay.errors import DeliveryError

from .payload import encode_batch

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from .payload import DeliveryBatch

_HTTP_SERVER_ERROR_THRESHOLD = 500


@dataclasses.dataclass(frozen=True, slots=True)
class DeliveryReceipt:
    """Successful delivery: final status and HTTP attempts used."""

    status_code: int
    attempts: int


class DeliveryClient(typ.Protocol):
    """Interface for handing a batch to a tenant webhook."""

    async def deliver(self, url: str, batch: DeliveryBatch) -> DeliveryReceipt:
        """POST ``batch`` to ``url`` or raise :class:`DeliveryError`."""
        ...


@dataclasses.dataclass(frozen=True, slots=True)
class WebhookClientConfig:
    """Configuration for :class:`WebhookDeliveryClient`."""

    timeout_s: float = 10.0
    user_agent: str = "auditrelay/0.1"
    backoff: BackoffPolicy = BackoffPolicy()


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, RetryableStatusError | httpx.TransportError)


class WebhookDeliveryClient:
    """httpx implementation of :class:`DeliveryClient`.

    Connection failures, timeouts, and 5xx responses are retried with
    exponential backoff (1s base, doubling, five retries by default). Any
    other non-2xx response ends the call on the first attempt.
    """

    def __init__(
        self,
        config: WebhookClientConfig | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        sleep: cabc.Callable[[float], cabc.Awaitable[None]] | None = None,
    ) -> None:
        """Initialise the client; an owned httpx client is created if absent."""
        self._config = config or WebhookClientConfig()
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=self._config.timeout_s,
            headers={"User-Agent": self._config.user_agent},
        )
        self._sleep = sleep

    async def __aenter__(self) -> WebhookDeliveryClient:
        """Return the client for use in ``async with`` blocks."""
        return self

    async def __aexit__(self, *_exc_info: object) -> None:
        """Release owned HTTP resources."""
        await self.aclose()

    async def aclose(self) -> None:
        """Close any owned HTTP resources."""
        if self._owns_client:
            await self._client.aclose()

    async def deliver(self, url: str, batch: DeliveryBatch) -> DeliveryReceipt:
        """POST ``batch`` as JSON, retrying transient failures.

        Raises
        ------
        DeliveryError
            With the last status (if any) and the number of HTTP attempts,
            when the webhook rejects the batch or stays unavailable.

        """
        body = encode_batch(batch)
        headers = {"Content-Type": "application/json"}
        attempts = 0
        try:
            async for attempt in async_retrying(
                self._config.backoff, retry_on=_is_retryable, sleep=self._sleep
            ):
                with attempt:
                    attempts += 1
                    response = await self._client.post(
                        url, content=body, headers=headers
                    )
                    status = response.status_code
                    if status >= _HTTP_SERVER_ERROR_THRESHOLD:
                        raise RetryableStatusError(status)
                    if not response.is_success:
                        raise DeliveryError.rejected(status, attempts)
        except RetryableStatusError as exc:
            raise DeliveryError.server_error(exc.status_code, attempts) from exc
        except httpx.TransportError as exc:
            raise DeliveryError.network(exc, attempts) from exc
        return DeliveryReceipt(status_code=response.status_code, attempts=attempts)


__all__ = [
    "DeliveryClient",
    "DeliveryReceipt",
    "WebhookClientConfig",
    "WebhookDeliveryClient",
]
