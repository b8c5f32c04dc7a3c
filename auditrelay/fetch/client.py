"""Google Workspace Admin Reports client used by fetch workers."""

from __future__ import annotations

import dataclasses
import datetime as dt
import logging
import typing as typ

import httpx
import jwt

from auditrelay.common.retry import BackoffPolicy, RetryableStatusError, async_retrying
from auditrelay.common.time import isoformat_z, utcnow
from auditrelay.errors import CredentialError, UpstreamError

from .models import AccessGrant, RawRecord

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from auditrelay.credentials import ServiceAccountCredentials

logger = logging.getLogger(__name__)

TOKEN_URI = "https://oauth2.googleapis.com/token"
REPORTS_ENDPOINT = (
    "https://admin.googleapis.com/admin/reports/v1/activity/users/all/applications/"
)
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"

_ASSERTION_LIFETIME = dt.timedelta(hours=1)
_HTTP_TOO_MANY_REQUESTS = 429
_HTTP_SERVER_ERROR_THRESHOLD = 500
_HTTP_ERROR_STATUS_THRESHOLD = 400
_HTTP_UNAUTHORIZED = 401
_HTTP_FORBIDDEN = 403
_RATE_LIMIT_REASONS = frozenset(
    {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded"}
)


class RemoteLogClient(typ.Protocol):
    """Interface for authenticating against and reading a remote log API."""

    async def authorize(self, credentials: ServiceAccountCredentials) -> AccessGrant:
        """Exchange decrypted credentials for an access grant."""
        ...

    async def fetch(
        self,
        grant: AccessGrant,
        start: dt.datetime,
        end: dt.datetime,
    ) -> list[RawRecord]:
        """Return raw records that occurred in ``[start, end)``."""
        ...


@dataclasses.dataclass(frozen=True, slots=True)
class ReportsClientConfig:
    """Configuration for :class:`GoogleReportsClient`."""

    application: str = "admin"
    page_size: int = 1000
    max_pages: int = 10
    timeout_s: float = 30.0
    user_agent: str = "auditrelay/0.1"
    token_uri: str = TOKEN_URI
    endpoint: str = REPORTS_ENDPOINT
    backoff: BackoffPolicy = BackoffPolicy()


def _ensure_tzaware(value: dt.datetime, *, field: str) -> dt.datetime:
    if value.tzinfo is None:
        msg = f"{field} must be timezone-aware"
        raise ValueError(msg)
    return value.astimezone(dt.UTC)


def _error_reasons(response: httpx.Response) -> set[str]:
    """Extract ``error.errors[].reason`` values from a Google error body."""
    try:
        body = response.json()
    except ValueError:
        return set()
    error = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error, dict):
        return set()
    details = error.get("errors")
    if not isinstance(details, list):
        return set()
    return {
        item["reason"]
        for item in details
        if isinstance(item, dict) and isinstance(item.get("reason"), str)
    }


def _token_error_reason(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    reason = body.get("error_description") or body.get("error")
    return reason if isinstance(reason, str) else None


def _raise_if_transient(response: httpx.Response) -> None:
    """Raise :class:`RetryableStatusError` for responses worth retrying."""
    status = response.status_code
    if status == _HTTP_TOO_MANY_REQUESTS or status >= _HTTP_SERVER_ERROR_THRESHOLD:
        raise RetryableStatusError(status)
    if status == _HTTP_FORBIDDEN:
        reasons = _error_reasons(response) & _RATE_LIMIT_REASONS
        if reasons:
            raise RetryableStatusError(status, sorted(reasons)[0])


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, RetryableStatusError | httpx.TransportError)


class GoogleReportsClient:
    """Admin Reports API implementation of :class:`RemoteLogClient`.

    Authorisation signs an RS256 service-account assertion and exchanges it
    at the OAuth token endpoint. Activity reads follow ``nextPageToken`` up to
    ``max_pages`` pages. Rate limits (429, Google's rate-limit 403 reasons),
    5xx responses, and transport errors are retried in place with exponential
    backoff; any other 401/403 is reported as a :class:`CredentialError`.
    """

    def __init__(
        self,
        config: ReportsClientConfig | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        sleep: cabc.Callable[[float], cabc.Awaitable[None]] | None = None,
        clock: cabc.Callable[[], dt.datetime] = utcnow,
    ) -> None:
        """Initialise the client; an owned httpx client is created if absent."""
        self._config = config or ReportsClientConfig()
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=self._config.timeout_s,
            headers={
                "User-Agent": self._config.user_agent,
                "Accept": "application/json",
            },
        )
        self._sleep = sleep
        self._clock = clock

    async def __aenter__(self) -> GoogleReportsClient:
        """Return the client for use in ``async with`` blocks."""
        return self

    async def __aexit__(self, *_exc_info: object) -> None:
        """Release owned HTTP resources."""
        await self.aclose()

    async def aclose(self) -> None:
        """Close any owned HTTP resources."""
        if self._owns_client:
            await self._client.aclose()

    async def authorize(self, credentials: ServiceAccountCredentials) -> AccessGrant:
        """Exchange a signed service-account assertion for an access token.

        Raises
        ------
        CredentialError
            If the private key cannot sign, or the token endpoint rejects the
            assertion.
        UpstreamError
            If the token endpoint stays unavailable through every retry.

        """
        now = self._clock()
        assertion = self._sign_assertion(credentials, now)
        response = await self._send(
            "POST",
            self._config.token_uri,
            data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
        )
        if response.status_code in {400, _HTTP_UNAUTHORIZED, _HTTP_FORBIDDEN}:
            raise CredentialError.rejected(
                response.status_code, _token_error_reason(response)
            )
        if response.status_code >= _HTTP_ERROR_STATUS_THRESHOLD:
            raise UpstreamError.http_error(response.status_code)

        body = self._json_object(response)
        token = body.get("access_token")
        if not isinstance(token, str) or not token:
            raise UpstreamError.malformed("token response missing access_token")
        expires_in = body.get("expires_in", 3600)
        if not isinstance(expires_in, int):
            expires_in = 3600
        return AccessGrant(token=token, expires_at=now + dt.timedelta(seconds=expires_in))

    def _sign_assertion(
        self, credentials: ServiceAccountCredentials, now: dt.datetime
    ) -> str:
        issued_at = int(now.timestamp())
        claims: dict[str, typ.Any] = {
            "iss": credentials.client_email,
            "scope": " ".join(credentials.scopes),
            "aud": self._config.token_uri,
            "iat": issued_at,
            "exp": issued_at + int(_ASSERTION_LIFETIME.total_seconds()),
        }
        if credentials.subject:
            claims["sub"] = credentials.subject
        try:
            return jwt.encode(claims, credentials.private_key, algorithm="RS256")
        except (jwt.PyJWTError, ValueError, TypeError) as exc:
            msg = f"service account key for {credentials.client_email} is unusable"
            raise CredentialError(msg) from exc

    async def fetch(
        self,
        grant: AccessGrant,
        start: dt.datetime,
        end: dt.datetime,
    ) -> list[RawRecord]:
        """Return every activity in ``[start, end)`` up to the page cap.

        Raises
        ------
        CredentialError
            On a 401, or a 403 that is not a rate-limit response.
        UpstreamError
            On exhausted retries, other error statuses, or malformed bodies.

        """
        start_utc = _ensure_tzaware(start, field="start")
        end_utc = _ensure_tzaware(end, field="end")
        url = f"{self._config.endpoint}{self._config.application}"
        params: dict[str, str | int] = {
            "startTime": isoformat_z(start_utc),
            "endTime": isoformat_z(end_utc),
            "maxResults": self._config.page_size,
        }
        headers = {"Authorization": grant.authorization_header}

        records: list[RawRecord] = []
        for page_number in range(1, self._config.max_pages + 1):
            response = await self._send("GET", url, params=params, headers=headers)
            self._raise_for_status(response)
            body = self._json_object(response)
            items = body.get("items") or []
            if not isinstance(items, list):
                raise UpstreamError.malformed("items is not a list")
            records.extend(item for item in items if isinstance(item, dict))

            next_token = body.get("nextPageToken")
            if not isinstance(next_token, str) or not next_token:
                return records
            params = {**params, "pageToken": next_token}
            if page_number == self._config.max_pages:
                logger.warning(
                    "Reports API window %s..%s truncated after %d pages (%d records)",
                    params["startTime"],
                    params["endTime"],
                    page_number,
                    len(records),
                )
        return records

    async def _send(self, method: str, url: str, **kwargs: typ.Any) -> httpx.Response:  # noqa: ANN401
        policy = self._config.backoff
        try:
            async for attempt in async_retrying(
                policy, retry_on=_is_transient, sleep=self._sleep
            ):
                with attempt:
                    response = await self._client.request(method, url, **kwargs)
                    _raise_if_transient(response)
        except RetryableStatusError as exc:
            # Persistent quota exhaustion (403 with a rate-limit reason) lands
            # here too and is never treated as a credential fault.
            raise UpstreamError.exhausted(exc.status_code, policy.max_attempts) from exc
        except httpx.TransportError as exc:
            raise UpstreamError.network(exc) from exc
        return response

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        status = response.status_code
        if status in {_HTTP_UNAUTHORIZED, _HTTP_FORBIDDEN}:
            reasons = sorted(_error_reasons(response))
            raise CredentialError.rejected(status, ", ".join(reasons) or None)
        if status >= _HTTP_ERROR_STATUS_THRESHOLD:
            raise UpstreamError.http_error(status)

    @staticmethod
    def _json_object(response: httpx.Response) -> dict[str, typ.Any]:
        try:
            body = response.json()
        except ValueError as exc:
            raise UpstreamError.malformed(str(exc)) from exc
        if not isinstance(body, dict):
            raise UpstreamError.malformed("response body is not an object")
        return body


__all__ = [
    "JWT_BEARER_GRANT",
    "REPORTS_ENDPOINT",
    "TOKEN_URI",
    "GoogleReportsClient",
    "RemoteLogClient",
    "ReportsClientConfig",
]
