"""Exception taxonomy for the fetch and forward pipeline.

Terminal errors (missing or inactive source, rejected credentials) are listed
in :data:`TERMINAL_ERRORS` and declared as ``throws`` on the queue actors so
Dramatiq fails the message without retrying. Upstream and delivery failures
propagate to the queue, which retries them with backoff.
"""

from __future__ import annotations

import typing as typ


class PipelineError(Exception):
    """Base class for ingestion and delivery failures."""

    retryable: typ.ClassVar[bool] = False


class SourceNotFoundError(PipelineError):
    """Raised when a job references a source id that no longer exists."""

    def __init__(self, source_id: str) -> None:
        self.source_id = source_id
        super().__init__(f"Source {source_id} not found")


class SourceInactiveError(PipelineError):
    """Raised when a job references a deactivated source."""

    def __init__(self, source_id: str) -> None:
        self.source_id = source_id
        super().__init__(f"Source {source_id} is inactive")


class CredentialError(PipelineError):
    """Raised when source credentials cannot be decrypted or are rejected."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)

    @classmethod
    def undecryptable(cls, source_id: str) -> CredentialError:
        """Build an error for ciphertext the configured key cannot open."""
        return cls(f"Credentials for source {source_id} could not be decrypted")

    @classmethod
    def malformed(cls, source_id: str, detail: str) -> CredentialError:
        """Build an error for decrypted credentials with a bad shape."""
        return cls(f"Credentials for source {source_id} are malformed: {detail}")

    @classmethod
    def rejected(cls, status_code: int, reason: str | None = None) -> CredentialError:
        """Build an error for an authorisation failure reported upstream."""
        suffix = f": {reason}" if reason else ""
        return cls(
            f"Authorization error (HTTP {status_code}){suffix}",
            status_code=status_code,
        )


class UpstreamError(PipelineError):
    """Raised when the remote log API cannot be read."""

    retryable = True

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)

    @classmethod
    def http_error(cls, status_code: int) -> UpstreamError:
        """Build an error for a non-retryable HTTP status."""
        return cls(f"Reports API HTTP {status_code}", status_code=status_code)

    @classmethod
    def exhausted(cls, status_code: int, attempts: int) -> UpstreamError:
        """Build an error for a status that persisted through every retry."""
        return cls(
            f"Reports API HTTP {status_code} after {attempts} attempts",
            status_code=status_code,
        )

    @classmethod
    def network(cls, exc: Exception) -> UpstreamError:
        """Build an error for a transport-level failure."""
        return cls(f"Reports API unreachable: {exc}")

    @classmethod
    def malformed(cls, detail: str) -> UpstreamError:
        """Build an error for a response body that cannot be decoded."""
        return cls(f"Reports API returned an unexpected payload: {detail}")


class DeliveryError(PipelineError):
    """Raised when the webhook does not accept a batch.

    Attributes
    ----------
    status_code:
        Last HTTP status received, ``None`` for transport failures.
    attempts:
        HTTP attempts made by the delivery client before giving up.

    """

    retryable = True

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        attempts: int = 0,
    ) -> None:
        self.status_code = status_code
        self.attempts = attempts
        super().__init__(message)

    @classmethod
    def rejected(cls, status_code: int, attempts: int) -> DeliveryError:
        """Build an error for a 4xx response."""
        return cls(
            f"Webhook rejected batch with HTTP {status_code}",
            status_code=status_code,
            attempts=attempts,
        )

    @classmethod
    def server_error(cls, status_code: int, attempts: int) -> DeliveryError:
        """Build an error for a 5xx response that outlived every retry."""
        return cls(
            f"Webhook returned HTTP {status_code} after {attempts} attempts",
            status_code=status_code,
            attempts=attempts,
        )

    @classmethod
    def network(cls, exc: Exception, attempts: int) -> DeliveryError:
        """Build an error for a connection failure or timeout."""
        return cls(
            f"Webhook unreachable after {attempts} attempts: {exc}",
            attempts=attempts,
        )


TERMINAL_ERRORS: tuple[type[PipelineError], ...] = (
    SourceNotFoundError,
    SourceInactiveError,
    CredentialError,
)


__all__ = [
    "TERMINAL_ERRORS",
    "CredentialError",
    "DeliveryError",
    "PipelineError",
    "SourceInactiveError",
    "SourceNotFoundError",
    "UpstreamError",
]
