"""Storage-layer error types."""

from __future__ import annotations


class TimezoneAwareRequiredError(ValueError):
    """Raised when datetime inputs lack timezone information."""

    def __init__(self, context: str) -> None:
        """Attach a consistent message for the failing context."""
        super().__init__(f"{context} must be timezone aware")

    @classmethod
    def for_column(cls) -> TimezoneAwareRequiredError:
        """Return an error for a naive value bound to a datetime column."""
        return cls("datetime column values")

    @classmethod
    def for_watermark(cls) -> TimezoneAwareRequiredError:
        """Return an error indicating a naive watermark was supplied."""
        return cls("watermark")


class UnsupportedDialectError(RuntimeError):
    """Raised when the bulk insert path has no upsert form for a dialect."""

    def __init__(self, dialect_name: str) -> None:
        """Record the dialect name for diagnostics."""
        self.dialect_name = dialect_name
        super().__init__(
            f"insert-if-absent is not supported on the {dialect_name!r} dialect"
        )
