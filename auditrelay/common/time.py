"""Common time utilities."""

from __future__ import annotations

import datetime as dt


def utcnow() -> dt.datetime:
    """Return an aware UTC timestamp suitable for DB defaults."""
    return dt.datetime.now(dt.UTC)


def isoformat_z(value: dt.datetime) -> str:
    """Render an aware datetime as RFC 3339 UTC with millisecond precision.

    Both the Reports API query parameters and the webhook payload use this
    shape (``2024-07-14T10:00:00.000Z``).
    """
    if value.tzinfo is None:
        msg = "datetime must be timezone-aware"
        raise ValueError(msg)
    text = value.astimezone(dt.UTC).isoformat(timespec="milliseconds")
    return text.replace("+00:00", "Z")


def parse_rfc3339(value: str) -> dt.datetime:
    """Parse an RFC 3339 timestamp (``Z`` suffix allowed) into aware UTC."""
    parsed = dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        msg = f"timestamp missing timezone: {value}"
        raise ValueError(msg)
    return parsed.astimezone(dt.UTC)
