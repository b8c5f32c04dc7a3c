"""Value types exchanged with the remote log client."""

from __future__ import annotations

import dataclasses
import datetime as dt
import typing as typ

type RawRecord = dict[str, typ.Any]


@dataclasses.dataclass(frozen=True, slots=True)
class AccessGrant:
    """Short-lived bearer token returned by the token exchange."""

    token: str = dataclasses.field(repr=False)
    expires_at: dt.datetime

    def is_expired(self, now: dt.datetime) -> bool:
        """Return ``True`` when the grant is no longer usable at ``now``."""
        return now >= self.expires_at

    @property
    def authorization_header(self) -> str:
        """Return the ``Authorization`` header value for this grant."""
        return f"Bearer {self.token}"
