"""Liveness and readiness probes for the scheduler process.

Usage
-----
Register health endpoints on the Falcon app::

    from auditrelay.api.health.resources import HealthResource, ReadyResource

    app.add_route("/health", HealthResource(started_at=utcnow()))
    app.add_route("/ready", ReadyResource(lambda: True))

"""

from __future__ import annotations

import os
import typing as typ
from http import HTTPStatus

from auditrelay import __version__
from auditrelay.common.time import isoformat_z, utcnow

if typ.TYPE_CHECKING:
    import collections.abc as cabc
    import datetime as dt

    from falcon.asgi import Request, Response

__all__ = ["HealthResource", "ReadyResource"]


class HealthResource:
    """Liveness probe reporting status, uptime, version, and environment.

    Always responds with HTTP 200 while the process can serve requests.
    """

    def __init__(
        self,
        *,
        started_at: dt.datetime,
        clock: cabc.Callable[[], dt.datetime] = utcnow,
    ) -> None:
        self._started_at = started_at
        self._clock = clock

    async def on_get(self, _req: Request, resp: Response) -> None:
        """Handle GET /health requests."""
        now = self._clock()
        resp.media = {
            "status": "ok",
            "timestamp": isoformat_z(now),
            "uptime": round((now - self._started_at).total_seconds(), 3),
            "version": __version__,
            "environment": os.environ.get("AUDITRELAY_ENVIRONMENT", "development"),
        }
        resp.status = HTTPStatus.OK


class ReadyResource:
    """Readiness probe; ready once ``is_ready`` reports the scheduler running."""

    def __init__(self, is_ready: cabc.Callable[[], bool]) -> None:
        self._is_ready = is_ready

    async def on_get(self, _req: Request, resp: Response) -> None:
        """Handle GET /ready requests.

        Parameters
        ----------
        _req
            Falcon request (unused).
        resp
            Falcon response populated with readiness status.

        """
        if self._is_ready():
            resp.media = {"status": "ready"}
            resp.status = HTTPStatus.OK
        else:
            resp.media = {"status": "starting"}
            resp.status = HTTPStatus.SERVICE_UNAVAILABLE
