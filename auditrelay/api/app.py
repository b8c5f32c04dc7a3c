"""Application factory for the auditrelay Falcon ASGI application.

The app serves ``/health`` and ``/ready`` and, when given a scheduler,
runs it for the lifetime of the ASGI server through lifespan events.

Usage
-----
Create a probe-only app::

    app = create_app()

Create an app that also drives the fetch scheduler::

    app = create_app(scheduler)

"""

from __future__ import annotations

import asyncio
import typing as typ

import falcon.asgi

from auditrelay.api.health.resources import HealthResource, ReadyResource
from auditrelay.common.time import utcnow
from auditrelay.logging import get_logger, log_info

if typ.TYPE_CHECKING:
    from auditrelay.scheduler import FetchScheduler

__all__ = ["SchedulerLifespan", "create_app"]

logger = get_logger(__name__)


class SchedulerLifespan:
    """Falcon middleware starting the scheduler loop on ASGI startup."""

    def __init__(self, scheduler: FetchScheduler) -> None:
        self._scheduler = scheduler
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        """Return whether the scheduler loop is alive."""
        return self._task is not None and not self._task.done()

    async def process_startup(self, _scope: object, _event: object) -> None:
        """Start the reconcile loop."""
        self._task = asyncio.create_task(self._scheduler.run(), name="fetch-scheduler")
        log_info(logger, "Fetch scheduler started")

    async def process_shutdown(self, _scope: object, _event: object) -> None:
        """Stop the reconcile loop and cancel every trigger."""
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        await self._scheduler.stop_all()
        log_info(logger, "Fetch scheduler stopped")


def create_app(scheduler: FetchScheduler | None = None) -> falcon.asgi.App:
    """Create and configure the Falcon ASGI application.

    Parameters
    ----------
    scheduler
        Optional scheduler to run under ASGI lifespan. Without one the app
        only answers probes and always reports ready.

    Returns
    -------
    falcon.asgi.App
        Configured Falcon ASGI application.

    """
    middleware: list[object] = []
    lifespan: SchedulerLifespan | None = None
    if scheduler is not None:
        lifespan = SchedulerLifespan(scheduler)
        middleware.append(lifespan)

    app = falcon.asgi.App(middleware=middleware)  # type: ignore[no-matching-overload]  # Falcon stubs

    def is_ready() -> bool:
        return lifespan is None or lifespan.running

    app.add_route("/health", HealthResource(started_at=utcnow()))
    app.add_route("/ready", ReadyResource(is_ready))
    return app
