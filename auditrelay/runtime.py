"""auditrelay scheduler runtime entrypoint.

This module keeps the ``auditrelay.runtime:create_app`` Granian entrypoint
stable. When ``AUDITRELAY_DATABASE_URL`` is set the app runs the fetch
scheduler under ASGI lifespan; otherwise it starts in probe-only mode.

Configuration is driven by environment variables:

- ``AUDITRELAY_HOST``: Bind address (default ``0.0.0.0``)
- ``AUDITRELAY_PORT``: Listen port (default ``8080``)
- ``AUDITRELAY_LOG_LEVEL``: Log level (default ``INFO``)
- ``AUDITRELAY_DATABASE_URL``: Database URL (enables the scheduler)
- ``AUDITRELAY_BROKER_URL``: Redis URL fetch jobs are enqueued to

Run the service directly with ``python -m auditrelay.runtime`` and the lane
workers with ``dramatiq auditrelay.queue.actors``.
"""

from __future__ import annotations

import os
import typing as typ

from auditrelay.config import PipelineConfig
from auditrelay.logging import (
    configure_logging,
    get_logger,
    log_error,
    log_info,
    log_warning,
)

if typ.TYPE_CHECKING:
    import falcon.asgi

__all__ = ["create_app", "main"]

logger = get_logger(__name__)

_MIN_PORT = 1
_MAX_PORT = 65535


def _parse_port(port_str: str) -> int:
    """Parse and validate a port number string.

    Raises
    ------
    SystemExit
        If port_str is not a valid integer in range 1-65535.

    """
    try:
        port = int(port_str)
        if not (_MIN_PORT <= port <= _MAX_PORT):
            msg = f"port {port} outside valid range {_MIN_PORT}-{_MAX_PORT}"
            raise ValueError(msg)  # noqa: TRY301 - unify conversion and range errors
    except ValueError as exc:
        log_error(
            logger,
            "Invalid AUDITRELAY_PORT value: %r (must be %d-%d): %s",
            port_str,
            _MIN_PORT,
            _MAX_PORT,
            exc,
        )
        raise SystemExit(1) from exc
    return port


def create_app() -> falcon.asgi.App:
    """Create the ASGI application from the environment.

    Returns
    -------
    falcon.asgi.App
        Probe-only app when no database is configured, otherwise an app that
        runs the fetch scheduler.

    """
    from auditrelay.api.app import create_app as _create_api_app

    config = PipelineConfig.from_env()
    if config.database_url is None:
        log_warning(logger, "AUDITRELAY_DATABASE_URL unset; scheduler disabled")
        return _create_api_app()

    from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

    from auditrelay.queue.actors import job_queue
    from auditrelay.scheduler import FetchScheduler
    from auditrelay.store.sources import SourceRepository

    engine = create_async_engine(config.database_url)
    session_factory = async_sessionmaker(engine, expire_on_commit=False)
    scheduler = FetchScheduler(SourceRepository(session_factory), job_queue)
    return _create_api_app(scheduler)


def main() -> None:
    """Serve the scheduler app with Granian.

    Triggers live in process memory, so the server always runs one worker;
    scale fetch throughput with Dramatiq worker processes instead.
    """
    from granian import Granian
    from granian.constants import Interfaces

    host = os.environ.get("AUDITRELAY_HOST", "0.0.0.0")  # noqa: S104 - bind all interfaces for container
    port = _parse_port(os.environ.get("AUDITRELAY_PORT", "8080"))
    log_level_str = os.environ.get("AUDITRELAY_LOG_LEVEL", "INFO")

    normalized_level, invalid_level = configure_logging(log_level_str)
    if invalid_level:
        log_warning(
            logger,
            "Invalid AUDITRELAY_LOG_LEVEL %r, falling back to %s",
            log_level_str,
            normalized_level,
        )

    log_info(
        logger,
        "Starting auditrelay runtime on %s:%d (log_level=%s)",
        host,
        port,
        normalized_level,
    )

    server = Granian(
        "auditrelay.runtime:create_app",
        address=host,
        port=port,
        interface=Interfaces.ASGI,
        workers=1,
        factory=True,
    )
    server.serve()


if __name__ == "__main__":
    main()
