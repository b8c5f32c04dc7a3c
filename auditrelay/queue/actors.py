"""Dramatiq actors for the fetch and forward lanes.

Run the workers with::

    dramatiq auditrelay.queue.actors

Importing this module installs the process-wide broker (Redis when
``AUDITRELAY_BROKER_URL`` is set) before the actors are declared.

Usage
-----
>>> fetch_source_job.send("550e8400-e29b-41d4-a716-446655440000")

"""

from __future__ import annotations

import asyncio
import threading
import typing as typ

import dramatiq

from auditrelay.config import PipelineConfig
from auditrelay.errors import TERMINAL_ERRORS, SourceInactiveError, SourceNotFoundError
from auditrelay.pipeline import build_resources

from ._broker import ensure_broker_configured
from .jobs import JobQueue
from .lanes import FETCH_RETRY, FORWARD_RETRY, Lane

if typ.TYPE_CHECKING:
    from auditrelay.fetch.worker import FetchResult
    from auditrelay.forward.worker import ForwardResult
    from auditrelay.pipeline import PipelineResources

ensure_broker_configured(PipelineConfig.from_env().broker_url)

_RESOURCES: PipelineResources | None = None
_RESOURCES_LOCK = threading.Lock()


def _get_or_create_resources() -> PipelineResources:
    """Return the process-wide pipeline resources, building them once."""
    global _RESOURCES

    if _RESOURCES is not None:
        return _RESOURCES
    with _RESOURCES_LOCK:
        if _RESOURCES is None:
            _RESOURCES = build_resources(PipelineConfig.from_env())
        return _RESOURCES


def configure_pipeline(resources: PipelineResources | None) -> None:
    """Replace the cached resources; ``None`` rebuilds them from the env."""
    global _RESOURCES

    with _RESOURCES_LOCK:
        _RESOURCES = resources


async def _run_fetch(resources: PipelineResources, source_id: str) -> FetchResult:
    async with resources.remote_client_factory() as client:
        worker = resources.fetch_worker(client, job_queue)
        return await worker.process(source_id)


async def _run_forward(
    resources: PipelineResources, source_id: str, event_ids: list[str]
) -> ForwardResult:
    async with resources.delivery_client_factory() as delivery:
        worker = resources.forward_worker(delivery)
        return await worker.process(source_id, event_ids)


@dramatiq.actor(
    queue_name=Lane.FETCH.value,
    max_retries=FETCH_RETRY.max_retries,
    min_backoff=FETCH_RETRY.min_backoff_ms,
    throws=TERMINAL_ERRORS,
)
def fetch_source_job(source_id: str) -> int:
    """Pull and store new events for one source.

    Returns
    -------
    int
        Number of new events stored (and queued for forwarding).

    """
    resources = _get_or_create_resources()
    with resources.gates[Lane.FETCH].admit():
        result = asyncio.run(_run_fetch(resources, source_id))
    return result.events_inserted


@dramatiq.actor(
    queue_name=Lane.FORWARD.value,
    max_retries=FORWARD_RETRY.max_retries,
    min_backoff=FORWARD_RETRY.min_backoff_ms,
    throws=(SourceNotFoundError, SourceInactiveError),
)
def forward_events_job(source_id: str, event_ids: list[str]) -> int:
    """Deliver stored events to the source's webhook.

    Returns
    -------
    int
        Number of events marked delivered by this run.

    """
    resources = _get_or_create_resources()
    with resources.gates[Lane.FORWARD].admit():
        result = asyncio.run(_run_forward(resources, source_id, event_ids))
    return result.delivered


job_queue = JobQueue(fetch_source_job, forward_events_job)


__all__ = [
    "configure_pipeline",
    "fetch_source_job",
    "forward_events_job",
    "job_queue",
]
