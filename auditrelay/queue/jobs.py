"""Enqueue fetch and forward jobs with their lane retry policies."""

from __future__ import annotations

import typing as typ

from .lanes import FETCH_RETRY, FORWARD_RETRY, Lane
from .middleware import JobOutcomeMiddleware

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    import dramatiq

    from .middleware import FailedJob


class JobQueue:
    """Producer-side view of the two lanes.

    Parameters
    ----------
    fetch_actor
        Actor consuming ``FetchJob{source_id}`` from the fetch lane.
    forward_actor
        Actor consuming ``ForwardJob{source_id, event_ids}`` from the
        forward lane.

    """

    def __init__(
        self,
        fetch_actor: dramatiq.Actor[..., typ.Any],
        forward_actor: dramatiq.Actor[..., typ.Any],
    ) -> None:
        for actor, lane in ((fetch_actor, Lane.FETCH), (forward_actor, Lane.FORWARD)):
            if actor.queue_name != lane:
                msg = f"{actor.actor_name} consumes {actor.queue_name!r}, not {lane!r}"
                raise ValueError(msg)
        self._fetch_actor = fetch_actor
        self._forward_actor = forward_actor

    def enqueue_fetch(self, source_id: str) -> dramatiq.Message[typ.Any]:
        """Queue a fetch of ``source_id`` (3 attempts, 5s base backoff)."""
        return self._fetch_actor.send_with_options(
            args=(source_id,), **FETCH_RETRY.message_options()
        )

    def enqueue_forward(
        self, source_id: str, event_ids: cabc.Sequence[str]
    ) -> dramatiq.Message[typ.Any]:
        """Queue delivery of ``event_ids`` (5 attempts, 5s base backoff)."""
        return self._forward_actor.send_with_options(
            args=(source_id, list(event_ids)), **FORWARD_RETRY.message_options()
        )

    def recent_failures(self, lane: Lane) -> list[FailedJob]:
        """Return the retained permanent failures for ``lane``, oldest first.

        With the Redis broker this includes failures recorded by every worker
        process sharing the broker.
        """
        broker = self._fetch_actor.broker
        for middleware in broker.middleware:
            if isinstance(middleware, JobOutcomeMiddleware):
                return middleware.recent_failures(lane)
        return []


__all__ = ["JobQueue"]
