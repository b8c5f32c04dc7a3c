"""Wire format of the batches POSTed to tenant webhooks."""

from __future__ import annotations

import typing as typ

import msgspec

from auditrelay.common.time import isoformat_z

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from auditrelay.store.events import StoredEvent


class ActorPayload(msgspec.Struct, rename="camel"):
    """Who performed the audited action."""

    email: str
    ip_address: str | None


class LogPayload(msgspec.Struct, rename="camel"):
    """One delivered audit event."""

    id: str
    timestamp: str
    actor: ActorPayload
    event_type: str
    details: dict[str, typ.Any]
    source_id: str


class DeliveryBatch(msgspec.Struct, rename="camel"):
    """Body of one webhook request: all events of a forward job."""

    source_id: str
    logs: list[LogPayload]


def to_log_payload(event: StoredEvent) -> LogPayload:
    """Render a stored event for the webhook.

    ``id`` is the remote event id, stable across refetches, so receivers can
    deduplicate on it. ``details`` is the status merged with the attributes.
    """
    return LogPayload(
        id=event.external_id,
        timestamp=isoformat_z(event.occurred_at),
        actor=ActorPayload(email=event.actor_email, ip_address=event.actor_ip),
        event_type=event.event_type,
        details={"status": event.status, **event.attributes},
        source_id=event.source_id,
    )


def build_batch(source_id: str, events: cabc.Iterable[StoredEvent]) -> DeliveryBatch:
    """Assemble the webhook body for ``events``."""
    return DeliveryBatch(
        source_id=source_id,
        logs=[to_log_payload(event) for event in events],
    )


def encode_batch(batch: DeliveryBatch) -> bytes:
    """Serialise ``batch`` to JSON bytes."""
    return msgspec.json.encode(batch)


__all__ = [
    "ActorPayload",
    "DeliveryBatch",
    "LogPayload",
    "build_batch",
    "encode_batch",
    "to_log_payload",
]
