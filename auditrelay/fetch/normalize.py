"""Convert Reports API activities into event candidates."""

from __future__ import annotations

import typing as typ
import uuid

from auditrelay.common.time import parse_rfc3339
from auditrelay.store.events import EventCandidate

if typ.TYPE_CHECKING:
    import collections.abc as cabc
    import datetime as dt

    from .models import RawRecord

UNKNOWN = "unknown"
UNKNOWN_STATUS = "UNKNOWN"

_PARAMETER_VALUE_KEYS = (
    "value",
    "intValue",
    "boolValue",
    "multiValue",
    "multiIntValue",
)


def external_id_for(record: RawRecord) -> str:
    """Return the remote id used as the dedup key.

    A plain string id is used as-is. A structured activity id becomes
    ``"{time}:{uniqueQualifier}"``. Records with neither get a generated id,
    which means they are never deduplicated against later fetches.
    """
    raw_id = record.get("id")
    if isinstance(raw_id, str) and raw_id.strip():
        return raw_id
    if isinstance(raw_id, dict):
        time = raw_id.get("time")
        qualifier = raw_id.get("uniqueQualifier")
        if time and qualifier is not None and str(qualifier):
            return f"{time}:{qualifier}"
    return f"generated-{uuid.uuid4()}"


def _occurred_at(record: RawRecord, fallback: dt.datetime) -> dt.datetime:
    raw_id = record.get("id")
    time = raw_id.get("time") if isinstance(raw_id, dict) else None
    if isinstance(time, str):
        try:
            return parse_rfc3339(time)
        except ValueError:
            return fallback
    return fallback


def _parameters(event: dict[str, typ.Any]) -> dict[str, typ.Any]:
    params = event.get("parameters")
    if not isinstance(params, list):
        return {}
    attributes: dict[str, typ.Any] = {}
    for param in params:
        if not isinstance(param, dict):
            continue
        name = param.get("name")
        if not isinstance(name, str) or not name:
            continue
        for key in _PARAMETER_VALUE_KEYS:
            if key in param:
                attributes[name] = param[key]
                break
    return attributes


def _first_event(record: RawRecord) -> dict[str, typ.Any]:
    events = record.get("events")
    if isinstance(events, list) and events and isinstance(events[0], dict):
        return events[0]
    return {}


def _actor_ip(record: RawRecord, actor: dict[str, typ.Any]) -> str:
    for candidate in (
        record.get("ipAddress"),
        actor.get("callerIp"),
        actor.get("ipAddress"),
    ):
        if isinstance(candidate, str) and candidate:
            return candidate
    return UNKNOWN


def normalize_record(record: RawRecord, *, now: dt.datetime) -> EventCandidate:
    """Map one activity onto an :class:`EventCandidate`.

    Missing fields fall back to ``"unknown"`` (``"UNKNOWN"`` for the status)
    and a missing timestamp to ``now``. The event type and attribute bag come
    from the activity's first event.
    """
    actor = record.get("actor")
    if not isinstance(actor, dict):
        actor = {}
    event = _first_event(record)
    attributes = _parameters(event)
    status = attributes.get("status")
    email = actor.get("email")
    event_name = event.get("name")
    return EventCandidate(
        external_id=external_id_for(record),
        occurred_at=_occurred_at(record, now),
        actor_email=email if isinstance(email, str) and email else UNKNOWN,
        actor_ip=_actor_ip(record, actor),
        event_type=event_name if isinstance(event_name, str) and event_name else UNKNOWN,
        status=str(status) if status is not None else UNKNOWN_STATUS,
        attributes=attributes,
    )


def normalize_records(
    records: cabc.Iterable[RawRecord], *, now: dt.datetime
) -> list[EventCandidate]:
    """Normalise every record, preserving input order."""
    return [normalize_record(record, now=now) for record in records]


__all__ = ["external_id_for", "normalize_record", "normalize_records"]
