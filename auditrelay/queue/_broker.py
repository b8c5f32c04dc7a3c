"""Broker configuration helpers for Dramatiq actor setup.

Actors are declared against the global broker at import time, so the
broker must be installed before :mod:`auditrelay.queue.actors` is imported.
A Redis broker is used when ``AUDITRELAY_BROKER_URL`` is set; otherwise an
in-memory ``StubBroker`` is allowed only under tests or when
``AUDITRELAY_ALLOW_STUB_BROKER`` is truthy.
"""

from __future__ import annotations

import os
import sys
import threading

import dramatiq
from dramatiq.brokers.stub import StubBroker
from dramatiq.middleware import Retries

from .middleware import (
    FailureLog,
    JobOutcomeMiddleware,
    MemoryFailureLog,
    RedisFailureLog,
)

_BROKER_LOCK = threading.Lock()
_configured_broker: dramatiq.Broker | None = None


def _is_running_tests() -> bool:
    """Check if the current process is running in a test environment."""
    return "pytest" in sys.modules or any(
        key in os.environ
        for key in ["PYTEST_CURRENT_TEST", "PYTEST_XDIST_WORKER", "PYTEST_ADDOPTS"]
    )


def _should_use_stub_broker() -> bool:
    """Return True when the in-memory broker is acceptable."""
    allow_stub = os.environ.get("AUDITRELAY_ALLOW_STUB_BROKER", "")
    return allow_stub.lower() in {"1", "true", "yes"} or _is_running_tests()


def _build_broker(broker_url: str | None) -> dramatiq.Broker:
    if broker_url:
        from dramatiq.brokers.redis import RedisBroker

        return RedisBroker(url=broker_url)
    if _should_use_stub_broker():
        return StubBroker()
    message = (
        "No Dramatiq broker configured. Set AUDITRELAY_BROKER_URL, or "
        "AUDITRELAY_ALLOW_STUB_BROKER=1 for local runs."
    )
    raise RuntimeError(message)


def _failure_log_for(broker: dramatiq.Broker) -> FailureLog:
    """Share failures through Redis when the broker has a Redis client."""
    from dramatiq.brokers.redis import RedisBroker

    if isinstance(broker, RedisBroker):
        return RedisFailureLog(broker.client)
    return MemoryFailureLog()


def install_outcome_middleware(broker: dramatiq.Broker) -> JobOutcomeMiddleware:
    """Attach a :class:`JobOutcomeMiddleware` to ``broker`` once.

    The middleware is placed before ``Retries`` so that, as ``after_*`` hooks
    run in reverse order, it observes ``message.failed`` after ``Retries``
    has decided whether the message will be retried.
    """
    for middleware in broker.middleware:
        if isinstance(middleware, JobOutcomeMiddleware):
            return middleware
    outcome = JobOutcomeMiddleware(failure_log=_failure_log_for(broker))
    if any(isinstance(middleware, Retries) for middleware in broker.middleware):
        broker.add_middleware(outcome, before=Retries)
    else:
        broker.add_middleware(outcome)
    return outcome


def ensure_broker_configured(broker_url: str | None = None) -> dramatiq.Broker:
    """Install the process-wide broker on first call and return it.

    Thread-safe and idempotent: later calls return the broker created by
    the first one regardless of ``broker_url``.

    Raises
    ------
    RuntimeError
        If no broker URL is given outside a test/stub-allowed context.

    """
    global _configured_broker

    if _configured_broker is not None:
        return _configured_broker

    with _BROKER_LOCK:
        if _configured_broker is not None:
            return _configured_broker
        broker = _build_broker(broker_url)
        install_outcome_middleware(broker)
        dramatiq.set_broker(broker)
        _configured_broker = broker
        return broker


def outcome_middleware(broker: dramatiq.Broker) -> JobOutcomeMiddleware:
    """Return the outcome middleware installed on ``broker``."""
    for middleware in broker.middleware:
        if isinstance(middleware, JobOutcomeMiddleware):
            return middleware
    msg = "JobOutcomeMiddleware is not installed on the broker"
    raise LookupError(msg)
