"""Unit tests for the probe app and its scheduler lifespan.

Usage
-----
Run with pytest::

    pytest tests/unit/test_api_app.py

"""

from __future__ import annotations

import asyncio
import datetime as dt

import falcon
import falcon.asgi
import falcon.testing
import pytest

from auditrelay import __version__
from auditrelay.api import create_app
from auditrelay.api.health import HealthResource, ReadyResource
from tests.helpers.fakes import BASE_TIME, FrozenClock


class _FakeScheduler:
    """Scheduler stand-in whose run loop blocks until cancelled."""

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.cancelled = False
        self.stopped = False

    async def run(self) -> None:
        self.started.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise

    async def stop_all(self) -> None:
        self.stopped = True


class TestProbeOnlyApp:
    """Tests for create_app() without a scheduler."""

    def test_returns_falcon_app(self) -> None:
        """create_app() returns a Falcon ASGI App."""
        assert isinstance(create_app(), falcon.asgi.App), "expected Falcon ASGI App"

    def test_health_reports_status_and_version(self) -> None:
        """/health answers 200 with status, uptime, and version."""
        result = falcon.testing.TestClient(create_app()).simulate_get("/health")

        assert result.status == falcon.HTTP_200, "expected HTTP 200 from /health"
        assert result.json["status"] == "ok"
        assert result.json["version"] == __version__
        assert result.json["uptime"] >= 0
        assert result.json["timestamp"].endswith("Z")

    def test_ready_without_scheduler(self) -> None:
        """Probe-only apps are always ready."""
        result = falcon.testing.TestClient(create_app()).simulate_get("/ready")

        assert result.status == falcon.HTTP_200, "expected HTTP 200 from /ready"
        assert result.json == {"status": "ready"}


def test_health_uptime_uses_clock(monkeypatch: pytest.MonkeyPatch) -> None:
    """Uptime is measured from the start time with the injected clock."""
    monkeypatch.setenv("AUDITRELAY_ENVIRONMENT", "staging")
    clock = FrozenClock(BASE_TIME + dt.timedelta(seconds=90))
    app = falcon.asgi.App()
    app.add_route("/health", HealthResource(started_at=BASE_TIME, clock=clock))

    body = falcon.testing.TestClient(app).simulate_get("/health").json

    assert body["uptime"] == 90.0
    assert body["timestamp"] == "2099-01-01T12:01:30.000Z"
    assert body["environment"] == "staging"


def test_ready_is_503_while_scheduler_is_down() -> None:
    """Readiness reports 503 until the scheduler loop runs."""
    app = falcon.asgi.App()
    app.add_route("/ready", ReadyResource(lambda: False))

    result = falcon.testing.TestClient(app).simulate_get("/ready")

    assert result.status == falcon.HTTP_503, "expected HTTP 503 before startup"
    assert result.json == {"status": "starting"}


@pytest.mark.asyncio
async def test_lifespan_runs_and_stops_scheduler() -> None:
    """Startup launches the loop; shutdown cancels it and every trigger."""
    scheduler = _FakeScheduler()
    app = create_app(scheduler)  # type: ignore[arg-type]

    async with falcon.testing.ASGIConductor(app) as conductor:
        await asyncio.wait_for(scheduler.started.wait(), timeout=5)
        result = await conductor.simulate_get("/ready")
        assert result.status == falcon.HTTP_200, "expected ready once running"

    assert scheduler.cancelled is True
    assert scheduler.stopped is True
