"""HTTP surface of the scheduler process."""

from __future__ import annotations

from .app import SchedulerLifespan, create_app

__all__ = ["SchedulerLifespan", "create_app"]
