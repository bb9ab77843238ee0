"""Global test fixtures for nofx."""

from __future__ import annotations

from pathlib import Path

import pytest

from nofx.config.schema import LifecycleConfig
from nofx.coordinator.event_bus import EventBus
from nofx.coordinator.scheduler import Scheduler


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    """Provide a temporary snapshot directory."""
    return tmp_path / ".nofx"


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def scheduler(bus: EventBus) -> Scheduler:
    return Scheduler(bus=bus)


@pytest.fixture
def fast_lifecycle() -> LifecycleConfig:
    """Lifecycle settings with no backoff sleeps."""
    return LifecycleConfig(max_agents=3, spawn_attempts=3, spawn_min_wait=0.0, spawn_max_wait=0.0)
