"""End-to-end smoke test: a small pool works through a dependency chain."""

from __future__ import annotations

from pathlib import Path

import pytest

from nofx.commands import CommandSurface, build_runtime
from nofx.config.schema import BackendConfig, LifecycleConfig, NofxConfig, RunConfig
from nofx.coordinator.event_bus import DomainEvent, EventType
from nofx.protocol.models import TaskStatus


@pytest.mark.asyncio
async def test_pool_drains_task_graph(tmp_path: Path) -> None:
    cfg = NofxConfig(
        run=RunConfig(working_dir=str(tmp_path)),
        lifecycle=LifecycleConfig(spawn_min_wait=0.0, spawn_max_wait=0.0),
        backend=BackendConfig(name="memory"),
    )
    rt = build_runtime(cfg)
    surface = CommandSurface(rt.scheduler, rt.lifecycle)
    completed: list[str] = []
    rt.bus.subscribe(lambda e: completed.append(e.task_id), EventType.TASK_COMPLETED)

    for template in ("backend-specialist", "frontend-specialist", "testing-specialist"):
        assert (await surface.add_agent(template)).ok

    plan = [
        {"task_id": "schema", "title": "Schema", "description": "Create tables", "required_capabilities": ["database"]},
        {"task_id": "api", "title": "API", "description": "Expose endpoints", "required_capabilities": ["apis"],
         "depends_on": ["schema"]},
        {"task_id": "ui", "title": "UI", "description": "Build the page", "required_capabilities": ["react"],
         "depends_on": ["api"]},
        {"task_id": "e2e", "title": "E2E", "description": "Cover the flow", "required_capabilities": ["testing"],
         "depends_on": ["api", "ui"]},
        {"task_id": "docs", "title": "Docs", "description": "Write the readme", "priority": "low"},
    ]
    for payload in plan:
        assert surface.add_task(payload).ok

    for _ in range(10):
        await rt.lifecycle.drain()
        running = rt.scheduler.list_tasks(TaskStatus.IN_PROGRESS)
        if not running:
            break
        assert rt.scheduler.check_invariants() == []
        for task in running:
            assert surface.complete_task(task.task_id).ok

    assert {t.task_id: t.status for t in rt.scheduler.list_tasks()} == {
        tid: TaskStatus.COMPLETED for tid in ("schema", "api", "ui", "e2e", "docs")
    }
    assert completed.index("schema") < completed.index("api") < completed.index("ui") < completed.index("e2e")
    assert rt.scheduler.require_task("ui").completed_by == rt.scheduler.registry.list()[1].agent_id
    assert all(a.status == "idle" for a in rt.scheduler.registry.list())

    events: list[DomainEvent] = rt.bus.history
    assert any(e.event_type == EventType.TASK_ASSIGNED for e in events)
    assert (tmp_path / ".nofx" / "tasks.json").exists()
    assert (tmp_path / ".nofx" / "events.jsonl").exists()
    await rt.lifecycle.shutdown()
