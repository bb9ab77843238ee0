"""Tests for JSON snapshot persistence."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from nofx.coordinator.scheduler import Scheduler
from nofx.errors import PersistenceError
from nofx.persistence.store import JsonSnapshotStore, snapshot_problems
from nofx.protocol.io import read_json
from nofx.protocol.models import SNAPSHOT_VERSION
from tests.helpers import make_agent, submit


class TestJsonSnapshotStore:
    def test_missing_files_load_empty(self, state_dir: Path) -> None:
        store = JsonSnapshotStore(state_dir)
        assert store.load_agent_snapshot() == []
        assert store.load_task_snapshot() == []

    def test_save_and_load(self, state_dir: Path) -> None:
        store = JsonSnapshotStore(state_dir)
        store.save_task_snapshot([{"task_id": "t1"}])
        data = json.loads(store.tasks_path.read_text(encoding="utf-8"))
        assert data["version"] == SNAPSHOT_VERSION
        assert "timestamp" in data
        assert store.load_task_snapshot() == [{"task_id": "t1"}]
        assert not store.tasks_path.with_suffix(".json.tmp").exists()

    def test_corrupt_file_raises(self, state_dir: Path) -> None:
        store = JsonSnapshotStore(state_dir)
        state_dir.mkdir(parents=True)
        store.agents_path.write_text("{oops", encoding="utf-8")
        with pytest.raises(PersistenceError):
            store.load_agent_snapshot()

    def test_wrong_shape_raises(self, state_dir: Path) -> None:
        store = JsonSnapshotStore(state_dir)
        state_dir.mkdir(parents=True)
        store.tasks_path.write_text(json.dumps({"version": "1.0", "tasks": {}}), encoding="utf-8")
        with pytest.raises(PersistenceError):
            store.load_task_snapshot()

    def test_clear(self, state_dir: Path) -> None:
        store = JsonSnapshotStore(state_dir)
        store.save_agent_snapshot([])
        store.clear()
        assert not store.agents_path.exists()

    def test_scheduler_persists_after_each_operation(self, state_dir: Path) -> None:
        store = JsonSnapshotStore(state_dir)
        scheduler = Scheduler(persistence=store)
        scheduler.register_agent(make_agent("x"))
        submit(scheduler, "A")
        tasks = store.load_task_snapshot()
        agents = store.load_agent_snapshot()
        assert tasks[0]["status"] == "in-progress"
        assert tasks[0]["assigned_agent_id"] == "x"
        assert agents[0]["status"] == "working"
        assert agents[0]["current_task"] == "A"


def test_read_json_lenient(tmp_path: Path) -> None:
    bad = tmp_path / "bad.json"
    bad.write_text("nope", encoding="utf-8")
    assert read_json(bad, default={"x": 1}) == {"x": 1}
    assert read_json(tmp_path / "absent.json", default=None) is None


class TestSnapshotProblems:
    def test_consistent_snapshot(self, scheduler: Scheduler) -> None:
        scheduler.register_agent(make_agent("x"))
        submit(scheduler, "A")
        submit(scheduler, "B", depends_on=["A"])
        agents = [a.to_record() for a in scheduler.registry.list()]
        tasks = [t.to_record() for t in scheduler.list_tasks()]
        assert agents[0]["status"] == "working"
        assert snapshot_problems(agents, tasks) == []

    def test_reports_raw_inconsistencies(self) -> None:
        agents = [
            {"agent_id": "a1", "type": "backend", "status": "working", "current_task": None},
            {"agent_id": "a2", "type": "backend", "status": "idle", "current_task": "T2"},
        ]
        tasks = [
            {"task_id": "T1", "title": "t", "description": "d", "status": "in-progress",
             "assigned_agent_id": "ghost", "depends_on": ["T3"]},
            {"task_id": "T2", "title": "t", "description": "d", "status": "completed"},
            {"task_id": "T3", "title": "t", "description": "d", "status": "ready"},
            {"title": "no id"},
        ]
        problems = snapshot_problems(agents, tasks)
        assert "agent a1 working without a task" in problems
        assert "agent a2 is idle but holds T2" in problems
        assert "agent a2 holds T2 which is assigned to None" in problems
        assert "task T1 running before dependency T3 completed" in problems
        assert "task T1 assigned to unknown agent ghost" in problems
        assert any(p.startswith("malformed task record") for p in problems)
