"""Agent and task snapshot persistence."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Protocol

from nofx.errors import PersistenceError, ValidationError
from nofx.protocol.io import read_json, write_json_atomic
from nofx.protocol.models import (
    SNAPSHOT_VERSION,
    AgentRecord,
    AgentStatus,
    Task,
    TaskStatus,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

AGENTS_FILE = "agents.json"
TASKS_FILE = "tasks.json"


class PersistenceProvider(Protocol):
    def load_agent_snapshot(self) -> list[dict[str, Any]]: ...

    def save_agent_snapshot(self, records: list[dict[str, Any]]) -> None: ...

    def load_task_snapshot(self) -> list[dict[str, Any]]: ...

    def save_task_snapshot(self, records: list[dict[str, Any]]) -> None: ...


class JsonSnapshotStore:
    """Stores each snapshot as one JSON document, replaced atomically.

    Layout::

        <state_dir>/agents.json   {"version": "1.0", "timestamp": ..., "agents": [...]}
        <state_dir>/tasks.json    {"version": "1.0", "timestamp": ..., "tasks": [...]}
    """

    def __init__(self, state_dir: str | Path) -> None:
        self.state_dir = Path(state_dir)

    @property
    def agents_path(self) -> Path:
        return self.state_dir / AGENTS_FILE

    @property
    def tasks_path(self) -> Path:
        return self.state_dir / TASKS_FILE

    def load_agent_snapshot(self) -> list[dict[str, Any]]:
        return self._load(self.agents_path, "agents")

    def save_agent_snapshot(self, records: list[dict[str, Any]]) -> None:
        self._save(self.agents_path, "agents", records)

    def load_task_snapshot(self) -> list[dict[str, Any]]:
        return self._load(self.tasks_path, "tasks")

    def save_task_snapshot(self, records: list[dict[str, Any]]) -> None:
        self._save(self.tasks_path, "tasks", records)

    def clear(self) -> None:
        for path in (self.agents_path, self.tasks_path):
            path.unlink(missing_ok=True)

    def _load(self, path: Path, key: str) -> list[dict[str, Any]]:
        data = read_json(path, default=None, strict=True)
        if data is None:
            return []
        if not isinstance(data, dict) or not isinstance(data.get(key), list):
            raise PersistenceError(f"{path} is not a {key} snapshot")
        version = data.get("version")
        if version != SNAPSHOT_VERSION:
            logger.warning("Snapshot %s has version %r, expected %s", path, version, SNAPSHOT_VERSION)
        return [item for item in data[key] if isinstance(item, dict)]

    def _save(self, path: Path, key: str, records: list[dict[str, Any]]) -> None:
        payload = {"version": SNAPSHOT_VERSION, "timestamp": utc_now_iso(), key: records}
        try:
            write_json_atomic(path, payload)
        except OSError as exc:
            raise PersistenceError(f"Cannot write {path}: {exc}") from exc


def snapshot_problems(agent_records: list[dict[str, Any]], task_records: list[dict[str, Any]]) -> list[str]:
    """Describe inconsistencies in saved records, before any restore normalises them."""
    problems: list[str] = []
    tasks: dict[str, Task] = {}
    for raw in task_records:
        try:
            task = Task.from_record(raw)
        except ValidationError as exc:
            problems.append(f"malformed task record: {exc}")
            continue
        if task.task_id in tasks:
            problems.append(f"task {task.task_id} appears more than once")
        tasks[task.task_id] = task
    agents: dict[str, AgentRecord] = {}
    for raw in agent_records:
        try:
            record = AgentRecord.from_dict(raw)
        except ValidationError as exc:
            problems.append(f"malformed agent record: {exc}")
            continue
        agents[record.agent_id] = record

    for record in agents.values():
        held = record.current_task
        if record.status == AgentStatus.WORKING and held is None:
            problems.append(f"agent {record.agent_id} working without a task")
        elif record.status != AgentStatus.WORKING and held is not None:
            problems.append(f"agent {record.agent_id} is {record.status} but holds {held}")
        if held is None:
            continue
        task = tasks.get(held)
        if task is None:
            problems.append(f"agent {record.agent_id} holds unknown task {held}")
        elif task.assigned_agent_id != record.agent_id:
            problems.append(f"agent {record.agent_id} holds {held} which is assigned to {task.assigned_agent_id}")

    holders: dict[str, str] = {}
    for task in tasks.values():
        for dep in task.depends_on:
            if dep not in tasks:
                problems.append(f"task {task.task_id} depends on unknown task {dep}")
            elif task.in_flight and tasks[dep].status != TaskStatus.COMPLETED:
                problems.append(f"task {task.task_id} running before dependency {dep} completed")
        owner = task.assigned_agent_id
        if task.in_flight and owner is None:
            problems.append(f"task {task.task_id} is {task.status} without an agent")
        if owner is None:
            continue
        if not task.in_flight:
            problems.append(f"task {task.task_id} is {task.status} but assigned to {owner}")
        if owner in holders:
            problems.append(f"agent {owner} assigned to {holders[owner]} and {task.task_id}")
        holders[owner] = task.task_id
        record = agents.get(owner)
        if record is None:
            problems.append(f"task {task.task_id} assigned to unknown agent {owner}")
        elif record.current_task != task.task_id:
            problems.append(f"task {task.task_id} assigned to {owner} which does not hold it")
    return problems
