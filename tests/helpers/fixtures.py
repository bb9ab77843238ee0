"""Builders for agents, tasks and task payloads."""

from __future__ import annotations

from typing import Any

from nofx.coordinator.scheduler import Scheduler
from nofx.protocol.models import Agent, AgentSpec, Task, TaskPriority, TaskStatus


def make_agent(
    agent_id: str,
    agent_type: str = "backend",
    *,
    capabilities: list[str] | None = None,
    name: str | None = None,
    specialization: str = "",
) -> Agent:
    return Agent(
        agent_id=agent_id,
        name=name or agent_id,
        agent_type=agent_type,
        capabilities=list(capabilities or []),
        specialization=specialization,
    )


def make_task(
    task_id: str,
    *,
    title: str | None = None,
    description: str = "do the thing",
    priority: TaskPriority = TaskPriority.MEDIUM,
    status: TaskStatus = TaskStatus.QUEUED,
    required: list[str] | None = None,
    files: list[str] | None = None,
    seq: int = 0,
) -> Task:
    return Task(
        task_id=task_id,
        title=title or task_id,
        description=description,
        priority=priority,
        status=status,
        required_capabilities=list(required or []),
        files=list(files or []),
        seq=seq,
    )


def spec_for_type(agent_type: str, *capabilities: str) -> AgentSpec:
    return AgentSpec(name=agent_type.title(), agent_type=agent_type, capabilities=list(capabilities))


def submit(scheduler: Scheduler, task_id: str, **fields: Any) -> Task:
    """Submit a task with sensible defaults for title and description."""
    payload: dict[str, Any] = {
        "task_id": task_id,
        "title": fields.pop("title", task_id),
        "description": fields.pop("description", f"work on {task_id}"),
    }
    payload.update(fields)
    return scheduler.submit_task(payload)
