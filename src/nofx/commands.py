"""User-facing command surface.

Every command is a thin call into the scheduler or lifecycle coordinator.
Failures come back as a one-line :class:`Notification` naming the entity
involved, never as an exception.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

from nofx.adapters.base import ChannelProvider
from nofx.adapters.registry import get_channel_provider
from nofx.config.schema import NofxConfig
from nofx.config.templates import TemplateCatalog
from nofx.coordinator.event_bus import EventBus
from nofx.coordinator.lifecycle import AgentLifecycleCoordinator
from nofx.coordinator.matcher import CapabilityMatcher
from nofx.coordinator.scheduler import Scheduler
from nofx.coordinator.task_graph import ConflictResolution
from nofx.errors import InvalidStateError, NofxError
from nofx.persistence.store import JsonSnapshotStore
from nofx.protocol.models import Agent, AgentSpec, AgentStatus, TaskPriority

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class Notification:
    ok: bool
    message: str
    data: Any = None

    def __str__(self) -> str:
        return self.message


@dataclass(slots=True)
class Runtime:
    config: NofxConfig
    bus: EventBus
    store: JsonSnapshotStore
    scheduler: Scheduler
    lifecycle: AgentLifecycleCoordinator


def build_runtime(
    cfg: NofxConfig, *, provider: ChannelProvider | None = None, read_only: bool = False,
) -> Runtime:
    """Wire bus, store, scheduler and lifecycle coordinator from config.

    With *read_only* the snapshot is still loaded but the scheduler never
    writes it back.
    """
    state_dir = Path(cfg.run.working_dir) / cfg.run.state_dir
    bus = EventBus(state_dir / "events.jsonl" if cfg.run.event_log and not read_only else None)
    store = JsonSnapshotStore(state_dir)
    scheduler = Scheduler(
        bus=bus,
        matcher=CapabilityMatcher(cfg.matcher),
        config=cfg.scheduler,
        persistence=None if read_only else store,
    )
    lifecycle = AgentLifecycleCoordinator(
        scheduler,
        provider or get_channel_provider(cfg.backend),
        config=cfg.lifecycle,
        persistence=store,
        templates=TemplateCatalog(cfg.templates),
    )
    return Runtime(config=cfg, bus=bus, store=store, scheduler=scheduler, lifecycle=lifecycle)


class CommandSurface:
    def __init__(self, scheduler: Scheduler, lifecycle: AgentLifecycleCoordinator | None = None) -> None:
        self.scheduler = scheduler
        self.lifecycle = lifecycle

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _task_label(self, task_id: str) -> str:
        task = self.scheduler.get_task(task_id)
        return f"Task '{task.title}'" if task else f"Task {task_id}"

    def _agent_label(self, agent_id: str) -> str:
        agent = self.scheduler.registry.get(agent_id)
        return f"Agent '{agent.name}'" if agent else f"Agent {agent_id}"

    def _run(self, label: str, fn: Callable[[], T], success: Callable[[T], str]) -> Notification:
        try:
            result = fn()
        except NofxError as exc:
            logger.info("%s: %s", label, exc)
            return Notification(ok=False, message=f"{label}: {exc}")
        return Notification(ok=True, message=success(result), data=result)

    async def _run_async(
        self, label: str, fn: Callable[[], Awaitable[T]], success: Callable[[T], str],
    ) -> Notification:
        try:
            result = await fn()
        except NofxError as exc:
            logger.info("%s: %s", label, exc)
            return Notification(ok=False, message=f"{label}: {exc}")
        return Notification(ok=True, message=success(result), data=result)

    def _need_lifecycle(self) -> AgentLifecycleCoordinator:
        if self.lifecycle is None:
            raise InvalidStateError("agent commands need a running session")
        return self.lifecycle

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------

    async def add_agent(self, template_id: str | None = None, *, name: str | None = None,
                        agent_type: str | None = None) -> Notification:
        label = f"Agent '{name or template_id or agent_type}'"

        async def _spawn() -> Agent:
            lifecycle = self._need_lifecycle()
            if template_id:
                return await lifecycle.spawn_from_template(template_id, name=name)
            return await lifecycle.spawn(AgentSpec.from_dict({"name": name, "type": agent_type or ""}))

        def _done(agent: Agent) -> str:
            if agent.status == AgentStatus.ERROR:
                return f"Agent '{agent.name}' could not start and is marked as error"
            return f"Agent '{agent.name}' is ready ({agent.agent_id})"

        note = await self._run_async(label, _spawn, _done)
        if note.ok and note.data.status == AgentStatus.ERROR:
            note.ok = False
        return note

    async def delete_agent(self, agent_id: str) -> Notification:
        label = self._agent_label(agent_id)
        note = await self._run_async(
            label, lambda: self._need_lifecycle().remove(agent_id), lambda ok: f"{label} removed",
        )
        if note.ok and not note.data:
            return Notification(ok=False, message=f"{label}: not found")
        return note

    def rename_agent(self, agent_id: str, name: str) -> Notification:
        label = self._agent_label(agent_id)
        return self._run(
            label, lambda: self.scheduler.registry.rename(agent_id, name), lambda _: f"{label} renamed to '{name}'",
        )

    def retype_agent(self, agent_id: str, agent_type: str) -> Notification:
        label = self._agent_label(agent_id)
        return self._run(
            label, lambda: self.scheduler.registry.retype(agent_id, agent_type),
            lambda _: f"{label} is now {agent_type}",
        )

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def add_task(self, payload: dict[str, Any]) -> Notification:
        label = f"Task '{payload.get('title') or '?'}'"
        return self._run(
            label, lambda: self.scheduler.submit_task(payload),
            lambda task: f"Task '{task.title}' added ({task.task_id}, {task.status})",
        )

    def assign_task(self, task_id: str, agent_id: str) -> Notification:
        label = self._task_label(task_id)
        return self._run(
            label, lambda: self.scheduler.assign_task(task_id, agent_id),
            lambda a: f"Task '{a.task.title}' assigned to {a.agent.name}",
        )

    def complete_task(self, task_id: str) -> Notification:
        label = self._task_label(task_id)
        return self._run(
            label, lambda: self.scheduler.complete_task_by_id(task_id),
            lambda done: f"{label} completed" if done else f"{label} was not in progress; nothing to do",
        )

    def fail_task(self, task_id: str, reason: str = "") -> Notification:
        label = self._task_label(task_id)

        def _msg(blocked: list[str]) -> str:
            suffix = f"; blocked {len(blocked)} dependent task(s)" if blocked else ""
            return f"{label} marked failed{suffix}"

        return self._run(label, lambda: self.scheduler.fail_task(task_id, reason), _msg)

    def retry_task(self, task_id: str) -> Notification:
        label = self._task_label(task_id)
        return self._run(
            label, lambda: self.scheduler.retry_task(task_id), lambda task: f"{label} is {task.status} again",
        )

    def add_dependency(self, task_id: str, depends_on_id: str) -> Notification:
        label = self._task_label(task_id)
        return self._run(
            label, lambda: self.scheduler.add_dependency(task_id, depends_on_id),
            lambda _: f"{label} now waits for {self._task_label(depends_on_id)}",
        )

    def resolve_conflict(self, task_id: str, other_id: str, resolution: str) -> Notification:
        label = self._task_label(task_id)

        def _resolve() -> ConflictResolution:
            try:
                choice = ConflictResolution(resolution)
            except ValueError:
                raise NofxError(f"unknown resolution {resolution!r} (use block or allow)") from None
            self.scheduler.resolve_conflict(task_id, other_id, choice)
            return choice

        return self._run(
            label, _resolve, lambda choice: f"{label} and {self._task_label(other_id)}: {choice}",
        )

    def set_priority(self, task_id: str, priority: str) -> Notification:
        label = self._task_label(task_id)

        def _set() -> TaskPriority:
            try:
                value = TaskPriority(priority.lower())
            except ValueError:
                raise NofxError(f"unknown priority {priority!r}") from None
            self.scheduler.update_priority(task_id, value)
            return value

        return self._run(label, _set, lambda value: f"{label} priority set to {value}")
