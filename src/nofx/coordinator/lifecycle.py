"""Agent lifecycle coordinator.

Creates and destroys agents, provisions their worker channels through a
:class:`ChannelProvider`, restores the pool from a snapshot, and delivers
task prompts after the scheduler has committed an assignment.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any

from tenacity import RetryCallState

from nofx.adapters.base import ChannelHandle, ChannelProvider
from nofx.config.schema import LifecycleConfig
from nofx.config.templates import TemplateCatalog
from nofx.coordinator.registry import AgentRegistry
from nofx.coordinator.scheduler import Scheduler
from nofx.errors import InvalidStateError, NofxError, ValidationError
from nofx.persistence.store import PersistenceProvider
from nofx.protocol.models import (
    Agent,
    AgentRecord,
    AgentSpec,
    AgentStatus,
    Task,
)
from nofx.utils.retry import retry_with_outcome

logger = logging.getLogger(__name__)


def new_agent_id() -> str:
    return f"agent-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


def build_bootstrap_prompt(agent: Agent) -> str:
    if agent.system_prompt.strip():
        return agent.system_prompt.strip()
    caps = ", ".join(agent.capabilities) or "general development"
    return (
        f"You are {agent.name}, a {agent.agent_type} agent working in a shared repository "
        f"alongside other agents. Your strengths: {caps}. Wait for task assignments."
    )


def build_task_prompt(agent: Agent, task: Task) -> str:
    lines = [
        "=== TASK ===",
        f"Title: {task.title}",
        f"Description: {task.description}",
        f"Priority: {task.priority.value}",
    ]
    if task.files:
        lines += ["", "=== RELEVANT FILES ===", *task.files]
    lines += [
        "",
        "=== INSTRUCTIONS ===",
        f"Complete this task as {agent.name}. Stay within the files listed where possible "
        "and report clearly when you are finished.",
    ]
    return "\n".join(lines)


class AgentLifecycleCoordinator:
    """Owns worker channels; everything else goes through the scheduler."""

    def __init__(
        self,
        scheduler: Scheduler,
        provider: ChannelProvider,
        *,
        config: LifecycleConfig | None = None,
        persistence: PersistenceProvider | None = None,
        templates: TemplateCatalog | None = None,
    ) -> None:
        self.scheduler = scheduler
        self.config = config or LifecycleConfig()
        self.templates = templates or TemplateCatalog()
        self._provider = provider
        self._persistence = persistence
        self._channels: dict[str, ChannelHandle] = {}
        self._pending: set[str] = set()
        self._inflight: set[asyncio.Task[None]] = set()
        self._backlog: list[tuple[str, str, str]] = []
        provider.on_channel_closed(self._on_channel_closed)
        scheduler.set_dispatch(self._dispatch)

    @property
    def registry(self) -> AgentRegistry:
        return self.scheduler.registry

    def channel_for(self, agent_id: str) -> ChannelHandle | None:
        return self._channels.get(agent_id)

    # ------------------------------------------------------------------
    # Spawn / remove
    # ------------------------------------------------------------------

    async def spawn(
        self,
        config: AgentSpec | dict[str, Any],
        restored_id: str | None = None,
        *,
        tasks_completed: int = 0,
        created_at: str | None = None,
    ) -> Agent:
        """Provision a channel and register the agent.

        If the channel cannot be provisioned within the configured attempts,
        the bootstrap prompt cannot be delivered, or the channel closes while
        bootstrapping, the agent is registered in ``error`` status so it is
        never matched to work.
        """
        spec = config if isinstance(config, AgentSpec) else AgentSpec.from_dict(config)
        agent_id = restored_id or new_agent_id()
        self._reserve(agent_id)
        try:
            agent = Agent.from_spec(agent_id, spec)
            agent.tasks_completed = max(0, tasks_completed)
            if created_at:
                agent.created_at = created_at
            return await self._provision(agent, spec)
        finally:
            self._pending.discard(agent_id)

    def _reserve(self, agent_id: str) -> None:
        # Slots are taken before the first await so concurrent spawns see each other.
        if len(self.registry) + len(self._pending) >= self.config.max_agents:
            raise InvalidStateError(f"Agent limit reached ({self.config.max_agents})")
        if agent_id in self.registry or agent_id in self._pending:
            raise InvalidStateError(f"Agent {agent_id} already exists", entity_id=agent_id)
        self._pending.add(agent_id)

    async def _provision(self, agent: Agent, spec: AgentSpec) -> Agent:
        agent_id = agent.agent_id

        def _log_retry(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            logger.info("Channel for %s not ready (attempt %d): %s", agent_id, state.attempt_number, exc)

        outcome = await retry_with_outcome(
            self._provider.create_channel,
            agent_id,
            spec,
            max_attempts=self.config.spawn_attempts,
            min_wait=self.config.spawn_min_wait,
            max_wait=self.config.spawn_max_wait,
            on_retry=_log_retry,
        )
        if not outcome.ok or outcome.value is None:
            logger.warning(
                "Agent %s could not be provisioned after %d attempt(s): %s",
                agent_id, outcome.attempts, outcome.error,
            )
            return self._register_failed(agent)

        handle = outcome.value
        # Recorded before the bootstrap send so a close during it is not lost.
        self._channels[agent_id] = handle
        try:
            await self._provider.send_prompt(handle, build_bootstrap_prompt(agent))
        except Exception as exc:
            logger.warning("Bootstrap prompt for %s failed: %s", agent_id, exc)
            return await self._abandon(agent, handle)
        if handle.closed or self._channels.get(agent_id) is not handle:
            logger.warning("Channel for %s closed during bootstrap", agent_id)
            return await self._abandon(agent, handle)

        self.scheduler.register_agent(agent)
        logger.info("Spawned agent %s (%s) on %s", agent.name, agent_id, handle.channel_id)
        return agent

    async def _abandon(self, agent: Agent, handle: ChannelHandle) -> Agent:
        if self._channels.get(agent.agent_id) is handle:
            del self._channels[agent.agent_id]
        await self._dispose(handle)
        return self._register_failed(agent)

    def _register_failed(self, agent: Agent) -> Agent:
        agent.status = AgentStatus.ERROR
        self.scheduler.register_agent(agent)
        return agent

    async def spawn_from_template(self, template_id: str, *, name: str | None = None) -> Agent:
        return await self.spawn(self.templates.spec_for(template_id, name=name))

    async def remove(self, agent_id: str) -> bool:
        """Unregister the agent (requeueing its task) and tear down its channel."""
        handle = self._channels.pop(agent_id, None)
        removal = self.scheduler.remove_agent(agent_id)
        if handle is not None:
            await self._dispose(handle)
        return removal.removed

    async def respawn(self, agent_id: str) -> Agent:
        """Replace an agent in error/offline status with a fresh channel under the same id."""
        agent = self.registry.require(agent_id)
        if agent.status not in (AgentStatus.ERROR, AgentStatus.OFFLINE):
            raise InvalidStateError(f"Agent {agent.name} is {agent.status}", entity_id=agent_id)
        spec, completed, created = agent.to_spec(), agent.tasks_completed, agent.created_at
        await self.remove(agent_id)
        return await self.spawn(spec, restored_id=agent_id, tasks_completed=completed, created_at=created)

    async def _dispose(self, handle: ChannelHandle) -> None:
        try:
            await self._provider.dispose_channel(handle)
        except Exception as exc:
            logger.warning("Disposing channel %s failed: %s", handle.channel_id, exc)

    def _on_channel_closed(self, handle: ChannelHandle) -> None:
        agent_id = handle.agent_id
        if self._channels.get(agent_id) is not handle:
            return
        del self._channels[agent_id]
        if agent_id not in self.registry:
            return
        if self.config.remove_on_channel_close:
            self.scheduler.remove_agent(agent_id, reason="channel closed")
        else:
            self.scheduler.mark_agent_unavailable(agent_id, AgentStatus.OFFLINE, reason="channel closed")

    # ------------------------------------------------------------------
    # Prompt delivery
    # ------------------------------------------------------------------

    def _dispatch(self, agent: Agent, task: Task) -> None:
        prompt = build_task_prompt(agent, task)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._backlog.append((agent.agent_id, task.task_id, prompt))
            return
        pending = loop.create_task(self._deliver(agent.agent_id, task.task_id, prompt))
        self._inflight.add(pending)
        pending.add_done_callback(self._inflight.discard)

    async def _deliver(self, agent_id: str, task_id: str, prompt: str) -> None:
        handle = self._channels.get(agent_id)
        if handle is None:
            logger.warning("No channel for %s; task %s prompt dropped", agent_id, task_id)
            return
        try:
            await self._provider.send_prompt(handle, prompt)
        except Exception as exc:
            # The assignment stays committed; the channel-closed path recovers it.
            logger.warning("Prompt for %s to %s not delivered: %s", task_id, agent_id, exc)
            return
        logger.debug("Delivered %s to %s", task_id, agent_id)

    async def drain(self) -> None:
        """Deliver queued prompts and wait for in-flight sends to finish."""
        backlog, self._backlog = self._backlog, []
        for agent_id, task_id, prompt in backlog:
            await self._deliver(agent_id, task_id, prompt)
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    # ------------------------------------------------------------------
    # Restore / shutdown
    # ------------------------------------------------------------------

    async def restore(self) -> list[Agent]:
        """Rebuild tasks and agents from the persisted snapshots.

        The most recently created agents are restored first, up to
        ``max_agents``; agents that were working come back idle and their
        tasks come back ready.
        """
        loaded = self._load_snapshots()
        if loaded is None:
            return []
        records, task_records = loaded

        restored: list[Agent] = []
        with self.scheduler.deferred_persistence():
            if task_records:
                self.scheduler.restore_tasks(task_records)
            for record in records[: self.config.max_agents]:
                if record.agent_id in self.registry:
                    continue
                agent = await self.spawn(
                    record.spec,
                    restored_id=record.agent_id,
                    tasks_completed=record.tasks_completed,
                    created_at=record.created_at,
                )
                restored.append(agent)
        skipped = len(records) - len(restored)
        if skipped > 0:
            logger.info("Restored %d agent(s), skipped %d", len(restored), skipped)
        return restored

    def load_offline(self) -> int:
        """Load the snapshots without starting any worker.

        Agents are registered ``offline`` so that commands run outside a live
        session can inspect and edit tasks without losing the agent records.
        """
        loaded = self._load_snapshots()
        if loaded is None:
            return 0
        records, task_records = loaded
        with self.scheduler.deferred_persistence():
            if task_records:
                self.scheduler.restore_tasks(task_records)
            for record in records:
                agent = Agent.from_spec(record.agent_id, record.spec)
                agent.status = AgentStatus.OFFLINE
                agent.tasks_completed = record.tasks_completed
                agent.created_at = record.created_at
                self.scheduler.register_agent(agent)
        return len(records)

    def _load_snapshots(self) -> tuple[list[AgentRecord], list[dict[str, Any]]] | None:
        if self._persistence is None:
            return None
        try:
            agent_records = self._persistence.load_agent_snapshot()
            task_records = self._persistence.load_task_snapshot()
        except NofxError as exc:
            logger.warning("Snapshot unreadable, starting empty: %s", exc)
            return None
        parsed: list[AgentRecord] = []
        for raw in agent_records:
            try:
                parsed.append(AgentRecord.from_dict(raw))
            except ValidationError as exc:
                logger.warning("Skipping malformed agent record: %s", exc)
        parsed.sort(key=lambda r: r.created_at, reverse=True)
        return parsed, task_records

    async def shutdown(self) -> None:
        """Close every channel; agent records stay in the snapshot for the next restore."""
        await self.drain()
        handles = list(self._channels.values())
        self._channels.clear()
        for handle in handles:
            await self._dispose(handle)
