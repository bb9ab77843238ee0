"""Agent registry: the authoritative map of agent id -> status and assignment.

Every mutation publishes an event on the bus; that is the only way status
changes propagate to the scheduler and to observers.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass

from nofx.coordinator.event_bus import EventBus, EventType
from nofx.errors import InvalidStateError, NotFoundError
from nofx.protocol.models import Agent, AgentStatus, Task

logger = logging.getLogger(__name__)

_UNAVAILABLE = frozenset({AgentStatus.ERROR, AgentStatus.OFFLINE})


@dataclass(slots=True)
class AgentRemoval:
    """Outcome of :meth:`AgentRegistry.remove`."""

    removed: bool
    agent: Agent | None = None
    interrupted_task: Task | None = None

    def __bool__(self) -> bool:
        return self.removed


class AgentRegistry:
    def __init__(self, bus: EventBus) -> None:
        self._bus = bus
        self._agents: dict[str, Agent] = {}
        self._seq = itertools.count(1)

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._agents

    def __len__(self) -> int:
        return len(self._agents)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, agent_id: str) -> Agent | None:
        return self._agents.get(agent_id)

    def require(self, agent_id: str) -> Agent:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise NotFoundError("Agent", agent_id)
        return agent

    def list(self) -> list[Agent]:
        """All agents in registration order."""
        return sorted(self._agents.values(), key=lambda a: a.seq)

    def list_idle(self) -> list[Agent]:
        return self.list_by_status(AgentStatus.IDLE)

    def list_by_status(self, status: AgentStatus) -> list[Agent]:
        return [a for a in self.list() if a.status == status]

    def find_by_task(self, task_id: str) -> Agent | None:
        for agent in self._agents.values():
            if agent.current_task is not None and agent.current_task.task_id == task_id:
                return agent
        return None

    def stats(self) -> dict[str, int]:
        counts = {status.value: 0 for status in AgentStatus}
        for agent in self._agents.values():
            counts[agent.status.value] += 1
        return {"total": len(self._agents), **counts}

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def register(self, agent: Agent) -> str:
        """Insert *agent* (idle unless it arrives in error/offline) and announce it."""
        if agent.agent_id in self._agents:
            raise InvalidStateError(f"Agent {agent.agent_id} is already registered", entity_id=agent.agent_id)
        if agent.status not in _UNAVAILABLE:
            agent.status = AgentStatus.IDLE
        agent.current_task = None
        agent.seq = next(self._seq)
        self._agents[agent.agent_id] = agent
        logger.info("Registered agent %s (%s) as %s", agent.agent_id, agent.agent_type, agent.status)
        self._bus.emit(
            EventType.AGENT_CREATED,
            agent_id=agent.agent_id,
            message=agent.name,
            status=agent.status.value,
            agent_type=agent.agent_type,
        )
        return agent.agent_id

    def begin_work(self, agent_id: str, task: Task) -> None:
        agent = self.require(agent_id)
        if agent.status != AgentStatus.IDLE:
            raise InvalidStateError(
                f"Agent {agent.name} is {agent.status}, not idle", entity_id=agent_id,
            )
        agent.status = AgentStatus.WORKING
        agent.current_task = task
        self._status_changed(agent, AgentStatus.IDLE, task_id=task.task_id)

    def complete_work(self, agent_id: str) -> bool:
        """Return the agent to idle and count the finished task.

        Returns False (and changes nothing) when the agent is not working,
        so duplicate or late completion signals are harmless.
        """
        agent = self.require(agent_id)
        if agent.status != AgentStatus.WORKING:
            logger.debug("complete_work on %s ignored (status %s)", agent_id, agent.status)
            return False
        task = agent.current_task
        agent.status = AgentStatus.IDLE
        agent.current_task = None
        agent.tasks_completed += 1
        self._status_changed(
            agent, AgentStatus.WORKING, task_id=task.task_id if task else "", reason="completed",
        )
        return True

    def interrupt_work(self, agent_id: str) -> Task | None:
        """Detach the in-flight task (if any) and return it; agent goes idle."""
        agent = self.require(agent_id)
        if agent.status != AgentStatus.WORKING:
            return None
        task = agent.current_task
        agent.status = AgentStatus.IDLE
        agent.current_task = None
        self._status_changed(
            agent, AgentStatus.WORKING, task_id=task.task_id if task else "", reason="interrupted",
        )
        return task

    def mark_unavailable(self, agent_id: str, status: AgentStatus) -> Task | None:
        """Move an agent to error/offline, interrupting its task first."""
        if status not in _UNAVAILABLE:
            raise ValueError(f"mark_unavailable expects error or offline, got {status}")
        agent = self.require(agent_id)
        task = self.interrupt_work(agent_id)
        if agent.status == status:
            return task
        previous = agent.status
        agent.status = status
        self._status_changed(agent, previous, reason=status.value)
        return task

    def mark_available(self, agent_id: str) -> bool:
        agent = self.require(agent_id)
        if agent.status not in _UNAVAILABLE:
            return False
        previous = agent.status
        agent.status = AgentStatus.IDLE
        self._status_changed(agent, previous, reason="available")
        return True

    def remove(self, agent_id: str) -> AgentRemoval:
        """Delete an agent, surfacing any task it was working on."""
        agent = self._agents.get(agent_id)
        if agent is None:
            return AgentRemoval(removed=False)
        task = self.interrupt_work(agent_id)
        del self._agents[agent_id]
        logger.info("Removed agent %s", agent_id)
        self._bus.emit(
            EventType.AGENT_REMOVED,
            agent_id=agent_id,
            message=agent.name,
            interrupted_task=task.task_id if task else None,
        )
        return AgentRemoval(removed=True, agent=agent, interrupted_task=task)

    def rename(self, agent_id: str, name: str) -> None:
        if not name.strip():
            raise InvalidStateError("Agent name cannot be empty", entity_id=agent_id)
        agent = self.require(agent_id)
        old = agent.name
        agent.name = name.strip()
        self._bus.emit(EventType.AGENT_UPDATED, agent_id=agent_id, message=agent.name, old_name=old)

    def retype(self, agent_id: str, agent_type: str, capabilities: list[str] | None = None) -> None:
        if not agent_type.strip():
            raise InvalidStateError("Agent type cannot be empty", entity_id=agent_id)
        agent = self.require(agent_id)
        old = agent.agent_type
        agent.agent_type = agent_type.strip().lower()
        if capabilities is not None:
            agent.capabilities = [c.lower() for c in capabilities]
        self._bus.emit(
            EventType.AGENT_UPDATED,
            agent_id=agent_id,
            message=agent.name,
            old_type=old,
            agent_type=agent.agent_type,
        )

    def _status_changed(
        self,
        agent: Agent,
        previous: AgentStatus,
        *,
        task_id: str = "",
        reason: str = "",
    ) -> None:
        logger.debug("Agent %s: %s -> %s %s", agent.agent_id, previous, agent.status, reason)
        self._bus.emit(
            EventType.AGENT_STATUS_CHANGED,
            agent_id=agent.agent_id,
            task_id=task_id,
            message=reason,
            status=agent.status.value,
            previous=previous.value,
        )
