"""Task state machine.

``VALID_TRANSITIONS`` is the single source of truth for task status edges.
Nothing outside :meth:`TaskStateMachine.transition` assigns ``task.status``
once a task has been admitted to the scheduler.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from nofx.coordinator.event_bus import EventBus, EventType
from nofx.errors import InvalidStateError, InvalidTransitionError
from nofx.protocol.models import Task, TaskStatus, utc_now_iso

logger = logging.getLogger(__name__)

S = TaskStatus

# Valid transitions: (from_status, to_status)
VALID_TRANSITIONS: frozenset[tuple[TaskStatus, TaskStatus]] = frozenset({
    # Forward path
    (S.QUEUED, S.READY),
    (S.READY, S.ASSIGNED),
    (S.ASSIGNED, S.IN_PROGRESS),
    (S.IN_PROGRESS, S.COMPLETED),
    (S.IN_PROGRESS, S.FAILED),
    # Blocking on conflict or dependency failure
    (S.QUEUED, S.BLOCKED),
    (S.READY, S.BLOCKED),
    (S.ASSIGNED, S.BLOCKED),
    (S.IN_PROGRESS, S.BLOCKED),
    # Retry
    (S.BLOCKED, S.READY),
    (S.BLOCKED, S.QUEUED),
    (S.FAILED, S.READY),
    (S.FAILED, S.QUEUED),
    # Interruption returns in-flight work to the queue
    (S.ASSIGNED, S.READY),
    (S.IN_PROGRESS, S.READY),
    # A new unfinished dependency was attached
    (S.READY, S.QUEUED),
    # Explicit fail
    (S.QUEUED, S.FAILED),
    (S.READY, S.FAILED),
    (S.ASSIGNED, S.FAILED),
    (S.BLOCKED, S.FAILED),
})

# Statuses in which a task carries no agent assignment.
_UNASSIGNED = frozenset({S.QUEUED, S.READY, S.BLOCKED, S.COMPLETED, S.FAILED})


@dataclass(slots=True)
class TransitionRecord:
    task_id: str
    from_status: TaskStatus
    to_status: TaskStatus
    agent_id: str | None = None
    reason: str = ""
    timestamp: str = field(default_factory=utc_now_iso)


TransitionListener = Callable[[Task, TaskStatus, TaskStatus, dict[str, Any]], None]


def can_transition(from_status: TaskStatus, to_status: TaskStatus) -> bool:
    return (from_status, to_status) in VALID_TRANSITIONS


def allowed_targets(from_status: TaskStatus) -> list[TaskStatus]:
    return sorted((dst for src, dst in VALID_TRANSITIONS if src == from_status), key=list(S).index)


class TaskStateMachine:
    """Applies status transitions to tasks and announces them."""

    def __init__(self, bus: EventBus | None = None, *, history_limit: int = 500) -> None:
        self._bus = bus
        self._listeners: list[TransitionListener] = []
        self._history: list[TransitionRecord] = []
        self._history_limit = history_limit

    @property
    def history(self) -> list[TransitionRecord]:
        return list(self._history)

    def on_transition(self, listener: TransitionListener) -> None:
        """Register a transition listener."""
        self._listeners.append(listener)

    def transition(
        self,
        task: Task,
        to_status: TaskStatus,
        *,
        agent_id: str | None = None,
        reason: str = "",
    ) -> TaskStatus:
        """Move *task* to *to_status* and return the previous status.

        Raises InvalidTransitionError if the edge is not in the table; the
        task is left untouched in that case.
        """
        from_status = task.status
        prev_agent = task.assigned_agent_id
        if not can_transition(from_status, to_status):
            logger.error(
                "Rejected transition for task %s: %s -> %s", task.task_id, from_status, to_status,
            )
            raise InvalidTransitionError(task.task_id, from_status.value, to_status.value)
        if to_status == S.ASSIGNED and not agent_id:
            raise InvalidStateError(
                f"Task {task.task_id} cannot be assigned without an agent", entity_id=task.task_id,
            )

        if to_status == S.ASSIGNED:
            task.assigned_agent_id = agent_id
            task.attempts += 1
        elif to_status == S.COMPLETED:
            task.completed_by = task.assigned_agent_id
            task.completed_at = utc_now_iso()
        elif to_status == S.FAILED:
            task.completed_at = utc_now_iso()
        if to_status in _UNASSIGNED:
            task.assigned_agent_id = None
        if to_status == S.BLOCKED:
            task.blocked_reason = reason
        elif from_status == S.BLOCKED:
            task.blocked_reason = ""
        if from_status == S.FAILED:
            task.completed_at = None
        task.status = to_status

        record = TransitionRecord(
            task_id=task.task_id,
            from_status=from_status,
            to_status=to_status,
            agent_id=agent_id or prev_agent,
            reason=reason,
        )
        self._history.append(record)
        if len(self._history) > self._history_limit:
            del self._history[0]
        logger.info("Task %s: %s -> %s", task.task_id, from_status, to_status)

        meta = {"agent_id": record.agent_id, "reason": reason}
        for listener in self._listeners:
            try:
                listener(task, from_status, to_status, meta)
            except Exception as exc:
                logger.warning("Transition listener failed for %s: %s", task.task_id, exc)

        if self._bus is not None:
            self._bus.emit(
                EventType.TASK_STATE_CHANGED,
                task_id=task.task_id,
                agent_id=record.agent_id or "",
                message=reason,
                from_status=from_status.value,
                to_status=to_status.value,
            )
        return from_status
