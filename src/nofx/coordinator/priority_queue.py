"""Ordered view over READY tasks."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any

from nofx.coordinator.task_graph import DependencyGraph
from nofx.protocol.models import Task, TaskPriority, TaskStatus

logger = logging.getLogger(__name__)

SOFT_DEPENDENCY_BONUS = 5


class PriorityTaskQueue:
    """Ready tasks ordered by priority (descending) then age (FIFO).

    Ordering key, most significant first:

    1. ordinal priority value, shifted by +/-SOFT_DEPENDENCY_BONUS when the
       task declares soft dependencies (all completed / not yet),
    2. the numeric tiebreaker (higher first; the ordinal value when unset),
    3. creation time, then submission sequence.
    """

    def __init__(self, graph: DependencyGraph) -> None:
        self._graph = graph
        self._ready: dict[str, Task] = {}

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._ready

    def __len__(self) -> int:
        return len(self._ready)

    def enqueue(self, task: Task) -> None:
        if task.status != TaskStatus.READY:
            raise ValueError(f"Only ready tasks can be queued ({task.task_id} is {task.status})")
        self._ready[task.task_id] = task

    def dequeue(self, task_id: str) -> Task | None:
        return self._ready.pop(task_id, None)

    def contains(self, task_id: str) -> bool:
        return task_id in self._ready

    def size(self) -> int:
        return len(self._ready)

    def clear(self) -> None:
        self._ready.clear()

    def effective_priority(self, task: Task) -> int:
        value = task.priority_value
        if task.task_id in self._graph:
            satisfied = self._graph.preferred_satisfied(task.task_id)
            if satisfied is True:
                value += SOFT_DEPENDENCY_BONUS
            elif satisfied is False:
                value -= SOFT_DEPENDENCY_BONUS
        return value

    def _sort_key(self, task: Task) -> tuple[int, int, str, int]:
        return (
            -self.effective_priority(task),
            -task.tiebreaker,
            task.created_at,
            task.seq,
        )

    def peek_ready(self) -> list[Task]:
        """Every queued task in assignment order (not just the head)."""
        return sorted(self._ready.values(), key=self._sort_key)

    def peek(self) -> Task | None:
        ordered = self.peek_ready()
        return ordered[0] if ordered else None

    def update_priority(
        self,
        task_id: str,
        priority: TaskPriority,
        numeric_priority: int | None = None,
    ) -> bool:
        task = self._ready.get(task_id)
        if task is None:
            return False
        task.priority = priority
        task.numeric_priority = numeric_priority
        logger.debug("Task %s reprioritized to %s", task_id, priority)
        return True

    def stats(self) -> dict[str, Any]:
        by_priority = Counter(t.priority.value for t in self._ready.values())
        head = self.peek()
        return {
            "size": len(self._ready),
            "by_priority": {p.value: by_priority.get(p.value, 0) for p in TaskPriority},
            "head": head.task_id if head else None,
        }
