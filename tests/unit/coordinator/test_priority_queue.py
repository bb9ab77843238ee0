"""Tests for the ready-task priority queue."""

from __future__ import annotations

import pytest

from nofx.coordinator.priority_queue import SOFT_DEPENDENCY_BONUS, PriorityTaskQueue
from nofx.coordinator.task_graph import DependencyGraph
from nofx.protocol.models import TaskPriority, TaskStatus
from tests.helpers import make_task


def _queue_with(*specs: tuple[str, TaskPriority]) -> tuple[DependencyGraph, PriorityTaskQueue]:
    graph = DependencyGraph()
    queue = PriorityTaskQueue(graph)
    for i, (tid, prio) in enumerate(specs, 1):
        task = make_task(tid, priority=prio, status=TaskStatus.READY, seq=i)
        task.created_at = f"2026-01-01T00:00:{i:02d}+00:00"
        graph.add_task(task)
        queue.enqueue(task)
    return graph, queue


class TestPriorityTaskQueue:
    def test_priority_then_fifo(self) -> None:
        _, queue = _queue_with(
            ("low", TaskPriority.LOW),
            ("high-1", TaskPriority.HIGH),
            ("crit", TaskPriority.CRITICAL),
            ("high-2", TaskPriority.HIGH),
        )
        assert [t.task_id for t in queue.peek_ready()] == ["crit", "high-1", "high-2", "low"]
        assert queue.peek().task_id == "crit"

    def test_numeric_priority_breaks_ties(self) -> None:
        graph, queue = _queue_with(("a", TaskPriority.HIGH), ("b", TaskPriority.HIGH))
        graph.require("b").numeric_priority = 90
        assert [t.task_id for t in queue.peek_ready()] == ["b", "a"]

    def test_unset_numeric_priority_uses_ordinal_value(self) -> None:
        graph, queue = _queue_with(
            ("neg", TaskPriority.MEDIUM), ("unset", TaskPriority.MEDIUM), ("above", TaskPriority.MEDIUM),
        )
        graph.require("neg").numeric_priority = -5
        graph.require("above").numeric_priority = 60
        assert graph.require("unset").tiebreaker == 50
        assert [t.task_id for t in queue.peek_ready()] == ["above", "unset", "neg"]

    def test_only_ready_tasks_enqueue(self) -> None:
        queue = PriorityTaskQueue(DependencyGraph())
        with pytest.raises(ValueError):
            queue.enqueue(make_task("q"))

    def test_dequeue_and_contains(self) -> None:
        _, queue = _queue_with(("a", TaskPriority.MEDIUM))
        assert queue.contains("a")
        assert queue.dequeue("a").task_id == "a"
        assert queue.dequeue("a") is None
        assert queue.size() == 0
        assert queue.peek() is None

    def test_soft_dependency_adjusts_effective_priority(self) -> None:
        graph, queue = _queue_with(("pref", TaskPriority.MEDIUM), ("waiting", TaskPriority.MEDIUM))
        graph.add_soft_dependency("waiting", "pref")
        waiting = graph.require("waiting")
        assert queue.effective_priority(waiting) == 50 - SOFT_DEPENDENCY_BONUS
        graph.require("pref").status = TaskStatus.COMPLETED
        assert queue.effective_priority(waiting) == 50 + SOFT_DEPENDENCY_BONUS

    def test_update_priority_reorders(self) -> None:
        _, queue = _queue_with(("a", TaskPriority.LOW), ("b", TaskPriority.MEDIUM))
        assert queue.update_priority("a", TaskPriority.CRITICAL)
        assert queue.peek().task_id == "a"
        assert not queue.update_priority("missing", TaskPriority.LOW)

    def test_stats(self) -> None:
        _, queue = _queue_with(("a", TaskPriority.LOW), ("b", TaskPriority.HIGH))
        stats = queue.stats()
        assert stats["size"] == 2
        assert stats["by_priority"]["high"] == 1
        assert stats["head"] == "b"
