"""Dependency and conflict graph over submitted tasks.

Dependency edges are directed (``task -> depends_on``) and kept acyclic by
a reachability check at insertion time.  Conflict edges are symmetric and
may additionally be inferred from overlapping file hints.  Soft
dependencies (``prefers``) never gate readiness; they only nudge queue
priority.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable
from enum import StrEnum

from nofx.errors import CycleError, NotFoundError
from nofx.protocol.models import Task, TaskStatus

logger = logging.getLogger(__name__)


class ConflictResolution(StrEnum):
    BLOCK = "block"    # keep the tasks serialized
    ALLOW = "allow"    # let them run side by side, overriding inferred overlap


def _norm_path(path: str) -> str:
    p = path.strip().replace("\\", "/")
    while p.startswith("./"):
        p = p[2:]
    return p.rstrip("/")


def files_overlap(a: Iterable[str], b: Iterable[str]) -> list[str]:
    """Return hints of *a* that touch a hint of *b* (same path or one contains the other)."""
    right = [_norm_path(x) for x in b if x.strip()]
    hits: list[str] = []
    for raw in a:
        left = _norm_path(raw)
        if not left:
            continue
        for other in right:
            if left == other or left.startswith(other + "/") or other.startswith(left + "/"):
                hits.append(raw)
                break
    return hits


class DependencyGraph:
    """Owns the task map and all edges between tasks."""

    def __init__(self, *, infer_file_conflicts: bool = True) -> None:
        self._tasks: dict[str, Task] = {}
        self._dependents: dict[str, set[str]] = {}
        self._soft_dependents: dict[str, set[str]] = {}
        self._allowed_pairs: set[frozenset[str]] = set()
        self.infer_file_conflicts = infer_file_conflicts

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def get(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def require(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        return task

    def tasks(self) -> list[Task]:
        return list(self._tasks.values())

    def add_task(self, task: Task) -> None:
        """Insert *task* without edges; edges are added through the methods below."""
        if task.task_id in self._tasks:
            raise ValueError(f"Duplicate task id: {task.task_id}")
        pending_deps = list(task.depends_on)
        pending_conflicts = list(task.conflicts_with)
        pending_soft = list(task.prefers)
        task.depends_on = []
        task.conflicts_with = []
        task.prefers = []
        self._tasks[task.task_id] = task
        self._dependents.setdefault(task.task_id, set())
        self._soft_dependents.setdefault(task.task_id, set())
        # Edges carried on a restored record are re-linked, skipping dangling ids.
        for dep in pending_deps:
            if dep in self._tasks:
                self.add_dependency(task.task_id, dep)
        for other in pending_conflicts:
            if other in self._tasks:
                self.add_conflict(task.task_id, other)
        for pref in pending_soft:
            if pref in self._tasks:
                self.add_soft_dependency(task.task_id, pref)

    def remove_task(self, task_id: str) -> Task:
        """Detach every edge of *task_id* and drop it from the graph."""
        task = self.require(task_id)
        for dep in task.depends_on:
            self._dependents.get(dep, set()).discard(task_id)
        for child_id in self._dependents.pop(task_id, set()):
            child = self._tasks.get(child_id)
            if child is not None:
                child.depends_on = [d for d in child.depends_on if d != task_id]
        for other_id in task.conflicts_with:
            other = self._tasks.get(other_id)
            if other is not None:
                other.conflicts_with = [c for c in other.conflicts_with if c != task_id]
        for pref in task.prefers:
            self._soft_dependents.get(pref, set()).discard(task_id)
        for child_id in self._soft_dependents.pop(task_id, set()):
            child = self._tasks.get(child_id)
            if child is not None:
                child.prefers = [p for p in child.prefers if p != task_id]
        self._allowed_pairs = {pair for pair in self._allowed_pairs if task_id not in pair}
        del self._tasks[task_id]
        return task

    # ------------------------------------------------------------------
    # Dependency edges
    # ------------------------------------------------------------------

    def add_dependency(self, task_id: str, depends_on_id: str) -> None:
        """Record that *task_id* cannot start before *depends_on_id* completes.

        Raises CycleError (graph unchanged) if *task_id* is reachable from
        *depends_on_id*; a self-edge counts as a cycle.
        """
        task = self.require(task_id)
        self.require(depends_on_id)
        if depends_on_id in task.depends_on:
            return
        path = self._path_between(depends_on_id, task_id)
        if path is not None:
            raise CycleError(task_id, depends_on_id, path=[task_id, *path])
        task.depends_on.append(depends_on_id)
        self._dependents[depends_on_id].add(task_id)

    def remove_dependency(self, task_id: str, depends_on_id: str) -> bool:
        task = self.require(task_id)
        if depends_on_id not in task.depends_on:
            return False
        task.depends_on.remove(depends_on_id)
        self._dependents.get(depends_on_id, set()).discard(task_id)
        return True

    def _path_between(self, start: str, goal: str) -> list[str] | None:
        """Follow dependency edges from *start*; return the path to *goal* if any."""
        parent: dict[str, str | None] = {start: None}
        queue: deque[str] = deque([start])
        while queue:
            current = queue.popleft()
            if current == goal:
                path: list[str] = []
                node: str | None = current
                while node is not None:
                    path.append(node)
                    node = parent[node]
                return list(reversed(path))
            for nxt in self._tasks[current].depends_on:
                if nxt not in parent:
                    parent[nxt] = current
                    queue.append(nxt)
        return None

    def is_ready(self, task_id: str) -> bool:
        """True iff every dependency of *task_id* is completed."""
        task = self.require(task_id)
        return all(
            self._tasks[d].status == TaskStatus.COMPLETED for d in task.depends_on
        )

    def failed_dependencies(self, task_id: str) -> list[str]:
        """Dependencies that can no longer complete without intervention."""
        task = self.require(task_id)
        return [
            d for d in task.depends_on
            if self._tasks[d].status in (TaskStatus.FAILED, TaskStatus.BLOCKED)
        ]

    def get_dependents(self, task_id: str) -> list[str]:
        self.require(task_id)
        return sorted(self._dependents.get(task_id, set()), key=self._order_key)

    def get_transitive_dependents(self, task_id: str) -> list[str]:
        """Every task that directly or indirectly depends on *task_id*, BFS order."""
        self.require(task_id)
        seen: set[str] = set()
        order: list[str] = []
        queue: deque[str] = deque(self.get_dependents(task_id))
        while queue:
            tid = queue.popleft()
            if tid in seen:
                continue
            seen.add(tid)
            order.append(tid)
            queue.extend(self.get_dependents(tid))
        return order

    def dependency_chain(self, task_id: str) -> list[str]:
        """All transitive dependencies of *task_id*, deepest first."""
        self.require(task_id)
        order: list[str] = []
        seen: set[str] = set()

        def _visit(tid: str) -> None:
            for dep in self._tasks[tid].depends_on:
                if dep not in seen:
                    seen.add(dep)
                    _visit(dep)
                    order.append(dep)

        _visit(task_id)
        return order

    def topological_order(self) -> list[str]:
        """Kahn's algorithm; dependencies come before their dependents."""
        in_degree = {tid: len(t.depends_on) for tid, t in self._tasks.items()}
        queue: deque[str] = deque(
            sorted((tid for tid, deg in in_degree.items() if deg == 0), key=self._order_key)
        )
        order: list[str] = []
        while queue:
            tid = queue.popleft()
            order.append(tid)
            for child in self.get_dependents(tid):
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    queue.append(child)
        if len(order) != len(self._tasks):
            raise RuntimeError(
                f"Dependency graph is cyclic: ordered {len(order)}/{len(self._tasks)} tasks"
            )
        return order

    # ------------------------------------------------------------------
    # Soft dependencies
    # ------------------------------------------------------------------

    def add_soft_dependency(self, task_id: str, prefers_id: str) -> None:
        task = self.require(task_id)
        self.require(prefers_id)
        if prefers_id == task_id or prefers_id in task.prefers:
            return
        task.prefers.append(prefers_id)
        self._soft_dependents[prefers_id].add(task_id)

    def get_soft_dependents(self, task_id: str) -> list[str]:
        self.require(task_id)
        return sorted(self._soft_dependents.get(task_id, set()), key=self._order_key)

    def preferred_satisfied(self, task_id: str) -> bool | None:
        """None when the task has no soft dependencies, else whether all completed."""
        task = self.require(task_id)
        if not task.prefers:
            return None
        return all(self._tasks[p].status == TaskStatus.COMPLETED for p in task.prefers)

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    def add_conflict(self, task_id: str, other_id: str) -> None:
        task = self.require(task_id)
        other = self.require(other_id)
        if task_id == other_id:
            return
        self._allowed_pairs.discard(frozenset((task_id, other_id)))
        if other_id not in task.conflicts_with:
            task.conflicts_with.append(other_id)
        if task_id not in other.conflicts_with:
            other.conflicts_with.append(task_id)

    def remove_conflict(self, task_id: str, other_id: str) -> bool:
        task = self.require(task_id)
        other = self.require(other_id)
        removed = other_id in task.conflicts_with
        task.conflicts_with = [c for c in task.conflicts_with if c != other_id]
        other.conflicts_with = [c for c in other.conflicts_with if c != task_id]
        return removed

    def resolve_conflict(self, task_id: str, other_id: str, resolution: ConflictResolution) -> None:
        """Settle a declared or inferred conflict between two tasks."""
        if resolution == ConflictResolution.BLOCK:
            self.add_conflict(task_id, other_id)
            return
        self.remove_conflict(task_id, other_id)
        self._allowed_pairs.add(frozenset((task_id, other_id)))

    def conflicting_tasks(self, task_id: str) -> list[str]:
        """Declared conflicts plus tasks with overlapping file hints."""
        task = self.require(task_id)
        found = list(task.conflicts_with)
        if self.infer_file_conflicts and task.files:
            for other in self._tasks.values():
                if other.task_id == task_id or other.task_id in found:
                    continue
                if frozenset((task_id, other.task_id)) in self._allowed_pairs:
                    continue
                if other.files and files_overlap(task.files, other.files):
                    found.append(other.task_id)
        return found

    def in_flight_conflicts(self, task_id: str) -> list[str]:
        return [
            tid for tid in self.conflicting_tasks(task_id)
            if self._tasks[tid].in_flight
        ]

    def conflicts_in_flight(self, task_id: str) -> bool:
        """True iff a conflicting task is currently assigned or in progress."""
        return bool(self.in_flight_conflicts(task_id))

    # ------------------------------------------------------------------

    def _order_key(self, task_id: str) -> tuple[str, int]:
        task = self._tasks[task_id]
        return task.created_at, task.seq
