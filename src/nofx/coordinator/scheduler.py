"""Scheduler: the only component that commits task -> agent assignments.

A :class:`Scheduler` owns the dependency graph, the ready queue and the
task state machine, and shares the agent registry and event bus with the
lifecycle coordinator.  All operations are synchronous.  A scheduling
pass runs to completion before the next one starts; a pass requested
while another operation is running is coalesced and run when the
outermost operation returns.  Prompt delivery and snapshot writes happen
only after the in-memory state has been committed.
"""

from __future__ import annotations

import itertools
import logging
import time
import uuid
from collections import Counter
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable

from nofx.config.schema import SchedulerConfig
from nofx.coordinator.event_bus import DomainEvent, EventBus, EventType
from nofx.coordinator.matcher import CapabilityMatcher
from nofx.coordinator.priority_queue import PriorityTaskQueue
from nofx.coordinator.registry import AgentRegistry, AgentRemoval
from nofx.coordinator.state_machine import TaskStateMachine
from nofx.coordinator.task_graph import ConflictResolution, DependencyGraph
from nofx.errors import (
    InvalidStateError,
    InvalidTransitionError,
    NofxError,
    NotFoundError,
    ValidationError,
)
from nofx.persistence.store import PersistenceProvider
from nofx.protocol.models import (
    Agent,
    AgentStatus,
    Task,
    TaskPriority,
    TaskSpec,
    TaskStatus,
)

logger = logging.getLogger(__name__)

DispatchFn = Callable[[Agent, Task], None]

# Errors that disqualify a single candidate pair without aborting a pass.
_CANDIDATE_ERRORS = (NotFoundError, InvalidStateError, InvalidTransitionError)

# Prefix of the block reason set by failure propagation; retry only reopens these.
DEPENDENCY_FAILED = "dependency failed"


def new_task_id() -> str:
    return f"task-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


@dataclass(slots=True)
class Assignment:
    task: Task
    agent: Agent
    score: float
    fallback: bool = False
    manual: bool = False


class Scheduler:
    """Matches ready tasks to idle agents and reacts to lifecycle events."""

    def __init__(
        self,
        *,
        bus: EventBus | None = None,
        registry: AgentRegistry | None = None,
        matcher: CapabilityMatcher | None = None,
        config: SchedulerConfig | None = None,
        persistence: PersistenceProvider | None = None,
        dispatch: DispatchFn | None = None,
    ) -> None:
        self.config = config or SchedulerConfig()
        self.bus = bus or EventBus()
        self.registry = registry or AgentRegistry(self.bus)
        self.matcher = matcher or CapabilityMatcher()
        self.graph = DependencyGraph(infer_file_conflicts=self.config.infer_file_conflicts)
        self.queue = PriorityTaskQueue(self.graph)
        self.state_machine = TaskStateMachine(self.bus)
        self._persistence = persistence
        self._dispatch = dispatch
        self._seq = itertools.count(1)
        self._depth = 0
        self._in_pass = False
        self._pass_requested = False
        self._pending_dispatch: list[Assignment] = []
        self._persist_suspended = 0
        self._unsubscribe = self.bus.subscribe(
            self._on_agent_event,
            EventType.AGENT_CREATED,
            EventType.AGENT_STATUS_CHANGED,
            EventType.AGENT_REMOVED,
            EventType.AGENT_UPDATED,
        )

    def set_dispatch(self, dispatch: DispatchFn | None) -> None:
        self._dispatch = dispatch

    def close(self) -> None:
        """Detach from the event bus."""
        self._unsubscribe()

    # ------------------------------------------------------------------
    # Operation bracket
    # ------------------------------------------------------------------

    @contextmanager
    def _mutation(self) -> Iterator[None]:
        self._depth += 1
        try:
            yield
        finally:
            self._depth -= 1
        if self._depth == 0:
            self._settle()

    def _settle(self) -> None:
        """Run coalesced passes, deliver prompts, then persist."""
        passes = 0
        while self._pass_requested and self.config.auto_assign:
            if passes >= self.config.max_passes_per_trigger:
                logger.warning("Pass limit reached (%d); remaining work waits for the next event", passes)
                break
            self._pass_requested = False
            passes += 1
            self._depth += 1
            try:
                self._run_pass()
            finally:
                self._depth -= 1
        self._flush_dispatch()
        self._persist()

    def request_pass(self) -> None:
        """Ask for a scheduling pass once the current operation finishes."""
        with self._mutation():
            self._pass_requested = True

    def _on_agent_event(self, event: DomainEvent) -> None:
        became_idle = event.data.get("status") == AgentStatus.IDLE.value
        if event.event_type == EventType.AGENT_REMOVED or became_idle:
            self.request_pass()
        elif self._depth == 0:
            self._persist()

    # ------------------------------------------------------------------
    # Scheduling pass
    # ------------------------------------------------------------------

    def schedule(self) -> list[Assignment]:
        """Run one scheduling pass now and return the assignments it made.

        Called re-entrantly (from inside another operation) it only queues
        a follow-up pass and returns an empty list.
        """
        if self._depth > 0:
            self._pass_requested = True
            return []
        with self._mutation():
            self._pass_requested = False
            return self._run_pass()

    def _run_pass(self) -> list[Assignment]:
        if self._in_pass:
            self._pass_requested = True
            return []
        self._in_pass = True
        made: list[Assignment] = []
        try:
            self._refresh_readiness()
            for task in self.queue.peek_ready():
                if task.status != TaskStatus.READY or task.task_id not in self.queue:
                    continue
                blockers = self.graph.in_flight_conflicts(task.task_id)
                if blockers:
                    logger.debug("Deferring %s: conflicts with in-flight %s", task.task_id, blockers)
                    continue
                idle = self.registry.list_idle()
                if not idle:
                    break
                agent, score, fallback = self._pick_agent(task, idle)
                if agent is None:
                    logger.debug("No capable idle agent for %s", task.task_id)
                    continue
                try:
                    self._commit(task, agent)
                except _CANDIDATE_ERRORS as exc:
                    logger.warning("Skipping %s -> %s: %s", task.task_id, agent.agent_id, exc)
                    continue
                made.append(Assignment(task=task, agent=agent, score=score, fallback=fallback))
        finally:
            self._in_pass = False
        self._pending_dispatch.extend(made)
        if made:
            logger.info("Scheduling pass assigned %d task(s)", len(made))
        return made

    def _refresh_readiness(self) -> None:
        """Promote queued tasks whose dependencies completed; block the doomed ones."""
        for task in sorted(self.graph.tasks(), key=lambda t: (t.created_at, t.seq)):
            if task.status == TaskStatus.QUEUED:
                failed = self.graph.failed_dependencies(task.task_id)
                if failed:
                    self._block(task, f"{DEPENDENCY_FAILED}: {', '.join(failed)}")
                elif self.graph.is_ready(task.task_id):
                    self._make_ready(task)
            elif task.status == TaskStatus.READY and task.task_id not in self.queue:
                self.queue.enqueue(task)

    def _pick_agent(self, task: Task, idle: list[Agent]) -> tuple[Agent | None, float, bool]:
        best = self.matcher.find_best(idle, task)
        if best is not None:
            return best, self.matcher.score(best, task), False
        if self.config.fallback_to_any_idle:
            agent = min(idle, key=lambda a: (a.tasks_completed, a.seq))
            return agent, self.matcher.score(agent, task), True
        return None, 0.0, False

    def _commit(self, task: Task, agent: Agent, *, manual: bool = False) -> None:
        """Assign *task* to *agent*: state machine and registry in one call stack."""
        current = self.registry.require(agent.agent_id)
        if current.status != AgentStatus.IDLE:
            raise InvalidStateError(f"Agent {agent.name} is {current.status}", entity_id=agent.agent_id)
        if self.registry.find_by_task(task.task_id) is not None:
            raise InvalidStateError(f"Task {task.task_id} is already held by an agent", entity_id=task.task_id)
        self.state_machine.transition(task, TaskStatus.ASSIGNED, agent_id=agent.agent_id)
        self.registry.begin_work(agent.agent_id, task)
        self.state_machine.transition(task, TaskStatus.IN_PROGRESS, agent_id=agent.agent_id)
        self.queue.dequeue(task.task_id)
        self.bus.emit(
            EventType.TASK_ASSIGNED,
            task_id=task.task_id,
            agent_id=agent.agent_id,
            message=f"{task.title} -> {agent.name}",
            manual=manual,
        )

    def _flush_dispatch(self) -> None:
        pending, self._pending_dispatch = self._pending_dispatch, []
        if self._dispatch is None:
            return
        for assignment in pending:
            try:
                self._dispatch(assignment.agent, assignment.task)
            except Exception as exc:
                logger.warning(
                    "Prompt dispatch for %s to %s failed: %s",
                    assignment.task.task_id, assignment.agent.agent_id, exc,
                )

    @contextmanager
    def deferred_persistence(self) -> Iterator[None]:
        """Hold snapshot writes until the block exits, then write once."""
        self._persist_suspended += 1
        try:
            yield
        finally:
            self._persist_suspended -= 1
        self._persist()

    def _persist(self) -> None:
        if self._persistence is None or self._persist_suspended:
            return
        try:
            self._persistence.save_task_snapshot([t.to_record() for t in self.list_tasks()])
            self._persistence.save_agent_snapshot([a.to_record() for a in self.registry.list()])
        except Exception as exc:
            logger.warning("Snapshot write failed: %s", exc)

    # ------------------------------------------------------------------
    # Task submission and edges
    # ------------------------------------------------------------------

    def submit_task(self, spec: TaskSpec | dict[str, Any]) -> Task:
        """Validate and admit a task; raises before mutating anything on bad input."""
        if not isinstance(spec, TaskSpec):
            spec = TaskSpec.from_dict(spec)
        task_id = spec.task_id or new_task_id()
        if task_id in self.graph:
            raise ValidationError(f"Task id {task_id} already exists", field_name="task_id")
        for ref in (*spec.depends_on, *spec.conflicts_with, *spec.prefers):
            if ref != task_id and ref not in self.graph:
                raise NotFoundError("Task", ref)

        with self._mutation():
            task = Task.from_spec(task_id, spec, seq=next(self._seq))
            self.graph.add_task(task)
            try:
                for dep in spec.depends_on:
                    self.graph.add_dependency(task_id, dep)
                for other in spec.conflicts_with:
                    self.graph.add_conflict(task_id, other)
                for pref in spec.prefers:
                    self.graph.add_soft_dependency(task_id, pref)
            except NofxError:
                self.graph.remove_task(task_id)
                raise
            logger.info("Submitted task %s (%s, %s)", task_id, task.title, task.priority)
            self.bus.emit(
                EventType.TASK_CREATED,
                task_id=task_id,
                message=task.title,
                priority=task.priority.value,
                depends_on=list(task.depends_on),
            )
            self._evaluate_queued(task)
            self._pass_requested = True
        return task

    def add_dependency(self, task_id: str, depends_on_id: str) -> None:
        with self._mutation():
            task = self.graph.require(task_id)
            if task.status not in (TaskStatus.QUEUED, TaskStatus.READY):
                raise InvalidStateError(
                    f"Cannot add a dependency to {task.status} task {task_id}", entity_id=task_id,
                )
            self.graph.add_dependency(task_id, depends_on_id)
            if task.status == TaskStatus.READY and not self.graph.is_ready(task_id):
                self.queue.dequeue(task_id)
                self.state_machine.transition(task, TaskStatus.QUEUED, reason=f"waits on {depends_on_id}")
            self._evaluate_queued(task)

    def remove_dependency(self, task_id: str, depends_on_id: str) -> bool:
        with self._mutation():
            removed = self.graph.remove_dependency(task_id, depends_on_id)
            if removed:
                self._pass_requested = True
            return removed

    def add_conflict(self, task_id: str, other_id: str) -> None:
        with self._mutation():
            a = self.graph.require(task_id)
            b = self.graph.require(other_id)
            if a.in_flight and b.in_flight:
                raise InvalidStateError(
                    f"Tasks {task_id} and {other_id} are both in flight", entity_id=task_id,
                )
            self.graph.add_conflict(task_id, other_id)

    def resolve_conflict(self, task_id: str, other_id: str, resolution: ConflictResolution | str) -> None:
        resolution = ConflictResolution(resolution)
        with self._mutation():
            if resolution == ConflictResolution.BLOCK:
                self.add_conflict(task_id, other_id)
            else:
                self.graph.resolve_conflict(task_id, other_id, resolution)
            logger.info("Conflict %s/%s resolved: %s", task_id, other_id, resolution)
            self._pass_requested = True

    def update_priority(
        self,
        task_id: str,
        priority: TaskPriority | str,
        numeric_priority: int | None = None,
    ) -> None:
        task = self.graph.require(task_id)
        if task.is_terminal:
            raise InvalidStateError(f"Task {task_id} is already {task.status}", entity_id=task_id)
        with self._mutation():
            task.priority = TaskPriority(priority)
            task.numeric_priority = numeric_priority
            self._pass_requested = True

    def _evaluate_queued(self, task: Task) -> None:
        if task.status != TaskStatus.QUEUED:
            return
        failed = self.graph.failed_dependencies(task.task_id)
        if failed:
            self._block(task, f"{DEPENDENCY_FAILED}: {', '.join(failed)}")
        elif self.graph.is_ready(task.task_id):
            self._make_ready(task)

    def _make_ready(self, task: Task, *, reason: str = "") -> None:
        self.state_machine.transition(task, TaskStatus.READY, reason=reason)
        self.queue.enqueue(task)

    def _block(self, task: Task, reason: str) -> None:
        self.queue.dequeue(task.task_id)
        self.state_machine.transition(task, TaskStatus.BLOCKED, reason=reason)
        self.bus.emit(EventType.TASK_BLOCKED, task_id=task.task_id, message=reason)

    # ------------------------------------------------------------------
    # Completion, failure and interruption
    # ------------------------------------------------------------------

    def complete_task(self, agent_id: str, task_id: str | None = None) -> bool:
        """Accept an external completion signal for *agent_id*'s current task.

        Returns False without changing anything when the agent holds no
        task, or holds a different one than *task_id* (duplicate or late
        signal).
        """
        with self._mutation():
            agent = self.registry.require(agent_id)
            task = agent.current_task
            if task is None or agent.status != AgentStatus.WORKING:
                logger.debug("Ignoring completion for %s: not working", agent_id)
                return False
            if task_id is not None and task.task_id != task_id:
                logger.debug(
                    "Ignoring completion of %s from %s: now on %s", task_id, agent_id, task.task_id,
                )
                return False
            self.state_machine.transition(task, TaskStatus.COMPLETED, agent_id=agent_id)
            self.registry.complete_work(agent_id)
            self.bus.emit(
                EventType.TASK_COMPLETED, task_id=task.task_id, agent_id=agent_id, message=task.title,
            )
            for child_id in self.graph.get_dependents(task.task_id):
                self._evaluate_queued(self.graph.require(child_id))
            self._pass_requested = True
        return True

    def complete_task_by_id(self, task_id: str) -> bool:
        task = self.graph.require(task_id)
        if task.status != TaskStatus.IN_PROGRESS or task.assigned_agent_id is None:
            logger.debug("Ignoring completion of %s: status %s", task_id, task.status)
            return False
        return self.complete_task(task.assigned_agent_id, task_id)

    def fail_task(self, task_id: str, reason: str = "") -> list[str]:
        """Mark a task failed and block everything downstream of it.

        Returns the ids of the dependents that were blocked.
        """
        with self._mutation():
            task = self.graph.require(task_id)
            holder = task.assigned_agent_id
            self.state_machine.transition(task, TaskStatus.FAILED, reason=reason)
            self.queue.dequeue(task_id)
            if holder is not None:
                self.registry.interrupt_work(holder)
            self.bus.emit(EventType.TASK_FAILED, task_id=task_id, agent_id=holder or "", message=reason)
            blocked = self._block_dependents(task_id)
            self._pass_requested = True
        return blocked

    def _block_dependents(self, task_id: str) -> list[str]:
        blocked: list[str] = []
        for tid in self.graph.get_transitive_dependents(task_id):
            dependent = self.graph.require(tid)
            if dependent.status in (TaskStatus.QUEUED, TaskStatus.READY):
                self._block(dependent, f"{DEPENDENCY_FAILED}: {task_id}")
                blocked.append(tid)
        return blocked

    def block_task(self, task_id: str, reason: str) -> Task:
        """Park a task until someone retries it; an in-flight holder is released."""
        with self._mutation():
            task = self.graph.require(task_id)
            holder = task.assigned_agent_id
            self._block(task, reason)
            if holder is not None:
                self.registry.interrupt_work(holder)
            self._pass_requested = True
        return task

    def interrupt_agent(self, agent_id: str, reason: str = "channel closed") -> Task | None:
        """Return the agent's in-flight task to READY; the agent goes idle."""
        with self._mutation():
            task = self.registry.interrupt_work(agent_id)
            if task is not None:
                self._requeue(task, agent_id, reason)
        return task

    def _requeue(self, task: Task, agent_id: str, reason: str) -> None:
        if task.status in (TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS):
            self._make_ready(task, reason=reason)
        self.bus.emit(EventType.TASK_INTERRUPTED, task_id=task.task_id, agent_id=agent_id, message=reason)
        self._pass_requested = True

    def register_agent(self, agent: Agent) -> str:
        with self._mutation():
            return self.registry.register(agent)

    def remove_agent(self, agent_id: str, reason: str = "agent removed") -> AgentRemoval:
        """Unregister an agent; its in-flight task goes back to READY."""
        with self._mutation():
            removal = self.registry.remove(agent_id)
            if removal.interrupted_task is not None:
                self._requeue(removal.interrupted_task, agent_id, reason)
        return removal

    def mark_agent_unavailable(self, agent_id: str, status: AgentStatus, reason: str = "") -> Task | None:
        with self._mutation():
            task = self.registry.mark_unavailable(agent_id, status)
            if task is not None:
                self._requeue(task, agent_id, reason or status.value)
        return task

    def retry_task(self, task_id: str) -> Task:
        """Reopen a blocked or failed task, and the dependents its failure blocked.

        Dependents blocked for another reason (for example by hand) stay blocked.
        """
        with self._mutation():
            task = self.graph.require(task_id)
            if task.status not in (TaskStatus.BLOCKED, TaskStatus.FAILED):
                raise InvalidStateError(
                    f"Only blocked or failed tasks can be retried ({task_id} is {task.status})",
                    entity_id=task_id,
                )
            still_failed = self.graph.failed_dependencies(task_id)
            if still_failed:
                raise InvalidStateError(
                    f"Task {task_id} still waits on failed dependencies: {', '.join(still_failed)}",
                    entity_id=task_id,
                )
            if self.graph.is_ready(task_id):
                self._make_ready(task, reason="retry")
            else:
                self.state_machine.transition(task, TaskStatus.QUEUED, reason="retry")
            for tid in self.graph.get_transitive_dependents(task_id):
                dependent = self.graph.require(tid)
                if (
                    dependent.status == TaskStatus.BLOCKED
                    and dependent.blocked_reason.startswith(DEPENDENCY_FAILED)
                    and not self.graph.failed_dependencies(tid)
                ):
                    self.state_machine.transition(dependent, TaskStatus.QUEUED, reason=f"{task_id} retried")
            self._pass_requested = True
        return task

    def assign_task(self, task_id: str, agent_id: str) -> Assignment:
        """Manual assignment; same guards as a pass, but errors reach the caller."""
        with self._mutation():
            task = self.graph.require(task_id)
            agent = self.registry.require(agent_id)
            if task.status != TaskStatus.READY:
                raise InvalidStateError(f"Task {task_id} is {task.status}, not ready", entity_id=task_id)
            blockers = self.graph.in_flight_conflicts(task_id)
            if blockers:
                raise InvalidStateError(
                    f"Task {task_id} conflicts with in-flight {', '.join(blockers)}", entity_id=task_id,
                )
            self._commit(task, agent, manual=True)
            assignment = Assignment(
                task=task, agent=agent, score=self.matcher.score(agent, task), manual=True,
            )
            self._pending_dispatch.append(assignment)
        return assignment

    def remove_task(self, task_id: str) -> Task:
        with self._mutation():
            task = self.graph.require(task_id)
            if task.assigned_agent_id is not None:
                self.registry.interrupt_work(task.assigned_agent_id)
            self.queue.dequeue(task_id)
            self.graph.remove_task(task_id)
            self.bus.emit(EventType.TASK_REMOVED, task_id=task_id, message=task.title)
            self._pass_requested = True
        return task

    def clear_completed(self) -> int:
        done = [t.task_id for t in self.graph.tasks() if t.status == TaskStatus.COMPLETED]
        if not done:
            return 0
        with self._mutation():
            for tid in done:
                self.graph.remove_task(tid)
        return len(done)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_task(self, task_id: str) -> Task | None:
        return self.graph.get(task_id)

    def require_task(self, task_id: str) -> Task:
        return self.graph.require(task_id)

    def list_tasks(self, status: TaskStatus | None = None) -> list[Task]:
        tasks = sorted(self.graph.tasks(), key=lambda t: (t.created_at, t.seq))
        if status is None:
            return tasks
        return [t for t in tasks if t.status == status]

    def tasks_for_agent(self, agent_id: str) -> list[Task]:
        return [
            t for t in self.list_tasks()
            if t.assigned_agent_id == agent_id or t.completed_by == agent_id
        ]

    def stats(self) -> dict[str, Any]:
        counts = Counter(t.status.value for t in self.graph.tasks())
        return {
            "tasks": {"total": len(self.graph), **{s.value: counts.get(s.value, 0) for s in TaskStatus}},
            "queue": self.queue.stats(),
            "agents": self.registry.stats(),
        }

    def check_invariants(self) -> list[str]:
        """Describe every violated consistency rule; empty when healthy."""
        problems: list[str] = []
        holders: dict[str, str] = {}
        for agent in self.registry.list():
            task = agent.current_task
            if agent.status == AgentStatus.WORKING:
                if task is None:
                    problems.append(f"agent {agent.agent_id} working without a task")
                    continue
                if task.status != TaskStatus.IN_PROGRESS or task.assigned_agent_id != agent.agent_id:
                    problems.append(f"agent {agent.agent_id} holds {task.task_id} ({task.status})")
            elif task is not None:
                problems.append(f"agent {agent.agent_id} is {agent.status} but holds {task.task_id}")
        for task in self.graph.tasks():
            if task.assigned_agent_id is None:
                continue
            if task.assigned_agent_id in holders:
                problems.append(
                    f"agent {task.assigned_agent_id} assigned to {holders[task.assigned_agent_id]} and {task.task_id}"
                )
            holders[task.assigned_agent_id] = task.task_id
            agent = self.registry.get(task.assigned_agent_id)
            if agent is None or agent.current_task is not task:
                problems.append(f"task {task.task_id} assigned to {task.assigned_agent_id} which does not hold it")
        running = [t for t in self.graph.tasks() if t.status == TaskStatus.IN_PROGRESS]
        for task in running:
            for dep in task.depends_on:
                if self.graph.require(dep).status != TaskStatus.COMPLETED:
                    problems.append(f"task {task.task_id} running before dependency {dep} completed")
            for other in self.graph.in_flight_conflicts(task.task_id):
                if other > task.task_id and self.graph.require(other).status == TaskStatus.IN_PROGRESS:
                    problems.append(f"conflicting tasks {task.task_id} and {other} both in progress")
        return problems

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def restore_tasks(self, records: list[dict[str, Any]]) -> int:
        """Load a task snapshot into an empty scheduler.

        In-flight tasks come back as READY since no agent holds them after a
        restart.  Malformed records and dangling or cyclic edges are skipped.
        """
        if len(self.graph):
            raise InvalidStateError("Tasks can only be restored into an empty scheduler")
        loaded: list[tuple[Task, list[str], list[str], list[str]]] = []
        for raw in records:
            try:
                task = Task.from_record(raw)
            except ValidationError as exc:
                logger.warning("Skipping malformed task record: %s", exc)
                continue
            loaded.append((task, list(task.depends_on), list(task.conflicts_with), list(task.prefers)))
        loaded.sort(key=lambda item: item[0].created_at)

        with self._mutation():
            for task, _, _, _ in loaded:
                task.depends_on, task.conflicts_with, task.prefers = [], [], []
                task.assigned_agent_id = None
                task.seq = next(self._seq)
                self.graph.add_task(task)
            for task, deps, conflicts, prefers in loaded:
                for dep in deps:
                    try:
                        self.graph.add_dependency(task.task_id, dep)
                    except NofxError as exc:
                        logger.warning("Dropping restored dependency %s -> %s: %s", task.task_id, dep, exc)
                for other in conflicts:
                    if other in self.graph:
                        self.graph.add_conflict(task.task_id, other)
                for pref in prefers:
                    if pref in self.graph:
                        self.graph.add_soft_dependency(task.task_id, pref)
            for task, _, _, _ in loaded:
                if task.status in (TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS):
                    self._make_ready(task, reason="restored")
                elif task.status == TaskStatus.READY:
                    if self.graph.is_ready(task.task_id):
                        self.queue.enqueue(task)
                    else:
                        self.state_machine.transition(task, TaskStatus.QUEUED, reason="restored")
                elif task.status == TaskStatus.QUEUED:
                    self._evaluate_queued(task)
            self._pass_requested = True
        logger.info("Restored %d task(s)", len(loaded))
        return len(loaded)
