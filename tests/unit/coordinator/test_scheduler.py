"""Tests for the scheduler: assignment, completion, failure and restore."""

from __future__ import annotations

import random

import pytest

from nofx.config.schema import SchedulerConfig
from nofx.coordinator.event_bus import DomainEvent, EventBus, EventType
from nofx.coordinator.scheduler import Scheduler
from nofx.errors import CycleError, InvalidStateError, NotFoundError, ValidationError
from nofx.protocol.models import AgentStatus, TaskStatus
from tests.helpers import make_agent, submit


class TestDependencies:
    def test_dependent_waits_for_completion(self, scheduler: Scheduler) -> None:
        scheduler.register_agent(make_agent("x"))
        a = submit(scheduler, "A", priority="high")
        b = submit(scheduler, "B", priority="high", depends_on=["A"])

        assert a.status == TaskStatus.IN_PROGRESS
        assert a.assigned_agent_id == "x"
        assert b.status == TaskStatus.QUEUED
        assert "B" not in scheduler.queue

        assert scheduler.complete_task("x", "A")
        assert a.status == TaskStatus.COMPLETED
        assert b.status == TaskStatus.IN_PROGRESS
        assert b.assigned_agent_id == "x"

    def test_cycle_rejected(self, scheduler: Scheduler) -> None:
        a = submit(scheduler, "A")
        b = submit(scheduler, "B", depends_on=["A"])
        ready_before = [t.task_id for t in scheduler.queue.peek_ready()]
        with pytest.raises(CycleError):
            scheduler.add_dependency("A", "B")
        assert a.depends_on == []
        assert b.depends_on == ["A"]
        assert scheduler.graph.get_dependents("B") == []
        assert a.status == TaskStatus.READY
        assert b.status == TaskStatus.QUEUED
        assert [t.task_id for t in scheduler.queue.peek_ready()] == ready_before == ["A"]

    def test_unknown_dependency_rejected_before_admission(self, scheduler: Scheduler) -> None:
        with pytest.raises(NotFoundError):
            submit(scheduler, "A", depends_on=["ghost"])
        assert scheduler.get_task("A") is None

    def test_malformed_payload_rejected(self, scheduler: Scheduler) -> None:
        with pytest.raises(ValidationError):
            scheduler.submit_task({"title": "no description"})
        with pytest.raises(ValidationError):
            scheduler.submit_task({"title": "t", "description": "d", "priority": "urgent"})
        assert scheduler.list_tasks() == []

    def test_duplicate_task_id_rejected(self, scheduler: Scheduler) -> None:
        submit(scheduler, "A")
        with pytest.raises(ValidationError):
            submit(scheduler, "A")

    def test_new_dependency_requeues_ready_task(self, scheduler: Scheduler) -> None:
        a = submit(scheduler, "A")
        b = submit(scheduler, "B")
        assert b.status == TaskStatus.READY
        scheduler.add_dependency("B", "A")
        assert b.status == TaskStatus.QUEUED
        assert "B" not in scheduler.queue
        assert a.status == TaskStatus.READY


class TestAssignment:
    def test_backend_task_goes_to_backend_agent(self, scheduler: Scheduler) -> None:
        scheduler.register_agent(make_agent("x", "frontend", capabilities=["react"]))
        scheduler.register_agent(make_agent("y", "backend"))
        task = submit(scheduler, "T", required_capabilities=["backend"])
        assert task.assigned_agent_id == "y"
        assert scheduler.registry.require("x").status == AgentStatus.IDLE

    def test_no_capable_agent_leaves_task_ready(self, scheduler: Scheduler) -> None:
        scheduler.register_agent(make_agent("x", "frontend", capabilities=["react"]))
        task = submit(scheduler, "T", required_capabilities=["backend"])
        assert task.status == TaskStatus.READY
        assert "T" in scheduler.queue

    def test_fallback_to_any_idle(self) -> None:
        sched = Scheduler(config=SchedulerConfig(fallback_to_any_idle=True))
        sched.register_agent(make_agent("x", "frontend", capabilities=["react"]))
        task = submit(sched, "T", required_capabilities=["backend"])
        assert task.assigned_agent_id == "x"

    def test_assignment_is_injective(self, scheduler: Scheduler) -> None:
        for aid in ("a1", "a2"):
            scheduler.register_agent(make_agent(aid))
        for tid in ("t1", "t2", "t3", "t4"):
            submit(scheduler, tid)
        holders = [t.assigned_agent_id for t in scheduler.list_tasks() if t.assigned_agent_id]
        assert sorted(holders) == ["a1", "a2"]
        assert len(scheduler.list_tasks(TaskStatus.READY)) == 2
        assert scheduler.check_invariants() == []

    def test_higher_priority_assigned_first(self, scheduler: Scheduler) -> None:
        submit(scheduler, "low", priority="low")
        submit(scheduler, "crit", priority="critical")
        scheduler.register_agent(make_agent("x"))
        assert scheduler.require_task("crit").assigned_agent_id == "x"
        assert scheduler.require_task("low").status == TaskStatus.READY

    def test_manual_assignment(self) -> None:
        sched = Scheduler(config=SchedulerConfig(auto_assign=False))
        sched.register_agent(make_agent("x", "frontend"))
        submit(sched, "T", required_capabilities=["backend"])
        assignment = sched.assign_task("T", "x")
        assert assignment.manual
        assert sched.require_task("T").status == TaskStatus.IN_PROGRESS
        with pytest.raises(InvalidStateError):
            sched.assign_task("T", "x")

    def test_auto_assign_off_waits_for_schedule(self) -> None:
        sched = Scheduler(config=SchedulerConfig(auto_assign=False))
        sched.register_agent(make_agent("x"))
        task = submit(sched, "T")
        assert task.status == TaskStatus.READY
        made = sched.schedule()
        assert [(a.task.task_id, a.agent.agent_id) for a in made] == [("T", "x")]

    def test_dispatch_runs_after_commit(self) -> None:
        seen: list[tuple[str, str, TaskStatus]] = []
        sched = Scheduler(dispatch=lambda agent, task: seen.append((agent.agent_id, task.task_id, task.status)))
        sched.register_agent(make_agent("x"))
        submit(sched, "T")
        assert seen == [("x", "T", TaskStatus.IN_PROGRESS)]

    def test_assigned_event_published(self, bus: EventBus, scheduler: Scheduler) -> None:
        assigned: list[DomainEvent] = []
        bus.subscribe(assigned.append, EventType.TASK_ASSIGNED)
        scheduler.register_agent(make_agent("x"))
        submit(scheduler, "T")
        assert [(e.task_id, e.agent_id) for e in assigned] == [("T", "x")]


class TestConflicts:
    def test_conflicting_task_deferred(self, scheduler: Scheduler) -> None:
        scheduler.register_agent(make_agent("a1"))
        scheduler.register_agent(make_agent("a2"))
        first = submit(scheduler, "T1")
        second = submit(scheduler, "T2", conflicts_with=["T1"])
        assert first.status == TaskStatus.IN_PROGRESS
        assert second.status == TaskStatus.READY
        scheduler.complete_task_by_id("T1")
        assert second.status == TaskStatus.IN_PROGRESS

    def test_file_overlap_deferred_unless_allowed(self, scheduler: Scheduler) -> None:
        scheduler.register_agent(make_agent("a1"))
        scheduler.register_agent(make_agent("a2"))
        submit(scheduler, "T1", files=["src/api"])
        second = submit(scheduler, "T2", files=["src/api/users.py"])
        assert second.status == TaskStatus.READY
        scheduler.resolve_conflict("T2", "T1", "allow")
        assert second.status == TaskStatus.IN_PROGRESS

    def test_conflicting_tasks_never_run_together(self) -> None:
        rng = random.Random(20261019)
        for _ in range(100):
            sched = Scheduler()
            for i in range(rng.randint(2, 4)):
                sched.register_agent(make_agent(f"a{i}"))
            submitted: list[str] = []
            for step in range(rng.randint(6, 16)):
                running = sched.list_tasks(TaskStatus.IN_PROGRESS)
                if running and rng.random() < 0.4:
                    sched.complete_task_by_id(rng.choice(running).task_id)
                else:
                    tid = f"t{step}"
                    conflicts = rng.sample(submitted, k=min(len(submitted), rng.randint(0, 2)))
                    submit(sched, tid, conflicts_with=conflicts)
                    submitted.append(tid)
                running = sched.list_tasks(TaskStatus.IN_PROGRESS)
                for task in running:
                    for other in sched.graph.conflicting_tasks(task.task_id):
                        assert sched.require_task(other).status != TaskStatus.IN_PROGRESS
                assert sched.check_invariants() == []

    def test_conflict_between_running_tasks_rejected(self, scheduler: Scheduler) -> None:
        scheduler.register_agent(make_agent("a1"))
        scheduler.register_agent(make_agent("a2"))
        submit(scheduler, "T1")
        submit(scheduler, "T2")
        with pytest.raises(InvalidStateError):
            scheduler.add_conflict("T1", "T2")


class TestInterruption:
    def test_interrupt_then_reassign(self, scheduler: Scheduler) -> None:
        scheduler.register_agent(make_agent("x"))
        task = submit(scheduler, "T")
        scheduler.register_agent(make_agent("y"))
        assert task.assigned_agent_id == "x"

        # Take x out of rotation so the requeued task lands on y.
        returned = scheduler.mark_agent_unavailable("x", AgentStatus.OFFLINE)
        assert returned is task
        assert task.status == TaskStatus.IN_PROGRESS
        assert task.assigned_agent_id == "y"
        assert task.attempts == 2

    def test_interrupt_returns_task_to_ready(self) -> None:
        sched = Scheduler(config=SchedulerConfig(auto_assign=False))
        sched.register_agent(make_agent("x"))
        task = submit(sched, "T")
        sched.schedule()
        returned = sched.interrupt_agent("x")
        assert returned is task
        assert task.status == TaskStatus.READY
        assert task.assigned_agent_id is None
        assert sched.registry.require("x").status == AgentStatus.IDLE
        assert "T" in sched.queue

    def test_removed_agent_releases_task(self, scheduler: Scheduler) -> None:
        scheduler.register_agent(make_agent("x"))
        task = submit(scheduler, "T")
        removal = scheduler.remove_agent("x")
        assert removal.interrupted_task is task
        assert task.status == TaskStatus.READY
        assert "x" not in scheduler.registry
        scheduler.register_agent(make_agent("y"))
        assert task.status == TaskStatus.IN_PROGRESS
        assert task.assigned_agent_id == "y"

    def test_duplicate_completion_ignored(self, scheduler: Scheduler) -> None:
        scheduler.register_agent(make_agent("x"))
        submit(scheduler, "T")
        assert scheduler.complete_task("x", "T")
        assert not scheduler.complete_task("x", "T")
        assert not scheduler.complete_task_by_id("T")
        assert scheduler.registry.require("x").tasks_completed == 1

    def test_stale_completion_ignored(self, scheduler: Scheduler) -> None:
        scheduler.register_agent(make_agent("x"))
        submit(scheduler, "T1")
        submit(scheduler, "T2")
        assert not scheduler.complete_task("x", "T2")
        assert scheduler.require_task("T1").status == TaskStatus.IN_PROGRESS


class TestFailure:
    def test_failure_blocks_dependents_and_retry_reopens(self, scheduler: Scheduler) -> None:
        scheduler.register_agent(make_agent("x"))
        a = submit(scheduler, "A")
        b = submit(scheduler, "B", depends_on=["A"])
        c = submit(scheduler, "C", depends_on=["B"])

        blocked = scheduler.fail_task("A", "tests failed")
        assert a.status == TaskStatus.FAILED
        assert blocked == ["B", "C"]
        assert b.status == TaskStatus.BLOCKED
        assert c.status == TaskStatus.BLOCKED
        assert scheduler.registry.require("x").status == AgentStatus.IDLE

        with pytest.raises(InvalidStateError):
            scheduler.retry_task("B")

        scheduler.retry_task("A")
        assert a.status == TaskStatus.IN_PROGRESS
        assert b.status == TaskStatus.QUEUED
        assert c.status == TaskStatus.QUEUED

        scheduler.complete_task("x", "A")
        assert b.status == TaskStatus.IN_PROGRESS

    def test_dependent_of_failed_task_blocked_on_submit(self, scheduler: Scheduler) -> None:
        submit(scheduler, "A")
        scheduler.fail_task("A")
        b = submit(scheduler, "B", depends_on=["A"])
        assert b.status == TaskStatus.BLOCKED
        assert "A" in b.blocked_reason

    def test_retry_requires_blocked_or_failed(self, scheduler: Scheduler) -> None:
        submit(scheduler, "A")
        with pytest.raises(InvalidStateError):
            scheduler.retry_task("A")

    def test_block_task_releases_holder(self, scheduler: Scheduler) -> None:
        scheduler.register_agent(make_agent("x"))
        task = submit(scheduler, "T")
        scheduler.block_task("T", "waiting on design review")
        assert task.status == TaskStatus.BLOCKED
        assert task.blocked_reason == "waiting on design review"
        assert scheduler.registry.require("x").status == AgentStatus.IDLE

    def test_retry_keeps_manually_blocked_dependents(self, scheduler: Scheduler) -> None:
        submit(scheduler, "A")
        manual = submit(scheduler, "C", depends_on=["A"])
        cascaded = submit(scheduler, "D", depends_on=["A"])
        scheduler.block_task("C", "waiting on design review")

        assert scheduler.fail_task("A") == ["D"]
        scheduler.retry_task("A")

        assert manual.status == TaskStatus.BLOCKED
        assert manual.blocked_reason == "waiting on design review"
        assert cascaded.status == TaskStatus.QUEUED
        assert cascaded.blocked_reason == ""


class TestMaintenance:
    def test_update_priority(self, scheduler: Scheduler) -> None:
        submit(scheduler, "A", priority="low")
        submit(scheduler, "B", priority="medium")
        scheduler.update_priority("A", "critical")
        assert scheduler.queue.peek().task_id == "A"

    def test_remove_and_clear_completed(self, scheduler: Scheduler) -> None:
        scheduler.register_agent(make_agent("x"))
        submit(scheduler, "A")
        submit(scheduler, "B")
        scheduler.complete_task_by_id("A")
        assert scheduler.clear_completed() == 1
        assert scheduler.get_task("A") is None
        scheduler.remove_task("B")
        assert scheduler.registry.require("x").status == AgentStatus.IDLE
        assert scheduler.list_tasks() == []

    def test_stats_and_tasks_for_agent(self, scheduler: Scheduler) -> None:
        scheduler.register_agent(make_agent("x"))
        submit(scheduler, "A")
        submit(scheduler, "B")
        scheduler.complete_task_by_id("A")
        stats = scheduler.stats()
        assert stats["tasks"]["total"] == 2
        assert stats["tasks"]["completed"] == 1
        assert stats["agents"]["working"] == 1
        assert [t.task_id for t in scheduler.tasks_for_agent("x")] == ["A", "B"]


class TestRestore:
    def test_restore_tasks_rebuilds_state(self, scheduler: Scheduler) -> None:
        records = [
            {"task_id": "A", "title": "A", "description": "a", "status": "completed",
             "created_at": "2026-01-01T00:00:01+00:00"},
            {"task_id": "B", "title": "B", "description": "b", "status": "in-progress",
             "assigned_agent_id": "gone", "depends_on": ["A"], "created_at": "2026-01-01T00:00:02+00:00"},
            {"task_id": "C", "title": "C", "description": "c", "status": "ready",
             "depends_on": ["D"], "created_at": "2026-01-01T00:00:03+00:00"},
            {"task_id": "D", "title": "D", "description": "d", "status": "queued",
             "created_at": "2026-01-01T00:00:04+00:00"},
            {"task_id": "E", "title": "E", "status": "bogus"},
        ]
        assert scheduler.restore_tasks(records) == 4
        assert scheduler.require_task("B").status == TaskStatus.READY
        assert scheduler.require_task("B").assigned_agent_id is None
        assert scheduler.require_task("C").status == TaskStatus.QUEUED
        assert scheduler.require_task("D").status == TaskStatus.READY
        assert scheduler.get_task("E") is None
        assert scheduler.check_invariants() == []

    def test_restore_requires_empty_scheduler(self, scheduler: Scheduler) -> None:
        submit(scheduler, "A")
        with pytest.raises(InvalidStateError):
            scheduler.restore_tasks([])
