"""Tests for the domain event bus."""

from __future__ import annotations

import json
from pathlib import Path

from nofx.coordinator.event_bus import DomainEvent, EventBus, EventType


class TestEventBus:
    def test_emit_and_history(self) -> None:
        bus = EventBus()
        event = bus.emit(EventType.TASK_CREATED, task_id="t1", message="hello", priority="high")
        assert bus.history == [event]
        assert event.data == {"priority": "high"}

    def test_typed_subscription_filters(self) -> None:
        bus = EventBus()
        tasks: list[DomainEvent] = []
        everything: list[DomainEvent] = []
        bus.subscribe(tasks.append, EventType.TASK_CREATED, EventType.TASK_COMPLETED)
        bus.subscribe(everything.append)
        bus.emit(EventType.TASK_CREATED, task_id="t1")
        bus.emit(EventType.AGENT_CREATED, agent_id="a1")
        assert [e.event_type for e in tasks] == [EventType.TASK_CREATED]
        assert len(everything) == 2

    def test_unsubscribe_handle(self) -> None:
        bus = EventBus()
        received: list[DomainEvent] = []
        cb = received.append
        unsubscribe = bus.subscribe(cb)
        assert bus.subscriber_count == 1
        unsubscribe()
        bus.emit(EventType.TASK_REMOVED)
        assert received == []
        assert bus.subscriber_count == 0

    def test_failing_subscriber_isolated(self) -> None:
        bus = EventBus()
        received: list[DomainEvent] = []

        def broken(_event: DomainEvent) -> None:
            raise RuntimeError("subscriber down")

        bus.subscribe(broken)
        bus.subscribe(received.append)
        bus.emit(EventType.TASK_BLOCKED, task_id="t1")
        assert len(received) == 1

    def test_recent_and_history_limit(self) -> None:
        bus = EventBus(history_limit=5)
        for i in range(10):
            bus.emit(EventType.TASK_STATE_CHANGED, task_id=f"t{i}")
        assert len(bus.history) == 5
        assert [e.task_id for e in bus.recent(2)] == ["t8", "t9"]

    def test_events_appended_to_jsonl(self, tmp_path: Path) -> None:
        log = tmp_path / "events" / "events.jsonl"
        bus = EventBus(log)
        bus.emit(EventType.AGENT_CREATED, agent_id="a1", status="idle")
        bus.emit(EventType.AGENT_REMOVED, agent_id="a1")
        lines = [json.loads(line) for line in log.read_text(encoding="utf-8").splitlines()]
        assert [r["event_type"] for r in lines] == ["agent.created", "agent.removed"]
        assert lines[0]["data"] == {"status": "idle"}
