"""Typed publish/subscribe bus for scheduler and lifecycle events.

The registry, scheduler and lifecycle coordinator publish here; UI bridges,
persistence hooks and the scheduler itself subscribe.  Publishers never
depend on a subscriber being present, and a failing subscriber never
affects the publisher or other subscribers.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any, Callable

from nofx.protocol.io import append_jsonl

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    AGENT_CREATED = "agent.created"
    AGENT_REMOVED = "agent.removed"
    AGENT_STATUS_CHANGED = "agent.status_changed"
    AGENT_UPDATED = "agent.updated"
    TASK_CREATED = "task.created"
    TASK_STATE_CHANGED = "task.state_changed"
    TASK_ASSIGNED = "task.assigned"
    TASK_COMPLETED = "task.completed"
    TASK_FAILED = "task.failed"
    TASK_INTERRUPTED = "task.interrupted"
    TASK_BLOCKED = "task.blocked"
    TASK_REMOVED = "task.removed"


@dataclass(slots=True)
class DomainEvent:
    """A single published event."""

    event_type: EventType
    timestamp: float = field(default_factory=time.time)
    task_id: str = ""
    agent_id: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    message: str = ""


Subscriber = Callable[[DomainEvent], Any]


class EventBus:
    """In-process pub/sub.

    A subscriber registered without event types receives every event.
    Events may optionally be appended to a JSONL file.
    """

    def __init__(self, persist_path: str | Path | None = None, *, history_limit: int = 1000) -> None:
        self._subscribers: list[tuple[Subscriber, frozenset[EventType] | None]] = []
        self._persist_path = Path(persist_path) if persist_path else None
        self._history: list[DomainEvent] = []
        self._history_limit = history_limit

    def publish(self, event: DomainEvent) -> None:
        self._history.append(event)
        if len(self._history) > self._history_limit:
            del self._history[: len(self._history) - self._history_limit]

        for cb, types in list(self._subscribers):
            if types is not None and event.event_type not in types:
                continue
            try:
                cb(event)
            except Exception as exc:
                logger.warning("Event subscriber %r failed on %s: %s", cb, event.event_type, exc)

        if self._persist_path is not None:
            try:
                record = asdict(event)
                record["event_type"] = event.event_type.value
                append_jsonl(self._persist_path, record)
            except OSError as exc:
                logger.warning("Event log write failed (%s): %s", self._persist_path, exc)

    def emit(
        self,
        event_type: EventType,
        *,
        task_id: str = "",
        agent_id: str = "",
        message: str = "",
        **data: Any,
    ) -> DomainEvent:
        """Build and publish an event in one call."""
        event = DomainEvent(
            event_type=event_type,
            task_id=task_id,
            agent_id=agent_id,
            data=data,
            message=message,
        )
        self.publish(event)
        return event

    def subscribe(self, callback: Subscriber, *event_types: EventType) -> Callable[[], None]:
        """Register *callback*; returns a function that unsubscribes it."""
        types = frozenset(event_types) if event_types else None
        self._subscribers.append((callback, types))

        def _unsubscribe() -> None:
            self.unsubscribe(callback)

        return _unsubscribe

    def unsubscribe(self, callback: Subscriber) -> None:
        self._subscribers = [(cb, t) for cb, t in self._subscribers if cb is not callback]

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def history(self) -> list[DomainEvent]:
        return list(self._history)

    def recent(self, n: int = 20) -> list[DomainEvent]:
        """Return the *n* most recent events."""
        return self._history[-n:]
