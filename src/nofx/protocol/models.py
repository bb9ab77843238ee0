"""Agent and task entities shared by the coordinator, adapters and persistence."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from nofx.errors import ValidationError

SNAPSHOT_VERSION = "1.0"


class AgentStatus(StrEnum):
    IDLE = "idle"
    WORKING = "working"
    ERROR = "error"
    OFFLINE = "offline"


class TaskStatus(StrEnum):
    QUEUED = "queued"
    READY = "ready"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"


class TaskPriority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


PRIORITY_VALUES: dict[TaskPriority, int] = {
    TaskPriority.LOW: 25,
    TaskPriority.MEDIUM: 50,
    TaskPriority.HIGH: 75,
    TaskPriority.CRITICAL: 100,
}

IN_FLIGHT_STATUSES = frozenset({TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS})
TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


# ------------------------------------------------------------------
# Payload validation helpers
# ------------------------------------------------------------------


def _require_str(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"'{key}' must be a non-empty string", field_name=key)
    return value.strip()


def _optional_str(data: dict[str, Any], key: str, default: str = "") -> str:
    value = data.get(key, default)
    if value is None:
        return default
    if not isinstance(value, str):
        raise ValidationError(f"'{key}' must be a string", field_name=key)
    return value


def _str_list(data: dict[str, Any], key: str) -> list[str]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
        raise ValidationError(f"'{key}' must be a list of strings", field_name=key)
    seen: list[str] = []
    for item in value:
        item = item.strip()
        if item and item not in seen:
            seen.append(item)
    return seen


def _lowered(values: list[str]) -> list[str]:
    return list(dict.fromkeys(v.lower() for v in values))


def _optional_int(data: dict[str, Any], key: str) -> int | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"'{key}' must be a number", field_name=key)
    return int(value)


def parse_priority(value: Any) -> TaskPriority:
    if value is None:
        return TaskPriority.MEDIUM
    if isinstance(value, TaskPriority):
        return value
    try:
        return TaskPriority(str(value).lower())
    except ValueError:
        raise ValidationError(
            f"Unknown priority {value!r} (expected one of: "
            f"{', '.join(p.value for p in TaskPriority)})",
            field_name="priority",
        ) from None


# ------------------------------------------------------------------
# Submission payloads
# ------------------------------------------------------------------


@dataclass(slots=True)
class TaskSpec:
    """Validated task submission."""

    title: str
    description: str
    priority: TaskPriority = TaskPriority.MEDIUM
    numeric_priority: int | None = None
    required_capabilities: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)
    conflicts_with: list[str] = field(default_factory=list)
    prefers: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    task_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskSpec:
        if not isinstance(data, dict):
            raise ValidationError("Task payload must be a mapping")
        return cls(
            title=_require_str(data, "title"),
            description=_require_str(data, "description"),
            priority=parse_priority(data.get("priority")),
            numeric_priority=_optional_int(data, "numeric_priority"),
            required_capabilities=_lowered(_str_list(data, "required_capabilities")),
            files=_str_list(data, "files"),
            depends_on=_str_list(data, "depends_on"),
            conflicts_with=_str_list(data, "conflicts_with"),
            prefers=_str_list(data, "prefers"),
            tags=_str_list(data, "tags"),
            task_id=_optional_str(data, "task_id") or None,
        )


@dataclass(slots=True)
class AgentSpec:
    """Spawn configuration for one agent, usually derived from a template."""

    name: str
    agent_type: str
    capabilities: list[str] = field(default_factory=list)
    specialization: str = ""
    system_prompt: str = ""
    template_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentSpec:
        if not isinstance(data, dict):
            raise ValidationError("Agent payload must be a mapping")
        agent_type = _require_str(data, "type" if "type" in data else "agent_type")
        return cls(
            name=_optional_str(data, "name") or agent_type.title(),
            agent_type=agent_type.lower(),
            capabilities=_lowered(_str_list(data, "capabilities")),
            specialization=_optional_str(data, "specialization"),
            system_prompt=_optional_str(data, "system_prompt"),
            template_id=_optional_str(data, "template_id") or None,
        )


# ------------------------------------------------------------------
# Entities
# ------------------------------------------------------------------


@dataclass(slots=True, eq=False)
class Task:
    task_id: str
    title: str
    description: str
    priority: TaskPriority = TaskPriority.MEDIUM
    numeric_priority: int | None = None
    status: TaskStatus = TaskStatus.QUEUED
    required_capabilities: list[str] = field(default_factory=list)
    assigned_agent_id: str | None = None
    created_at: str = field(default_factory=utc_now_iso)
    completed_at: str | None = None
    files: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)
    conflicts_with: list[str] = field(default_factory=list)
    prefers: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    blocked_reason: str = ""
    attempts: int = 0
    completed_by: str | None = None
    seq: int = 0

    @property
    def priority_value(self) -> int:
        return PRIORITY_VALUES[self.priority]

    @property
    def tiebreaker(self) -> int:
        """Fine-grained priority; the ordinal value when none was given."""
        return self.numeric_priority if self.numeric_priority is not None else self.priority_value

    @property
    def in_flight(self) -> bool:
        return self.status in IN_FLIGHT_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_spec(cls, task_id: str, spec: TaskSpec, *, seq: int = 0) -> Task:
        return cls(
            task_id=task_id,
            title=spec.title,
            description=spec.description,
            priority=spec.priority,
            numeric_priority=spec.numeric_priority,
            required_capabilities=list(spec.required_capabilities),
            files=list(spec.files),
            tags=list(spec.tags),
            seq=seq,
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "title": self.title,
            "description": self.description,
            "priority": self.priority.value,
            "numeric_priority": self.numeric_priority,
            "status": self.status.value,
            "required_capabilities": list(self.required_capabilities),
            "assigned_agent_id": self.assigned_agent_id,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
            "files": list(self.files),
            "depends_on": list(self.depends_on),
            "conflicts_with": list(self.conflicts_with),
            "prefers": list(self.prefers),
            "tags": list(self.tags),
            "blocked_reason": self.blocked_reason,
            "attempts": self.attempts,
            "completed_by": self.completed_by,
        }

    @classmethod
    def from_record(cls, data: dict[str, Any], *, seq: int = 0) -> Task:
        if not isinstance(data, dict):
            raise ValidationError("Task record must be a mapping")
        raw_status = data.get("status", TaskStatus.QUEUED.value)
        try:
            status = TaskStatus(raw_status)
        except ValueError:
            raise ValidationError(f"Unknown task status {raw_status!r}", field_name="status") from None
        return cls(
            task_id=_require_str(data, "task_id"),
            title=_require_str(data, "title"),
            description=_require_str(data, "description"),
            priority=parse_priority(data.get("priority")),
            numeric_priority=_optional_int(data, "numeric_priority"),
            status=status,
            required_capabilities=_str_list(data, "required_capabilities"),
            assigned_agent_id=_optional_str(data, "assigned_agent_id") or None,
            created_at=_optional_str(data, "created_at") or utc_now_iso(),
            completed_at=_optional_str(data, "completed_at") or None,
            files=_str_list(data, "files"),
            depends_on=_str_list(data, "depends_on"),
            conflicts_with=_str_list(data, "conflicts_with"),
            prefers=_str_list(data, "prefers"),
            tags=_str_list(data, "tags"),
            blocked_reason=_optional_str(data, "blocked_reason"),
            attempts=_optional_int(data, "attempts") or 0,
            completed_by=_optional_str(data, "completed_by") or None,
            seq=seq,
        )


@dataclass(slots=True, eq=False)
class Agent:
    agent_id: str
    name: str
    agent_type: str
    status: AgentStatus = AgentStatus.IDLE
    current_task: Task | None = None
    tasks_completed: int = 0
    created_at: str = field(default_factory=utc_now_iso)
    capabilities: list[str] = field(default_factory=list)
    template_id: str | None = None
    specialization: str = ""
    system_prompt: str = ""
    seq: int = 0

    @property
    def tags(self) -> list[str]:
        """Type tag followed by declared capabilities, lower-cased and de-duplicated."""
        out = [self.agent_type.lower()]
        for cap in self.capabilities:
            cap = cap.lower()
            if cap not in out:
                out.append(cap)
        return out

    @classmethod
    def from_spec(cls, agent_id: str, spec: AgentSpec) -> Agent:
        return cls(
            agent_id=agent_id,
            name=spec.name,
            agent_type=spec.agent_type,
            capabilities=list(spec.capabilities),
            template_id=spec.template_id,
            specialization=spec.specialization,
            system_prompt=spec.system_prompt,
        )

    def to_spec(self) -> AgentSpec:
        return AgentSpec(
            name=self.name,
            agent_type=self.agent_type,
            capabilities=list(self.capabilities),
            specialization=self.specialization,
            system_prompt=self.system_prompt,
            template_id=self.template_id,
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "name": self.name,
            "agent_type": self.agent_type,
            "status": self.status.value,
            "current_task": self.current_task.task_id if self.current_task else None,
            "tasks_completed": self.tasks_completed,
            "created_at": self.created_at,
            "capabilities": list(self.capabilities),
            "template_id": self.template_id,
            "specialization": self.specialization,
            "system_prompt": self.system_prompt,
        }


@dataclass(slots=True)
class AgentRecord:
    """Persisted view of an agent, read back during restore."""

    agent_id: str
    spec: AgentSpec
    status: AgentStatus = AgentStatus.IDLE
    current_task: str | None = None
    tasks_completed: int = 0
    created_at: str = field(default_factory=utc_now_iso)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentRecord:
        if not isinstance(data, dict):
            raise ValidationError("Agent record must be a mapping")
        raw_status = data.get("status", AgentStatus.IDLE.value)
        try:
            status = AgentStatus(raw_status)
        except ValueError:
            raise ValidationError(f"Unknown agent status {raw_status!r}", field_name="status") from None
        completed = _optional_int(data, "tasks_completed") or 0
        return cls(
            agent_id=_require_str(data, "agent_id"),
            spec=AgentSpec.from_dict(data),
            status=status,
            current_task=_optional_str(data, "current_task") or None,
            tasks_completed=max(0, completed),
            created_at=_optional_str(data, "created_at") or utc_now_iso(),
        )
