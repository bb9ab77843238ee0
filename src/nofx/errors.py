"""nofx error hierarchy."""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCategory(StrEnum):
    """Category of error for classification and handling."""

    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    CYCLE = "cycle"
    INVALID_TRANSITION = "invalid_transition"
    VALIDATION = "validation"
    PROVISIONING = "provisioning"
    CHANNEL = "channel"
    CONFIGURATION = "configuration"
    PERSISTENCE = "persistence"
    INTERNAL = "internal"


class NofxError(Exception):
    """Base error for all scheduler and lifecycle exceptions."""

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.category = category
        self.retryable = retryable
        self.details: dict[str, Any] = details or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str(self)!r}, category={self.category!r})"


class NotFoundError(NofxError):
    """Unknown agent or task id."""

    def __init__(self, kind: str, entity_id: str, **kwargs: Any) -> None:
        super().__init__(
            f"{kind} not found: {entity_id}",
            category=ErrorCategory.NOT_FOUND,
            **kwargs,
        )
        self.kind = kind
        self.entity_id = entity_id


class InvalidStateError(NofxError):
    """Operation attempted against an entity in the wrong state."""

    def __init__(self, message: str, *, entity_id: str | None = None, **kwargs: Any) -> None:
        super().__init__(message, category=ErrorCategory.INVALID_STATE, **kwargs)
        self.entity_id = entity_id


class CycleError(NofxError):
    """A dependency edge would make the dependency graph cyclic."""

    def __init__(
        self,
        task_id: str,
        depends_on_id: str,
        *,
        path: list[str] | None = None,
        **kwargs: Any,
    ) -> None:
        chain = " -> ".join(path) if path else f"{depends_on_id} -> {task_id}"
        super().__init__(
            f"Dependency {task_id} -> {depends_on_id} would create a cycle ({chain})",
            category=ErrorCategory.CYCLE,
            **kwargs,
        )
        self.task_id = task_id
        self.depends_on_id = depends_on_id
        self.path = path or []


class InvalidTransitionError(NofxError):
    """Task status edge not present in the transition table."""

    def __init__(self, task_id: str, from_status: str, to_status: str, **kwargs: Any) -> None:
        super().__init__(
            f"Invalid transition for task {task_id}: {from_status} -> {to_status}",
            category=ErrorCategory.INVALID_TRANSITION,
            **kwargs,
        )
        self.task_id = task_id
        self.from_status = from_status
        self.to_status = to_status


class ValidationError(NofxError):
    """Malformed task or agent payload rejected at the boundary."""

    def __init__(self, message: str, *, field_name: str | None = None, **kwargs: Any) -> None:
        super().__init__(message, category=ErrorCategory.VALIDATION, **kwargs)
        self.field_name = field_name


class ProvisioningError(NofxError):
    """Worker channel could not be created."""

    def __init__(self, message: str, *, retryable: bool = True, **kwargs: Any) -> None:
        super().__init__(
            message, category=ErrorCategory.PROVISIONING, retryable=retryable, **kwargs,
        )


class ConfigurationError(NofxError):
    """Invalid configuration."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(message, category=ErrorCategory.CONFIGURATION, **kwargs)


class PersistenceError(NofxError):
    """Snapshot could not be read or written."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(message, category=ErrorCategory.PERSISTENCE, **kwargs)


class ChannelError(NofxError):
    """Worker channel is closed or rejected a write."""

    def __init__(self, message: str, *, channel_id: str | None = None, **kwargs: Any) -> None:
        super().__init__(message, category=ErrorCategory.CHANNEL, **kwargs)
        self.channel_id = channel_id
