"""Configuration schema for nofx YAML files."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class RunConfig:
    name: str = "nofx"
    working_dir: str = "."
    state_dir: str = ".nofx"
    debug: bool = False
    json_logs: bool = False
    event_log: bool = True


@dataclass(slots=True)
class SchedulerConfig:
    auto_assign: bool = True
    # Hand a task to any idle agent when nobody scores positively.
    fallback_to_any_idle: bool = False
    infer_file_conflicts: bool = True
    # Safety valve for the coalesced pass loop.
    max_passes_per_trigger: int = 10


@dataclass(slots=True)
class MatcherConfig:
    capability_weight: float = 0.5
    type_weight: float = 0.25
    specialization_weight: float = 0.1
    baseline: float = 0.3
    synonym_credit: float = 0.5
    type_compat_credit: float = 0.75
    load_penalty_per_task: float = 0.01
    load_penalty_cap: float = 0.1
    min_score: float = 0.0


@dataclass(slots=True)
class LifecycleConfig:
    max_agents: int = 3
    spawn_attempts: int = 3
    spawn_min_wait: float = 0.5
    spawn_max_wait: float = 8.0
    remove_on_channel_close: bool = True
    restore_on_start: bool = True


@dataclass(slots=True)
class BackendConfig:
    name: str = "claude"
    command: list[str] | None = None
    model: str = ""
    cwd: str = "."
    env: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class TemplateConfig:
    template_id: str
    name: str
    type: str
    capabilities: list[str] = field(default_factory=list)
    specialization: str = ""
    system_prompt: str = ""


@dataclass(slots=True)
class NofxConfig:
    version: int = 1
    run: RunConfig = field(default_factory=RunConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    matcher: MatcherConfig = field(default_factory=MatcherConfig)
    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    templates: list[TemplateConfig] = field(default_factory=list)
