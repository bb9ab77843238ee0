"""YAML config loader for nofx."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from nofx.config.schema import (
    BackendConfig,
    LifecycleConfig,
    MatcherConfig,
    NofxConfig,
    RunConfig,
    SchedulerConfig,
    TemplateConfig,
)
from nofx.errors import ConfigurationError

DEFAULT_CONFIG_PATH = Path(".nofx") / "nofx.yaml"


def load_config(path: str | Path | None = None) -> NofxConfig:
    """Load a config file; a missing file yields the defaults."""
    p = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) if p.exists() else {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Cannot parse {p}: {exc}") from exc
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{p} must contain a mapping at the top level")

    run = RunConfig(**_pick(_section(raw, "run"), RunConfig))
    scheduler = SchedulerConfig(**_pick(_section(raw, "scheduler"), SchedulerConfig))
    matcher = MatcherConfig(**_pick(_section(raw, "matcher"), MatcherConfig))
    lifecycle = LifecycleConfig(**_pick(_section(raw, "lifecycle"), LifecycleConfig))
    backend = BackendConfig(**_pick(_section(raw, "backend"), BackendConfig))

    templates: list[TemplateConfig] = []
    raw_templates = raw.get("templates", [])
    if isinstance(raw_templates, list):
        for item in raw_templates:
            if isinstance(item, dict) and "template_id" in item and "type" in item:
                defaults = {"name": str(item["template_id"])}
                templates.append(TemplateConfig(**(defaults | _pick(item, TemplateConfig))))

    cfg = NofxConfig(
        version=int(raw.get("version", 1)),
        run=run,
        scheduler=scheduler,
        matcher=matcher,
        lifecycle=lifecycle,
        backend=backend,
        templates=templates,
    )
    validate_config(cfg)
    return cfg


def validate_config(cfg: NofxConfig) -> None:
    if cfg.lifecycle.max_agents < 1:
        raise ConfigurationError("lifecycle.max_agents must be at least 1")
    if cfg.lifecycle.spawn_attempts < 1:
        raise ConfigurationError("lifecycle.spawn_attempts must be at least 1")
    if cfg.lifecycle.spawn_min_wait < 0 or cfg.lifecycle.spawn_max_wait < cfg.lifecycle.spawn_min_wait:
        raise ConfigurationError("lifecycle spawn waits must satisfy 0 <= min <= max")
    if cfg.scheduler.max_passes_per_trigger < 1:
        raise ConfigurationError("scheduler.max_passes_per_trigger must be at least 1")
    if cfg.backend.command is not None and not (
        isinstance(cfg.backend.command, list) and cfg.backend.command
    ):
        raise ConfigurationError("backend.command must be a non-empty list")
    for weight in ("capability_weight", "type_weight", "specialization_weight", "baseline"):
        if getattr(cfg.matcher, weight) < 0:
            raise ConfigurationError(f"matcher.{weight} must not be negative")
    seen: set[str] = set()
    for t in cfg.templates:
        if t.template_id in seen:
            raise ConfigurationError(f"Duplicate template id: {t.template_id}")
        seen.add(t.template_id)


def _section(raw: dict[str, Any], key: str) -> dict[str, Any]:
    value = raw.get(key, {})
    return value if isinstance(value, dict) else {}


def _pick(raw: dict[str, Any], model_type: type[Any]) -> dict[str, Any]:
    allowed = set(model_type.__dataclass_fields__.keys())
    return {k: v for k, v in raw.items() if k in allowed}
