"""Tests for config loading and templates."""

from __future__ import annotations

from pathlib import Path

import pytest

from nofx.config.loader import load_config
from nofx.config.schema import TemplateConfig
from nofx.config.templates import BUILTIN_TEMPLATES, TemplateCatalog
from nofx.errors import ConfigurationError, NotFoundError


def _write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


def test_missing_file_yields_defaults(tmp_path: Path) -> None:
    cfg = load_config(tmp_path / "absent.yaml")
    assert cfg.lifecycle.max_agents == 3
    assert cfg.scheduler.auto_assign
    assert cfg.backend.name == "claude"
    assert cfg.templates == []


def test_sections_and_unknown_keys(tmp_path: Path) -> None:
    path = _write(
        tmp_path / "nofx.yaml",
        """version: 1
run:
  name: demo
  state_dir: state
  surprise: ignored
scheduler:
  fallback_to_any_idle: true
matcher:
  min_score: 0.2
lifecycle:
  max_agents: 5
  spawn_attempts: 2
backend:
  name: codex
  model: o3
templates:
  - template_id: api-worker
    type: backend
    capabilities: [python]
  - name: missing id
    type: frontend
""",
    )
    cfg = load_config(path)
    assert cfg.run.name == "demo"
    assert cfg.run.state_dir == "state"
    assert cfg.scheduler.fallback_to_any_idle
    assert cfg.matcher.min_score == 0.2
    assert cfg.lifecycle.max_agents == 5
    assert cfg.backend.model == "o3"
    assert [t.template_id for t in cfg.templates] == ["api-worker"]
    assert cfg.templates[0].name == "api-worker"


@pytest.mark.parametrize(
    "body",
    [
        "lifecycle:\n  max_agents: 0\n",
        "lifecycle:\n  spawn_min_wait: 5\n  spawn_max_wait: 1\n",
        "scheduler:\n  max_passes_per_trigger: 0\n",
        "backend:\n  command: []\n",
        "matcher:\n  type_weight: -1\n",
        "templates:\n  - {template_id: a, type: x}\n  - {template_id: a, type: y}\n",
        "- just\n- a list\n",
        "run: [unclosed\n",
    ],
)
def test_invalid_configs_rejected(tmp_path: Path, body: str) -> None:
    with pytest.raises(ConfigurationError):
        load_config(_write(tmp_path / "bad.yaml", body))


def test_empty_file_yields_defaults(tmp_path: Path) -> None:
    cfg = load_config(_write(tmp_path / "empty.yaml", ""))
    assert cfg.version == 1


class TestTemplateCatalog:
    def test_builtins_present(self) -> None:
        catalog = TemplateCatalog()
        assert set(catalog.ids()) == {t.template_id for t in BUILTIN_TEMPLATES}

    def test_config_templates_override_builtins(self) -> None:
        custom = TemplateConfig(template_id="backend-specialist", name="Go Backend", type="Backend",
                                capabilities=["Go"])
        spec = TemplateCatalog([custom]).spec_for("backend-specialist")
        assert spec.name == "Go Backend"
        assert spec.agent_type == "backend"
        assert spec.capabilities == ["go"]

    def test_unknown_template(self) -> None:
        with pytest.raises(NotFoundError):
            TemplateCatalog(include_builtin=False).get("frontend-specialist")
