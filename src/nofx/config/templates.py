"""Agent templates: capability tags and role prompts handed out at spawn time."""

from __future__ import annotations

from nofx.config.schema import TemplateConfig
from nofx.errors import NotFoundError
from nofx.protocol.models import AgentSpec

BUILTIN_TEMPLATES: list[TemplateConfig] = [
    TemplateConfig(
        template_id="frontend-specialist",
        name="Frontend Specialist",
        type="frontend",
        capabilities=["react", "typescript", "css", "ui/ux", "accessibility"],
        specialization="frontend components styling accessibility",
        system_prompt=(
            "You are a frontend specialist. You build accessible, well-tested UI "
            "components and keep styling consistent with the existing design system."
        ),
    ),
    TemplateConfig(
        template_id="backend-specialist",
        name="Backend Specialist",
        type="backend",
        capabilities=["node.js", "python", "apis", "database", "server"],
        specialization="backend services apis databases",
        system_prompt=(
            "You are a backend specialist. You design APIs and data access layers, "
            "validate inputs at the boundary and cover changes with tests."
        ),
    ),
    TemplateConfig(
        template_id="fullstack-developer",
        name="Fullstack Developer",
        type="fullstack",
        capabilities=["react", "node.js", "typescript", "database", "apis"],
        specialization="end-to-end features",
        system_prompt="You are a fullstack developer comfortable on both sides of an API.",
    ),
    TemplateConfig(
        template_id="testing-specialist",
        name="Testing Specialist",
        type="testing",
        capabilities=["testing", "jest", "pytest", "e2e", "qa"],
        specialization="tests coverage regressions",
        system_prompt="You are a testing specialist. You write focused tests and hunt regressions.",
    ),
    TemplateConfig(
        template_id="devops-engineer",
        name="DevOps Engineer",
        type="devops",
        capabilities=["docker", "kubernetes", "ci/cd", "terraform"],
        specialization="deployment pipelines infrastructure",
        system_prompt="You are a DevOps engineer. You keep builds reproducible and deploys safe.",
    ),
]


def template_to_spec(template: TemplateConfig) -> AgentSpec:
    return AgentSpec(
        name=template.name,
        agent_type=template.type.lower(),
        capabilities=[c.lower() for c in template.capabilities],
        specialization=template.specialization,
        system_prompt=template.system_prompt,
        template_id=template.template_id,
    )


class TemplateCatalog:
    """Built-in templates overlaid with the ones from the config file."""

    def __init__(self, templates: list[TemplateConfig] | None = None, *, include_builtin: bool = True) -> None:
        self._templates: dict[str, TemplateConfig] = {}
        if include_builtin:
            for t in BUILTIN_TEMPLATES:
                self._templates[t.template_id] = t
        for t in templates or []:
            self._templates[t.template_id] = t

    def ids(self) -> list[str]:
        return sorted(self._templates)

    def get(self, template_id: str) -> TemplateConfig:
        try:
            return self._templates[template_id]
        except KeyError:
            raise NotFoundError("Template", template_id) from None

    def spec_for(self, template_id: str, *, name: str | None = None) -> AgentSpec:
        spec = template_to_spec(self.get(template_id))
        if name:
            spec.name = name
        return spec
