"""Capability matching between agents and tasks.

Scoring is a pure function of the agent record, the task and the weights.
Each required capability earns full credit on an exact tag hit (agent
type or declared capability), partial credit when the agent's type is
compatible with it, and a smaller share when it only shares a synonym
group with one of the agent's tags.  If capabilities are required and
none earns credit, the score is negative so the agent is never chosen
on merit.  Heavier-loaded agents lose a little score so work spreads out.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field

from nofx.config.schema import MatcherConfig
from nofx.protocol.models import Agent, AgentStatus, Task

NO_MATCH_SCORE = -0.2

SYNONYM_GROUPS: list[frozenset[str]] = [
    frozenset({"react", "frontend", "javascript", "typescript", "ui/ux", "css", "html"}),
    frozenset({"node.js", "backend", "javascript", "apis", "server"}),
    frozenset({"python", "backend", "ai", "ml", "data science"}),
    frozenset({"database", "sql", "postgres", "mongodb", "schema design"}),
    frozenset({"apis", "rest", "graphql", "endpoints"}),
    frozenset({"testing", "jest", "pytest", "qa", "e2e"}),
    frozenset({"devops", "docker", "kubernetes", "ci/cd", "terraform"}),
    frozenset({"mobile", "ios", "android", "react native", "flutter"}),
]

# Task type -> agent types able to take it on.
TYPE_COMPATIBILITY: dict[str, frozenset[str]] = {
    "frontend": frozenset({"frontend", "fullstack"}),
    "backend": frozenset({"backend", "fullstack"}),
    "fullstack": frozenset({"fullstack", "frontend", "backend"}),
    "mobile": frozenset({"mobile", "frontend", "fullstack"}),
    "devops": frozenset({"devops", "backend"}),
    "testing": frozenset({"testing", "fullstack"}),
    "ai": frozenset({"ai", "backend"}),
    "database": frozenset({"database", "backend", "fullstack"}),
}

_TYPE_KEYWORDS: dict[str, tuple[str, ...]] = {
    "frontend": ("frontend", "react", "vue", "css", "html", "component", "ui", "layout", "button"),
    "backend": ("backend", "api", "endpoint", "server", "service", "auth", "middleware"),
    "testing": ("test", "tests", "coverage", "e2e", "unit", "flaky"),
    "devops": ("deploy", "docker", "pipeline", "ci", "kubernetes", "infra"),
    "database": ("database", "sql", "migration", "schema", "query", "index"),
    "mobile": ("mobile", "ios", "android", "native"),
    "ai": ("model", "ml", "training", "embedding", "llm", "inference"),
}

_WORD_RE = re.compile(r"[a-z0-9][a-z0-9.+#/-]*")


def _words(text: str) -> set[str]:
    return set(_WORD_RE.findall(text.lower()))


def infer_task_type(task: Task) -> str | None:
    """Best-effort task type from title and description keywords."""
    words = _words(f"{task.title} {task.description}")
    best: str | None = None
    best_hits = 0
    for task_type, keywords in _TYPE_KEYWORDS.items():
        hits = sum(1 for k in keywords if k in words)
        if hits > best_hits:
            best, best_hits = task_type, hits
    return best


def _synonyms(tag: str) -> set[str]:
    out: set[str] = set()
    for group in SYNONYM_GROUPS:
        if tag in group:
            out |= group
    out.discard(tag)
    return out


@dataclass(slots=True)
class MatchResult:
    agent: Agent
    score: float
    capability: float = 0.0
    type_bonus: float = 0.0
    specialization: float = 0.0
    load_penalty: float = 0.0
    matched: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)


class CapabilityMatcher:
    """Deterministic agent/task scorer."""

    def __init__(self, config: MatcherConfig | None = None) -> None:
        self.config = config or MatcherConfig()

    def evaluate(self, agent: Agent, task: Task) -> MatchResult:
        cfg = self.config
        tags = agent.tags
        agent_type = agent.agent_type.lower()
        required = [r.lower() for r in task.required_capabilities]
        result = MatchResult(agent=agent, score=0.0)
        result.load_penalty = min(agent.tasks_completed * cfg.load_penalty_per_task, cfg.load_penalty_cap)

        if required:
            credit = 0.0
            for req in required:
                if req in tags:
                    credit += 1.0
                    result.matched.append(req)
                elif agent_type in TYPE_COMPATIBILITY.get(req, ()):
                    credit += cfg.type_compat_credit
                    result.matched.append(req)
                elif _synonyms(req) & set(tags):
                    credit += cfg.synonym_credit
                    result.matched.append(req)
                else:
                    result.missing.append(req)
            if credit == 0.0:
                result.score = NO_MATCH_SCORE - result.load_penalty
                return result
            result.capability = cfg.capability_weight * credit / len(required)
            if agent_type in required:
                result.type_bonus = cfg.type_weight
        else:
            result.capability = cfg.baseline
            inferred = infer_task_type(task)
            if inferred is not None:
                if agent_type == inferred:
                    result.type_bonus = cfg.type_weight
                elif agent_type in TYPE_COMPATIBILITY.get(inferred, ()):
                    result.type_bonus = cfg.type_weight * cfg.type_compat_credit

        if agent.specialization:
            spec_words = _words(agent.specialization)
            if spec_words:
                hits = spec_words & _words(f"{task.title} {task.description}")
                result.specialization = cfg.specialization_weight * len(hits) / len(spec_words)

        total = result.capability + result.type_bonus + result.specialization - result.load_penalty
        result.score = round(total, 6)
        return result

    def score(self, agent: Agent, task: Task) -> float:
        return self.evaluate(agent, task).score

    def rank(self, candidates: Iterable[Agent], task: Task) -> list[MatchResult]:
        """All candidates, best first; ties go to the earliest registered agent."""
        results = [self.evaluate(a, task) for a in candidates]
        results.sort(key=lambda r: (-r.score, r.agent.seq, r.agent.created_at))
        return results

    def find_best(self, candidates: Iterable[Agent], task: Task) -> Agent | None:
        """Highest scoring idle candidate, or None if nobody scores above the floor."""
        idle = [a for a in candidates if a.status == AgentStatus.IDLE]
        if not idle:
            return None
        best = self.rank(idle, task)[0]
        if best.score <= 0 or best.score <= self.config.min_score:
            return None
        return best.agent

    def explain(self, agent: Agent, task: Task) -> str:
        r = self.evaluate(agent, task)
        parts = [f"{agent.name} -> {task.title}: score {r.score:.2f}"]
        if r.matched:
            parts.append(f"matched {', '.join(r.matched)}")
        if r.missing:
            parts.append(f"missing {', '.join(r.missing)}")
        if r.specialization:
            parts.append("specialization bonus")
        if r.load_penalty:
            parts.append(f"load -{r.load_penalty:.2f}")
        return "; ".join(parts)
