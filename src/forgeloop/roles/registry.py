"""RoleRegistry: built-in roles, enforcement rules and loop patterns."""

from __future__ import annotations

import copy
import fnmatch
import logging
from collections.abc import Iterable, Sequence
from dataclasses import replace
from typing import Any

from forgeloop.agents.types import AgentBudget, AgentRole
from forgeloop.core.errors import RoleNotFoundError
from forgeloop.roles.types import (
    EnforcementRule,
    EnforcementTrigger,
    LoopPattern,
    RoleConfig,
    ToolAccessLevel,
)

logger = logging.getLogger(__name__)

READ_ONLY_TOOLS = ("read_file", "list_dir", "glob", "grep", "diff")
WRITE_TOOLS = ("write_file", "delete_file")

ACCESS_LEVEL_TOOLS: dict[ToolAccessLevel, tuple[str, ...] | None] = {
    ToolAccessLevel.READ_ONLY: READ_ONLY_TOOLS,
    ToolAccessLevel.READ_WRITE: READ_ONLY_TOOLS + WRITE_TOOLS,
    ToolAccessLevel.READ_GIT: READ_ONLY_TOOLS + ("git",),
    ToolAccessLevel.READ_WRITE_BASH: READ_ONLY_TOOLS + WRITE_TOOLS + ("bash",),
    ToolAccessLevel.ALL: None,
}

_ACCESS_DESCRIPTIONS = {
    ToolAccessLevel.READ_ONLY: "Read files, search code (no modifications)",
    ToolAccessLevel.READ_WRITE: "Read and write files, search code (no bash)",
    ToolAccessLevel.READ_GIT: "Read files, search code, git operations (no modifications except git)",
    ToolAccessLevel.READ_WRITE_BASH: "Read, write files, execute bash commands",
    ToolAccessLevel.ALL: "Full access to all tools",
}


def _budget(iterations: int, tokens: int, cost: float, duration_ms: int) -> AgentBudget:
    return AgentBudget(
        max_iterations=iterations,
        max_tokens=tokens,
        max_cost=cost,
        max_duration_ms=duration_ms,
    )


BUILTIN_ROLES: tuple[RoleConfig, ...] = (
    RoleConfig(
        role=AgentRole.FINDER,
        description="Fast file and code search specialist",
        recommended_model="claude-3-5-haiku-latest",
        system_prompt=(
            "You locate files, symbols and usages quickly. Search broadly, read "
            "only what you need, and report exact paths and line numbers."
        ),
        tool_access_level=ToolAccessLevel.READ_ONLY,
        allowed_tools=["read_file", "list_dir", "glob", "grep", "diff"],
        default_budget=_budget(5, 10_000, 0.05, 30_000),
    ),
    RoleConfig(
        role=AgentRole.THINKER,
        description="Deep reasoning for architecture, design and hard implementation work",
        recommended_model="claude-opus-4-20250514",
        system_prompt=(
            "You reason carefully about design and implementation. Break the "
            "problem down, weigh trade-offs, then make precise changes."
        ),
        tool_access_level=ToolAccessLevel.ALL,
        default_budget=_budget(20, 200_000, 5.0, 600_000),
    ),
    RoleConfig(
        role=AgentRole.LIBRARIAN,
        description="Documentation and API research",
        recommended_model="claude-sonnet-4-20250514",
        system_prompt=(
            "You research documentation and existing code to answer questions "
            "about libraries and APIs. Cite the files you relied on."
        ),
        tool_access_level=ToolAccessLevel.READ_ONLY,
        allowed_tools=["read_file", "list_dir", "glob", "grep", "diff", "web_search", "web_fetch"],
        default_budget=_budget(10, 50_000, 0.5, 120_000),
    ),
    RoleConfig(
        role=AgentRole.REFACTORING,
        description="Code restructuring without behaviour changes",
        recommended_model="claude-sonnet-4-20250514",
        system_prompt=(
            "You restructure code for clarity while preserving behaviour. Keep "
            "changes minimal and consistent with the surrounding style."
        ),
        tool_access_level=ToolAccessLevel.READ_WRITE,
        allowed_tools=["read_file", "write_file", "list_dir", "glob", "grep", "diff", "git"],
        forbidden_tools=["bash"],
        default_budget=_budget(15, 100_000, 1.0, 300_000),
    ),
    RoleConfig(
        role=AgentRole.REVIEWER,
        description="Code review for quality, correctness and maintainability",
        recommended_model="claude-sonnet-4-20250514",
        system_prompt=(
            "You review changes. Inspect diffs and surrounding code, and report "
            "concrete problems with file and line references. Do not edit files."
        ),
        tool_access_level=ToolAccessLevel.READ_GIT,
        default_budget=_budget(10, 80_000, 0.8, 180_000),
    ),
    RoleConfig(
        role=AgentRole.TESTER,
        description="Writes and runs tests",
        recommended_model="claude-sonnet-4-20250514",
        system_prompt=(
            "You write and run tests. Run the project's test command, read "
            "failures closely, and add focused tests for new behaviour."
        ),
        tool_access_level=ToolAccessLevel.READ_WRITE_BASH,
        default_budget=_budget(15, 100_000, 1.0, 300_000),
    ),
    RoleConfig(
        role=AgentRole.SECURITY,
        description="Security review for vulnerabilities and unsafe patterns",
        recommended_model="claude-sonnet-4-20250514",
        system_prompt=(
            "You audit code for vulnerabilities: injection, unsafe deserialization, "
            "secrets in source, missing authorization. Report each finding with "
            "severity and location."
        ),
        tool_access_level=ToolAccessLevel.READ_GIT,
        default_budget=_budget(10, 80_000, 0.8, 180_000),
    ),
    RoleConfig(
        role=AgentRole.RUSH,
        description="Quick, small tasks with minimal deliberation",
        recommended_model="claude-3-5-haiku-latest",
        system_prompt="You handle small tasks fast. Act directly and finish as soon as the task is done.",
        tool_access_level=ToolAccessLevel.ALL,
        default_budget=_budget(3, 5_000, 0.02, 15_000),
    ),
    RoleConfig(
        role=AgentRole.GENERAL,
        description="General-purpose coding agent",
        recommended_model="claude-sonnet-4-20250514",
        system_prompt="You are a capable software engineer. Complete the task end to end.",
        tool_access_level=ToolAccessLevel.ALL,
        default_budget=_budget(20, 150_000, 2.0, 600_000),
    ),
)

DEFAULT_LOOP_PATTERNS: tuple[LoopPattern, ...] = (
    LoopPattern(
        name="refactor-test-review",
        roles=[AgentRole.REFACTORING, AgentRole.TESTER, AgentRole.REVIEWER],
        max_iterations=5,
        description="Refactor, verify with tests, review; repeat until the review passes",
    ),
    LoopPattern(
        name="implement-test-fix",
        roles=[AgentRole.THINKER, AgentRole.TESTER, AgentRole.THINKER],
        max_iterations=5,
        description="Implement, test, fix failures",
    ),
    LoopPattern(
        name="security-review-fix",
        roles=[AgentRole.SECURITY, AgentRole.REVIEWER, AgentRole.THINKER],
        max_iterations=3,
        description="Audit, review findings, fix",
    ),
)


def _matches(name: str, patterns: Iterable[str]) -> bool:
    return any(fnmatch.fnmatchcase(name, p) for p in patterns)


def resolve_tools(config: RoleConfig, available: Sequence[str]) -> list[str]:
    """The subset of *available* tool names a role may use. Deny wins over allow."""
    if config.allowed_tools is not None:
        candidates = [name for name in available if _matches(name, config.allowed_tools)]
    else:
        level_tools = ACCESS_LEVEL_TOOLS[config.tool_access_level]
        candidates = [
            name for name in available if level_tools is None or name in level_tools
        ]
    return [name for name in candidates if not _matches(name, config.forbidden_tools)]


class RoleRegistry:
    """Lookup table of role configs plus per-registry enforcement rules and loop patterns."""

    def __init__(self, roles: Iterable[RoleConfig] = BUILTIN_ROLES) -> None:
        self._roles: dict[AgentRole, RoleConfig] = {}
        self._rules: list[EnforcementRule] = []
        self._loop_patterns: dict[str, LoopPattern] = {}
        for config in roles:
            self.register(copy.deepcopy(config))

    # -- roles ---------------------------------------------------------------

    def register(self, config: RoleConfig) -> None:
        if config.role in self._roles:
            logger.debug("Overriding role config: %s", config.role.value)
        self._roles[config.role] = config

    def get(self, role: AgentRole | str) -> RoleConfig | None:
        try:
            return self._roles.get(AgentRole(role))
        except ValueError:
            return None

    def get_or_raise(self, role: AgentRole | str) -> RoleConfig:
        config = self.get(role)
        if config is None:
            raise RoleNotFoundError(str(getattr(role, "value", role)))
        return config

    def has(self, role: AgentRole | str) -> bool:
        return self.get(role) is not None

    def list(self) -> list[RoleConfig]:
        return list(self._roles.values())

    def roles(self) -> list[AgentRole]:
        return list(self._roles)

    def tools_for(self, role: AgentRole | str, available: Sequence[str]) -> list[str]:
        return resolve_tools(self.get_or_raise(role), available)

    @staticmethod
    def tool_access_description(level: ToolAccessLevel | str) -> str:
        return _ACCESS_DESCRIPTIONS[ToolAccessLevel(level)]

    # -- enforcement rules ---------------------------------------------------

    def add_enforcement_rule(self, rule: EnforcementRule) -> None:
        self._rules.append(rule)

    def enforcement_rules(self, trigger: EnforcementTrigger | None = None) -> list[EnforcementRule]:
        if trigger is None:
            return list(self._rules)
        return [
            r for r in self._rules
            if r.trigger is trigger or r.trigger is EnforcementTrigger.ALWAYS
        ]

    def is_enforced(self, role: AgentRole) -> bool:
        return any(r.role is role for r in self._rules)

    # -- loop patterns -------------------------------------------------------

    def register_loop_pattern(self, pattern: LoopPattern) -> None:
        if not pattern.roles:
            raise ValueError("Loop pattern needs at least one role")
        self._loop_patterns[pattern.name] = pattern

    def loop_pattern(self, name: str) -> LoopPattern | None:
        return self._loop_patterns.get(name)

    def loop_patterns(self) -> list[LoopPattern]:
        return list(self._loop_patterns.values())

    def matches_loop_pattern(self, sequence: Sequence[AgentRole | str]) -> LoopPattern | None:
        """The registered pattern whose role sequence equals *sequence*, if any."""
        try:
            observed = [AgentRole(r) for r in sequence]
        except ValueError:
            return None
        for pattern in self._loop_patterns.values():
            if pattern.roles == observed:
                return pattern
        return None

    def export(self) -> dict[str, Any]:
        """JSON-friendly summary, used by the CLI."""
        return {
            "roles": [
                {
                    "role": c.role.value,
                    "description": c.description,
                    "model": c.recommended_model,
                    "access": c.tool_access_level.value,
                    "allowed_tools": c.allowed_tools,
                    "forbidden_tools": c.forbidden_tools,
                    "budget": c.default_budget.to_dict(),
                }
                for c in self._roles.values()
            ],
            "enforcement_rules": [
                {"trigger": r.trigger.value, "role": r.role.value, "when": r.when.value}
                for r in self._rules
            ],
            "loop_patterns": [
                {"name": p.name, "roles": [r.value for r in p.roles], "max_iterations": p.max_iterations}
                for p in self._loop_patterns.values()
            ],
        }


def create_default_registry() -> RoleRegistry:
    registry = RoleRegistry()
    for pattern in DEFAULT_LOOP_PATTERNS:
        registry.register_loop_pattern(replace(pattern, roles=list(pattern.roles)))
    return registry
