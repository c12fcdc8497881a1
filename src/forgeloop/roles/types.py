"""Role, enforcement and loop-pattern types."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from forgeloop.agents.types import AgentBudget, AgentResult, AgentRole

if TYPE_CHECKING:
    from forgeloop.orchestration.context import SharedState


class ToolAccessLevel(str, Enum):
    READ_ONLY = "read-only"
    READ_WRITE = "read-write"
    READ_GIT = "read-git"
    READ_WRITE_BASH = "read-write-bash"
    ALL = "all"


@dataclass
class RoleConfig:
    role: AgentRole
    description: str
    recommended_model: str = ""
    alternative_models: list[str] = field(default_factory=list)
    system_prompt: str = ""
    tool_access_level: ToolAccessLevel = ToolAccessLevel.ALL
    # fnmatch patterns; None means "derive from the access level"
    allowed_tools: list[str] | None = None
    forbidden_tools: list[str] = field(default_factory=list)
    default_budget: AgentBudget = field(default_factory=AgentBudget)


class EnforcementTrigger(str, Enum):
    CODE_MODIFICATION = "code_modification"
    TEST_EXECUTION = "test_execution"
    FILE_WRITE = "file_write"
    SECURITY_SCAN = "security_scan"
    ALWAYS = "always"


class EnforcementTiming(str, Enum):
    BEFORE = "before"
    AFTER = "after"
    BEFORE_REVIEW = "before_review"
    ALWAYS = "always"  # placed like AFTER


@dataclass
class EnforcementRule:
    trigger: EnforcementTrigger
    role: AgentRole
    when: EnforcementTiming = EnforcementTiming.AFTER
    require_approval: bool = False
    condition: Callable[[SharedState], bool] | None = None
    description: str = ""


@dataclass
class LoopPattern:
    name: str
    roles: list[AgentRole]
    max_iterations: int = 5
    break_condition: Callable[[dict[AgentRole, AgentResult]], bool] | None = None
    description: str = ""
