"""Agent types: configuration, budget, steps, results and resumable state."""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from forgeloop.tools.base import ToolResult


class AgentRole(str, Enum):
    FINDER = "finder"
    THINKER = "thinker"
    LIBRARIAN = "librarian"
    REFACTORING = "refactoring"
    REVIEWER = "reviewer"
    TESTER = "tester"
    SECURITY = "security"
    RUSH = "rush"
    GENERAL = "general"


class AgentStatus(str, Enum):
    IDLE = "idle"
    REASONING = "reasoning"
    ACTING = "acting"
    OBSERVING = "observing"
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"

    @property
    def is_terminal(self) -> bool:
        return self in (AgentStatus.COMPLETED, AgentStatus.FAILED, AgentStatus.INTERRUPTED)


class ActionType(str, Enum):
    TOOL = "tool"
    FINISH = "finish"


@dataclass
class AgentBudget:
    """Optional resource caps. ``None`` in every field means unbounded."""

    max_iterations: int | None = None
    max_tokens: int | None = None
    max_cost: float | None = None
    max_duration_ms: int | None = None

    def merged(self, other: "AgentBudget | None") -> "AgentBudget":
        """Fields set on *other* override this budget's."""
        if other is None:
            return AgentBudget(**asdict(self))
        return AgentBudget(**{
            k: v if v is not None else getattr(self, k)
            for k, v in asdict(other).items()
        })

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AgentBudget":
        if not data:
            return cls()
        return cls(**{k: data.get(k) for k in ("max_iterations", "max_tokens", "max_cost", "max_duration_ms")})


@dataclass(frozen=True)
class AgentConfig:
    name: str
    role: AgentRole = AgentRole.GENERAL
    temperature: float | None = None
    system_prompt: str = ""
    budget: AgentBudget = field(default_factory=AgentBudget)
    model: str = ""  # Empty = provider default


@dataclass
class AgentAction:
    type: ActionType
    tool_name: str = ""
    arguments: dict[str, Any] = field(default_factory=dict)
    tool_call_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "tool_name": self.tool_name,
            "arguments": self.arguments,
            "tool_call_id": self.tool_call_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentAction":
        return cls(
            type=ActionType(data["type"]),
            tool_name=data.get("tool_name", ""),
            arguments=data.get("arguments", {}),
            tool_call_id=data.get("tool_call_id", ""),
        )


@dataclass
class AgentStep:
    step_number: int
    timestamp: float
    thought: str
    action: AgentAction
    observation: ToolResult | None = None
    tokens: int = 0
    cost: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_number": self.step_number,
            "timestamp": self.timestamp,
            "thought": self.thought,
            "action": self.action.to_dict(),
            "observation": self.observation.to_dict() if self.observation else None,
            "tokens": self.tokens,
            "cost": self.cost,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentStep":
        obs = data.get("observation")
        return cls(
            step_number=data["step_number"],
            timestamp=data["timestamp"],
            thought=data.get("thought", ""),
            action=AgentAction.from_dict(data["action"]),
            observation=ToolResult.from_dict(obs) if obs else None,
            tokens=data.get("tokens", 0),
            cost=data.get("cost", 0.0),
        )


@dataclass
class AgentResult:
    """Terminal summary of one agent run."""

    success: bool
    status: AgentStatus
    response: str = ""
    steps: list[AgentStep] = field(default_factory=list)
    total_tokens: int = 0
    total_cost: float = 0.0
    duration_ms: int = 0
    error: str = ""

    @classmethod
    def failure(cls, error: str, status: AgentStatus = AgentStatus.FAILED) -> "AgentResult":
        return cls(success=False, status=status, error=error)


@dataclass
class AgentState:
    """Plain, serializable snapshot used for pause/resume. Holds no live handles."""

    agent_id: str
    status: AgentStatus
    task: str
    steps: list[AgentStep] = field(default_factory=list)
    total_tokens: int = 0
    total_cost: float = 0.0
    elapsed_ms: int = 0
    budget: AgentBudget = field(default_factory=AgentBudget)
    messages: list[dict[str, Any]] = field(default_factory=list)
    captured_at: float = field(default_factory=time.time)

    @property
    def step_count(self) -> int:
        return len(self.steps)

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "status": self.status.value,
            "task": self.task,
            "steps": [s.to_dict() for s in self.steps],
            "total_tokens": self.total_tokens,
            "total_cost": self.total_cost,
            "elapsed_ms": self.elapsed_ms,
            "budget": self.budget.to_dict(),
            "messages": self.messages,
            "captured_at": self.captured_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentState":
        return cls(
            agent_id=data["agent_id"],
            status=AgentStatus(data["status"]),
            task=data.get("task", ""),
            steps=[AgentStep.from_dict(s) for s in data.get("steps", [])],
            total_tokens=data.get("total_tokens", 0),
            total_cost=data.get("total_cost", 0.0),
            elapsed_ms=data.get("elapsed_ms", 0),
            budget=AgentBudget.from_dict(data.get("budget")),
            messages=list(data.get("messages", [])),
            captured_at=data.get("captured_at", time.time()),
        )


class StreamEventType(str, Enum):
    STEP_START = "step_start"
    THOUGHT = "thought"
    ACTION = "action"
    OBSERVATION = "observation"
    STEP_END = "step_end"
    PROGRESS = "progress"
    ERROR = "error"


@dataclass
class StreamEvent:
    type: StreamEventType
    agent_id: str
    timestamp: float = field(default_factory=time.time)
    data: dict[str, Any] = field(default_factory=dict)
