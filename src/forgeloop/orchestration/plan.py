"""Workflow plan schema and structural validation."""

from __future__ import annotations

import uuid
from collections import deque
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from forgeloop.agents.types import AgentRole
from forgeloop.core.errors import PlanValidationError

if TYPE_CHECKING:
    from forgeloop.roles.registry import RoleRegistry


class WorkflowMode(str, Enum):
    SEQUENTIAL = "sequential"
    DAG = "dag"


def _clamp_unit(value: Any) -> Any:
    if isinstance(value, (int, float)):
        return min(1.0, max(0.0, float(value)))
    return value


class WorkflowTask(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(min_length=1)
    description: str
    suggested_role: AgentRole = Field(default=AgentRole.GENERAL, alias="suggestedRole")
    complexity: float = Field(default=0.5, ge=0.0, le=1.0)
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")
    parallelizable: bool = True

    @field_validator("complexity", mode="before")
    @classmethod
    def clamp_complexity(cls, value: Any) -> Any:
        return _clamp_unit(value)


class WorkflowPlan(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: f"plan-{uuid.uuid4().hex[:8]}")
    original_task: str = Field(default="", alias="originalTask")
    description: str = ""
    tasks: list[WorkflowTask] = Field(default_factory=list)
    execution_mode: WorkflowMode = Field(default=WorkflowMode.SEQUENTIAL, alias="executionMode")
    complexity: float = Field(default=0.5, ge=0.0, le=1.0)
    loop_patterns: list[list[AgentRole]] = Field(default_factory=list, alias="loopPatterns")

    @field_validator("complexity", mode="before")
    @classmethod
    def clamp_complexity(cls, value: Any) -> Any:
        return _clamp_unit(value)

    @field_validator("execution_mode", mode="before")
    @classmethod
    def normalize_mode(cls, value: Any) -> Any:
        # Older planners emit "parallel"/"dynamic"; both schedule as a DAG
        if isinstance(value, str) and value.lower() in ("parallel", "dynamic"):
            return WorkflowMode.DAG
        return value

    def task(self, task_id: str) -> WorkflowTask | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def roles(self) -> list[AgentRole]:
        return [task.suggested_role for task in self.tasks]


def find_cycle(tasks: list[WorkflowTask]) -> list[str] | None:
    """Return one dependency cycle as a list of ids (first id repeated at the end)."""
    graph = {t.id: list(t.depends_on) for t in tasks}
    state: dict[str, int] = {}  # 1 = on stack, 2 = done
    stack: list[str] = []

    def visit(node: str) -> list[str] | None:
        state[node] = 1
        stack.append(node)
        for dep in graph.get(node, []):
            if dep not in graph:
                continue
            if state.get(dep) == 1:
                return stack[stack.index(dep):] + [dep]
            if dep not in state:
                found = visit(dep)
                if found:
                    return found
        stack.pop()
        state[node] = 2
        return None

    for task_id in graph:
        if task_id not in state:
            cycle = visit(task_id)
            if cycle:
                return cycle
    return None


def validate_plan(plan: WorkflowPlan, registry: RoleRegistry | None = None) -> list[str]:
    """Structural problems with *plan*; an empty list means it is runnable."""
    errors: list[str] = []
    if not plan.tasks:
        return ["Plan has no tasks"]

    seen: set[str] = set()
    for task in plan.tasks:
        if task.id in seen:
            errors.append(f"Duplicate task id: {task.id}")
        seen.add(task.id)

    for task in plan.tasks:
        for dep in task.depends_on:
            if dep == task.id:
                errors.append(f"Task {task.id} depends on itself")
            elif dep not in seen:
                errors.append(f"Task {task.id} depends on unknown task {dep}")
        if registry is not None and not registry.has(task.suggested_role):
            errors.append(f"Task {task.id} uses unregistered role {task.suggested_role.value}")

    cycle = find_cycle(plan.tasks)
    if cycle:
        errors.append("Dependency cycle: " + " -> ".join(cycle))
    return errors


def ensure_valid(plan: WorkflowPlan, registry: RoleRegistry | None = None) -> None:
    errors = validate_plan(plan, registry)
    if errors:
        raise PlanValidationError(errors)


def topological_order(plan: WorkflowPlan) -> list[str]:
    """Task ids in dependency order, ties broken by declaration order."""
    ensure_valid(plan)
    remaining = {t.id: set(t.depends_on) for t in plan.tasks}
    order: list[str] = []
    ready = deque(t.id for t in plan.tasks if not remaining[t.id])
    while ready:
        task_id = ready.popleft()
        order.append(task_id)
        for t in plan.tasks:
            deps = remaining[t.id]
            if task_id in deps:
                deps.discard(task_id)
                if not deps and t.id not in order and t.id not in ready:
                    ready.append(t.id)
    return order
