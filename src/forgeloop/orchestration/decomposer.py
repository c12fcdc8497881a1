"""TaskDecomposer: turn a task description into a workflow plan."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from forgeloop.agents.types import AgentRole
from forgeloop.llm.base import BaseLLMProvider
from forgeloop.orchestration.plan import WorkflowMode, WorkflowPlan, WorkflowTask, validate_plan
from forgeloop.roles.registry import RoleRegistry

logger = logging.getLogger(__name__)

DECOMPOSITION_PROMPT = """\
You are a software development task planner. Decide whether the task below \
should be split into sub-tasks for specialised agents, and plan them.

Available agent roles:
{roles}

Task:
{task}

Consider which skills the task needs, what can run concurrently, what must \
happen first, and whether review, testing or a security audit is warranted.

Respond with a single JSON object:
{{
  "shouldDecompose": true,
  "reason": "one sentence",
  "executionMode": "sequential" | "dag",
  "complexity": 0.0-1.0,
  "tasks": [
    {{
      "id": "task-1",
      "description": "what this sub-task does",
      "suggestedRole": "one of the roles above",
      "dependsOn": ["ids of tasks that must finish first"],
      "complexity": 0.0-1.0,
      "parallelizable": true
    }}
  ]
}}"""

_FENCED_JSON = re.compile(r"```(?:json)?\s*\n(.*?)\n\s*```", re.DOTALL)
_BARE_OBJECT = re.compile(r"\{.*\}", re.DOTALL)

_LOOP_WORDS = ("iterative", "iterate", "loop", "until", "retry")

# Checked in order; first hit wins
_ROLE_KEYWORDS: tuple[tuple[AgentRole, tuple[str, ...]], ...] = (
    (AgentRole.FINDER, ("search", "find", "locate")),
    (AgentRole.TESTER, ("test", "spec")),
    (AgentRole.REVIEWER, ("review", "check quality")),
    (AgentRole.SECURITY, ("security", "vulnerab")),
    (AgentRole.REFACTORING, ("refactor", "improve code", "clean up")),
    (AgentRole.LIBRARIAN, ("research", "documentation", "docs", "api")),
    (AgentRole.RUSH, ("quick", "simple", "typo")),
    (AgentRole.THINKER, ("implement", "design", "architect", "complex", "fix")),
)


class DecompositionError(ValueError):
    """The provider answered, but not with a usable plan."""


@dataclass
class DecompositionResult:
    should_decompose: bool
    reason: str
    tasks: list[WorkflowTask]
    execution_mode: WorkflowMode = WorkflowMode.SEQUENTIAL
    complexity: float = 0.5
    fallback: bool = False
    loop_patterns: list[list[AgentRole]] = field(default_factory=list)


def extract_json(content: str) -> dict[str, Any]:
    """Pull the first JSON object out of *content* (fenced block or bare braces)."""
    match = _FENCED_JSON.search(content)
    raw = match.group(1) if match else None
    if raw is None:
        bare = _BARE_OBJECT.search(content)
        if bare is None:
            raise DecompositionError("No JSON object in response")
        raw = bare.group(0)
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise DecompositionError(f"Response is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise DecompositionError("Response JSON is not an object")
    return data


def suggest_role(description: str) -> AgentRole:
    desc = description.lower()
    for role, words in _ROLE_KEYWORDS:
        if any(word in desc for word in words):
            return role
    return AgentRole.GENERAL


def infer_execution_mode(tasks: list[WorkflowTask]) -> WorkflowMode:
    if len(tasks) <= 1:
        return WorkflowMode.SEQUENTIAL
    if any(t.depends_on for t in tasks):
        return WorkflowMode.DAG
    if all(t.parallelizable for t in tasks):
        return WorkflowMode.DAG
    return WorkflowMode.SEQUENTIAL


def detect_loop_patterns(tasks: list[WorkflowTask]) -> list[list[AgentRole]]:
    roles = {t.suggested_role for t in tasks}
    patterns: list[list[AgentRole]] = []
    if {AgentRole.REFACTORING, AgentRole.TESTER, AgentRole.REVIEWER} <= roles:
        patterns.append([AgentRole.REFACTORING, AgentRole.TESTER, AgentRole.REVIEWER])
    if {AgentRole.THINKER, AgentRole.TESTER} <= roles and any(
        word in t.description.lower() for t in tasks for word in _LOOP_WORDS
    ):
        patterns.append([AgentRole.THINKER, AgentRole.TESTER, AgentRole.THINKER])
    if {AgentRole.SECURITY, AgentRole.THINKER} <= roles:
        patterns.append([AgentRole.SECURITY, AgentRole.REVIEWER, AgentRole.THINKER])
    return patterns


def fallback_tasks(task: str) -> list[WorkflowTask]:
    return [
        WorkflowTask(
            id="task-1",
            description=task,
            suggested_role=AgentRole.GENERAL,
            complexity=0.5,
            parallelizable=False,
        )
    ]


class TaskDecomposer:
    """Asks a provider for a plan; degrades to a single task when the answer is unusable.

    Provider exceptions are not caught here. Only the *content* of a
    successful response can trigger the fallback.
    """

    def __init__(self, provider: BaseLLMProvider, registry: RoleRegistry) -> None:
        self._provider = provider
        self._registry = registry

    def build_prompt(
        self,
        task: str,
        *,
        roles: list[AgentRole] | None = None,
        max_tasks: int | None = None,
        prefer_parallel: bool = False,
    ) -> str:
        lines = []
        for role in roles or self._registry.roles():
            config = self._registry.get(role)
            description = config.description if config else "General purpose agent"
            lines.append(f"- {AgentRole(role).value}: {description}")
        prompt = DECOMPOSITION_PROMPT.format(roles="\n".join(lines), task=task)
        if max_tasks:
            prompt += f"\n\nUse at most {max_tasks} sub-tasks."
        if prefer_parallel:
            prompt += "\n\nMaximise parallel work where dependencies allow."
        return prompt

    async def analyze(
        self,
        task: str,
        *,
        max_tasks: int | None = None,
        prefer_parallel: bool = False,
    ) -> DecompositionResult:
        prompt = self.build_prompt(task, max_tasks=max_tasks, prefer_parallel=prefer_parallel)
        response = await self._provider.chat([{"role": "user", "content": prompt}])
        try:
            return self._parse(response.content, task)
        except DecompositionError as e:
            logger.warning("Unusable decomposition, using single-task plan: %s", e)
            return DecompositionResult(
                should_decompose=False,
                reason=f"Could not use planner response ({e}); running as a single task",
                tasks=fallback_tasks(task),
                fallback=True,
            )

    def _parse(self, content: str, task: str) -> DecompositionResult:
        data = extract_json(content)
        reason = str(data.get("reason", ""))

        if data.get("shouldDecompose") is False:
            complexity = data.get("complexity")
            single = WorkflowTask(
                id="task-1",
                description=task,
                suggested_role=suggest_role(task),
                complexity=complexity if isinstance(complexity, (int, float)) else 0.5,
                parallelizable=False,
            )
            return DecompositionResult(False, reason or "Task does not need decomposition", [single])

        raw_tasks = data.get("tasks")
        if not isinstance(raw_tasks, list) or not raw_tasks:
            raise DecompositionError("Response has no tasks")

        tasks: list[WorkflowTask] = []
        for raw in raw_tasks:
            if not isinstance(raw, dict):
                raise DecompositionError("Task entry is not an object")
            if not raw.get("suggestedRole") and raw.get("description"):
                raw = {**raw, "suggestedRole": suggest_role(str(raw["description"]))}
            try:
                tasks.append(WorkflowTask.model_validate(raw))
            except ValidationError as e:
                raise DecompositionError(f"Malformed task: {e.errors()[0]['msg']}") from e

        mode = str(data.get("executionMode") or "").lower()
        if mode in ("parallel", "dynamic", WorkflowMode.DAG.value):
            execution_mode = WorkflowMode.DAG
        elif mode == WorkflowMode.SEQUENTIAL.value:
            execution_mode = WorkflowMode.SEQUENTIAL
        else:
            execution_mode = infer_execution_mode(tasks)

        complexity = data.get("complexity")
        if not isinstance(complexity, (int, float)):
            complexity = sum(t.complexity for t in tasks) / len(tasks)

        return DecompositionResult(
            should_decompose=True,
            reason=reason,
            tasks=tasks,
            execution_mode=execution_mode,
            complexity=min(1.0, max(0.0, float(complexity))),
            loop_patterns=detect_loop_patterns(tasks),
        )

    async def plan_workflow(
        self,
        task: str,
        *,
        max_tasks: int | None = None,
        prefer_parallel: bool = False,
    ) -> WorkflowPlan:
        result = await self.analyze(task, max_tasks=max_tasks, prefer_parallel=prefer_parallel)
        plan = WorkflowPlan(
            original_task=task,
            description=result.reason,
            tasks=result.tasks,
            execution_mode=result.execution_mode,
            complexity=result.complexity,
            loop_patterns=result.loop_patterns,
        )
        if result.fallback:
            return plan

        errors = validate_plan(plan, self._registry)
        if errors:
            logger.warning("Planner produced an invalid DAG (%s); using single-task plan", "; ".join(errors))
            return WorkflowPlan(
                id=plan.id,
                original_task=task,
                description="Planner output failed validation; running as a single task",
                tasks=fallback_tasks(task),
            )
        logger.info(
            "Planned %d tasks (%s, complexity %.2f) for: %s",
            len(plan.tasks), plan.execution_mode.value, plan.complexity, task[:80],
        )
        return plan

    def suggest_roles(self, descriptions: dict[str, str]) -> dict[str, AgentRole]:
        """Keyword-based role for each task id."""
        return {task_id: suggest_role(text) for task_id, text in descriptions.items()}
