"""Shared, lock-guarded state for one workflow run."""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from forgeloop.agents.types import ActionType, AgentResult, AgentRole

_WRITE_TOOLS = ("write_file", "delete_file")
_TEST_MARKERS = ("pytest", "test", "jest", "vitest", "unittest", "tox")


@dataclass
class TestRun:
    __test__ = False  # not a pytest test class

    command: str
    passed: bool
    task_id: str = ""


@dataclass
class SharedState:
    files_modified: list[str] = field(default_factory=list)
    tests_run: list[TestRun] = field(default_factory=list)
    security_issues: list[str] = field(default_factory=list)
    review_comments: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def tests_passing(self) -> bool:
        return bool(self.tests_run) and all(t.passed for t in self.tests_run)


@dataclass
class AgentCall:
    task_id: str
    role: AgentRole
    started_at: float = field(default_factory=time.time)


@dataclass
class WorkflowContext:
    workflow_id: str = field(default_factory=lambda: f"wf-{uuid.uuid4().hex[:8]}")
    shared_state: SharedState = field(default_factory=SharedState)
    agent_results: dict[str, AgentResult] = field(default_factory=dict)
    call_stack: list[AgentCall] = field(default_factory=list)
    quality_gates: dict[str, bool] = field(default_factory=dict)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    @property
    def role_sequence(self) -> list[AgentRole]:
        return [call.role for call in self.call_stack]

    async def push_call(self, call: AgentCall) -> None:
        async with self._lock:
            self.call_stack.append(call)

    async def record_result(self, task_id: str, role: AgentRole, result: AgentResult) -> None:
        """Store *result* and fold its tool activity into the shared state."""
        async with self._lock:
            self.agent_results[task_id] = result
            self._absorb(task_id, role, result)

    def _absorb(self, task_id: str, role: AgentRole, result: AgentResult) -> None:
        state = self.shared_state
        for step in result.steps:
            action, obs = step.action, step.observation
            if action.type is not ActionType.TOOL or obs is None:
                continue
            if action.tool_name in _WRITE_TOOLS and obs.success:
                path = str(action.arguments.get("path", ""))
                if path and path not in state.files_modified:
                    state.files_modified.append(path)
            elif action.tool_name == "bash":
                command = str(action.arguments.get("command", ""))
                if any(marker in command for marker in _TEST_MARKERS):
                    state.tests_run.append(TestRun(command, obs.success, task_id))

        if result.success and result.response:
            if role is AgentRole.SECURITY:
                state.security_issues.append(result.response)
            elif role is AgentRole.REVIEWER:
                state.review_comments.append(result.response)

    async def set_gate(self, name: str, passed: bool) -> None:
        async with self._lock:
            self.quality_gates[name] = passed
