"""Tests for workflow orchestration: DAG scheduling, loops and shared context."""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from conftest import ScriptedProvider, respond, tool_call
from forgeloop.agents.factory import AgentFactory
from forgeloop.agents.types import (
    ActionType,
    AgentAction,
    AgentResult,
    AgentRole,
    AgentStatus,
    AgentStep,
)
from forgeloop.core.errors import ConfigurationError, PlanValidationError, ProviderError
from forgeloop.core.logging import AuditLogger
from forgeloop.execution.native import NativeExecutor
from forgeloop.llm.base import BaseLLMProvider
from forgeloop.llm.types import ChatResponse, LLMConfig, Message, Provider, Usage
from forgeloop.orchestration.context import WorkflowContext
from forgeloop.orchestration.decomposer import TaskDecomposer
from forgeloop.orchestration.orchestrator import TaskStatus, WorkflowOrchestrator
from forgeloop.orchestration.plan import WorkflowMode, WorkflowPlan, WorkflowTask
from forgeloop.roles.enforcement import EnforcementEngine, default_enforcement_rules
from forgeloop.roles.loops import LoopLimits
from forgeloop.roles.registry import create_default_registry
from forgeloop.roles.types import LoopPattern
from forgeloop.tools.base import ToolResult
from forgeloop.tools.builtin import create_tool_registry

TASK_COST = (10 * 3.0 + 5 * 15.0) / 1_000_000


class TaskProvider(BaseLLMProvider):
    """Answers based on the first line of the task prompt.

    ``FAIL`` in that line raises a provider error, ``SLOW`` stretches the
    call and ``LOOP`` keeps asking for a directory listing forever.
    Start and end of every call are recorded in ``events``.
    """

    def __init__(self, delay: float = 0.02, responder: Callable[[str], str] | None = None) -> None:
        super().__init__(
            LLMConfig(
                provider=Provider.CLAUDE,
                model="fake-model",
                input_cost_per_mtok=3.0,
                output_cost_per_mtok=15.0,
            )
        )
        self.delay = delay
        self.responder = responder
        self.events: list[tuple[str, str]] = []
        self.prompts: dict[str, str] = {}
        self.active = 0
        self.max_active = 0

    def started(self) -> list[str]:
        return [key for kind, key in self.events if kind == "start"]

    def before(self, first: str, second: str) -> bool:
        """True when *first* finished before *second* started."""
        return self.events.index(("end", first)) < self.events.index(("start", second))

    async def chat(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        *,
        temperature: float | None = None,
    ) -> ChatResponse:
        prompt = messages[1]["content"]
        key = prompt.split("\n", 1)[0]
        self.prompts[key] = prompt
        self.events.append(("start", key))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay * (10 if "SLOW" in key else 1))
            if "FAIL" in key:
                raise ProviderError(f"{key} failed")
        finally:
            self.active -= 1
            self.events.append(("end", key))

        usage = Usage(input_tokens=10, output_tokens=5)
        if "LOOP" in key:
            return respond("looking", tool_call("list_dir", path="."), usage=usage)
        content = self.responder(prompt) if self.responder else f"result of {key}"
        return ChatResponse(content=content, usage=usage)


def make_orchestrator(
    provider: BaseLLMProvider,
    project_dir: Path,
    **kwargs: Any,
) -> WorkflowOrchestrator:
    factory = AgentFactory(create_default_registry(), create_tool_registry(), provider=provider)
    return WorkflowOrchestrator(factory, lambda: NativeExecutor(project_dir), **kwargs)


def dag(*tasks: WorkflowTask) -> WorkflowPlan:
    return WorkflowPlan(original_task="test workflow", tasks=list(tasks), execution_mode=WorkflowMode.DAG)


def task(task_id: str, marker: str = "", *deps: str, **kwargs: Any) -> WorkflowTask:
    description = f"task {task_id} {marker}".strip()
    return WorkflowTask(id=task_id, description=description, depends_on=list(deps), **kwargs)


class TestDagScheduling:
    @pytest.mark.asyncio
    async def test_dependencies_finish_first(self, project_dir: Path):
        provider = TaskProvider()
        orchestrator = make_orchestrator(provider, project_dir)
        result = await orchestrator.execute_workflow(
            dag(task("a"), task("b", "", "a"), task("c", "", "a"), task("d", "", "b", "c"))
        )

        assert result.success
        assert all(status is TaskStatus.COMPLETED for status in result.statuses.values())
        assert provider.before("task a", "task b")
        assert provider.before("task a", "task c")
        assert provider.before("task b", "task d")
        assert provider.before("task c", "task d")
        # b and c are independent once a is done
        assert provider.max_active == 2

    @pytest.mark.asyncio
    async def test_dependency_results_reach_dependents(self, project_dir: Path):
        provider = TaskProvider()
        orchestrator = make_orchestrator(provider, project_dir)
        await orchestrator.execute_workflow(dag(task("a"), task("b", "", "a")))

        prompt = provider.prompts["task b"]
        assert "Results from the tasks this one depends on:" in prompt
        assert "### a (general, completed)" in prompt
        assert "result of task a" in prompt
        assert "depends on" not in provider.prompts["task a"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_parallel,expected", [(None, 3), (2, 2), (1, 1)])
    async def test_max_parallel(self, project_dir: Path, max_parallel: int | None, expected: int):
        provider = TaskProvider()
        orchestrator = make_orchestrator(provider, project_dir, max_parallel=max_parallel)
        result = await orchestrator.execute_workflow(dag(task("a"), task("b"), task("c")))
        assert result.success
        assert provider.max_active == expected

    def test_max_parallel_must_be_positive(self, project_dir: Path):
        with pytest.raises(ValueError):
            make_orchestrator(TaskProvider(), project_dir, max_parallel=0)

    @pytest.mark.asyncio
    async def test_exclusive_task_runs_alone(self, project_dir: Path):
        provider = TaskProvider()
        orchestrator = make_orchestrator(provider, project_dir)
        result = await orchestrator.execute_workflow(
            dag(task("a", parallelizable=False), task("b"), task("c"))
        )
        assert result.success
        assert provider.before("task a", "task b")
        assert provider.before("task a", "task c")

    @pytest.mark.asyncio
    async def test_cyclic_plan_rejected_before_any_agent(self, project_dir: Path):
        provider = TaskProvider()
        orchestrator = make_orchestrator(provider, project_dir)
        plan = dag(task("a", "", "b"), task("b", "", "a"))
        with pytest.raises(PlanValidationError, match="cycle"):
            await orchestrator.execute_workflow(plan)
        assert provider.events == []
        assert orchestrator.get_agents() == []

    @pytest.mark.asyncio
    async def test_failure_blocks_dependents(self, project_dir: Path):
        provider = TaskProvider()
        orchestrator = make_orchestrator(provider, project_dir)
        result = await orchestrator.execute_workflow(
            dag(task("a", "FAIL"), task("b", "", "a"), task("c", "", "b"), task("d"))
        )

        assert not result.success
        assert result.statuses == {
            "a": TaskStatus.FAILED,
            "b": TaskStatus.BLOCKED,
            "c": TaskStatus.BLOCKED,
            "d": TaskStatus.COMPLETED,
        }
        assert sorted(result.failed_tasks) == ["a", "b", "c"]
        assert "task b" not in provider.started()
        assert "task c" not in provider.started()
        assert result.results["a"].error == "task a FAIL failed"
        assert "Dependency failed: a" in result.results["b"].error
        assert any(e.startswith("a: ") for e in result.errors)

    @pytest.mark.asyncio
    async def test_executor_per_task(self, project_dir: Path):
        created: list[NativeExecutor] = []

        def executor_factory() -> NativeExecutor:
            executor = NativeExecutor(project_dir)
            created.append(executor)
            return executor

        factory = AgentFactory(create_default_registry(), create_tool_registry(), provider=TaskProvider())
        orchestrator = WorkflowOrchestrator(factory, executor_factory)
        await orchestrator.execute_workflow(dag(task("a"), task("b")))
        assert len(created) == 2
        assert created[0] is not created[1]

    @pytest.mark.asyncio
    async def test_executor_failure_fails_task(self, tmp_path: Path):
        provider = TaskProvider()
        orchestrator = make_orchestrator(provider, tmp_path / "missing")
        result = await orchestrator.execute_workflow(dag(task("a")))
        assert result.statuses["a"] is TaskStatus.FAILED
        assert "Project directory does not exist" in result.results["a"].error
        assert provider.events == []


class TestSequential:
    @pytest.mark.asyncio
    async def test_runs_in_order(self, project_dir: Path):
        provider = TaskProvider()
        orchestrator = make_orchestrator(provider, project_dir)
        plan = WorkflowPlan(tasks=[task("a"), task("b"), task("c")])
        result = await orchestrator.execute_workflow(plan)
        assert result.success
        assert provider.started() == ["task a", "task b", "task c"]
        assert provider.max_active == 1

    @pytest.mark.asyncio
    async def test_halts_on_first_failure(self, project_dir: Path):
        provider = TaskProvider()
        orchestrator = make_orchestrator(provider, project_dir)
        plan = WorkflowPlan(tasks=[task("a"), task("b", "FAIL"), task("c")])
        result = await orchestrator.execute_workflow(plan)

        assert not result.success
        assert result.statuses["a"] is TaskStatus.COMPLETED
        assert result.statuses["b"] is TaskStatus.FAILED
        assert result.statuses["c"] is TaskStatus.SKIPPED
        assert "task c" not in provider.started()
        assert result.results["c"].error == "Skipped after an earlier failure"


class TestAggregation:
    @pytest.mark.asyncio
    async def test_totals(self, project_dir: Path):
        orchestrator = make_orchestrator(TaskProvider(), project_dir)
        result = await orchestrator.execute_workflow(dag(task("a"), task("b"), task("c", "", "a")))
        assert result.total_tokens == 45
        assert result.total_cost == pytest.approx(3 * TASK_COST)
        assert result.duration_ms >= 0
        assert result.enforcement_actions == 0

        summary = result.to_dict()
        assert summary["success"] is True
        assert summary["tasks"]["a"]["status"] == "completed"
        assert summary["tasks"]["a"]["tokens"] == 15
        json.dumps(summary)

    @pytest.mark.asyncio
    async def test_get_agents(self, project_dir: Path):
        orchestrator = make_orchestrator(TaskProvider(), project_dir)
        await orchestrator.execute_workflow(dag(task("a"), task("b", "FAIL")))
        states = {s.task_id: s for s in orchestrator.get_agents()}
        assert states["a"].status is TaskStatus.COMPLETED
        assert states["a"].steps == 1
        assert states["a"].total_tokens == 15
        assert states["a"].agent_id
        assert states["b"].status is TaskStatus.FAILED
        assert states["b"].error == "task b FAIL failed"

    @pytest.mark.asyncio
    async def test_audit_entry(self, project_dir: Path, tmp_path: Path):
        audit = AuditLogger(tmp_path / "audit.jsonl")
        orchestrator = make_orchestrator(TaskProvider(), project_dir, audit_logger=audit)
        plan = dag(task("a"))
        await orchestrator.execute_workflow(plan)
        [entry] = [e for e in audit.read_entries() if e["event_type"] == "workflow_finished"]
        assert entry["plan_id"] == plan.id
        assert entry["success"] is True
        assert entry["total_tokens"] == 15

    @pytest.mark.asyncio
    async def test_context_records_results(self, project_dir: Path):
        orchestrator = make_orchestrator(TaskProvider(), project_dir)
        context = WorkflowContext()
        await orchestrator.execute_workflow(dag(task("a"), task("b", "", "a")), context)
        assert set(context.agent_results) == {"a", "b"}
        assert context.role_sequence == [AgentRole.GENERAL, AgentRole.GENERAL]

    @pytest.mark.asyncio
    async def test_loop_limits_refuse_extra_agents(self, project_dir: Path):
        provider = TaskProvider()
        orchestrator = make_orchestrator(
            provider, project_dir, loop_limits=LoopLimits(max_total_agents=1)
        )
        result = await orchestrator.execute_workflow(WorkflowPlan(tasks=[task("a"), task("b")]))
        assert result.statuses["a"] is TaskStatus.COMPLETED
        assert result.statuses["b"] is TaskStatus.FAILED
        assert "Maximum total agents" in result.results["b"].error
        assert "task b" not in provider.started()


class TestInterrupt:
    @pytest.mark.asyncio
    async def test_interrupt_stops_running_and_pending(self, project_dir: Path):
        provider = TaskProvider()
        orchestrator = make_orchestrator(provider, project_dir)
        run = asyncio.create_task(
            orchestrator.execute_workflow(dag(task("a", "LOOP"), task("b", "", "a")))
        )
        deadline = time.monotonic() + 5
        while not provider.events and time.monotonic() < deadline:
            await asyncio.sleep(0.005)

        orchestrator.interrupt()
        result = await run

        assert result.interrupted
        assert not result.success
        assert result.statuses["a"] is TaskStatus.INTERRUPTED
        assert result.results["a"].error == "Execution interrupted"
        assert result.statuses["b"] is TaskStatus.SKIPPED
        assert result.results["b"].status is AgentStatus.INTERRUPTED
        assert "task b" not in provider.started()

    @pytest.mark.asyncio
    async def test_next_run_starts_clean(self, project_dir: Path):
        orchestrator = make_orchestrator(TaskProvider(), project_dir)
        orchestrator.interrupt()
        result = await orchestrator.execute_workflow(dag(task("a")))
        assert result.success
        assert not orchestrator.interrupted


class TestLoops:
    @pytest.mark.asyncio
    async def test_named_pattern_without_break_condition(self, project_dir: Path):
        orchestrator = make_orchestrator(TaskProvider(), project_dir)
        result = await orchestrator.execute_loop("implement-test-fix", "Make the parser strict")

        assert result.success
        assert [t.id for t in result.plan.tasks] == [
            "loop-1-1-thinker",
            "loop-1-2-tester",
            "loop-1-3-thinker",
        ]
        assert result.plan.tasks[1].depends_on == ["loop-1-1-thinker"]
        assert result.plan.loop_patterns == [[AgentRole.THINKER, AgentRole.TESTER, AgentRole.THINKER]]
        assert result.loops_detected == 1

    @pytest.mark.asyncio
    async def test_unknown_pattern(self, project_dir: Path):
        orchestrator = make_orchestrator(TaskProvider(), project_dir)
        with pytest.raises(ValueError, match="Unknown loop pattern"):
            await orchestrator.execute_loop("nope", "x")

    @pytest.mark.asyncio
    async def test_break_condition(self, project_dir: Path):
        def responder(prompt: str) -> str:
            if "iteration 2 " in prompt and "reviewer agent" in prompt:
                return "APPROVED"
            return "needs work"

        pattern = LoopPattern(
            name="until-approved",
            roles=[AgentRole.GENERAL, AgentRole.REVIEWER],
            max_iterations=4,
            break_condition=lambda latest: latest[AgentRole.REVIEWER].response == "APPROVED",
        )
        orchestrator = make_orchestrator(TaskProvider(responder=responder), project_dir)
        result = await orchestrator.execute_loop(pattern, "Tidy the module")

        assert result.success
        assert [t.id for t in result.plan.tasks] == [
            "loop-1-1-general",
            "loop-1-2-reviewer",
            "loop-2-1-general",
            "loop-2-2-reviewer",
        ]

    @pytest.mark.asyncio
    async def test_max_iterations_bound(self, project_dir: Path):
        pattern = LoopPattern(
            name="never-happy",
            roles=[AgentRole.GENERAL],
            max_iterations=3,
            break_condition=lambda latest: False,
        )
        orchestrator = make_orchestrator(TaskProvider(), project_dir)
        result = await orchestrator.execute_loop(pattern, "Polish")
        assert len(result.plan.tasks) == 3

    @pytest.mark.asyncio
    async def test_repeated_role_runs_every_iteration(self, project_dir: Path):
        pattern = LoopPattern(
            name="draft-test-redraft",
            roles=[AgentRole.GENERAL, AgentRole.TESTER, AgentRole.GENERAL],
            max_iterations=3,
            break_condition=lambda latest: False,
        )
        orchestrator = make_orchestrator(TaskProvider(), project_dir)
        result = await orchestrator.execute_loop(pattern, "Harden the lexer")

        assert result.success
        assert len(result.plan.tasks) == 9
        assert result.plan.tasks[-1].id == "loop-3-3-general"

    @pytest.mark.asyncio
    async def test_repeated_role_break_sees_latest_result(self, project_dir: Path):
        def responder(prompt: str) -> str:
            return "done" if "iteration 2 " in prompt else "draft"

        seen: list[str] = []

        def stop_when_done(latest) -> bool:
            seen.append(latest[AgentRole.GENERAL].response)
            return latest[AgentRole.GENERAL].response == "done"

        pattern = LoopPattern(
            name="draft-test-redraft",
            roles=[AgentRole.GENERAL, AgentRole.TESTER, AgentRole.GENERAL],
            max_iterations=5,
            break_condition=stop_when_done,
        )
        orchestrator = make_orchestrator(TaskProvider(responder=responder), project_dir)
        result = await orchestrator.execute_loop(pattern, "Harden the lexer")

        assert len(result.plan.tasks) == 6
        assert seen == ["draft", "done"]

    @pytest.mark.asyncio
    async def test_failure_ends_loop(self, project_dir: Path):
        pattern = LoopPattern(name="fragile", roles=[AgentRole.GENERAL, AgentRole.REVIEWER], max_iterations=3)
        orchestrator = make_orchestrator(TaskProvider(), project_dir)
        result = await orchestrator.execute_loop(pattern, "FAIL immediately")
        assert not result.success
        assert [t.id for t in result.plan.tasks] == ["loop-1-1-general"]
        assert result.statuses["loop-1-1-general"] is TaskStatus.FAILED


class TestDynamic:
    PLAN = {
        "shouldDecompose": True,
        "reason": "Design then test",
        "executionMode": "dag",
        "tasks": [
            {"id": "task-1", "description": "Implement the parser", "suggestedRole": "thinker"},
            {"id": "task-2", "description": "Write parser tests", "suggestedRole": "tester", "dependsOn": ["task-1"]},
        ],
    }

    @pytest.mark.asyncio
    async def test_decompose_enforce_and_run(self, project_dir: Path):
        registry = create_default_registry()
        for rule in default_enforcement_rules():
            registry.add_enforcement_rule(rule)
        agents = TaskProvider()
        factory = AgentFactory(registry, create_tool_registry(), provider=agents)
        orchestrator = WorkflowOrchestrator(
            factory,
            lambda: NativeExecutor(project_dir),
            decomposer=TaskDecomposer(ScriptedProvider([respond(json.dumps(self.PLAN))]), registry),
            enforcement=EnforcementEngine(registry),
        )
        result = await orchestrator.execute_dynamic("Implement a strict parser")

        assert result.success
        assert result.enforcement_actions == 1
        assert [t.id for t in result.plan.tasks] == ["task-1", "task-2", "enforced-reviewer"]
        assert set(result.statuses) == {"task-1", "task-2", "enforced-reviewer"}
        assert agents.before("Write parser tests", agents.started()[-1])
        assert agents.started()[-1].startswith("Review the changes")

    @pytest.mark.asyncio
    async def test_requires_decomposer(self, project_dir: Path):
        orchestrator = make_orchestrator(TaskProvider(), project_dir)
        with pytest.raises(ConfigurationError):
            await orchestrator.execute_dynamic("anything")


class TestWorkflowContext:
    @staticmethod
    def step(tool: str, arguments: dict[str, Any], observation: ToolResult) -> AgentStep:
        action = AgentAction(type=ActionType.TOOL, tool_name=tool, arguments=arguments)
        return AgentStep(1, 0.0, "", action, observation)

    @pytest.mark.asyncio
    async def test_record_result_updates_shared_state(self):
        context = WorkflowContext()
        result = AgentResult(
            success=True,
            status=AgentStatus.COMPLETED,
            response="Looks fine",
            steps=[
                self.step("write_file", {"path": "src/app.py"}, ToolResult.ok("written")),
                self.step("write_file", {"path": "src/app.py"}, ToolResult.ok("written")),
                self.step("write_file", {"path": "denied.py"}, ToolResult.fail("Permission denied: x")),
                self.step("delete_file", {"path": "old.py"}, ToolResult.ok("deleted")),
                self.step("bash", {"command": "pytest -q"}, ToolResult.fail("1 failed")),
                self.step("bash", {"command": "ls"}, ToolResult.ok("")),
            ],
        )
        await context.record_result("t1", AgentRole.REVIEWER, result)

        state = context.shared_state
        assert state.files_modified == ["src/app.py", "old.py"]
        assert [(t.command, t.passed, t.task_id) for t in state.tests_run] == [("pytest -q", False, "t1")]
        assert not state.tests_passing
        assert state.review_comments == ["Looks fine"]
        assert state.security_issues == []
        assert context.agent_results["t1"] is result

    @pytest.mark.asyncio
    async def test_security_findings(self):
        context = WorkflowContext()
        await context.record_result(
            "s", AgentRole.SECURITY,
            AgentResult(success=True, status=AgentStatus.COMPLETED, response="SQL injection in query()"),
        )
        await context.record_result("f", AgentRole.SECURITY, AgentResult.failure("crashed"))
        assert context.shared_state.security_issues == ["SQL injection in query()"]

    @pytest.mark.asyncio
    async def test_quality_gates(self):
        context = WorkflowContext()
        await context.set_gate("review", True)
        assert context.quality_gates == {"review": True}
