"""WorkflowOrchestrator: run a workflow plan as a set of cooperating agents."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from forgeloop.agents.agent import Agent
from forgeloop.agents.factory import AgentFactory
from forgeloop.agents.types import AgentResult, AgentRole, AgentStatus
from forgeloop.core.errors import ConfigurationError
from forgeloop.core.logging import AuditLogger
from forgeloop.execution.base import Executor
from forgeloop.execution.factory import executor_scope
from forgeloop.orchestration.context import AgentCall, WorkflowContext
from forgeloop.orchestration.decomposer import TaskDecomposer
from forgeloop.orchestration.plan import WorkflowMode, WorkflowPlan, WorkflowTask, ensure_valid
from forgeloop.roles.enforcement import EnforcementEngine
from forgeloop.roles.loops import LoopDetector, LoopLimits
from forgeloop.roles.types import LoopPattern

logger = logging.getLogger(__name__)

ExecutorFactory = Callable[[], Executor]

# Dependency results longer than this are truncated in a dependent's prompt
_CONTEXT_CHARS = 2000


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"
    BLOCKED = "blocked"  # a dependency failed; never started
    SKIPPED = "skipped"  # not started because the workflow halted


_UNSUCCESSFUL = (TaskStatus.FAILED, TaskStatus.INTERRUPTED, TaskStatus.BLOCKED, TaskStatus.SKIPPED)


@dataclass
class TaskRun:
    task: WorkflowTask
    status: TaskStatus = TaskStatus.PENDING
    agent: Agent | None = None
    result: AgentResult | None = None
    started_at: float | None = None
    finished_at: float | None = None


@dataclass
class SubAgentState:
    """Progress view of one task, safe to hand to a UI."""

    task_id: str
    role: AgentRole
    status: TaskStatus
    agent_id: str = ""
    steps: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    error: str = ""


@dataclass
class WorkflowResult:
    success: bool
    plan: WorkflowPlan
    results: dict[str, AgentResult] = field(default_factory=dict)
    statuses: dict[str, TaskStatus] = field(default_factory=dict)
    total_tokens: int = 0
    total_cost: float = 0.0
    duration_ms: int = 0
    errors: list[str] = field(default_factory=list)
    interrupted: bool = False
    enforcement_actions: int = 0
    loops_detected: int = 0

    @property
    def failed_tasks(self) -> list[str]:
        return [tid for tid, status in self.statuses.items() if status in _UNSUCCESSFUL]

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "plan_id": self.plan.id,
            "tasks": {
                tid: {
                    "status": self.statuses.get(tid, TaskStatus.PENDING).value,
                    "response": r.response,
                    "error": r.error,
                    "steps": len(r.steps),
                    "tokens": r.total_tokens,
                    "cost": r.total_cost,
                }
                for tid, r in self.results.items()
            },
            "total_tokens": self.total_tokens,
            "total_cost": self.total_cost,
            "duration_ms": self.duration_ms,
            "errors": self.errors,
            "interrupted": self.interrupted,
            "enforcement_actions": self.enforcement_actions,
            "loops_detected": self.loops_detected,
        }


class WorkflowOrchestrator:
    """Schedules one agent per plan task, each with its own executor.

    In DAG mode, ready tasks run concurrently (bounded by ``max_parallel``)
    and a task whose dependency did not complete is marked blocked without
    starting. Sequential mode runs tasks in declaration order and halts at
    the first failure. Cancellation is cooperative: ``interrupt()`` stops
    running agents at their next iteration boundary and prevents new starts.
    """

    def __init__(
        self,
        factory: AgentFactory,
        executor_factory: ExecutorFactory,
        *,
        decomposer: TaskDecomposer | None = None,
        enforcement: EnforcementEngine | None = None,
        max_parallel: int | None = None,
        enable_loop_detection: bool = True,
        loop_limits: LoopLimits | None = None,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        if max_parallel is not None and max_parallel < 1:
            raise ValueError("max_parallel must be at least 1")
        self._factory = factory
        self._executor_factory = executor_factory
        self._decomposer = decomposer
        self._enforcement = enforcement
        self._max_parallel = max_parallel
        self._loop_detection = enable_loop_detection
        self._loop_limits = loop_limits or LoopLimits()
        self._audit = audit_logger

        self._runs: dict[str, TaskRun] = {}
        self._detector: LoopDetector | None = None
        self._loops_detected = 0
        self._interrupted = False
        self._busy = False

    # -- inspection / control -------------------------------------------------

    @property
    def interrupted(self) -> bool:
        return self._interrupted

    def get_agents(self) -> list[SubAgentState]:
        states = []
        for run in self._runs.values():
            agent, result = run.agent, run.result
            if result is not None:
                steps, tokens, cost, error = len(result.steps), result.total_tokens, result.total_cost, result.error
            elif agent is not None:
                steps, tokens, cost, error = len(agent.steps), agent.total_tokens, agent.total_cost, ""
            else:
                steps, tokens, cost, error = 0, 0, 0.0, ""
            states.append(SubAgentState(
                task_id=run.task.id,
                role=run.task.suggested_role,
                status=run.status,
                agent_id=agent.id if agent else "",
                steps=steps,
                total_tokens=tokens,
                total_cost=cost,
                error=error,
            ))
        return states

    def interrupt(self) -> None:
        """Stop running agents and start nothing new."""
        self._interrupted = True
        for run in self._runs.values():
            if run.status is TaskStatus.RUNNING and run.agent is not None:
                run.agent.stop()
        logger.info("Workflow interrupt requested")

    # -- entry points -----------------------------------------------------------

    async def execute_dynamic(
        self, task: str, context: WorkflowContext | None = None
    ) -> WorkflowResult:
        """Decompose *task*, apply enforcement, validate and run the plan."""
        if self._decomposer is None:
            raise ConfigurationError("No task decomposer configured")
        plan = await self._decomposer.plan_workflow(task)
        enforced = self._enforcement.enforce(plan, context) if self._enforcement else plan
        result = await self.execute_workflow(enforced, context)
        result.enforcement_actions = len(enforced.tasks) - len(plan.tasks)
        return result

    async def execute_workflow(
        self, plan: WorkflowPlan, context: WorkflowContext | None = None
    ) -> WorkflowResult:
        ensure_valid(plan, self._factory.registry)
        context = context or WorkflowContext()
        self._begin([TaskRun(task) for task in plan.tasks])
        start = time.monotonic()
        logger.info(
            "Running workflow %s: %d tasks (%s)",
            plan.id, len(plan.tasks), plan.execution_mode.value,
        )
        try:
            if plan.execution_mode is WorkflowMode.SEQUENTIAL:
                await self._run_sequential(plan.tasks, context)
            else:
                await self._run_dag(plan, context)
        finally:
            self._busy = False
        return self._finish(plan, start)

    async def execute_loop(
        self,
        pattern: LoopPattern | str,
        task: str,
        context: WorkflowContext | None = None,
    ) -> WorkflowResult:
        """Cycle through *pattern*'s roles until its break condition holds.

        Without a break condition, the loop ends after the first iteration
        in which every agent completed.
        """
        if isinstance(pattern, str):
            found = self._factory.registry.loop_pattern(pattern)
            if found is None:
                raise ValueError(f"Unknown loop pattern: {pattern}")
            pattern = found

        context = context or WorkflowContext()
        self._begin([])
        start = time.monotonic()
        executed: list[WorkflowTask] = []
        previous: str | None = None
        logger.info("Running loop %s (max %d iterations)", pattern.name, pattern.max_iterations)

        try:
            for iteration in range(1, pattern.max_iterations + 1):
                latest: dict[AgentRole, AgentResult] = {}
                for index, role in enumerate(pattern.roles, start=1):
                    if self._interrupted:
                        break
                    loop_task = WorkflowTask(
                        id=f"loop-{iteration}-{index}-{role.value}",
                        description=(
                            f"{task}\n\nThis is iteration {iteration} of the "
                            f"{pattern.name} loop; act as the {role.value} agent."
                        ),
                        suggested_role=role,
                        depends_on=[previous] if previous else [],
                        parallelizable=False,
                    )
                    run = TaskRun(loop_task)
                    self._runs[loop_task.id] = run
                    executed.append(loop_task)
                    previous = loop_task.id
                    latest[role] = await self._run_task(run, context)
                    if not latest[role].success:
                        break
                else:
                    if self._interrupted:
                        break
                    if pattern.break_condition is None or pattern.break_condition(latest):
                        logger.info("Loop %s finished after %d iterations", pattern.name, iteration)
                        break
                    continue
                # interrupted or an agent failed part-way through the iteration
                break
        finally:
            self._busy = False

        plan = WorkflowPlan(
            original_task=task,
            description=pattern.description,
            tasks=executed,
            execution_mode=WorkflowMode.SEQUENTIAL,
            loop_patterns=[list(pattern.roles)],
        )
        return self._finish(plan, start)

    # -- scheduling -----------------------------------------------------------------

    def _begin(self, runs: list[TaskRun]) -> None:
        if self._busy:
            raise RuntimeError("Orchestrator is already running a workflow")
        self._busy = True
        self._interrupted = False
        self._loops_detected = 0
        self._runs = {run.task.id: run for run in runs}
        self._detector = (
            LoopDetector(self._factory.registry, self._loop_limits) if self._loop_detection else None
        )

    async def _run_sequential(self, tasks: list[WorkflowTask], context: WorkflowContext) -> None:
        halted = False
        for task in tasks:
            run = self._runs[task.id]
            if self._interrupted or halted:
                reason = "Workflow interrupted" if self._interrupted else "Skipped after an earlier failure"
                self._settle(run, TaskStatus.SKIPPED, reason)
                continue
            result = await self._run_task(run, context)
            if not result.success:
                halted = True

    async def _run_dag(self, plan: WorkflowPlan, context: WorkflowContext) -> None:
        pending = [t.id for t in plan.tasks]
        running: dict[asyncio.Task[AgentResult], str] = {}
        try:
            while pending or running:
                if self._interrupted:
                    for tid in pending:
                        self._settle(self._runs[tid], TaskStatus.SKIPPED, "Workflow interrupted")
                    pending.clear()
                else:
                    self._propagate_failures(pending)
                    self._dispatch(pending, running, context)

                if not running:
                    for tid in pending:
                        self._settle(self._runs[tid], TaskStatus.BLOCKED, "Dependencies never completed")
                    break
                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for finished in done:
                    running.pop(finished)
        finally:
            for leftover in running:
                leftover.cancel()
            if running:
                await asyncio.wait(running)

    def _propagate_failures(self, pending: list[str]) -> None:
        changed = True
        while changed:
            changed = False
            for tid in list(pending):
                run = self._runs[tid]
                failed = [d for d in run.task.depends_on if self._runs[d].status in _UNSUCCESSFUL]
                if failed:
                    pending.remove(tid)
                    self._settle(run, TaskStatus.BLOCKED, f"Dependency failed: {', '.join(failed)}")
                    changed = True

    def _dispatch(
        self,
        pending: list[str],
        running: dict[asyncio.Task[AgentResult], str],
        context: WorkflowContext,
    ) -> None:
        if any(not self._runs[tid].task.parallelizable for tid in running.values()):
            return
        for tid in list(pending):
            run = self._runs[tid]
            if not all(self._runs[d].status is TaskStatus.COMPLETED for d in run.task.depends_on):
                continue
            if self._max_parallel is not None and len(running) >= self._max_parallel:
                return
            exclusive = not run.task.parallelizable
            if exclusive and running:
                return
            pending.remove(tid)
            # Mark now so a dependent is never considered ready early
            run.status = TaskStatus.RUNNING
            running[asyncio.create_task(self._run_task(run, context))] = tid
            if exclusive:
                return

    async def _run_task(self, run: TaskRun, context: WorkflowContext) -> AgentResult:
        task = run.task
        role = task.suggested_role
        run.status = TaskStatus.RUNNING
        run.started_at = time.time()

        if self._detector is not None:
            check = self._detector.check(role)
            if not check.allowed:
                return await self._complete(run, context, AgentResult.failure(check.reason))
            if check.pattern is not None:
                self._loops_detected += 1
            self._detector.record(role)
        await context.push_call(AgentCall(task.id, role))

        try:
            async with executor_scope(self._executor_factory()) as executor:
                agent = self._factory.create(role, executor, name=task.id)
                run.agent = agent
                if self._interrupted:
                    agent.stop()
                result = await agent.execute(task.description, self._dependency_context(task))
        except Exception as e:
            logger.exception("Task %s (%s) crashed", task.id, role.value)
            result = AgentResult.failure(f"{type(e).__name__}: {e}")
        return await self._complete(run, context, result)

    async def _complete(
        self, run: TaskRun, context: WorkflowContext, result: AgentResult
    ) -> AgentResult:
        run.result = result
        run.finished_at = time.time()
        if result.success:
            run.status = TaskStatus.COMPLETED
        elif result.status is AgentStatus.INTERRUPTED:
            run.status = TaskStatus.INTERRUPTED
        else:
            run.status = TaskStatus.FAILED
        await context.record_result(run.task.id, run.task.suggested_role, result)
        logger.info(
            "Task %s (%s) %s%s",
            run.task.id, run.task.suggested_role.value, run.status.value,
            f": {result.error}" if result.error else "",
        )
        return result

    def _settle(self, run: TaskRun, status: TaskStatus, reason: str) -> None:
        run.status = status
        run.result = AgentResult.failure(
            reason,
            AgentStatus.INTERRUPTED if status is TaskStatus.SKIPPED and self._interrupted else AgentStatus.FAILED,
        )
        logger.info("Task %s %s: %s", run.task.id, status.value, reason)

    def _dependency_context(self, task: WorkflowTask) -> str:
        parts = []
        for dep in task.depends_on:
            dep_run = self._runs.get(dep)
            if dep_run is None or dep_run.result is None:
                continue
            body = dep_run.result.response or dep_run.result.error or "(no output)"
            if len(body) > _CONTEXT_CHARS:
                body = body[:_CONTEXT_CHARS] + "\n... (truncated)"
            parts.append(
                f"### {dep} ({dep_run.task.suggested_role.value}, {dep_run.status.value})\n{body}"
            )
        if not parts:
            return ""
        return "Results from the tasks this one depends on:\n\n" + "\n\n".join(parts)

    def _finish(self, plan: WorkflowPlan, start: float) -> WorkflowResult:
        result = WorkflowResult(
            success=False,
            plan=plan,
            duration_ms=int((time.monotonic() - start) * 1000),
            interrupted=self._interrupted,
            loops_detected=self._loops_detected,
        )
        for tid, run in self._runs.items():
            result.statuses[tid] = run.status
            if run.result is None:
                continue
            result.results[tid] = run.result
            result.total_tokens += run.result.total_tokens
            result.total_cost += run.result.total_cost
            if run.status is not TaskStatus.COMPLETED:
                result.errors.append(f"{tid}: {run.result.error or run.status.value}")
        result.success = bool(self._runs) and all(
            run.status is TaskStatus.COMPLETED for run in self._runs.values()
        )

        logger.info(
            "Workflow %s %s in %dms (%d tokens, $%.4f)",
            plan.id, "succeeded" if result.success else "failed",
            result.duration_ms, result.total_tokens, result.total_cost,
        )
        if self._audit:
            self._audit.log(
                "workflow_finished",
                duration_ms=result.duration_ms,
                error="; ".join(result.errors),
                extra={
                    "plan_id": plan.id,
                    "tasks": len(plan.tasks),
                    "success": result.success,
                    "interrupted": result.interrupted,
                    "total_tokens": result.total_tokens,
                    "total_cost": result.total_cost,
                },
            )
        return result
