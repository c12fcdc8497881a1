"""Click CLI group with run, workflow, plan and roles commands."""

from __future__ import annotations

import asyncio
import json

import click

from forgeloop.agents.types import AgentBudget, AgentResult, AgentRole, StreamEvent
from forgeloop.cli.rendering import (
    console,
    render_agent_result,
    render_event,
    render_permission_request,
    render_roles,
    render_workflow_result,
)
from forgeloop.cli.runtime import build_runtime
from forgeloop.core.config import Settings, get_settings
from forgeloop.core.errors import ForgeloopError
from forgeloop.core.logging import setup_logging
from forgeloop.execution.base import ExecutionMode
from forgeloop.execution.factory import executor_scope
from forgeloop.gateway.permissions import PermissionRequest
from forgeloop.orchestration.orchestrator import WorkflowResult
from forgeloop.orchestration.plan import WorkflowPlan, validate_plan

_ROLE_CHOICE = click.Choice([r.value for r in AgentRole])
_EXECUTOR_CHOICE = click.Choice([m.value for m in ExecutionMode])


def _require_provider(settings: Settings) -> None:
    if settings.default_provider.lower() == "claude" and not settings.anthropic_api_key:
        click.echo("Error: ANTHROPIC_API_KEY not set (or use FORGELOOP_DEFAULT_PROVIDER=ollama).")
        raise SystemExit(1)


def _approver(auto_approve: bool):
    # parallel workflow branches share one terminal, so prompts run one at a time
    lock = asyncio.Lock()

    async def approve(request: PermissionRequest) -> bool:
        if auto_approve:
            return True
        async with lock:
            console.print(render_permission_request(request))
            return await asyncio.to_thread(click.confirm, "Allow this operation?", default=False)

    return approve


async def _print_event(event: StreamEvent) -> None:
    renderable = render_event(event)
    if renderable is not None:
        console.print(renderable)


@click.group()
@click.option("--log-level", default=None, help="Override FORGELOOP_LOG_LEVEL")
@click.pass_context
def cli(ctx: click.Context, log_level: str | None) -> None:
    """Autonomous coding agents with sandboxed execution."""
    settings = get_settings()
    setup_logging(log_level or settings.log_level, settings.app_log_path)
    ctx.obj = settings


@cli.command()
@click.argument("task", nargs=-1, required=True)
@click.option("--role", type=_ROLE_CHOICE, default=AgentRole.GENERAL.value, show_default=True)
@click.option("--executor", "executor_mode", type=_EXECUTOR_CHOICE, default=None, help="Execution backend")
@click.option("--max-iterations", type=click.IntRange(min=1), default=None)
@click.option("--yes", "auto_approve", is_flag=True, help="Approve every operation that needs confirmation")
@click.option("--quiet", is_flag=True, help="Do not stream agent steps")
@click.pass_obj
def run(
    settings: Settings,
    task: tuple[str, ...],
    role: str,
    executor_mode: str | None,
    max_iterations: int | None,
    auto_approve: bool,
    quiet: bool,
) -> None:
    """Run a single agent on TASK."""
    _require_provider(settings)
    result = asyncio.run(
        _run_agent(settings, " ".join(task), AgentRole(role), executor_mode, max_iterations, auto_approve, quiet)
    )
    console.print(render_agent_result(result))
    if not result.success:
        raise SystemExit(1)


async def _run_agent(
    settings: Settings,
    task: str,
    role: AgentRole,
    executor_mode: str | None,
    max_iterations: int | None,
    auto_approve: bool,
    quiet: bool,
) -> AgentResult:
    runtime = build_runtime(
        settings,
        approval_callback=_approver(auto_approve),
        event_sink=None if quiet else _print_event,
    )
    try:
        async with executor_scope(runtime.executor(executor_mode)) as executor:
            budget = AgentBudget(max_iterations=max_iterations) if max_iterations else None
            agent = runtime.factory.create(role, executor, budget=budget)
            return await agent.execute(task)
    finally:
        await runtime.close()


@cli.command()
@click.argument("task", nargs=-1, required=True)
@click.option("--no-enforce", is_flag=True, help="Skip mandatory review/security tasks")
@click.option("--max-parallel", type=click.IntRange(min=1), default=None)
@click.option("--executor", "executor_mode", type=_EXECUTOR_CHOICE, default=None)
@click.option("--yes", "auto_approve", is_flag=True, help="Approve every operation that needs confirmation")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@click.pass_obj
def workflow(
    settings: Settings,
    task: tuple[str, ...],
    no_enforce: bool,
    max_parallel: int | None,
    executor_mode: str | None,
    auto_approve: bool,
    as_json: bool,
) -> None:
    """Plan TASK into sub-tasks and run them as a workflow."""
    _require_provider(settings)
    try:
        result = asyncio.run(
            _run_workflow(settings, " ".join(task), not no_enforce, max_parallel, executor_mode, auto_approve)
        )
    except ForgeloopError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        console.print(render_workflow_result(result))
    if not result.success:
        raise SystemExit(1)


async def _run_workflow(
    settings: Settings,
    task: str,
    enforce: bool,
    max_parallel: int | None,
    executor_mode: str | None,
    auto_approve: bool,
) -> WorkflowResult:
    runtime = build_runtime(settings, approval_callback=_approver(auto_approve))
    try:
        orchestrator = runtime.orchestrator(
            executor_mode=executor_mode, max_parallel=max_parallel, enforce=enforce
        )
        return await orchestrator.execute_dynamic(task)
    finally:
        await runtime.close()


@cli.command()
@click.argument("task", nargs=-1, required=True)
@click.option("--no-enforce", is_flag=True, help="Show the planner's output without enforced tasks")
@click.pass_obj
def plan(settings: Settings, task: tuple[str, ...], no_enforce: bool) -> None:
    """Print the workflow plan for TASK as JSON without running it."""
    _require_provider(settings)
    workflow_plan, errors = asyncio.run(_plan(settings, " ".join(task), not no_enforce))
    click.echo(workflow_plan.model_dump_json(by_alias=True, indent=2))
    for error in errors:
        click.echo(f"Warning: {error}", err=True)


async def _plan(settings: Settings, task: str, enforce: bool) -> tuple[WorkflowPlan, list[str]]:
    runtime = build_runtime(settings)
    try:
        planned = await runtime.decomposer().plan_workflow(task)
        enforced = runtime.enforcement(enforce).enforce(planned)
        return enforced, validate_plan(enforced, runtime.roles)
    finally:
        await runtime.close()


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Print roles, rules and loop patterns as JSON")
@click.pass_obj
def roles(settings: Settings, as_json: bool) -> None:
    """List agent roles and the tools each may use."""
    runtime = build_runtime(settings)
    if as_json:
        click.echo(json.dumps(runtime.roles.export(), indent=2))
        return
    console.print(render_roles(runtime.roles, runtime.tools.names()))
