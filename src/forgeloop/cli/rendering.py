"""Rich renderables for agent events, results and role tables."""

from __future__ import annotations

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from forgeloop.agents.types import AgentResult, StreamEvent, StreamEventType
from forgeloop.gateway.permissions import PermissionRequest
from forgeloop.orchestration.orchestrator import TaskStatus, WorkflowResult
from forgeloop.roles.registry import RoleRegistry

console = Console()

_STATUS_STYLES = {
    TaskStatus.COMPLETED: "green",
    TaskStatus.FAILED: "red",
    TaskStatus.BLOCKED: "red",
    TaskStatus.INTERRUPTED: "yellow",
    TaskStatus.SKIPPED: "dim",
    TaskStatus.PENDING: "dim",
    TaskStatus.RUNNING: "cyan",
}


def render_tool_call(name: str, inputs: dict) -> Panel:
    detail_lines = [f"  {k}: {v}" for k, v in inputs.items()]
    return Panel(
        Text(f"{name}\n" + "\n".join(detail_lines)),
        title="[yellow]Tool Call[/yellow]",
        border_style="yellow",
        expand=False,
    )


def render_tool_result(result: str, is_error: bool = False) -> Panel:
    style = "red" if is_error else "green"
    title = "[red]Tool Error[/red]" if is_error else "[green]Tool Result[/green]"
    truncated = result[:2000] + "..." if len(result) > 2000 else result
    return Panel(Text(truncated), title=title, border_style=style, expand=False)


def render_permission_request(request: PermissionRequest) -> Panel:
    reasons = "\n".join(f"  - {r}" for r in request.risk.reasons)
    body = f"{request.description}\nRisk: {request.risk_level.value} ({request.risk.score})"
    if reasons:
        body += "\n" + reasons
    return Panel(
        Text(body),
        title="[bold red]Permission Required[/bold red]",
        border_style="red",
        expand=False,
    )


def render_event(event: StreamEvent) -> object | None:
    """Renderable for one stream event, or None when it is not worth showing."""
    data = event.data
    if event.type is StreamEventType.THOUGHT:
        return Text(str(data.get("text", "")), style="dim italic")
    if event.type is StreamEventType.ACTION and data.get("tool"):
        return render_tool_call(str(data["tool"]), dict(data.get("arguments") or {}))
    if event.type is StreamEventType.OBSERVATION:
        return render_tool_result(str(data.get("output", "")), is_error=not data.get("success", True))
    if event.type is StreamEventType.ERROR:
        return Text(f"{event.agent_id}: {data.get('error', '')}", style="bold red")
    return None


def render_agent_result(result: AgentResult) -> Panel:
    footer = (
        f"{result.status.value} · {len(result.steps)} steps · "
        f"{result.total_tokens} tokens · ${result.total_cost:.4f} · {result.duration_ms}ms"
    )
    if result.success:
        return Panel(Markdown(result.response or "_(no response)_"), title="[green]Done[/green]", subtitle=footer)
    return Panel(Text(result.error or "Failed"), title="[red]Agent failed[/red]", subtitle=footer, border_style="red")


def render_workflow_result(result: WorkflowResult) -> Table:
    table = Table(title=f"Workflow {result.plan.id}", show_lines=False)
    table.add_column("Task")
    table.add_column("Role")
    table.add_column("Status")
    table.add_column("Steps", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Detail", overflow="fold")
    for task in result.plan.tasks:
        status = result.statuses.get(task.id, TaskStatus.PENDING)
        agent_result = result.results.get(task.id)
        detail = ""
        if agent_result is not None:
            detail = agent_result.error or agent_result.response
        table.add_row(
            task.id,
            task.suggested_role.value,
            f"[{_STATUS_STYLES[status]}]{status.value}[/]",
            str(len(agent_result.steps)) if agent_result else "-",
            str(agent_result.total_tokens) if agent_result else "-",
            detail[:120],
        )
    table.caption = (
        f"{'succeeded' if result.success else 'failed'} · {result.total_tokens} tokens · "
        f"${result.total_cost:.4f} · {result.duration_ms}ms"
    )
    return table


def render_roles(registry: RoleRegistry, tool_names: list[str]) -> Table:
    table = Table(title="Agent roles")
    table.add_column("Role", style="cyan")
    table.add_column("Access")
    table.add_column("Model")
    table.add_column("Tools", overflow="fold")
    table.add_column("Max iterations", justify="right")
    for config in registry.list():
        budget = config.default_budget
        table.add_row(
            config.role.value,
            config.tool_access_level.value,
            config.recommended_model or "-",
            ", ".join(registry.tools_for(config.role, tool_names)),
            str(budget.max_iterations) if budget.max_iterations is not None else "-",
        )
    return table
