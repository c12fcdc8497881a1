"""Wire settings into the collaborators the CLI commands share."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from forgeloop.agents.events import EventSink
from forgeloop.agents.factory import AgentFactory
from forgeloop.agents.types import AgentBudget
from forgeloop.core.config import Settings
from forgeloop.core.logging import AuditLogger
from forgeloop.execution.base import Executor
from forgeloop.execution.factory import create_executor
from forgeloop.gateway.permissions import ApprovalCallback, PermissionManager, PermissionPolicy
from forgeloop.llm.router import ProviderRouter
from forgeloop.orchestration.decomposer import TaskDecomposer
from forgeloop.orchestration.orchestrator import WorkflowOrchestrator
from forgeloop.roles.enforcement import EnforcementEngine, default_enforcement_rules
from forgeloop.roles.loader import RoleLoader
from forgeloop.roles.registry import RoleRegistry, create_default_registry
from forgeloop.tools.builtin import create_tool_registry
from forgeloop.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: Settings
    router: ProviderRouter
    audit: AuditLogger
    roles: RoleRegistry
    tools: ToolRegistry
    permissions: PermissionManager
    factory: AgentFactory

    def executor(self, mode: str | None = None) -> Executor:
        return create_executor(self.settings, mode)

    def decomposer(self) -> TaskDecomposer:
        return TaskDecomposer(self.router.default, self.roles)

    def enforcement(self, enabled: bool = True) -> EnforcementEngine:
        return EnforcementEngine(
            self.roles, skip_enforcement=not (enabled and self.settings.enable_enforcement)
        )

    def orchestrator(
        self,
        *,
        executor_mode: str | None = None,
        max_parallel: int | None = None,
        enforce: bool = True,
    ) -> WorkflowOrchestrator:
        return WorkflowOrchestrator(
            self.factory,
            lambda: self.executor(executor_mode),
            decomposer=self.decomposer(),
            enforcement=self.enforcement(enforce),
            max_parallel=max_parallel or self.settings.max_parallel_agents,
            enable_loop_detection=self.settings.enable_loop_detection,
            audit_logger=self.audit,
        )

    async def close(self) -> None:
        await self.router.close()


def build_runtime(
    settings: Settings,
    *,
    approval_callback: ApprovalCallback | None = None,
    event_sink: EventSink | None = None,
    router: ProviderRouter | None = None,
) -> Runtime:
    audit = AuditLogger(settings.audit_log_path)

    roles = create_default_registry()
    RoleLoader(settings.roles_dir).load_into(roles)
    for rule in default_enforcement_rules(security_review=settings.enforce_security_review):
        roles.add_enforcement_rule(rule)

    tools = create_tool_registry(audit_logger=audit, output_cap=settings.tool_output_cap)
    permissions = PermissionManager(
        PermissionPolicy.from_settings(settings),
        approval_callback=approval_callback,
        audit_logger=audit,
    )
    router = router or ProviderRouter(settings)
    factory = AgentFactory(
        roles,
        tools,
        provider_resolver=router.for_model,
        permission_manager=permissions,
        event_sink=event_sink,
        event_queue_size=settings.event_queue_size,
        audit_logger=audit,
        default_budget=AgentBudget(max_iterations=settings.max_iterations),
    )
    logger.debug("Runtime ready: %d roles, %d tools", len(roles.roles()), len(tools))
    return Runtime(settings, router, audit, roles, tools, permissions, factory)
