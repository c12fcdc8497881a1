"""AgentFactory: build agents bound to a role's tools, budget and prompt."""

from __future__ import annotations

import logging
from collections.abc import Callable

from forgeloop.agents.agent import Agent
from forgeloop.agents.events import EventSink
from forgeloop.agents.types import AgentBudget, AgentConfig, AgentRole
from forgeloop.core.logging import AuditLogger
from forgeloop.execution.base import Executor
from forgeloop.gateway.permissions import PermissionManager
from forgeloop.llm.base import BaseLLMProvider
from forgeloop.roles.registry import RoleRegistry
from forgeloop.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

ProviderResolver = Callable[[str], BaseLLMProvider]


class AgentFactory:
    """Creates one Agent per role request.

    Pass either a fixed ``provider`` or a ``provider_resolver`` that maps a
    role's recommended model to a provider (``ProviderRouter.for_model``).
    """

    def __init__(
        self,
        registry: RoleRegistry,
        tools: ToolRegistry,
        *,
        provider: BaseLLMProvider | None = None,
        provider_resolver: ProviderResolver | None = None,
        permission_manager: PermissionManager | None = None,
        event_sink: EventSink | None = None,
        event_queue_size: int = 256,
        audit_logger: AuditLogger | None = None,
        default_budget: AgentBudget | None = None,
    ) -> None:
        if provider is None and provider_resolver is None:
            raise ValueError("AgentFactory needs a provider or a provider_resolver")
        self._registry = registry
        self._tools = tools
        self._provider = provider
        self._resolver = provider_resolver
        self._permissions = permission_manager or PermissionManager()
        self._event_sink = event_sink
        self._event_queue_size = event_queue_size
        self._audit = audit_logger
        self._default_budget = default_budget or AgentBudget()

    @property
    def registry(self) -> RoleRegistry:
        return self._registry

    def config_for(
        self,
        role: AgentRole | str,
        *,
        name: str | None = None,
        budget: AgentBudget | None = None,
        system_prompt: str | None = None,
        temperature: float | None = None,
    ) -> AgentConfig:
        role_config = self._registry.get_or_raise(role)
        return AgentConfig(
            name=name or role_config.role.value,
            role=role_config.role,
            temperature=temperature,
            system_prompt=system_prompt or role_config.system_prompt,
            budget=self._default_budget.merged(role_config.default_budget).merged(budget),
            model=role_config.recommended_model,
        )

    def tools_for(self, role: AgentRole | str) -> ToolRegistry:
        return self._tools.subset(self._registry.tools_for(role, self._tools.names()))

    def provider_for(self, model: str) -> BaseLLMProvider:
        if self._resolver is not None:
            return self._resolver(model)
        assert self._provider is not None
        return self._provider

    def create(
        self,
        role: AgentRole | str,
        executor: Executor,
        *,
        name: str | None = None,
        budget: AgentBudget | None = None,
        system_prompt: str | None = None,
        temperature: float | None = None,
        agent_id: str | None = None,
    ) -> Agent:
        config = self.config_for(
            role, name=name, budget=budget, system_prompt=system_prompt, temperature=temperature
        )
        tools = self.tools_for(config.role)
        logger.debug(
            "Creating %s agent with tools [%s]", config.role.value, ", ".join(tools.names())
        )
        return Agent(
            config,
            self.provider_for(config.model),
            tools,
            executor,
            permission_manager=self._permissions,
            event_sink=self._event_sink,
            event_queue_size=self._event_queue_size,
            audit_logger=self._audit,
            agent_id=agent_id,
        )
