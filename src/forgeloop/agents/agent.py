"""Agent: the reason/act/observe loop for one task."""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import time
import uuid
from dataclasses import replace
from typing import Any

from forgeloop.agents.events import EventPublisher, EventSink
from forgeloop.agents.types import (
    ActionType,
    AgentAction,
    AgentBudget,
    AgentConfig,
    AgentResult,
    AgentState,
    AgentStatus,
    AgentStep,
    StreamEvent,
    StreamEventType,
)
from forgeloop.core.logging import AuditLogger
from forgeloop.execution.base import Executor
from forgeloop.gateway.permissions import PermissionManager
from forgeloop.llm.base import BaseLLMProvider
from forgeloop.llm.types import ChatResponse, Message, ToolCall
from forgeloop.tools.base import ToolContext, ToolResult
from forgeloop.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

FINISH_TOOL_NAME = "finish"

FINISH_TOOL: dict[str, Any] = {
    "name": FINISH_TOOL_NAME,
    "description": (
        "Call this exactly once when the task is complete. Pass a concise "
        "summary of what was done (or the answer) as `response`."
    ),
    "input_schema": {
        "type": "object",
        "properties": {
            "response": {"type": "string", "description": "Final answer for the user"},
        },
        "required": ["response"],
    },
}

DEFAULT_PERSONA = "You are an autonomous software engineering agent."

_INSTRUCTIONS = """\
Your working directory is {cwd} ({mode} executor).
Work in small steps: think briefly, then call one tool. Read before you edit.
Tool results come back to you as observations; errors are information, not a reason to stop.
When the task is complete, call the `finish` tool with your final response."""

MAX_ITERATIONS_REASON = "Maximum iterations reached"
BUDGET_REASON = "Budget exceeded"
INTERRUPTED_REASON = "Execution interrupted"


class Agent:
    """Drives one task through provider calls and tool dispatch.

    The loop is strictly sequential. Budgets are checked only at iteration
    boundaries; ``stop()`` is honoured at the next boundary. Every tool call
    passes through the permission manager before reaching the registry.
    """

    def __init__(
        self,
        config: AgentConfig,
        provider: BaseLLMProvider,
        tools: ToolRegistry,
        executor: Executor,
        *,
        permission_manager: PermissionManager | None = None,
        event_sink: EventSink | None = None,
        event_queue_size: int = 256,
        audit_logger: AuditLogger | None = None,
        agent_id: str | None = None,
    ) -> None:
        self._config = config
        self._provider = provider
        self._tools = tools
        self._executor = executor
        self._permissions = permission_manager or PermissionManager()
        self._events = EventPublisher(event_sink, maxsize=event_queue_size)
        self._audit = audit_logger
        self._id = agent_id or f"{config.name}-{uuid.uuid4().hex[:8]}"

        self._status = AgentStatus.IDLE
        self._task = ""
        self._messages: list[Message] = []
        self._steps: list[AgentStep] = []
        self._total_tokens = 0
        self._total_cost = 0.0
        self._elapsed_before_ms = 0
        self._started = 0.0
        self._running = False
        self._stop_requested = False

    # -- inspection ----------------------------------------------------------

    @property
    def id(self) -> str:
        return self._id

    @property
    def config(self) -> AgentConfig:
        return self._config

    @property
    def status(self) -> AgentStatus:
        return self._status

    @property
    def steps(self) -> list[AgentStep]:
        return list(self._steps)

    @property
    def total_tokens(self) -> int:
        return self._total_tokens

    @property
    def total_cost(self) -> float:
        return self._total_cost

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def state(self) -> AgentState:
        return self.pause()

    def _elapsed_ms(self) -> int:
        if not self._running:
            return self._elapsed_before_ms
        return self._elapsed_before_ms + int((time.monotonic() - self._started) * 1000)

    # -- control -------------------------------------------------------------

    def update_config(self, *, budget: AgentBudget | None = None, **changes: Any) -> AgentConfig:
        """Patch the config; budget fields merge, everything else replaces."""
        if budget is not None:
            changes["budget"] = self._config.budget.merged(budget)
        self._config = replace(self._config, **changes)
        if "system_prompt" in changes and self._messages and self._messages[0]["role"] == "system":
            self._messages[0] = {"role": "system", "content": self._system_prompt()}
        return self._config

    def stop(self) -> None:
        """Request cooperative cancellation at the next iteration boundary.

        A stop issued before a run starts ends that run at its first boundary.
        """
        if self._running:
            logger.info("Stop requested for agent %s", self._id)
        self._stop_requested = True

    def pause(self) -> AgentState:
        """Snapshot the current state. Does not affect a running loop."""
        return AgentState(
            agent_id=self._id,
            status=self._status,
            task=self._task,
            steps=copy.deepcopy(self._steps),
            total_tokens=self._total_tokens,
            total_cost=self._total_cost,
            elapsed_ms=self._elapsed_ms(),
            budget=replace(self._config.budget),
            messages=copy.deepcopy(self._messages),
        )

    def restore(self, state: AgentState) -> None:
        """Load *state* without running; fresh collaborators stay bound."""
        if self._running:
            raise RuntimeError(f"Agent {self._id} is running")
        self._id = state.agent_id
        self._task = state.task
        self._steps = copy.deepcopy(state.steps)
        self._messages = copy.deepcopy(state.messages)
        self._total_tokens = state.total_tokens
        self._total_cost = state.total_cost
        self._elapsed_before_ms = state.elapsed_ms
        self._config = replace(self._config, budget=replace(state.budget))
        self._status = AgentStatus.IDLE
        if not self._messages:
            self._messages = self._initial_messages(state.task)

    async def resume(self, state: AgentState) -> AgentResult:
        """Restore *state* and continue iterating from its step count."""
        self.restore(state)
        logger.info("Resuming agent %s at step %d", self._id, len(self._steps) + 1)
        return await self._run()

    async def execute(self, task: str, context: str = "") -> AgentResult:
        if self._running:
            raise RuntimeError(f"Agent {self._id} is already running")
        self._task = task
        self._steps = []
        self._total_tokens = 0
        self._total_cost = 0.0
        self._elapsed_before_ms = 0
        self._messages = self._initial_messages(task, context)
        logger.info("Agent %s (%s) starting: %s", self._id, self._config.role.value, task[:120])
        return await self._run()

    # -- loop ----------------------------------------------------------------

    def _system_prompt(self) -> str:
        persona = self._config.system_prompt or DEFAULT_PERSONA
        return persona + "\n\n" + _INSTRUCTIONS.format(
            cwd=self._executor.cwd, mode=self._executor.mode.value
        )

    def _initial_messages(self, task: str, context: str = "") -> list[Message]:
        user = task if not context else f"{task}\n\n## Context\n{context}"
        return [
            {"role": "system", "content": self._system_prompt()},
            {"role": "user", "content": user},
        ]

    def _emit(self, event_type: StreamEventType, **data: Any) -> None:
        self._events.publish(StreamEvent(type=event_type, agent_id=self._id, data=data))

    async def _run(self) -> AgentResult:
        self._running = True
        self._started = time.monotonic()
        self._events.start()
        try:
            result = await self._loop()
        finally:
            self._elapsed_before_ms = self._elapsed_ms()
            self._running = False
            self._stop_requested = False
            await self._events.aclose()

        result.duration_ms = self._elapsed_before_ms
        logger.info(
            "Agent %s %s after %d steps (%d tokens, $%.4f)%s",
            self._id, result.status.value, len(result.steps),
            result.total_tokens, result.total_cost,
            f": {result.error}" if result.error else "",
        )
        if self._audit:
            self._audit.log(
                "agent_finished",
                agent_id=self._id,
                role=self._config.role.value,
                duration_ms=result.duration_ms,
                error=result.error,
                extra={
                    "status": result.status.value,
                    "steps": len(result.steps),
                    "total_tokens": result.total_tokens,
                    "total_cost": result.total_cost,
                },
            )
        return result

    def _budget_violation(self) -> str | None:
        budget = self._config.budget
        if budget.max_iterations is not None and len(self._steps) >= budget.max_iterations:
            return MAX_ITERATIONS_REASON
        if budget.max_tokens is not None and self._total_tokens >= budget.max_tokens:
            logger.warning("Agent %s token budget exhausted: %d >= %d", self._id, self._total_tokens, budget.max_tokens)
            return BUDGET_REASON
        if budget.max_cost is not None and self._total_cost >= budget.max_cost:
            logger.warning("Agent %s cost budget exhausted: %.6f >= %.6f", self._id, self._total_cost, budget.max_cost)
            return BUDGET_REASON
        if budget.max_duration_ms is not None and self._elapsed_ms() >= budget.max_duration_ms:
            logger.warning("Agent %s duration budget exhausted", self._id)
            return BUDGET_REASON
        return None

    def _result(self, status: AgentStatus, response: str = "", error: str = "") -> AgentResult:
        self._status = status
        if status is not AgentStatus.COMPLETED:
            self._emit(StreamEventType.ERROR, status=status.value, error=error)
        return AgentResult(
            success=status is AgentStatus.COMPLETED,
            status=status,
            response=response,
            steps=list(self._steps),
            total_tokens=self._total_tokens,
            total_cost=self._total_cost,
            error=error,
        )

    async def _loop(self) -> AgentResult:
        while True:
            if self._stop_requested:
                return self._result(AgentStatus.INTERRUPTED, error=INTERRUPTED_REASON)
            violation = self._budget_violation()
            if violation:
                return self._result(AgentStatus.FAILED, error=violation)

            step_number = len(self._steps) + 1
            self._emit(StreamEventType.STEP_START, step=step_number)
            self._status = AgentStatus.REASONING

            try:
                response = await self._reason()
            except asyncio.TimeoutError:
                return self._result(AgentStatus.FAILED, error=BUDGET_REASON)
            except Exception as e:
                logger.warning("Provider call failed for agent %s: %s", self._id, e)
                return self._result(AgentStatus.FAILED, error=str(e) or type(e).__name__)

            tokens, cost = self._account(response)
            thought = response.content
            if thought:
                self._emit(StreamEventType.THOUGHT, step=step_number, text=thought)

            call = response.tool_calls[0] if response.tool_calls else None
            if len(response.tool_calls) > 1:
                logger.debug("Agent %s: using first of %d tool calls", self._id, len(response.tool_calls))

            if call is None or call.name == FINISH_TOOL_NAME:
                final = str(call.input.get("response", "")) if call else ""
                final = final or thought
                action = AgentAction(
                    type=ActionType.FINISH,
                    tool_name=FINISH_TOOL_NAME,
                    arguments=dict(call.input) if call else {},
                    tool_call_id=call.id if call else "",
                )
                self._messages.append({"role": "assistant", "content": thought or final})
                self._steps.append(AgentStep(step_number, time.time(), thought, action, None, tokens, cost))
                self._emit(StreamEventType.ACTION, step=step_number, type=ActionType.FINISH.value)
                self._emit(StreamEventType.STEP_END, step=step_number, tokens=tokens, cost=cost)
                return self._result(AgentStatus.COMPLETED, response=final)

            self._status = AgentStatus.ACTING
            action = AgentAction(
                type=ActionType.TOOL,
                tool_name=call.name,
                arguments=dict(call.input),
                tool_call_id=call.id,
            )
            self._emit(StreamEventType.ACTION, step=step_number, tool=call.name, arguments=call.input)
            self._messages.append({"role": "assistant", "content": thought, "tool_calls": [call.to_dict()]})

            observation = await self._act(call)

            self._status = AgentStatus.OBSERVING
            self._emit(
                StreamEventType.OBSERVATION,
                step=step_number,
                tool=call.name,
                success=observation.success,
                output=observation.to_text()[:2000],
            )
            self._messages.append({
                "role": "tool",
                "tool_call_id": call.id,
                "name": call.name,
                "content": observation.to_text(),
                "is_error": not observation.success,
            })
            self._steps.append(
                AgentStep(step_number, time.time(), thought, action, observation, tokens, cost)
            )
            self._emit(StreamEventType.STEP_END, step=step_number, tokens=tokens, cost=cost)
            self._emit(
                StreamEventType.PROGRESS,
                iterations=len(self._steps),
                total_tokens=self._total_tokens,
                total_cost=self._total_cost,
                max_iterations=self._config.budget.max_iterations,
            )

    async def _reason(self) -> ChatResponse:
        tools = [*self._tools.definitions(), FINISH_TOOL]
        call = self._provider.chat(self._messages, tools, temperature=self._config.temperature)
        max_ms = self._config.budget.max_duration_ms
        if max_ms is None:
            return await call
        remaining = max(max_ms - self._elapsed_ms(), 1) / 1000
        return await asyncio.wait_for(call, timeout=remaining)

    def _account(self, response: ChatResponse) -> tuple[int, float]:
        if response.usage is not None and response.usage.total:
            input_tokens = response.usage.input_tokens
            output_tokens = response.usage.output_tokens
        else:
            input_tokens = self._provider.count_message_tokens(self._messages)
            output_tokens = self._provider.count_tokens(
                response.content + json.dumps([tc.to_dict() for tc in response.tool_calls])
            )
        cost = self._provider.calculate_cost(input_tokens, output_tokens)
        tokens = input_tokens + output_tokens
        self._total_tokens += tokens
        self._total_cost += cost
        return tokens, cost

    async def _act(self, call: ToolCall) -> ToolResult:
        if self._tools.has(call.name):
            request = self._permissions.build_request(
                call.name,
                call.input,
                cwd=self._executor.cwd,
                role=self._config.role.value,
                agent_id=self._id,
            )
            decision = await self._permissions.authorize(request)
            if not decision.allowed:
                return ToolResult.fail(
                    f"Permission denied: {decision.reason}",
                    risk_level=decision.risk_level.value,
                )
        context = ToolContext(
            executor=self._executor, agent_id=self._id, role=self._config.role.value
        )
        return await self._tools.execute(call.name, call.input, context)
