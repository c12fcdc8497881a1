"""Permission manager: policy decisions with an injected approval callback."""

from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from forgeloop.core.config import Settings
from forgeloop.core.logging import AuditLogger
from forgeloop.gateway.risk import RiskAssessment, RiskAssessor, RiskLevel, operation_for

logger = logging.getLogger(__name__)


class PermissionDecision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    ASK = "ask"


@dataclass
class PermissionPolicy:
    accept_risk_level: RiskLevel = RiskLevel.MEDIUM
    # Anything strictly above this level is denied outright; None disables the hard block
    block_risk_level: RiskLevel | None = RiskLevel.HIGH
    auto_accept: bool = True
    allowlist: list[str] = field(default_factory=list)
    blocklist: list[str] = field(default_factory=list)

    @classmethod
    def from_settings(cls, settings: Settings) -> "PermissionPolicy":
        block = settings.block_risk_level.strip().lower()
        return cls(
            accept_risk_level=RiskLevel(settings.accept_risk_level.lower()),
            block_risk_level=RiskLevel(block) if block and block != "none" else None,
            auto_accept=settings.auto_accept,
            allowlist=settings.allowlist,
            blocklist=settings.blocklist,
        )


@dataclass
class PermissionRequest:
    tool_name: str
    operation: str
    arguments: dict[str, Any]
    risk: RiskAssessment
    cwd: str = ""
    role: str = ""
    agent_id: str = ""

    @property
    def risk_level(self) -> RiskLevel:
        return self.risk.level

    @property
    def description(self) -> str:
        if self.operation and self.operation != self.tool_name:
            return f"{self.tool_name}: {self.operation}"
        return self.tool_name


@dataclass
class PermissionResult:
    decision: PermissionDecision
    reason: str
    risk_level: RiskLevel

    @property
    def allowed(self) -> bool:
        return self.decision is PermissionDecision.ALLOW


ApprovalCallback = Callable[[PermissionRequest], Awaitable[bool]]


def matches_pattern(value: str, pattern: str) -> bool:
    """Exact match, ``prefix*`` match, or ``/regex/`` search."""
    if len(pattern) > 2 and pattern.startswith("/") and pattern.endswith("/"):
        try:
            return re.search(pattern[1:-1], value) is not None
        except re.error:
            logger.warning("Invalid permission regex: %s", pattern)
            return False
    if pattern.endswith("*"):
        return value.startswith(pattern[:-1])
    return value == pattern


class PermissionManager:
    """Decides whether a tool invocation may proceed.

    ``check`` is a pure policy evaluation. ``authorize`` additionally
    resolves ``ask`` through the approval callback; without one, requests
    that need approval are denied.
    """

    def __init__(
        self,
        policy: PermissionPolicy | None = None,
        *,
        assessor: RiskAssessor | None = None,
        approval_callback: ApprovalCallback | None = None,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self._policy = policy or PermissionPolicy()
        self._assessor = assessor or RiskAssessor()
        self._approve = approval_callback
        self._audit = audit_logger

    @property
    def policy(self) -> PermissionPolicy:
        return self._policy

    @property
    def assessor(self) -> RiskAssessor:
        return self._assessor

    def build_request(
        self,
        tool_name: str,
        arguments: dict[str, Any] | None = None,
        *,
        cwd: str = "",
        role: str = "",
        agent_id: str = "",
    ) -> PermissionRequest:
        arguments = arguments or {}
        return PermissionRequest(
            tool_name=tool_name,
            operation=operation_for(tool_name, arguments),
            arguments=arguments,
            risk=self._assessor.assess(tool_name, arguments),
            cwd=cwd,
            role=role,
            agent_id=agent_id,
        )

    def _matches_any(self, request: PermissionRequest, patterns: list[str]) -> str | None:
        for pattern in patterns:
            if matches_pattern(request.operation, pattern) or matches_pattern(
                request.tool_name, pattern
            ):
                return pattern
        return None

    def check(
        self, request: PermissionRequest, policy: PermissionPolicy | None = None
    ) -> PermissionResult:
        policy = policy or self._policy
        level = request.risk_level

        if pattern := self._matches_any(request, policy.blocklist):
            result = PermissionResult(PermissionDecision.DENY, f"Blocked by pattern '{pattern}'", level)
        elif pattern := self._matches_any(request, policy.allowlist):
            result = PermissionResult(PermissionDecision.ALLOW, f"Allowed by pattern '{pattern}'", level)
        elif policy.block_risk_level is not None and level.rank > policy.block_risk_level.rank:
            result = PermissionResult(
                PermissionDecision.DENY,
                f"Risk level {level.value} exceeds block level {policy.block_risk_level.value}",
                level,
            )
        elif policy.auto_accept and level.rank <= policy.accept_risk_level.rank:
            result = PermissionResult(
                PermissionDecision.ALLOW,
                f"Risk level {level.value} within accept level {policy.accept_risk_level.value}",
                level,
            )
        else:
            result = PermissionResult(
                PermissionDecision.ASK,
                f"Risk level {level.value} requires approval",
                level,
            )

        self._record(request, result)
        return result

    async def authorize(
        self, request: PermissionRequest, policy: PermissionPolicy | None = None
    ) -> PermissionResult:
        result = self.check(request, policy)
        if result.decision is not PermissionDecision.ASK:
            return result

        if self._approve is None:
            resolved = PermissionResult(
                PermissionDecision.DENY,
                f"{result.reason}; no approver available",
                result.risk_level,
            )
        else:
            try:
                approved = await self._approve(request)
            except Exception:
                logger.exception("Approval callback failed for %s", request.description)
                approved = False
            resolved = PermissionResult(
                PermissionDecision.ALLOW if approved else PermissionDecision.DENY,
                "Approved by user" if approved else "Denied by user",
                result.risk_level,
            )

        self._record(request, resolved)
        return resolved

    def _record(self, request: PermissionRequest, result: PermissionResult) -> None:
        log = logger.info if result.decision is PermissionDecision.ALLOW else logger.warning
        log(
            "Permission %s for %s [%s risk, role=%s]: %s",
            result.decision.value,
            request.description[:200],
            result.risk_level.value,
            request.role or "-",
            result.reason,
        )
        if self._audit:
            self._audit.log(
                "permission_decision",
                agent_id=request.agent_id,
                role=request.role,
                tool_name=request.tool_name,
                input_data=request.arguments,
                decision=result.decision.value,
                risk_level=result.risk_level.value,
                reason=result.reason,
                extra={"risk_score": request.risk.score, "risk_reasons": request.risk.reasons},
            )
