"""LoopDetector: bound cyclic hand-offs between agent roles."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from forgeloop.agents.types import AgentRole
from forgeloop.roles.registry import RoleRegistry
from forgeloop.roles.types import LoopPattern

logger = logging.getLogger(__name__)


@dataclass
class LoopLimits:
    max_total_agents: int = 50
    max_loop_iterations: int = 10


@dataclass
class LoopCheck:
    allowed: bool
    pattern: LoopPattern | None = None
    iterations: int = 0
    reason: str = ""


@dataclass
class LoopDetector:
    """Watches the role hand-off sequence of one workflow.

    A registered pattern "repeats" when the tail of the sequence is that
    pattern's role list one or more times back to back. A hand-off that
    would push the repetition count past the pattern's cap is refused.
    """

    registry: RoleRegistry
    limits: LoopLimits = field(default_factory=LoopLimits)
    history: list[AgentRole] = field(default_factory=list)

    def record(self, role: AgentRole) -> None:
        self.history.append(role)

    def reset(self) -> None:
        self.history.clear()

    def _tail_repetitions(self, sequence: Sequence[AgentRole], pattern: LoopPattern) -> int:
        n = len(pattern.roles)
        end = len(sequence)
        reps = 0
        while end - n >= 0 and self.registry.matches_loop_pattern(sequence[end - n:end]) is pattern:
            reps += 1
            end -= n
        return reps

    def check(self, next_role: AgentRole) -> LoopCheck:
        """Decide whether *next_role* may be started given the history so far."""
        sequence = [*self.history, next_role]
        if len(sequence) > self.limits.max_total_agents:
            return LoopCheck(
                allowed=False,
                reason=f"Maximum total agents ({self.limits.max_total_agents}) reached",
            )

        for pattern in self.registry.loop_patterns():
            reps = self._tail_repetitions(sequence, pattern)
            if not reps:
                continue
            cap = min(pattern.max_iterations, self.limits.max_loop_iterations)
            if reps > cap:
                logger.warning(
                    "Loop pattern %s exceeded %d iterations", pattern.name, cap
                )
                return LoopCheck(
                    allowed=False,
                    pattern=pattern,
                    iterations=reps,
                    reason=f"Loop pattern '{pattern.name}' exceeded {cap} iterations",
                )
            logger.debug("Loop pattern %s at iteration %d", pattern.name, reps)
            return LoopCheck(allowed=True, pattern=pattern, iterations=reps)

        return LoopCheck(allowed=True)

    def stats(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for role in self.history:
            counts[role.value] = counts.get(role.value, 0) + 1
        return {"total_agents": len(self.history), **counts}
