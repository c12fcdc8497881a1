"""Risk classification of proposed tool invocations."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RANK[self]

    @classmethod
    def from_score(cls, score: int) -> "RiskLevel":
        if score >= 80:
            return cls.CRITICAL
        if score >= 60:
            return cls.HIGH
        if score >= 30:
            return cls.MEDIUM
        return cls.LOW


_RANK = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2, RiskLevel.CRITICAL: 3}


@dataclass
class RiskRule:
    pattern: re.Pattern[str]
    score: int
    reason: str

    @classmethod
    def compile(cls, pattern: str, score: int, reason: str) -> "RiskRule":
        return cls(re.compile(pattern, re.IGNORECASE), score, reason)


@dataclass
class RiskAssessment:
    level: RiskLevel
    score: int
    reasons: list[str] = field(default_factory=list)


_CRITICAL = 100
_HIGH = 75
_MEDIUM = 50

COMMAND_RULES: list[RiskRule] = [
    RiskRule.compile(r"\brm\s+(-[a-z]*\s+)*-[a-z]*r[a-z]*f?[a-z]*\s+(/|/\*|~|\$HOME)(\s|$)", _CRITICAL, "Recursive delete of root or home"),
    RiskRule.compile(r"\bmkfs(\.\w+)?\b", _CRITICAL, "Filesystem format"),
    RiskRule.compile(r"\bdd\b.*\bof=/dev/(sd|hd|nvme|xvd|disk)", _CRITICAL, "Raw write to a disk device"),
    RiskRule.compile(r"\b(shutdown|reboot|halt|poweroff)\b", _CRITICAL, "System power operation"),
    RiskRule.compile(r"\b(curl|wget)\b[^|]*\|\s*(sudo\s+)?(ba|z)?sh\b", _CRITICAL, "Piping a download into a shell"),
    RiskRule.compile(r":\(\)\s*\{\s*:\|:&\s*\};:", _CRITICAL, "Fork bomb"),
    RiskRule.compile(r">\s*/etc/(passwd|shadow|sudoers)", _CRITICAL, "Overwriting system credentials"),
    RiskRule.compile(r"\brm\s+(-[a-z]*\s+)*-[a-z]*(rf|fr)[a-z]*\b", _HIGH, "Recursive forced delete"),
    RiskRule.compile(r"\bsudo\b", _HIGH, "Privilege escalation"),
    RiskRule.compile(r"\bgit\s+push\b.*(--force\b|-f\b|--force-with-lease)", _HIGH, "Force push"),
    RiskRule.compile(r"\bgit\s+reset\s+--hard\b", _HIGH, "Hard reset discards work"),
    RiskRule.compile(r"\bgit\s+clean\s+-[a-z]*f", _HIGH, "git clean deletes untracked files"),
    RiskRule.compile(r"\bchmod\s+(-R\s+)?777\b", _HIGH, "World-writable permissions"),
    RiskRule.compile(r"\bchown\s+-R\b", _HIGH, "Recursive ownership change"),
    RiskRule.compile(r"\b(npm|yarn|pnpm)\s+publish\b|\btwine\s+upload\b", _HIGH, "Publishing a package"),
    RiskRule.compile(r"\b(npm|yarn|pnpm)\s+(install|add|i)\b|\bpip3?\s+install\b|\buv\s+(pip\s+install|add)\b", _MEDIUM, "Installing dependencies"),
    RiskRule.compile(r"\bgit\s+push\b", _MEDIUM, "Pushing to a remote"),
    RiskRule.compile(r"\bdocker\s+(run|exec)\b", _MEDIUM, "Running a container"),
    RiskRule.compile(r"\b(ssh|scp|rsync)\b", _MEDIUM, "Remote access or transfer"),
    RiskRule.compile(r"\b(curl|wget)\b", 35, "Network download"),
    RiskRule.compile(r"\beval\b", 65, "Dynamic evaluation"),
    RiskRule.compile(r"\bbase64\s+(-d|--decode)\b", 35, "Decoding obfuscated content"),
    RiskRule.compile(r"\bexport\s+PATH=", 45, "Rewriting PATH"),
    RiskRule.compile(r">\s*/dev/null|2>&1", 20, "Suppressing output"),
]

_CHAIN_RE = re.compile(r"&&|\|\||;|\|")
_LONG_COMMAND = 500
_MAX_CHAINS = 3

READ_TOOLS = frozenset({"read_file", "list_dir", "glob", "grep", "diff"})

# Base scores for non-shell tools; unknown tools default to medium
TOOL_BASE_SCORES: dict[str, int] = {
    **{name: 0 for name in READ_TOOLS},
    "write_file": 30,
    "delete_file": 60,
}

_SENSITIVE_PATH_RE = re.compile(
    r"(^|/)(\.env(\..*)?|\.git(/|$)|\.ssh/|id_(rsa|ed25519|ecdsa)|\.aws/|\.netrc)|^/etc/",
)


class RiskAssessor:
    """Scores a tool invocation from static regex tables plus heuristics."""

    def __init__(
        self,
        extra_rules: list[RiskRule] | None = None,
        tool_base_scores: dict[str, int] | None = None,
    ) -> None:
        self._rules = [*COMMAND_RULES, *(extra_rules or [])]
        self._tool_scores = {**TOOL_BASE_SCORES, **(tool_base_scores or {})}

    def assess_command(self, command: str) -> RiskAssessment:
        scores: list[int] = [0]
        reasons: list[str] = []
        for rule in self._rules:
            if rule.pattern.search(command):
                scores.append(rule.score)
                reasons.append(rule.reason)

        if len(command) > _LONG_COMMAND:
            scores.append(30)
            reasons.append("Unusually long command")
        if len(_CHAIN_RE.findall(command)) > _MAX_CHAINS:
            scores.append(40)
            reasons.append("Many chained commands")

        score = max(scores)
        return RiskAssessment(RiskLevel.from_score(score), score, reasons)

    def assess_path(self, tool_name: str, path: str) -> RiskAssessment:
        base = self._tool_scores.get(tool_name, _MEDIUM)
        reasons = [f"{tool_name} base risk"] if base else []
        if path and _SENSITIVE_PATH_RE.search(path):
            bump = 50 if tool_name in READ_TOOLS else _HIGH
            if bump > base:
                base = bump
            reasons.append(f"Sensitive path: {path}")
        return RiskAssessment(RiskLevel.from_score(base), base, reasons)

    def assess(self, tool_name: str, args: dict[str, Any] | None = None) -> RiskAssessment:
        args = args or {}
        if tool_name == "bash":
            return self.assess_command(str(args.get("command", "")))
        if tool_name == "git":
            return self.assess_command(f"git {args.get('args', '')}")
        if "path" in args or tool_name in self._tool_scores:
            return self.assess_path(tool_name, str(args.get("path", "")))
        return RiskAssessment(RiskLevel.MEDIUM, _MEDIUM, [f"Unclassified tool: {tool_name}"])


def operation_for(tool_name: str, args: dict[str, Any] | None) -> str:
    """The string permission patterns are matched against."""
    args = args or {}
    if tool_name == "bash":
        return str(args.get("command", ""))
    if tool_name == "git":
        return f"git {args.get('args', '')}".strip()
    if "path" in args:
        return str(args["path"])
    return tool_name
