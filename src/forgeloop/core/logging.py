"""Application logging setup and the JSONL audit trail shared by agents, tools and workflows."""

from __future__ import annotations

import json
import logging
import re
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*m")
_SECRET_RE = re.compile(r"\b(sk-ant-[A-Za-z0-9_\-]{8})[A-Za-z0-9_\-]+")
_MAX_FIELD_LEN = 10_000
_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

# Optional keyword fields, mapped to the key they are written under.
_FIELDS = {
    "agent_id": "agent_id",
    "role": "role",
    "tool_name": "tool_name",
    "input_data": "input",
    "output_data": "output",
    "decision": "decision",
    "risk_level": "risk_level",
    "reason": "reason",
    "duration_ms": "duration_ms",
    "error": "error",
}


def _scrub(value: Any) -> Any:
    """Drop ANSI colour codes, mask Anthropic keys and cap long strings."""
    if isinstance(value, str):
        text = _SECRET_RE.sub(r"\1***", _ANSI_RE.sub("", value))
        if len(text) > _MAX_FIELD_LEN:
            return f"{text[:_MAX_FIELD_LEN]}... (truncated, {len(text)} total)"
        return text
    if isinstance(value, dict):
        return {k: _scrub(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_scrub(v) for v in value]
    return value


class AuditLogger:
    """Append-only JSONL record of permission decisions, tool calls and run outcomes.

    One JSON object per line. Empty optional fields are omitted so entries stay
    grep-friendly. Writes are serialized because workflow agents and the docker
    executor's worker threads share a single logger.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def log(self, event_type: str, *, extra: dict[str, Any] | None = None, **fields: Any) -> None:
        unknown = set(fields) - set(_FIELDS)
        if unknown:
            raise TypeError(f"Unknown audit fields: {', '.join(sorted(unknown))}")

        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
        }
        for name, key in _FIELDS.items():
            value = fields.get(name)
            if value:
                entry[key] = _scrub(value)
        if extra:
            entry.update(_scrub(extra))

        line = json.dumps(entry, default=str)
        with self._lock, open(self._path, "a") as f:
            f.write(line + "\n")

    def read_entries(self, event_type: str | None = None) -> list[dict[str, Any]]:
        """Return entries oldest first, optionally only those of one event type."""
        if not self._path.exists():
            return []
        entries = [json.loads(line) for line in self._path.read_text().splitlines() if line.strip()]
        if event_type is not None:
            entries = [e for e in entries if e.get("event_type") == event_type]
        return entries


def setup_logging(log_level: str = "INFO", app_log_path: Path | None = None) -> None:
    """Send logs to stderr and, when a path is given, to an application log file."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if app_log_path:
        app_log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(app_log_path))

    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format=_LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
    # httpx logs every request at INFO; keep the docker socket chatter out
    logging.getLogger("httpx").setLevel(logging.WARNING)
