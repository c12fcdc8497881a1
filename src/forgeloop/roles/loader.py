"""RoleLoader: apply YAML role overrides from data/roles/."""

from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from typing import Any

import yaml

from forgeloop.agents.types import AgentBudget, AgentRole
from forgeloop.roles.registry import RoleRegistry
from forgeloop.roles.types import RoleConfig, ToolAccessLevel

logger = logging.getLogger(__name__)


class RoleLoader:
    """Loads role overrides from YAML files into a registry.

    Roles form a closed set, so a file may only refine an existing role:
    its model hint, prompt, tool lists, access level or budget. The file
    stem names the role unless a ``role`` key is given.
    """

    def __init__(self, roles_dir: Path) -> None:
        self._roles_dir = roles_dir

    def load_into(self, registry: RoleRegistry) -> list[AgentRole]:
        """Apply every .yaml/.yml file; returns the roles that were updated."""
        if not self._roles_dir.exists():
            logger.debug("No roles directory at %s", self._roles_dir)
            return []

        updated: list[AgentRole] = []
        for pattern in ("*.yaml", "*.yml"):
            for path in sorted(self._roles_dir.glob(pattern)):
                try:
                    config = self._load_file(path, registry)
                except Exception:
                    logger.exception("Failed to load role definition: %s", path)
                    continue
                if config is not None:
                    registry.register(config)
                    updated.append(config.role)

        logger.info("Applied %d role overrides", len(updated))
        return updated

    def _load_file(self, path: Path, registry: RoleRegistry) -> RoleConfig | None:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            logger.warning("Invalid role file (not a mapping): %s", path)
            return None

        name = data.get("role", path.stem)
        try:
            role = AgentRole(name)
        except ValueError:
            logger.warning("Unknown role %r in %s", name, path)
            return None

        base = registry.get_or_raise(role)
        changes: dict[str, Any] = {}
        for key in ("description", "recommended_model", "system_prompt"):
            if key in data:
                changes[key] = str(data[key])
        if "alternative_models" in data:
            changes["alternative_models"] = list(data["alternative_models"] or [])
        if "tool_access_level" in data:
            changes["tool_access_level"] = ToolAccessLevel(data["tool_access_level"])
        if "allowed_tools" in data:
            allowed = data["allowed_tools"]
            changes["allowed_tools"] = list(allowed) if allowed is not None else None
        if "forbidden_tools" in data:
            changes["forbidden_tools"] = list(data["forbidden_tools"] or [])
        if isinstance(data.get("budget"), dict):
            changes["default_budget"] = base.default_budget.merged(
                AgentBudget.from_dict(data["budget"])
            )

        logger.debug("Loaded role override: %s (%s)", role.value, ", ".join(changes) or "no changes")
        return replace(base, **changes)
