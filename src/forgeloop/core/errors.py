"""Exception hierarchy shared across forgeloop."""

from __future__ import annotations


class ForgeloopError(Exception):
    """Base class for all forgeloop errors."""


class ConfigurationError(ForgeloopError):
    pass


class ProviderError(ForgeloopError):
    """An LLM provider call failed (network, bad response, auth)."""

    def __init__(self, message: str, provider: str = "") -> None:
        super().__init__(message)
        self.provider = provider


class RateLimitError(ProviderError):
    def __init__(
        self, message: str, provider: str = "", retry_after: float | None = None
    ) -> None:
        super().__init__(message, provider)
        self.retry_after = retry_after


class ExecutionError(ForgeloopError):
    """A command or file operation could not be carried out by an executor."""


class SecurityError(ExecutionError):
    """An operation tried to leave the executor's sandbox."""


class PermissionDeniedError(ExecutionError):
    """An operation targeted a path the executor may not touch."""


class DockerError(ExecutionError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PlanValidationError(ForgeloopError):
    """A workflow plan is structurally invalid (cycle, unknown dependency)."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("Invalid workflow plan: " + "; ".join(errors))
        self.errors = errors


class RoleNotFoundError(ForgeloopError, KeyError):
    def __init__(self, role: str) -> None:
        super().__init__(f"Role not found: {role}")
        self.role = role

    def __str__(self) -> str:
        return self.args[0]
