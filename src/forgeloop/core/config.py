"""Application configuration via environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings


def _split_csv(raw: str) -> list[str]:
    return [x.strip() for x in raw.split(",") if x.strip()]


class Settings(BaseSettings):
    model_config = {
        "env_prefix": "FORGELOOP_",
        "env_file": ".env",
        "extra": "ignore",
        "populate_by_name": True,
    }

    # No prefix, so the key matches the Anthropic SDK convention
    anthropic_api_key: str = Field(default="", validation_alias="ANTHROPIC_API_KEY")

    # Provider
    default_provider: str = "claude"
    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 8192
    temperature: float = 0.2

    # Pricing in currency units per million tokens
    input_cost_per_mtok: float = 3.0
    output_cost_per_mtok: float = 15.0

    # Ollama
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "llama3.2"

    # Paths
    data_dir: Path = Path("./data")
    project_dir: Path = Path(".")

    # Logging
    log_level: str = "INFO"

    # Executors
    executor_mode: str = "native"
    command_timeout_ms: int = 120_000
    # Extra globs (comma-separated) that native writes may never touch
    denied_paths_raw: str = ""

    # Docker
    docker_socket: str = "/var/run/docker.sock"
    docker_image: str = "python:3.12-slim"
    docker_cpu_limit: float = 1.0
    docker_memory_limit_mb: int = 1024
    docker_network_enabled: bool = False
    docker_mount_project: bool = False

    # Permissions
    auto_accept: bool = True
    accept_risk_level: str = "medium"
    block_risk_level: str = "high"
    # Comma-separated command patterns: exact, prefix* or /regex/
    allowlist_raw: str = ""
    blocklist_raw: str = ""

    # Agents
    max_iterations: int = 20
    event_queue_size: int = 256
    tool_output_cap: int = 15_000

    # Orchestration
    max_parallel_agents: int = 4
    enable_enforcement: bool = True
    enforce_security_review: bool = False
    enable_loop_detection: bool = True

    @property
    def allowlist(self) -> list[str]:
        return _split_csv(self.allowlist_raw)

    @property
    def blocklist(self) -> list[str]:
        return _split_csv(self.blocklist_raw)

    @property
    def denied_paths(self) -> list[str]:
        return _split_csv(self.denied_paths_raw)

    @property
    def audit_log_path(self) -> Path:
        return self.data_dir / "logs" / "audit.jsonl"

    @property
    def app_log_path(self) -> Path:
        return self.data_dir / "logs" / "app.log"

    @property
    def roles_dir(self) -> Path:
        return self.data_dir / "roles"


_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
