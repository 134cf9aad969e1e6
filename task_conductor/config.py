"""Configuration management for Task Conductor."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.task-conductor/config.yaml").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"

ExecutionModeName = Literal["sequential", "parallel", "adaptive"]


class OrchestratorConfig(BaseModel):
    """Scheduling defaults applied to every new session."""

    default_mode: ExecutionModeName = "parallel"
    max_retries: int = 0
    retry_backoff_seconds: float = 0.0
    # None = per-mode default (sequential stops, parallel/adaptive continue).
    continue_on_error: bool | None = None
    fail_on_blocked: bool = True
    concurrency_limit: int | None = None
    session_retention_seconds: float = 300.0


class WorkerConfig(BaseModel):
    """Worker types and adaptive-mode capacity."""

    types: list[str] = [
        "backend",
        "frontend",
        "architect",
        "design",
        "cli",
        "test-writer",
        "pr-merger",
        "task-dispatcher",
        "production-architect",
    ]
    default_type: str = "task-dispatcher"
    default_capacity: int = 2
    capacity: dict[str, int] = Field(default_factory=dict)


class EstimationConfig(BaseModel):
    """Duration heuristic used when a task carries no estimate (minutes)."""

    base_minutes: dict[str, float] = {
        "architect": 45.0,
        "backend": 60.0,
        "frontend": 60.0,
        "test-writer": 40.0,
        "production-architect": 50.0,
    }
    default_base_minutes: float = 30.0
    minutes_per_100_chars: float = 5.0
    max_minutes: float = 480.0


class DistributorConfig(BaseModel):
    """Normalization defaults for raw decomposition output."""

    default_priority: int = 3
    estimation: EstimationConfig = Field(default_factory=EstimationConfig)


class MessageBusConfig(BaseModel):
    """Inter-worker messaging configuration."""

    default_timeout_ms: int = 30000
    history_limit: int = 500


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for Task Conductor."""

    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    workers: WorkerConfig = Field(default_factory=WorkerConfig)
    distributor: DistributorConfig = Field(default_factory=DistributorConfig)
    message_bus: MessageBusConfig = Field(default_factory=MessageBusConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="CONDUCTOR_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls) -> "Config":
        """Load configuration from the local or home YAML file."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def capacity_for(self, worker_type: str) -> int:
        """Concurrent slots configured for a worker type."""
        return int(self.workers.capacity.get(worker_type, self.workers.default_capacity))


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
