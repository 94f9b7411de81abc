"""Configuration models using Pydantic."""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

from demon.config.paths import DemonPaths, get_demon_home, get_system_timezone
from demon.errors import ValidationError


DEFAULT_MODEL = "sonnet"
DEFAULT_MAX_TURNS = 10
DEFAULT_MAX_BUDGET_USD = 5.0


class ConfigError(ValidationError):
    """config.toml is unreadable or fails validation."""


class PathsConfig(BaseModel):
    """Where demon keeps its state."""

    base_dir: Path | None = None

    def resolve(self) -> DemonPaths:
        if self.base_dir is not None:
            return DemonPaths(self.base_dir.expanduser())
        return DemonPaths(get_demon_home())


class GatewayConfig(BaseModel):
    """Configuration for the Telegram gateway.

    Messages from chats outside ``allowed_chat_ids`` are dropped without
    a reply. Positive ids are direct messages, negative ids are groups.
    """

    enabled: bool = False
    bot_token: SecretStr | None = None
    allowed_chat_ids: list[int] = Field(default_factory=list)
    default_model: str = DEFAULT_MODEL
    max_turns: int = Field(default=DEFAULT_MAX_TURNS, gt=0)
    max_budget_usd: float = Field(default=DEFAULT_MAX_BUDGET_USD, gt=0)
    allowed_tools: list[str] = Field(default_factory=list)
    disallowed_tools: list[str] = Field(default_factory=list)
    append_system_prompt: str | None = None
    # Seconds of inactivity before a chat starts a fresh assistant session
    session_timeout_secs: int = Field(default=3600, ge=0)
    typing_indicator: bool = True
    poll_timeout_secs: int = Field(default=30, ge=0)

    @property
    def token(self) -> str | None:
        if self.bot_token is None:
            return None
        return self.bot_token.get_secret_value() or None

    @property
    def is_available(self) -> bool:
        """Whether outbound chat delivery is possible."""
        return self.enabled and self.token is not None

    @model_validator(mode="after")
    def _check_tool_overlap(self) -> "GatewayConfig":
        overlap = set(self.allowed_tools) & set(self.disallowed_tools)
        if overlap:
            raise ValueError(
                f"Tools both allowed and disallowed: {', '.join(sorted(overlap))}"
            )
        return self


class JobDefaults(BaseModel):
    """Fallback values for job fields left unset."""

    model: str = DEFAULT_MODEL
    fallback_model: str | None = None
    max_turns: int = Field(default=DEFAULT_MAX_TURNS, gt=0)
    max_budget_usd: float = Field(default=DEFAULT_MAX_BUDGET_USD, gt=0)
    output_format: Literal["json", "text"] = "json"


class ExecutorConfig(BaseModel):
    """How the assistant CLI is spawned and supervised."""

    # argv prefix; the first element is resolved on PATH
    command: list[str] = Field(default_factory=lambda: ["claude"])
    # Hard wall-clock ceiling for any single invocation
    timeout_secs: float = Field(default=1800, gt=0)
    per_turn_secs: float = Field(default=30, gt=0)
    kill_grace_secs: float = Field(default=5, ge=0)

    @field_validator("command")
    @classmethod
    def _non_empty(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("executor.command must not be empty")
        return value

    def timeout_for(self, max_turns: int) -> float:
        """Effective timeout: scaled by turns, capped at the ceiling."""
        return min(self.timeout_secs, max_turns * self.per_turn_secs + 60)


class SchedulerConfig(BaseModel):
    """Scheduler loop configuration."""

    tick_secs: float = Field(default=1.0, gt=0)
    # IANA timezone for evaluating cron expressions
    timezone: str = Field(default_factory=get_system_timezone)
    # How long stop() waits for in-flight executions before cancelling them
    shutdown_grace_secs: float = Field(default=30, ge=0)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] | None = None
    retention_days: int = Field(default=7, gt=0)


class DemonConfig(BaseModel):
    """Root configuration model."""

    paths: PathsConfig = Field(default_factory=PathsConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    defaults: JobDefaults = Field(default_factory=JobDefaults)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def resolved_paths(self) -> DemonPaths:
        return self.paths.resolve()
