"""Executor request and result types."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import Any


class ExecutionStatus(StrEnum):
    """Terminal outcome of one assistant invocation."""

    SUCCESS = "success"
    BUDGET_EXCEEDED = "budget_exceeded"
    TURN_LIMIT_EXCEEDED = "turn_limit_exceeded"
    TIMEOUT = "timeout"
    PROCESS_ERROR = "process_error"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class InvocationRequest:
    """Everything needed to spawn one assistant session.

    ``ref`` identifies the caller: a job id, or ``chat:<id>`` for gateway
    messages.
    """

    ref: str
    prompt: str
    model: str
    max_turns: int
    max_budget_usd: float
    fallback_model: str | None = None
    allowed_tools: tuple[str, ...] = ()
    disallowed_tools: tuple[str, ...] = ()
    system_prompt: str | None = None
    append_system_prompt: str | None = None
    mcp_config: Path | None = None
    working_dir: Path | None = None
    resume_session_id: str | None = None
    # Keep the session on disk so a later request can resume it
    persist_session: bool = False


@dataclass(frozen=True)
class ExecutionResult:
    """Immutable record of a finished invocation."""

    ref: str
    started_at: datetime
    ended_at: datetime
    status: ExecutionStatus
    output_text: str = ""
    cost_usd: float | None = None
    turns_used: int | None = None
    session_id: str | None = None
    # Final ``result`` event from the stream, if one arrived
    raw_result: dict[str, Any] | None = field(default=None, compare=False)

    @property
    def ok(self) -> bool:
        return self.status is ExecutionStatus.SUCCESS

    @property
    def duration_secs(self) -> float:
        return (self.ended_at - self.started_at).total_seconds()

    def error_summary(self, limit: int = 500) -> str:
        """Short human-readable description of a failure."""
        if self.ok:
            return ""
        detail = self.output_text.strip().splitlines()
        first = detail[0] if detail else ""
        summary = f"{self.status.value}: {first}" if first else self.status.value
        return summary[:limit]
