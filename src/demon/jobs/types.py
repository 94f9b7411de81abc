"""Job types.

Public types:
- Job: A job definition from jobs.toml
- JobRunState: Runtime bookkeeping persisted in state.json
- ResolvedJob: A job merged with config defaults, ready to execute
- JobSnapshot: An immutable copy handed out by the store
- FileDestination / ChatDestination: Parsed output destinations
"""

import copy
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from demon.config.models import JobDefaults
from demon.errors import ValidationError

JOB_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")

# Formats accepted for naive (local time) once_at values
_NAIVE_FORMATS = ("%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M")


@dataclass(frozen=True)
class FileDestination:
    """Write the result under output/<job_id>/."""

    def __str__(self) -> str:
        return "file"


@dataclass(frozen=True)
class ChatDestination:
    """Send the result to a chat via the gateway bot."""

    chat_id: int

    def __str__(self) -> str:
        return f"chat:{self.chat_id}"


OutputDestination = FileDestination | ChatDestination


def parse_destination(raw: str) -> OutputDestination:
    """Parse a destination string.

    Accepts ``file``, ``chat:<id>`` and the legacy ``telegram:<id>``.

    Raises:
        ValidationError: If the destination is not recognised.
    """
    value = raw.strip()
    if value == "file":
        return FileDestination()
    prefix, sep, rest = value.partition(":")
    if sep and prefix in ("chat", "telegram"):
        try:
            return ChatDestination(int(rest))
        except ValueError:
            pass
    raise ValidationError(f"Unknown output destination: {raw!r}")


def parse_once_at(value: str | datetime) -> datetime:
    """Parse a one-shot trigger time.

    RFC 3339 strings keep their offset. Naive values (with or without a
    ``T`` separator) are interpreted as local time.

    Raises:
        ValueError: If the value matches none of the accepted formats.
    """
    if isinstance(value, datetime):
        dt = value
    else:
        text = value.strip()
        try:
            dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            for fmt in _NAIVE_FORMATS:
                try:
                    dt = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue
            else:
                raise ValueError(f"Invalid datetime: {value!r}") from None
    if dt.tzinfo is None:
        dt = dt.astimezone()
    return dt


def _dedupe(values: list[str]) -> list[str]:
    seen: set[str] = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


class Job(BaseModel):
    """A scheduled assistant invocation."""

    id: str
    name: str = ""
    prompt: str
    schedule_type: Literal["recurring", "once"] = "recurring"
    schedule: str | None = None
    once_at: datetime | None = None
    working_dir: Path | None = None
    model: str | None = None
    fallback_model: str | None = None
    allowed_tools: list[str] = Field(default_factory=list)
    disallowed_tools: list[str] = Field(default_factory=list)
    system_prompt: str | None = None
    append_system_prompt: str | None = None
    mcp_config: Path | None = None
    max_turns: int | None = Field(default=None, gt=0)
    max_budget_usd: float | None = Field(default=None, gt=0)
    output_format: Literal["json", "text"] | None = None
    output_destinations: list[str] = Field(default_factory=lambda: ["file"])
    enabled: bool = True

    @field_validator("id")
    @classmethod
    def _check_id(cls, value: str) -> str:
        if not JOB_ID_PATTERN.match(value):
            raise ValueError(
                "id must start with a letter or digit and contain only "
                "letters, digits, '_', '.' or '-'"
            )
        return value

    @field_validator("prompt")
    @classmethod
    def _check_prompt(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("prompt must not be empty")
        return value

    @field_validator("once_at", mode="before")
    @classmethod
    def _parse_once_at(cls, value: Any) -> Any:
        if value is None or value == "":
            return None
        if isinstance(value, str | datetime):
            return parse_once_at(value)
        return value

    @field_validator("allowed_tools", "disallowed_tools")
    @classmethod
    def _dedupe_tools(cls, value: list[str]) -> list[str]:
        return _dedupe(value)

    @field_validator("output_destinations")
    @classmethod
    def _normalize_destinations(cls, value: list[str]) -> list[str]:
        try:
            return _dedupe([str(parse_destination(v)) for v in value])
        except ValidationError as e:
            raise ValueError(str(e)) from e

    @model_validator(mode="after")
    def _check_schedule(self) -> "Job":
        if not self.name:
            self.name = self.id
        if self.schedule is not None and self.once_at is not None:
            raise ValueError("schedule and once_at are mutually exclusive")
        if self.schedule_type == "recurring":
            if not self.schedule:
                raise ValueError("recurring job requires a cron schedule")
            from demon.scheduling.clock import validate_cron

            try:
                validate_cron(self.schedule)
            except ValidationError as e:
                raise ValueError(str(e)) from e
        elif self.once_at is None:
            raise ValueError("once job requires once_at")

        overlap = set(self.allowed_tools) & set(self.disallowed_tools)
        if overlap:
            raise ValueError(
                f"Tools both allowed and disallowed: {', '.join(sorted(overlap))}"
            )
        return self

    @property
    def is_recurring(self) -> bool:
        return self.schedule_type == "recurring"

    @property
    def destinations(self) -> list[OutputDestination]:
        return [parse_destination(d) for d in self.output_destinations]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Job":
        """Build a job from untrusted input.

        Raises:
            ValidationError: If the definition is invalid.
        """
        try:
            return cls.model_validate(data)
        except PydanticValidationError as e:
            job_id = data.get("id", "?") if isinstance(data, dict) else "?"
            raise ValidationError(f"Invalid job '{job_id}': {_summarize(e)}") from e

    def to_dict(self) -> dict[str, Any]:
        """Serialize to plain TOML-compatible values, dropping unset fields."""
        data = self.model_dump(exclude_none=True)
        for key in ("working_dir", "mcp_config"):
            if key in data:
                data[key] = str(data[key])
        for key in ("allowed_tools", "disallowed_tools"):
            if not data.get(key):
                data.pop(key, None)
        if data.get("name") == self.id:
            data.pop("name")
        return data

    def resolve(self, defaults: JobDefaults) -> "ResolvedJob":
        """Merge with config defaults."""
        return ResolvedJob(
            id=self.id,
            name=self.name,
            prompt=self.prompt,
            working_dir=self.working_dir,
            model=self.model or defaults.model,
            fallback_model=self.fallback_model or defaults.fallback_model,
            allowed_tools=list(self.allowed_tools),
            disallowed_tools=list(self.disallowed_tools),
            system_prompt=self.system_prompt,
            append_system_prompt=self.append_system_prompt,
            mcp_config=self.mcp_config,
            max_turns=self.max_turns or defaults.max_turns,
            max_budget_usd=self.max_budget_usd or defaults.max_budget_usd,
            output_format=self.output_format or defaults.output_format,
            destinations=self.destinations,
        )


def _summarize(error: PydanticValidationError) -> str:
    parts = []
    for item in error.errors():
        loc = ".".join(str(p) for p in item["loc"])
        msg = item["msg"].removeprefix("Value error, ")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts)


@dataclass(frozen=True)
class ResolvedJob:
    """A job with every optional field filled from defaults."""

    id: str
    name: str
    prompt: str
    working_dir: Path | None
    model: str
    fallback_model: str | None
    allowed_tools: list[str]
    disallowed_tools: list[str]
    system_prompt: str | None
    append_system_prompt: str | None
    mcp_config: Path | None
    max_turns: int
    max_budget_usd: float
    output_format: str
    destinations: list[OutputDestination]


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass
class JobRunState:
    """Per-job runtime bookkeeping owned by the store."""

    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_run_at: datetime | None = None
    last_finished_at: datetime | None = None
    last_status: str | None = None
    last_error: str | None = None
    run_count: int = 0
    consumed: bool = False
    # In-memory only
    running: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "created_at": self.created_at.isoformat(),
            "run_count": self.run_count,
            "consumed": self.consumed,
        }
        if self.last_run_at:
            data["last_run_at"] = self.last_run_at.isoformat()
        if self.last_finished_at:
            data["last_finished_at"] = self.last_finished_at.isoformat()
        if self.last_status:
            data["last_status"] = self.last_status
        if self.last_error:
            data["last_error"] = self.last_error
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobRunState":
        return cls(
            created_at=_parse_dt(data.get("created_at")) or datetime.now(UTC),
            last_run_at=_parse_dt(data.get("last_run_at")),
            last_finished_at=_parse_dt(data.get("last_finished_at")),
            last_status=data.get("last_status"),
            last_error=data.get("last_error"),
            run_count=int(data.get("run_count", 0)),
            consumed=bool(data.get("consumed", False)),
        )


@dataclass(frozen=True)
class JobSnapshot:
    """Deep copy of a job and its run state at a point in time."""

    job: Job
    state: JobRunState

    @classmethod
    def of(cls, job: Job, state: JobRunState) -> "JobSnapshot":
        return cls(job=job.model_copy(deep=True), state=copy.copy(state))
