"""Logging setup shared by the CLI, the daemon and the gateway.

Call ``configure_logging()`` once per process, before anything logs.

Conventions:
- messages are snake_case event names (``job_dispatched``); details go in
  ``extra={"job.id": ...}``
- INFO for dispatch, completion and control requests; WARNING for limit
  breaches and network retries; ERROR when a job or destination fails
- subprocess chatter and poll results stay at DEBUG

With ``log_to_file`` every record is also appended to
``<DEMON_HOME>/logs/YYYY-MM-DD.jsonl``, which is what ``demon logs`` reads.
Both the console and the JSONL output pass through ``SecretRedactor`` so
bot tokens and API keys never reach disk.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, TextIO

DEFAULT_LOG_RETENTION_DAYS = 7
LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

# Group 1 is the secret; the rest of the match is kept as context
DEFAULT_REDACT_PATTERNS: list[str] = [
    r"\b(\d{8,}:[A-Za-z0-9_-]{30,})\b",  # telegram bot token
    r"\b(sk-ant-[A-Za-z0-9_-]{20,})\b",
    r"\b(sk-[A-Za-z0-9_-]{20,})\b",
    r"\b[A-Z0-9_]*(?:KEY|TOKEN|SECRET|PASSWORD)\s*[=:]\s*([^\s\"']{8,})",
    r"\bBearer\s+([A-Za-z0-9._\-+=]{20,})",
]

NOISY_LOGGERS = ("aiogram", "aiogram.event", "aiogram.dispatcher", "aiohttp", "asyncio")

_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime", "component"}


def _mask(secret: str) -> str:
    if len(secret) < 12:
        return "***"
    return f"{secret[:4]}...{secret[-4:]}"


@dataclass
class SecretRedactor:
    """Masks secrets in free text, keeping a short prefix and suffix."""

    patterns: list[re.Pattern[str]] = field(default_factory=list)
    enabled: bool = True

    def __post_init__(self) -> None:
        if not self.patterns:
            self.patterns = [re.compile(p, re.IGNORECASE) for p in DEFAULT_REDACT_PATTERNS]

    def _replace(self, match: re.Match[str]) -> str:
        whole = match.group(0)
        secret = match.group(1)
        if "..." in secret:
            return whole
        start, end = match.span(1)
        offset = match.start(0)
        return whole[: start - offset] + _mask(secret) + whole[end - offset :]

    def redact(self, text: str) -> str:
        if not self.enabled or not text:
            return text
        for pattern in self.patterns:
            text = pattern.sub(self._replace, text)
        return text


_redactor = SecretRedactor()


def redact(text: str) -> str:
    return _redactor.redact(text)


def prune_old_logs(
    logs_dir: Path,
    retention_days: int = DEFAULT_LOG_RETENTION_DAYS,
    suffix: str = ".jsonl",
) -> int:
    """Delete ``*.jsonl`` files not modified within ``retention_days``.

    Returns:
        Number of files deleted.
    """
    if not logs_dir.is_dir():
        return 0
    cutoff = (datetime.now(UTC) - timedelta(days=retention_days)).timestamp()
    deleted = 0
    for path in logs_dir.glob(f"*{suffix}"):
        try:
            if path.is_file() and path.stat().st_mtime < cutoff:
                path.unlink()
                deleted += 1
        except OSError as e:
            logging.getLogger(__name__).debug(
                "log_prune_failed", extra={"file": path.name, "error.message": str(e)}
            )
    return deleted


def component_of(logger_name: str) -> str:
    """``demon.scheduling.loop`` -> ``scheduling``."""
    head, _, rest = logger_name.partition(".")
    if head == "demon" and rest:
        return rest.partition(".")[0]
    return head


def extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in vars(record).items() if k not in _STANDARD_ATTRS}


def record_to_entry(record: logging.LogRecord, formatter: logging.Formatter) -> dict[str, Any]:
    """Build the redacted JSONL entry for one record."""
    entry: dict[str, Any] = {
        "ts": datetime.fromtimestamp(record.created, UTC).isoformat(),
        "level": record.levelname,
        "component": component_of(record.name),
        "logger": record.name,
        "message": redact(record.getMessage()),
    }
    if record.exc_info:
        entry["exception"] = redact(formatter.formatException(record.exc_info))
    extra = extra_fields(record)
    if extra:
        encoded = redact(json.dumps(extra, default=str))
        try:
            entry["extra"] = json.loads(encoded)
        except json.JSONDecodeError:
            entry["extra"] = {"_redacted_raw": encoded}
    return entry


class JSONLHandler(logging.Handler):
    """Appends one JSON object per record to a per-day file in ``logs_dir``.

    The file is reopened when the UTC date changes, and files older than
    ``retention_days`` are pruned at each rollover.
    """

    def __init__(self, logs_dir: Path, retention_days: int = DEFAULT_LOG_RETENTION_DAYS):
        super().__init__()
        self.logs_dir = logs_dir
        self.retention_days = retention_days
        self._day: str | None = None
        self._stream: TextIO | None = None
        logs_dir.mkdir(parents=True, exist_ok=True)

    def _stream_for(self, day: str) -> TextIO:
        if self._stream is None or day != self._day:
            if self._stream is not None:
                self._stream.close()
            self._stream = (self.logs_dir / f"{day}.jsonl").open("a", encoding="utf-8")
            self._day = day
            prune_old_logs(self.logs_dir, self.retention_days)
        return self._stream

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = record_to_entry(record, self.formatter or logging.Formatter())
            stream = self._stream_for(datetime.now(UTC).strftime("%Y-%m-%d"))
            stream.write(json.dumps(entry) + "\n")
            stream.flush()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        self.acquire()
        try:
            if self._stream is not None:
                self._stream.close()
                self._stream = None
        finally:
            self.release()
        super().close()


class ComponentFormatter(logging.Formatter):
    """Console formatter: adds ``%(component)s`` and trails extras dimmed."""

    def format(self, record: logging.LogRecord) -> str:
        record.component = component_of(record.name)
        text = super().format(record)
        extra = extra_fields(record)
        if extra:
            text += " [dim]" + " ".join(f"{k}={v}" for k, v in extra.items()) + "[/dim]"
        return redact(text)


def _resolve_level(level: str | None) -> int:
    name = (level or os.environ.get("DEMON_LOG_LEVEL") or "INFO").upper()
    return getattr(logging, name if name in LEVELS else "INFO")


def configure_logging(
    level: str | None = None,
    use_rich: bool = False,
    log_to_file: bool = False,
    logs_dir: Path | None = None,
    retention_days: int = DEFAULT_LOG_RETENTION_DAYS,
) -> None:
    """Install the root handlers for this process.

    Args:
        level: DEBUG, INFO, WARNING or ERROR. Falls back to
            ``DEMON_LOG_LEVEL``, then INFO.
        use_rich: Log to the console through rich instead of plain text.
        log_to_file: Also write JSONL files (used by the daemon).
        logs_dir: Where JSONL files go; defaults to ``<DEMON_HOME>/logs``.
        retention_days: How many days of JSONL files to keep.
    """
    log_level = _resolve_level(level)

    if use_rich:
        from rich.logging import RichHandler

        console: logging.Handler = RichHandler(show_path=False, markup=True)
        console.setFormatter(ComponentFormatter("%(component)s | %(message)s"))
    else:
        console = logging.StreamHandler()
        console.setFormatter(
            logging.Formatter(
                "%(asctime)s %(levelname)-7s %(name)s: %(message)s", datefmt="%H:%M:%S"
            )
        )
    handlers = [console]

    if log_to_file:
        if logs_dir is None:
            from demon.config.paths import DemonPaths

            logs_dir = DemonPaths.default().logs_dir
        handlers.append(JSONLHandler(logs_dir, retention_days=retention_days))

    logging.basicConfig(level=log_level, handlers=handlers, force=True)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
