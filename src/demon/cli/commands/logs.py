"""``demon logs``: read the daemon's JSONL log files."""

import json
import re
import time
from collections import deque
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.text import Text

from demon.cli.console import console, dim, error
from demon.cli.runtime import load_cli_config

LEVELS = {"DEBUG": 10, "INFO": 20, "WARNING": 30, "WARN": 30, "ERROR": 40, "CRITICAL": 50}

LEVEL_STYLES = {
    "DEBUG": "dim",
    "INFO": "cyan",
    "WARNING": "yellow",
    "ERROR": "bold red",
    "CRITICAL": "bold red",
}

_RELATIVE = re.compile(r"^(\d+)([smhdw])$")
_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days", "w": "weeks"}


def parse_since(value: str) -> datetime:
    """Parse ``30m``/``2h``/``1d`` relative to now, or an ISO timestamp."""
    if match := _RELATIVE.match(value):
        delta = timedelta(**{_UNITS[match.group(2)]: int(match.group(1))})
        return datetime.now(UTC) - delta
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as e:
        raise ValueError(f"Invalid time: {value}") from e
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def parse_level(value: str) -> int:
    try:
        return LEVELS[value.upper()]
    except KeyError:
        raise ValueError(f"Invalid level: {value}") from None


@dataclass
class LogFilter:
    since: datetime | None = None
    min_level: int | None = None
    component: str | None = None
    job: str | None = None
    search: str | None = None

    def matches(self, entry: dict[str, Any]) -> bool:
        extra = entry.get("extra") or {}
        if self.since is not None and _entry_time(entry) < self.since:
            return False
        if self.min_level is not None and LEVELS.get(entry.get("level", ""), 0) < self.min_level:
            return False
        if self.component and entry.get("component") != self.component:
            return False
        if self.job and extra.get("job.id") != self.job:
            return False
        if self.search:
            haystack = f"{entry.get('message', '')} {json.dumps(extra)}".lower()
            return self.search.lower() in haystack
        return True


def _entry_time(entry: dict[str, Any]) -> datetime:
    try:
        stamp = datetime.fromisoformat(entry.get("ts", ""))
    except ValueError:
        return datetime.min.replace(tzinfo=UTC)
    return stamp if stamp.tzinfo else stamp.replace(tzinfo=UTC)


def read_entries(path: Path) -> Iterator[dict[str, Any]]:
    """Yield decoded entries, skipping blank and malformed lines."""
    with path.open(encoding="utf-8") as f:
        for line in f:
            if not line.strip():
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError:
                continue


def query_logs(logs_dir: Path, log_filter: LogFilter, tail: int = 50) -> list[dict[str, Any]]:
    """Return the newest ``tail`` matching entries in chronological order."""
    files = sorted(logs_dir.glob("*.jsonl")) if logs_dir.is_dir() else []
    if log_filter.since is not None:
        first_day = log_filter.since.strftime("%Y-%m-%d")
        files = [f for f in files if f.stem >= first_day]

    window: deque[dict[str, Any]] = deque(maxlen=tail or None)
    for path in files:
        window.extend(e for e in read_entries(path) if log_filter.matches(e))
    return list(window)


def render_entry(entry: dict[str, Any]) -> Text:
    level = entry.get("level", "INFO")
    stamp = _entry_time(entry)
    line = Text()
    line.append(stamp.strftime("%m-%d %H:%M:%S") if stamp.year > 1 else "-", style="dim")
    line.append(f" {level[:4]:<4} ", style=LEVEL_STYLES.get(level, ""))
    line.append(f"{entry.get('component', ''):<11}", style="blue")
    line.append(f" {entry.get('message', '')}")
    fields = [
        f"{k}={str(v)[:120]}" for k, v in (entry.get("extra") or {}).items() if v is not None
    ]
    if fields:
        line.append("  " + " ".join(fields), style="dim")
    return line


def show(entry: dict[str, Any], raw: bool) -> None:
    if raw:
        console.print(json.dumps(entry), markup=False, highlight=False, soft_wrap=True)
        return
    console.print(render_entry(entry))
    for exc_line in (entry.get("exception") or "").splitlines():
        console.print(Text(f"    {exc_line}", style="dim"))


def follow_logs(logs_dir: Path, log_filter: LogFilter, raw: bool) -> None:
    """Stream new entries from today's file, rolling over at UTC midnight."""
    path: Path | None = None
    handle = None
    try:
        while True:
            today = logs_dir / f"{datetime.now(UTC):%Y-%m-%d}.jsonl"
            if today != path and today.exists():
                if handle is not None:
                    handle.close()
                path, handle = today, today.open(encoding="utf-8")
                handle.seek(0, 2)
            if handle is not None:
                for line in handle:
                    try:
                        entry = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    if log_filter.matches(entry):
                        show(entry, raw)
            time.sleep(0.5)
    except KeyboardInterrupt:
        pass
    finally:
        if handle is not None:
            handle.close()


def register(app: typer.Typer) -> None:
    @app.command()
    def logs(
        ctx: typer.Context,
        query: Annotated[
            list[str] | None,
            typer.Argument(help="Text to look for in messages and fields"),
        ] = None,
        tail: Annotated[int, typer.Option("--tail", "-n", help="Entries to show")] = 50,
        level: Annotated[
            str | None,
            typer.Option("--level", "-l", help="Minimum level: DEBUG, INFO, WARNING, ERROR"),
        ] = None,
        since: Annotated[
            str | None,
            typer.Option("--since", "-s", help="30m, 2h, 1d or an ISO timestamp"),
        ] = None,
        component: Annotated[
            str | None,
            typer.Option("--component", "-c", help="scheduling, gateway, executor, ..."),
        ] = None,
        job: Annotated[
            str | None, typer.Option("--job", "-j", help="Only entries for this job id")
        ] = None,
        raw: Annotated[bool, typer.Option("--raw", help="Print raw JSONL")] = False,
        follow: Annotated[bool, typer.Option("--follow", "-f", help="Keep printing")] = False,
    ) -> None:
        """Show daemon log entries from $DEMON_HOME/logs.

        Examples:
            demon logs --level error
            demon logs --job daily-plan --since 1d
            demon logs -f
        """
        logs_dir = load_cli_config(ctx).resolved_paths.logs_dir
        try:
            log_filter = LogFilter(
                since=parse_since(since) if since else None,
                min_level=parse_level(level) if level else None,
                component=component,
                job=job,
                search=" ".join(query) if query else None,
            )
        except ValueError as e:
            error(str(e))
            raise typer.Exit(1) from None

        if follow:
            follow_logs(logs_dir, log_filter, raw)
            return

        entries = query_logs(logs_dir, log_filter, tail=tail)
        if not entries:
            dim("No log entries found.")
            return
        for entry in entries:
            show(entry, raw)
