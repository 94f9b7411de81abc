"""Console helpers shared by the CLI commands."""

from datetime import UTC, datetime
from typing import Any

import typer
from rich.console import Console
from rich.table import Table
from rich.theme import Theme

THEME = Theme(
    {
        "error": "red",
        "warning": "yellow",
        "success": "green",
        "info": "cyan",
        "muted": "dim",
        "status.success": "green",
        "status.running": "cyan",
        "status.cancelled": "yellow",
        "status.turn_limit_exceeded": "yellow",
        "status.budget_exceeded": "yellow",
        "status.timeout": "red",
        "status.process_error": "red",
    }
)

console = Console(theme=THEME)


def _emit(style: str, msg: str) -> None:
    console.print(msg, style=style)


def error(msg: str) -> None:
    _emit("error", msg)


def warning(msg: str) -> None:
    _emit("warning", msg)


def success(msg: str) -> None:
    _emit("success", msg)


def info(msg: str) -> None:
    _emit("info", msg)


def dim(msg: str) -> None:
    _emit("muted", msg)


def create_table(title: str, columns: list[tuple[str, str | dict[str, Any]]]) -> Table:
    """Build a table from ``(header, style)`` or ``(header, column kwargs)`` pairs."""
    table = Table(title=title)
    for header, spec in columns:
        kwargs = spec if isinstance(spec, dict) else {"style": spec or None}
        table.add_column(header, **kwargs)
    return table


def property_table(title: str, key_header: str = "Property") -> Table:
    """Two-column key/value table used by the detail views."""
    return create_table(title, [(key_header, "info"), ("Value", "")])


def status_markup(status: str | None, running: bool = False) -> str:
    """Colour a job's last execution status for table output."""
    if running:
        return "[status.running]running[/status.running]"
    if status is None:
        return "[muted]never run[/muted]"
    style = f"status.{status}" if f"status.{status}" in THEME.styles else "default"
    return f"[{style}]{status}[/{style}]"


def confirm_or_cancel(prompt: str, force: bool) -> bool:
    """Ask for confirmation unless ``force`` is set."""
    if force or typer.confirm(prompt):
        return True
    dim("Cancelled")
    return False


def _compact(seconds: int) -> str:
    days, rem = divmod(seconds, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)
    if days:
        return f"{days}d {hours}h" if hours else f"{days}d"
    if hours:
        return f"{hours}h {minutes}m" if minutes else f"{hours}h"
    if minutes:
        return f"{minutes}m"
    return f"{secs}s"


def format_countdown(when: str | None) -> str:
    """Render an ISO due time relative to now, e.g. ``in 2h 5m``."""
    if when is None:
        return "[muted]-[/muted]"
    remaining = int((datetime.fromisoformat(when) - datetime.now(UTC)).total_seconds())
    if remaining <= 0:
        return "[success]now[/success]"
    return f"in {_compact(remaining)}"


def format_duration(seconds: float | None) -> str:
    if seconds is None:
        return "-"
    return _compact(int(seconds))
