"""Shared runtime helpers for CLI entrypoints."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import typer

from demon.cli.console import error
from demon.config import ConfigError, DemonConfig, load_config
from demon.daemon.control import DaemonControl
from demon.errors import ControlError, DemonError
from demon.logging import configure_logging


@dataclass(slots=True)
class CLIState:
    """Global options shared by every command."""

    config_path: Path | None = None
    verbose: bool = False


def get_state(ctx: typer.Context) -> CLIState:
    state = ctx.find_root().obj
    if isinstance(state, CLIState):
        return state
    return CLIState()


def load_cli_config(ctx: typer.Context) -> DemonConfig:
    """Load config for a command, exiting with a message if it is invalid."""
    state = get_state(ctx)
    try:
        return load_config(state.config_path)
    except FileNotFoundError as e:
        error(str(e))
        raise typer.Exit(1) from None
    except ConfigError as e:
        error(str(e))
        raise typer.Exit(1) from None


def get_control(ctx: typer.Context) -> DaemonControl:
    return DaemonControl(load_cli_config(ctx), get_state(ctx).config_path)


def configure_service_logging(ctx: typer.Context, config: DemonConfig) -> None:
    """Logging for long-running foreground processes: console plus JSONL files."""
    level = "DEBUG" if get_state(ctx).verbose else config.logging.level
    configure_logging(
        level,
        use_rich=True,
        log_to_file=True,
        logs_dir=config.resolved_paths.logs_dir,
        retention_days=config.logging.retention_days,
    )


@contextmanager
def cli_errors() -> Iterator[None]:
    """Turn domain and connection errors into a red message and exit code 1."""
    try:
        yield
    except ControlError as e:
        error(f"Daemon error: {e}")
        raise typer.Exit(1) from None
    except DemonError as e:
        error(str(e))
        raise typer.Exit(1) from None
    except ConnectionError as e:
        error(f"Cannot reach daemon: {e}")
        raise typer.Exit(1) from None
