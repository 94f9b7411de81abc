"""Main CLI application."""

from pathlib import Path
from typing import Annotated

import typer

from demon.cli.commands import config, daemon, gateway, job, logs
from demon.cli.runtime import CLIState
from demon.logging import configure_logging

app = typer.Typer(
    name="demon",
    help="demon - scheduled Claude sessions and a Telegram gateway",
    no_args_is_help=True,
)


@app.callback()
def root(
    ctx: typer.Context,
    config_path: Annotated[
        Path | None,
        typer.Option(
            "--config",
            "-c",
            help="Path to configuration file (default: $DEMON_HOME/config.toml)",
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option(
            "--verbose",
            "-v",
            help="Enable debug logging",
        ),
    ] = False,
) -> None:
    """Schedule unattended Claude sessions and relay Telegram chats."""
    ctx.obj = CLIState(config_path=config_path, verbose=verbose)
    configure_logging("DEBUG" if verbose else "WARNING", use_rich=True)


daemon.register(app)
job.register(app)
gateway.register(app)
config.register(app)
logs.register(app)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
