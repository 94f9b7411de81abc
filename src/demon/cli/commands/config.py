"""Configuration management commands."""

from typing import Annotated

import typer
from rich.syntax import Syntax

from demon.cli.console import console, dim, error, success
from demon.cli.runtime import get_state
from demon.config import ConfigError, ConfigWriter, get_config_path


def register(app: typer.Typer) -> None:
    """Register config subcommands."""
    config_app = typer.Typer(help="Manage configuration", no_args_is_help=True)
    app.add_typer(config_app, name="config")

    def _path(ctx: typer.Context):
        state = get_state(ctx)
        return state.config_path.expanduser() if state.config_path else get_config_path()

    @config_app.command("show")
    def config_show(ctx: typer.Context) -> None:
        """Print the config file."""
        path = _path(ctx)
        if not path.exists():
            error(f"Config file not found: {path}")
            console.print("Run 'demon config init' to create one")
            raise typer.Exit(1)

        syntax = Syntax(path.read_text(), "toml", theme="monokai", line_numbers=True)
        console.print(f"[bold]Config file: {path}[/bold]\n")
        console.print(syntax)

    @config_app.command("init")
    def config_init(
        ctx: typer.Context,
        force: Annotated[
            bool, typer.Option("--force", "-f", help="Overwrite an existing file")
        ] = False,
    ) -> None:
        """Write a default config file."""
        path = _path(ctx)
        if ConfigWriter(path).init(force=force):
            success(f"Wrote {path}")
        else:
            error(f"Config file already exists: {path}")
            dim("Use --force to overwrite")
            raise typer.Exit(1)

    @config_app.command("set")
    def config_set(
        ctx: typer.Context,
        key: Annotated[str, typer.Argument(help="Dotted key, e.g. gateway.max_turns")],
        value: Annotated[str, typer.Argument(help="TOML value; bare words are strings")],
    ) -> None:
        """Set a config value, preserving comments and layout."""
        path = _path(ctx)
        try:
            stored = ConfigWriter(path).set(key, value)
        except ConfigError as e:
            error(str(e))
            raise typer.Exit(1) from None
        shown = "********" if key.endswith("token") else repr(stored)
        success(f"{key} = {shown}")

    @config_app.command("get")
    def config_get(
        ctx: typer.Context,
        key: Annotated[str, typer.Argument(help="Dotted key")],
    ) -> None:
        """Print a config value."""
        value = ConfigWriter(_path(ctx)).get(key)
        if value is None:
            dim(f"{key} is not set")
            raise typer.Exit(1)
        console.print(repr(value))
