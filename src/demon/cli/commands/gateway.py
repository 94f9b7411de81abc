"""Telegram gateway commands."""

import json
from typing import Annotated

import typer

from demon.cli.console import console, property_table
from demon.cli.runtime import cli_errors, configure_service_logging, get_control


def register(app: typer.Typer) -> None:
    """Register gateway subcommands."""
    gateway_app = typer.Typer(help="Run or inspect the Telegram gateway", no_args_is_help=True)
    app.add_typer(gateway_app, name="gateway")

    @gateway_app.command("start")
    def gateway_start(ctx: typer.Context) -> None:
        """Run the gateway alone in the foreground."""
        control = get_control(ctx)
        configure_service_logging(ctx, control.config)
        with cli_errors():
            try:
                control.run_gateway()
            except KeyboardInterrupt:
                pass
        console.print("[bold yellow]Gateway stopped[/bold yellow]")

    @gateway_app.command("status")
    def gateway_status(
        ctx: typer.Context,
        output_json: Annotated[bool, typer.Option("--json", help="Output as JSON")] = False,
    ) -> None:
        """Show gateway configuration and polling state."""
        control = get_control(ctx)
        with cli_errors():
            status = control.gateway_status()

        if output_json:
            console.print_json(json.dumps(status))
            return

        table = property_table("Gateway Status")
        table.add_row("Enabled", "yes" if status["enabled"] else "[dim]no[/dim]")
        table.add_row(
            "Bot token",
            "configured" if status["configured"] else "[yellow]missing[/yellow]",
        )
        table.add_row(
            "Polling",
            "[green]yes[/green]" if status["polling"] else "[dim]no[/dim]",
        )
        chats = status["allowed_chat_ids"]
        table.add_row("Allowed chats", ", ".join(str(c) for c in chats) or "[red]none[/red]")
        table.add_row("In flight", str(status["in_flight"]))
        table.add_row("Sessions", str(status["sessions"]))
        if status.get("last_poll_at"):
            table.add_row("Last poll", status["last_poll_at"][:19])
        if status.get("last_error"):
            table.add_row("Last error", f"[red]{status['last_error']}[/red]")
        console.print(table)
