"""Daemon lifecycle commands: start, stop, status."""

import json
from datetime import UTC, datetime
from typing import Annotated, Any

import typer

from demon.cli.console import (
    console,
    create_table,
    dim,
    error,
    format_countdown,
    format_duration,
    property_table,
    status_markup,
    success,
)
from demon.cli.runtime import (
    cli_errors,
    configure_service_logging,
    get_control,
)


def _schedule_label(job: dict[str, Any]) -> str:
    if job.get("schedule_type") == "once":
        return f"once {str(job.get('once_at', '?'))[:19]}"
    return job.get("schedule") or "?"


def print_jobs_table(jobs: list[dict[str, Any]], title: str = "Jobs") -> None:
    table = create_table(
        title,
        [
            ("ID", "info"),
            ("Schedule", ""),
            ("Enabled", ""),
            ("Last Run", "muted"),
            ("Status", ""),
            ("Next", ""),
            ("Error", {"style": "red", "overflow": "fold", "max_width": 40}),
        ],
    )
    for entry in jobs:
        job = entry["job"]
        state = entry["state"]
        last_run = state.get("last_run_at")
        table.add_row(
            job["id"],
            _schedule_label(job),
            "yes" if job.get("enabled", True) else "[dim]no[/dim]",
            last_run[:19] if last_run else "-",
            status_markup(state.get("last_status"), bool(state.get("running"))),
            format_countdown(entry.get("next_due")) if job.get("enabled", True) else "-",
            (state.get("last_error") or "")[:120],
        )
    console.print(table)


def register(app: typer.Typer) -> None:
    """Register daemon lifecycle commands."""

    @app.command()
    def start(
        ctx: typer.Context,
        foreground: Annotated[
            bool,
            typer.Option(
                "--foreground",
                "-f",
                help="Run in foreground (don't daemonize)",
            ),
        ] = False,
        with_gateway: Annotated[
            bool,
            typer.Option(
                "--gateway",
                "-g",
                help="Also run the Telegram gateway",
            ),
        ] = False,
    ) -> None:
        """Start the demon daemon."""
        control = get_control(ctx)
        if foreground:
            configure_service_logging(ctx, control.config)
            with cli_errors():
                try:
                    control.start(with_gateway=with_gateway, foreground=True)
                except KeyboardInterrupt:
                    pass
            console.print("[bold yellow]Demon stopped[/bold yellow]")
            return

        with cli_errors():
            ok, message = control.start(with_gateway=with_gateway)
        if ok:
            success(message)
        else:
            error(message)
            raise typer.Exit(1)

    @app.command()
    def stop(
        ctx: typer.Context,
        timeout: Annotated[
            float | None,
            typer.Option(
                "--timeout",
                "-t",
                help="Seconds to wait for in-flight jobs before giving up",
            ),
        ] = None,
    ) -> None:
        """Stop the demon daemon."""
        control = get_control(ctx)
        ok, message = control.stop(timeout)
        if ok:
            success(message)
        else:
            error(message)
            raise typer.Exit(1)

    @app.command()
    def status(
        ctx: typer.Context,
        output_json: Annotated[
            bool,
            typer.Option(
                "--json",
                help="Output as JSON",
            ),
        ] = False,
    ) -> None:
        """Show daemon state and each job's last outcome."""
        control = get_control(ctx)
        with cli_errors():
            data = control.status()

        if output_json:
            console.print_json(json.dumps(data))
            return

        daemon = data["daemon"]
        table = property_table("Demon Status")
        if daemon["running"]:
            table.add_row("State", "[green]running[/green]")
            table.add_row("PID", str(daemon["pid"]))
            if daemon.get("started_at"):
                started = datetime.fromisoformat(daemon["started_at"])
                uptime = (datetime.now(UTC) - started).total_seconds()
                table.add_row("Uptime", format_duration(uptime))
        elif daemon["stale"]:
            table.add_row("State", "[red]stale PID file[/red]")
            table.add_row("PID", str(daemon["pid"]))
        else:
            table.add_row("State", "[yellow]stopped[/yellow]")

        details = data.get("details") or {}
        if details:
            table.add_row("In flight", str(details.get("in_flight", 0)))
            table.add_row("Timezone", str(details.get("timezone", "")))
            if "memory_mb" in details:
                table.add_row("Memory", f"{details['memory_mb']:.1f} MB")
            gateway = details.get("gateway")
            if gateway is None:
                table.add_row("Gateway", "[dim]not running[/dim]")
            else:
                state = "[green]polling[/green]" if gateway["polling"] else "[red]idle[/red]"
                table.add_row("Gateway", state)
        console.print(table)

        jobs = data.get("jobs", [])
        if not jobs:
            dim("No jobs defined")
            return
        console.print()
        print_jobs_table(jobs)
