"""Job management commands."""

import json
import tomllib
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.markdown import Markdown

from demon.cli.commands.daemon import print_jobs_table
from demon.cli.console import (
    confirm_or_cancel,
    console,
    dim,
    error,
    info,
    property_table,
    success,
    warning,
)
from demon.cli.runtime import cli_errors, get_control


def read_job_file(path: Path) -> list[dict[str, Any]]:
    """Read job definitions from a TOML file.

    Accepts either ``[[jobs]]`` tables (the jobs.toml layout) or a single job
    as top-level keys.
    """
    try:
        with path.open("rb") as f:
            data = tomllib.load(f)
    except FileNotFoundError:
        error(f"File not found: {path}")
        raise typer.Exit(1) from None
    except tomllib.TOMLDecodeError as e:
        error(f"Failed to parse {path}: {e}")
        raise typer.Exit(1) from None

    if "jobs" in data:
        jobs = data["jobs"]
        if not isinstance(jobs, list):
            error(f"{path}: 'jobs' must be an array of tables")
            raise typer.Exit(1)
        return jobs
    return [data]


def _job_from_options(
    job_id: str | None,
    prompt: str | None,
    cron: str | None,
    at: str | None,
    **fields: Any,
) -> dict[str, Any]:
    if not job_id or not prompt:
        error("--id and --prompt are required when no file is given")
        raise typer.Exit(1)
    if bool(cron) == bool(at):
        error("Exactly one of --cron or --at is required")
        raise typer.Exit(1)

    data: dict[str, Any] = {"id": job_id, "prompt": prompt}
    if cron:
        data.update(schedule_type="recurring", schedule=cron)
    else:
        data.update(schedule_type="once", once_at=at)
    for key, value in fields.items():
        if value is None or value == []:
            continue
        data[key] = str(value) if isinstance(value, Path) else value
    return data


def _print_result(result: dict[str, Any]) -> None:
    status = result["status"]
    color = "green" if status == "success" else "red"
    table = property_table(f"Run {result['ref']}")
    table.add_row("Status", f"[{color}]{status}[/{color}]")
    table.add_row("Duration", f"{result['duration_secs']:.1f}s")
    if result.get("cost_usd") is not None:
        table.add_row("Cost", f"${result['cost_usd']:.4f}")
    table.add_row("Turns", str(result.get("turns_used", 0)))
    if result.get("session_id"):
        table.add_row("Session", result["session_id"])
    console.print(table)
    if result.get("output_text"):
        console.print()
        console.print(Markdown(result["output_text"]))


def register(app: typer.Typer) -> None:
    """Register job subcommands."""
    job_app = typer.Typer(help="Manage scheduled jobs", no_args_is_help=True)
    app.add_typer(job_app, name="job")

    @job_app.command("add")
    def job_add(
        ctx: typer.Context,
        file: Annotated[
            Path | None,
            typer.Argument(help="TOML file with one job or [[jobs]] tables"),
        ] = None,
        job_id: Annotated[
            str | None, typer.Option("--id", help="Job ID")
        ] = None,
        prompt: Annotated[
            str | None, typer.Option("--prompt", "-p", help="Prompt to send")
        ] = None,
        cron: Annotated[
            str | None,
            typer.Option("--cron", help="Cron expression (5 fields, or 6 with seconds)"),
        ] = None,
        at: Annotated[
            str | None,
            typer.Option("--at", help="Run once at this time (ISO 8601)"),
        ] = None,
        name: Annotated[str | None, typer.Option("--name", help="Display name")] = None,
        model: Annotated[str | None, typer.Option("--model", "-m")] = None,
        max_turns: Annotated[int | None, typer.Option("--max-turns")] = None,
        max_budget_usd: Annotated[float | None, typer.Option("--max-budget")] = None,
        working_dir: Annotated[Path | None, typer.Option("--working-dir", "-w")] = None,
        output_format: Annotated[
            str | None, typer.Option("--output-format", help="json or text")
        ] = None,
        destinations: Annotated[
            list[str] | None,
            typer.Option("--dest", "-d", help="Output destination: file or chat:<id>"),
        ] = None,
        allowed_tools: Annotated[
            list[str] | None, typer.Option("--allow-tool")
        ] = None,
        disallowed_tools: Annotated[
            list[str] | None, typer.Option("--deny-tool")
        ] = None,
        disabled: Annotated[
            bool, typer.Option("--disabled", help="Add the job disabled")
        ] = False,
    ) -> None:
        """Add jobs from a TOML file or from options.

        Examples:
            demon job add jobs/daily.toml
            demon job add --id daily-plan --cron "0 6 * * *" -p "Plan my day" -d chat:42
            demon job add --id reminder --at 2026-11-01T09:00 -p "Renew the domain"
        """
        if file is not None:
            definitions = read_job_file(file.expanduser())
        else:
            definitions = [
                _job_from_options(
                    job_id,
                    prompt,
                    cron,
                    at,
                    name=name,
                    model=model,
                    max_turns=max_turns,
                    max_budget_usd=max_budget_usd,
                    working_dir=working_dir,
                    output_format=output_format,
                    output_destinations=destinations,
                    allowed_tools=allowed_tools,
                    disallowed_tools=disallowed_tools,
                    enabled=False if disabled else None,
                )
            ]

        control = get_control(ctx)
        with cli_errors():
            for data in definitions:
                added = control.add_job(data)
                success(f"Added job '{added['job']['id']}'")

    @job_app.command("list")
    def job_list(
        ctx: typer.Context,
        output_json: Annotated[bool, typer.Option("--json", help="Output as JSON")] = False,
    ) -> None:
        """List jobs with their schedule and last outcome."""
        control = get_control(ctx)
        with cli_errors():
            jobs = control.list_jobs()
        if output_json:
            console.print_json(json.dumps(jobs))
            return
        if not jobs:
            warning("No jobs defined")
            return
        print_jobs_table(jobs)
        dim(f"Total: {len(jobs)} job(s)")

    @job_app.command("show")
    def job_show(
        ctx: typer.Context,
        job_id: Annotated[str, typer.Argument(help="Job ID")],
    ) -> None:
        """Show one job's definition and state."""
        control = get_control(ctx)
        with cli_errors():
            entry = control.get_job(job_id)

        table = property_table(f"Job {job_id}", "Field")
        for key, value in entry["job"].items():
            if isinstance(value, list):
                value = ", ".join(str(v) for v in value) or "-"
            table.add_row(key, str(value))
        table.add_row("", "")
        for key, value in entry["state"].items():
            table.add_row(f"[dim]{key}[/dim]", "-" if value is None else str(value))
        table.add_row("[dim]next_due[/dim]", entry.get("next_due") or "-")
        console.print(table)

    @job_app.command("remove")
    def job_remove(
        ctx: typer.Context,
        job_id: Annotated[str, typer.Argument(help="Job ID")],
        force: Annotated[
            bool, typer.Option("--force", "-f", help="Skip confirmation")
        ] = False,
    ) -> None:
        """Remove a job."""
        if not confirm_or_cancel(f"Remove job '{job_id}'?", force):
            return
        control = get_control(ctx)
        with cli_errors():
            control.remove_job(job_id)
        success(f"Removed job '{job_id}'")

    @job_app.command("run")
    def job_run(
        ctx: typer.Context,
        job_id: Annotated[str, typer.Argument(help="Job ID")],
    ) -> None:
        """Run a job now, in the daemon if it is running."""
        control = get_control(ctx)
        where = "daemon" if control.is_live() else "this process"
        info(f"Running '{job_id}' in {where}...")
        with cli_errors():
            result = control.run_job(job_id)
        _print_result(result)
        if result["status"] != "success":
            raise typer.Exit(1)

    @job_app.command("enable")
    def job_enable(
        ctx: typer.Context,
        job_id: Annotated[str, typer.Argument(help="Job ID")],
    ) -> None:
        """Enable a job."""
        control = get_control(ctx)
        with cli_errors():
            control.set_enabled(job_id, True)
        success(f"Enabled job '{job_id}'")

    @job_app.command("disable")
    def job_disable(
        ctx: typer.Context,
        job_id: Annotated[str, typer.Argument(help="Job ID")],
    ) -> None:
        """Disable a job."""
        control = get_control(ctx)
        with cli_errors():
            control.set_enabled(job_id, False)
        success(f"Disabled job '{job_id}'")

    @job_app.command("reload")
    def job_reload(ctx: typer.Context) -> None:
        """Make the running daemon re-read jobs.toml."""
        control = get_control(ctx)
        with cli_errors():
            count = control.reload_jobs()
        if count is None:
            dim("Daemon not running; jobs.toml is read at startup")
            return
        success(f"Reloaded {count} job(s)")
