"""Thin CLI wrapper for shipline.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from pathlib import Path
from typing import Annotated, Any

import typer
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from shipline import __version__
from shipline.config import Settings, get_settings, print_settings_json
from shipline.pipeline.io import load_pipeline
from shipline.pipeline.schema import PipelineDefinition
from shipline.types import RunStatus, TriggerKind

app = typer.Typer(
    name="shipline",
    help="Shipline - build, publish and deploy applications to environments",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

STATUS_STYLES = {
    RunStatus.PENDING.value: "blue",
    RunStatus.RUNNING.value: "blue",
    RunStatus.SUCCEEDED.value: "green",
    RunStatus.FAILED.value: "red",
    RunStatus.CANCELLED.value: "yellow",
}


def configure_logging(level: str) -> None:
    """Route log records to stderr through rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _print_json(text: str) -> None:
    """Print JSON verbatim: no wrapping, markup or highlighting."""
    console.print(text, soft_wrap=True, markup=False, highlight=False)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"shipline version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="Override the configured log level"),
    ] = None,
) -> None:
    """Shipline - build, publish and deploy applications to environments."""
    configure_logging((log_level or get_settings().log_level).upper())


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        _print_json(print_settings_json(settings))
        return

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Pipeline file:       {settings.pipeline_file}")
    console.print(f"  Workspace directory: {settings.workspace_dir}")
    console.print(f"  Logs directory:      {settings.logs_dir}")
    console.print(f"  Lock directory:      {settings.lock_dir}")
    console.print(f"  Database URL:        {settings.db_url}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Log level:           {settings.log_level}")
    console.print(f"  Container engine:    {settings.container_engine}")
    console.print()
    console.print("[bold]Timeouts (seconds):[/bold]")
    console.print(f"  Build timeout:       {settings.build_timeout}")
    console.print(f"  Image build timeout: {settings.image_build_timeout}")
    console.print(f"  Push timeout:        {settings.push_timeout}")
    console.print(f"  Git timeout:         {settings.git_timeout}")
    console.print()
    console.print("[bold]Retries (attempts):[/bold]")
    console.print(f"  Checkout:            {settings.checkout_attempts}")
    console.print(f"  Build:               {settings.build_attempts}")
    console.print(f"  Publish image:       {settings.publish_image_attempts}")
    console.print(f"  Patch manifest:      {settings.patch_attempts}")
    console.print(f"  Publish manifest:    {settings.publish_manifest_attempts}")
    console.print(f"  Manifest rounds:     {settings.manifest_push_attempts}")
    console.print()
    console.print("[bold]Credentials:[/bold]")
    registry = "set" if settings.registry_password else "not set"
    git = "set" if settings.git_token else "not set"
    console.print(f"  Registry password:   {registry}")
    console.print(f"  Git token:           {git}")


def _load_definition(path: Path | None, settings: Settings) -> PipelineDefinition:
    """Load the pipeline definition or exit with an error."""
    pipeline_path = path or settings.pipeline_file
    try:
        return load_pipeline(pipeline_path)
    except FileNotFoundError:
        err_console.print(f"[red]Pipeline file not found: {pipeline_path}[/red]")
        raise typer.Exit(code=1) from None
    except yaml.YAMLError as e:
        err_console.print(f"[red]Invalid YAML in {pipeline_path}: {e}[/red]")
        raise typer.Exit(code=1) from None
    except (ValidationError, ValueError) as e:
        err_console.print(f"[red]Invalid pipeline definition: {e}[/red]")
        raise typer.Exit(code=1) from None


def _session_factory(settings: Settings) -> Any:
    from shipline.db import create_all_tables, get_engine, get_session_factory

    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    return get_session_factory(engine)


def _print_run(data: dict[str, Any], attempts: bool = True) -> None:
    style = STATUS_STYLES.get(data["status"], "white")
    console.print(
        f"[bold]Run {data['environment']}#{data['number']}[/bold] (id {data['id']})"
    )
    console.print(f"  Status:      [{style}]{data['status']}[/{style}]")
    console.print(f"  Stage:       {data['stage']}")
    console.print(f"  Trigger:     {data['trigger']}")
    console.print(f"  Revision:    {data['requested_revision']}")
    if data["source_revision"]:
        console.print(f"  Commit:      {data['source_revision']}")
    if data["image"]:
        console.print(f"  Image:       {data['image']}")
    if data["manifest_commit"]:
        console.print(f"  Manifest:    {data['manifest_commit']}")
    if data["log_dir"]:
        console.print(f"  Logs:        {data['log_dir']}")
    if data["status"] == RunStatus.FAILED.value:
        console.print(f"  [red]Failed at:   {data['failed_stage']}[/red]")
        console.print(f"  [red]Error:       {data['error_kind']}[/red]")
        message = escape(str(data["error_message"]))
        console.print(f"  [red]Message:     {message}[/red]")
        if data["last_response"]:
            console.print("  Last response:")
            for line in data["last_response"].splitlines()[-20:]:
                console.print(f"    {line}", markup=False, highlight=False)
    if attempts and data.get("attempts"):
        console.print()
        console.print("[bold]Stage history:[/bold]")
        for a in data["attempts"]:
            ok = a["outcome"] == "success"
            marker = "[green]✓[/green]" if ok else "[red]✗[/red]"
            detail = (
                f" {a['error_kind']}: {escape(a['message'] or '')}"
                if a["error_kind"]
                else ""
            )
            console.print(
                f"  {marker} {a['stage']} #{a['attempt']} {a['outcome']}{detail}"
            )


pipeline_app = typer.Typer(help="Inspect pipeline definitions")
app.add_typer(pipeline_app, name="pipeline")


@pipeline_app.command("validate")
def pipeline_validate(
    path: Annotated[
        Path | None,
        typer.Argument(help="Pipeline file (defaults to the configured one)"),
    ] = None,
) -> None:
    """Validate a pipeline definition file."""
    settings = get_settings()
    definition = _load_definition(path, settings)
    console.print(f"[green]✓ Pipeline '{definition.name}' is valid[/green]")
    for name, env in definition.environments.items():
        branch = definition.manifest_branch(name)
        console.print(f"  {name}: {env.manifest_path} ({branch})")


run_app = typer.Typer(help="Trigger, inspect and cancel pipeline runs")
app.add_typer(run_app, name="run")


@run_app.command("trigger")
def run_trigger(
    environment: Annotated[str, typer.Argument(help="Target environment")],
    revision: Annotated[
        str | None,
        typer.Option("--revision", "-r", help="Source revision (branch, tag, sha)"),
    ] = None,
    trigger: Annotated[
        TriggerKind,
        typer.Option("--trigger", help="What caused this run"),
    ] = TriggerKind.MANUAL,
    pipeline_file: Annotated[
        Path | None,
        typer.Option("--pipeline", "-p", help="Pipeline definition file"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Trigger a run and follow it to completion.

    Interrupting with Ctrl+C requests cancellation; the run stops after
    the collaborator call in flight returns.
    """
    from shipline.runs.engine import PipelineEngine, UnknownEnvironmentError

    settings = get_settings()
    definition = _load_definition(pipeline_file, settings)
    factory = _session_factory(settings)

    with PipelineEngine(definition, factory, settings=settings) as engine:
        try:
            run_id = engine.trigger(environment, revision=revision, trigger=trigger)
        except UnknownEnvironmentError as e:
            err_console.print(f"[red]{e}[/red]")
            err_console.print(
                f"Defined environments: {', '.join(definition.environments)}"
            )
            raise typer.Exit(code=1) from None

        if not json_output:
            console.print(f"[blue]Triggered run {run_id} for {environment}[/blue]")
        try:
            status = engine.wait(run_id)
        except KeyboardInterrupt:
            err_console.print("[yellow]Cancelling run...[/yellow]")
            engine.cancel(run_id)
            status = engine.wait(run_id)
        data = engine.status(run_id)

    if json_output:
        _print_json(json.dumps(data, indent=2))
    else:
        _print_run(data)

    if status is not RunStatus.SUCCEEDED:
        raise typer.Exit(code=1)


@run_app.command("show")
def run_show(
    run_id: Annotated[int, typer.Argument(help="Run ID")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show a run with its stage history."""
    from shipline.db import get_session
    from shipline.runs.service import RunNotFoundError, get_run

    factory = _session_factory(get_settings())
    try:
        with get_session(factory) as session:
            data = get_run(session, run_id).to_dict()
    except RunNotFoundError as e:
        err_console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        _print_json(json.dumps(data, indent=2))
    else:
        _print_run(data)


@run_app.command("list")
def run_list(
    environment: Annotated[
        str | None,
        typer.Option("--environment", "-e", help="Filter by environment"),
    ] = None,
    status: Annotated[
        str | None,
        typer.Option(
            "--status",
            "-s",
            help="Filter by status (pending/running/succeeded/failed/cancelled)",
        ),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 100,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List runs, newest first."""
    from shipline.db import get_session
    from shipline.runs.service import list_runs

    status_filter: RunStatus | None = None
    if status:
        try:
            status_filter = RunStatus(status)
        except ValueError:
            err_console.print(f"[red]Invalid status: {status}[/red]")
            err_console.print(
                "Valid values: " + ", ".join(s.value for s in RunStatus)
            )
            raise typer.Exit(code=1) from None

    factory = _session_factory(get_settings())
    with get_session(factory) as session:
        runs = [
            r.to_dict(include_attempts=False)
            for r in list_runs(
                session, environment=environment, status=status_filter, limit=limit
            )
        ]

    if json_output:
        _print_json(json.dumps(runs, indent=2))
        return
    if not runs:
        console.print("No runs found.")
        return

    table = Table(title="Runs")
    table.add_column("ID", justify="right")
    table.add_column("Run")
    table.add_column("Status")
    table.add_column("Stage")
    table.add_column("Revision")
    table.add_column("Image")
    for r in runs:
        style = STATUS_STYLES.get(r["status"], "white")
        table.add_row(
            str(r["id"]),
            f"{r['environment']}#{r['number']}",
            f"[{style}]{r['status']}[/{style}]",
            r["stage"],
            r["source_revision"] or r["requested_revision"],
            r["image"] or "",
        )
    console.print(table)


@run_app.command("cancel")
def run_cancel(
    run_id: Annotated[int, typer.Argument(help="Run ID")],
) -> None:
    """Request cancellation of a run.

    Pending runs are cancelled immediately. A running run, in this or any
    other process, stops at its next stage boundary.
    """
    from shipline.db import get_session
    from shipline.runs.service import RunNotFoundError, request_cancel

    factory = _session_factory(get_settings())
    try:
        with get_session(factory) as session:
            run = request_cancel(session, run_id)
            label, run_status = run.label, run.status
    except RunNotFoundError as e:
        err_console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None

    if run_status == RunStatus.CANCELLED.value:
        console.print(f"[yellow]Run {label} cancelled[/yellow]")
    elif run_status == RunStatus.RUNNING.value:
        console.print(
            f"[yellow]Cancellation requested for run {label}; "
            "it stops at the next stage boundary[/yellow]"
        )
    else:
        console.print(f"Run {label} already {run_status}, nothing to cancel")


@run_app.command("recover")
def run_recover(
    pipeline_file: Annotated[
        Path | None,
        typer.Option("--pipeline", "-p", help="Pipeline definition file"),
    ] = None,
) -> None:
    """Fail runs left pending or running by a process that died.

    Environments locked by a live process are skipped.
    """
    from shipline.runs.engine import PipelineEngine

    settings = get_settings()
    definition = _load_definition(pipeline_file, settings)
    factory = _session_factory(settings)

    with PipelineEngine(definition, factory, settings=settings) as engine:
        recovered = engine.recover_interrupted()

    if not recovered:
        console.print("No interrupted runs found.")
        return
    for run_id in recovered:
        console.print(f"[yellow]Run {run_id} marked failed (interrupted)[/yellow]")


if __name__ == "__main__":
    app()
