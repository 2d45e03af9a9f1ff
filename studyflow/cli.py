"""Command line interface for studyflow workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Optional

import typer
import yaml
from pydantic import ValidationError

from studyflow import SchedulerTrigger, WorkflowExecutor, get_repository, load_config
from studyflow.contracts import ScheduledTask, Workflow
from studyflow.errors import StudyflowError

app = typer.Typer(help="CLI for studyflow workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflows")
scheduler_app = typer.Typer(help="Commands for the scheduled task trigger")

app.add_typer(workflow_app, name="workflow")
app.add_typer(scheduler_app, name="scheduler")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v")) -> None:
    """studyflow CLI entry point."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_definition(path: Path) -> dict[str, Any]:
    if not path.exists():
        typer.secho(f"File not found: {path}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        typer.secho("Definition must be a mapping", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return data


@workflow_app.command("create")
def workflow_create(path: Path, user: str = typer.Option(..., "--user", "-u")) -> None:
    """
    Create a workflow from a YAML or JSON definition.

    Example:
        studyflow workflow create ./daily_digest.yaml --user 42
        # Output: Created workflow 1f0c...: Daily digest (3 steps)
    """
    data = _load_definition(path)
    try:
        workflow = Workflow.model_validate({**data, "user_id": user})
    except ValidationError as exc:
        typer.secho(f"Invalid workflow definition:\n{exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    repo = get_repository()
    asyncio.run(repo.save_workflow(workflow))
    typer.echo(f"Created workflow {workflow.id}: {workflow.name} ({len(workflow.steps)} steps)")


@workflow_app.command("list")
def workflow_list(user: Optional[str] = typer.Option(None, "--user", "-u")) -> None:
    """List workflows with their enabled flag and last run."""
    repo = get_repository()
    workflows = asyncio.run(repo.list_workflows(user))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        state = "enabled" if wf.enabled else "disabled"
        typer.echo(f"{wf.id}\t{wf.name}\t{state}\t{wf.last_run_at or '-'}")


@workflow_app.command("delete")
def workflow_delete(workflow_id: str, user: str = typer.Option(..., "--user", "-u")) -> None:
    """Delete a workflow owned by ``user``. Run history is kept."""
    repo = get_repository()
    workflow = asyncio.run(repo.get_workflow(workflow_id))
    if workflow is None or workflow.user_id != user:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    asyncio.run(repo.delete_workflow(workflow_id))
    typer.echo(f"Deleted workflow {workflow_id}")


@workflow_app.command("run")
def workflow_run(workflow_id: str, user: str = typer.Option(..., "--user", "-u")) -> None:
    """
    Execute a workflow once and print its step results.

    Example:
        studyflow workflow run 1f0c... --user 42
        # Output: Run 9ab3...: completed
        #         - Summarize: "..."
    """
    executor = WorkflowExecutor(repository=get_repository())
    try:
        run = asyncio.run(executor.run(workflow_id, user))
    except StudyflowError as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    typer.echo(f"Run {run.id}: {run.status.value}")
    for outcome in run.steps:
        typer.echo(f"- {outcome.step}: {json.dumps(outcome.result, default=str)}")


@workflow_app.command("runs")
def workflow_runs(workflow_id: str) -> None:
    """List the run history of a workflow."""
    repo = get_repository()
    runs = asyncio.run(repo.list_runs(workflow_id))
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(f"{run.id}\t{run.status.value}\t{run.started_at}")


@workflow_app.command("show-run")
def workflow_show_run(run_id: str) -> None:
    """Show status, results or error of one run."""
    repo = get_repository()
    run = asyncio.run(repo.get_run(run_id))
    if run is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    typer.echo(f"Run {run.id} of workflow {run.workflow_id}: {run.status.value}")
    typer.echo(f"Started: {run.started_at}  Completed: {run.completed_at or '-'}")
    if run.error_message:
        typer.echo(f"Error: {run.error_message}")
    for outcome in run.steps or run.partial_steps:
        typer.echo(f"- {outcome.step}: {json.dumps(outcome.result, default=str)}")


@scheduler_app.command("add")
def scheduler_add(path: Path, user: str = typer.Option(..., "--user", "-u")) -> None:
    """Register a scheduled task from a YAML or JSON definition."""
    data = _load_definition(path)
    try:
        task = ScheduledTask.model_validate({**data, "user_id": user})
    except ValidationError as exc:
        typer.secho(f"Invalid task definition:\n{exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    asyncio.run(get_repository().save_task(task))
    typer.echo(f"Scheduled task {task.id}: {task.name} ({task.task_type.value})")


@scheduler_app.command("run-once")
def scheduler_run_once() -> None:
    """Run a single scheduler pass over all due tasks."""
    trigger = SchedulerTrigger(repository=get_repository())
    attempted = asyncio.run(trigger.run_pass())
    typer.echo(f"Tasks attempted: {attempted}")


@scheduler_app.command("start")
def scheduler_start(
    interval: Optional[float] = None,
    lifespan: Optional[float] = None,
) -> None:
    """
    Run scheduler passes on a fixed cadence.

    Args:
        interval: Seconds between passes (default: scheduler.interval from config)
        lifespan: Stop after this many seconds (default: run indefinitely)
    """
    config = load_config()
    trigger = SchedulerTrigger(repository=get_repository(), config=config)
    typer.echo(f"Starting scheduler, interval={interval or config.scheduler.interval}s")
    asyncio.run(trigger.serve(interval=interval, lifespan=lifespan))


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
