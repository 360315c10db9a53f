"""Command line interface for inspecting workflows and running recovery workers."""

from __future__ import annotations

import asyncio
import importlib
import sys
from pathlib import Path
from typing import Optional

import typer

from resumable import WorkflowEngine, get_storage

app = typer.Typer(help="CLI for resumable workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for inspecting workflow instances")
worker_app = typer.Typer(help="Commands for running workflow workers")

app.add_typer(workflow_app, name="workflow")
app.add_typer(worker_app, name="worker")


@app.callback()
def main() -> None:
    """Resumable CLI entry point."""
    pass


def _load_engine(target: str, base_path: Optional[Path] = None) -> WorkflowEngine:
    """Import ``module:attribute`` and return the engine it names."""
    module_name, _, attr = target.partition(":")
    if base_path is not None:
        sys.path.insert(0, str(base_path.expanduser().resolve()))
    module = importlib.import_module(module_name)
    engine = getattr(module, attr or "engine", None)
    if not isinstance(engine, WorkflowEngine):
        raise TypeError(f"{target} does not refer to a WorkflowEngine")
    return engine


async def _run_worker(engine: WorkflowEngine, lifespan: Optional[float]) -> None:
    await engine.poll_once()
    async with engine:
        if lifespan is None:
            await asyncio.Event().wait()
        else:
            await asyncio.sleep(lifespan)


@workflow_app.command("list")
def workflow_list() -> None:
    """
    List all workflow instances with their current status.

    Shows ids, workflow names and status (running, sleeping, completed,
    failed) from the configured storage.

    Example:
        resumable workflow list
        # Output: 3f6c...    onboarding    sleeping
    """
    storage = get_storage()
    workflows = asyncio.run(storage.list_all())
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.id}\t{wf.name}\t{wf.status.value}")


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """
    Show status, variables and event history for one workflow instance.

    Args:
        workflow_id: Workflow id to inspect (get from 'workflow list')

    Example:
        resumable workflow show 3f6c...
        # Output: Workflow 3f6c... (onboarding): sleeping
        #         Wakes at: 2024-01-01T10:05:00+00:00
        #         - step_start create_account
        #         - step_complete create_account
        #         - sleep_start wait
    """
    storage = get_storage()
    wf = asyncio.run(storage.load(workflow_id))
    if wf is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {wf.id} ({wf.name}): {wf.status.value}")
    if wf.wake_up_at is not None:
        typer.echo(f"Wakes at: {wf.wake_up_at.isoformat()}")
    if wf.lease_owner is not None and wf.lease_expires_at is not None:
        typer.echo(f"Leased by: {wf.lease_owner} until {wf.lease_expires_at.isoformat()}")
    if "error" in wf.variables:
        typer.echo(f"Error: {wf.variables['error']}")
    typer.echo(f"Arguments: {wf.args}")
    for event in wf.history:
        typer.echo(
            f"- {event.type.value} {event.step_id} ({event.timestamp.isoformat()})"
        )


@worker_app.command("run")
def worker_run(
    target: str,
    base_path: Optional[Path] = None,
    lifespan: Optional[float] = None,
) -> None:
    """
    Run the recovery poller for an engine defined in user code.

    Imports ``module:attribute`` (attribute defaults to ``engine``), which
    must already have every workflow registered, then wakes sleeping
    instances and resumes ones left running by a crashed process.

    Args:
        target: Import path of the engine, e.g. ``myapp.workflows:engine``
        base_path: Directory added to ``sys.path`` before importing
        lifespan: Worker timeout in seconds (default: run indefinitely)

    Example:
        resumable worker run myapp.workflows:engine
        resumable worker run workflows --base-path ./src --lifespan 60
    """
    try:
        engine = _load_engine(target, base_path)
    except (ImportError, TypeError) as exc:
        typer.secho(f"Cannot load engine: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Starting worker for {target}")
    asyncio.run(_run_worker(engine, lifespan))


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
