"""CLI commands for memoria."""

from __future__ import annotations

import asyncio

import typer

from memoria import __logo__

from . import admin_commands as _admin_commands  # noqa: F401
from .core import app, console


@app.command()
def onboard() -> None:
    """Write a default configuration."""
    from memoria.config.loader import get_config_path, save_config
    from memoria.config.schema import Config

    config_path = get_config_path()
    if config_path.exists():
        console.print(f"[yellow]Config already exists at {config_path}[/yellow]")
        if not typer.confirm("Overwrite?"):
            raise typer.Exit()

    save_config(Config())
    console.print(f"[green]✓[/green] Created config at {config_path}")
    console.print(f"\n{__logo__} memoria is ready!")
    console.print("\nNext steps:")
    console.print("  1. Add a remote provider key to [cyan]~/.memoria/config.json[/cyan] or [cyan]~/.memoria/.env[/cyan]")
    console.print("  2. Start a local model server (Ollama) for cheap embeddings and classification")
    console.print("  3. Run the workers: [cyan]memoria run[/cyan]")


@app.command()
def run() -> None:
    """Start every pipeline worker (stale agent sessions are swept first)."""
    from memoria.app.bootstrap import run_pipeline
    from memoria.config.loader import load_config

    config = load_config()
    console.print(f"{__logo__} Starting memoria workers...")
    try:
        asyncio.run(run_pipeline(config))
    except KeyboardInterrupt:
        console.print("\nShutting down...")


@app.command()
def classify(
    workspace: str = typer.Argument(..., help="Workspace id"),
    text: str = typer.Argument(..., help="Content to classify"),
    stream: str | None = typer.Option(None, "--stream", "-s", help="Stream id to annotate"),
) -> None:
    """Enqueue a forced classification job."""
    from memoria.config.loader import load_config
    from memoria.pipeline.classification import maybe_queue_classification
    from memoria.queue.manager import JobQueue
    from memoria.queue.payloads import ClassifyJob
    from memoria.queue.store import SqliteJobStore
    from memoria.telemetry.inmemory import InMemoryTelemetry

    config = load_config()
    store = SqliteJobStore(config.resolve_path(config.queue.db_path))
    try:
        queue = JobQueue(store, telemetry=InMemoryTelemetry())
        job_id = maybe_queue_classification(
            queue,
            ClassifyJob(workspace_id=workspace, content=text, stream_id=stream),
            force=True,
            config=config.classification,
        )
    finally:
        store.close()
    if job_id is None:
        console.print("[yellow]Classification already queued[/yellow]")
    else:
        console.print(f"[green]✓[/green] Queued classify job {job_id}")
