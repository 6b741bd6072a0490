"""Queue, session and usage administration commands."""

from __future__ import annotations

import typer
from rich.table import Table

from .core import app, console

queue_app = typer.Typer(help="Inspect the job queue")
app.add_typer(queue_app, name="queue")

sessions_app = typer.Typer(help="Inspect agent sessions")
app.add_typer(sessions_app, name="sessions")

usage_app = typer.Typer(help="AI usage and budgets")
app.add_typer(usage_app, name="usage")


def _open_tracker():
    from memoria.config.loader import load_config
    from memoria.sessions.store import SessionStore
    from memoria.sessions.tracker import AgentSessionTracker
    from memoria.telemetry.inmemory import InMemoryTelemetry

    config = load_config()
    store = SessionStore(config.resolve_path(config.sessions.db_path))
    return AgentSessionTracker(store, telemetry=InMemoryTelemetry(), config=config.sessions)


def _open_ledger():
    from memoria.config.loader import load_config
    from memoria.providers.usage import UsageLedger

    config = load_config()
    return UsageLedger(
        config.resolve_path(config.storage.usage_db_path),
        default_budget_cents=config.usage.default_budget_cents,
        ai_enabled_default=config.usage.ai_enabled_default,
    )


# ============================================================================
# Queue
# ============================================================================


@queue_app.command("stats")
def queue_stats() -> None:
    """Show job counts by type and status."""
    from memoria.config.loader import load_config
    from memoria.queue.store import SqliteJobStore

    config = load_config()
    store = SqliteJobStore(config.resolve_path(config.queue.db_path))
    try:
        counts = store.counts()
    finally:
        store.close()

    if not counts:
        console.print("Queue is empty.")
        return

    table = Table(title="Job Queue")
    table.add_column("Type", style="cyan")
    table.add_column("Status")
    table.add_column("Jobs", justify="right")
    for (job_type, status), count in sorted(counts.items()):
        table.add_row(job_type, status, str(count))
    console.print(table)


@queue_app.command("purge")
def queue_purge(
    days: int = typer.Option(7, "--days", "-d", help="Remove finished jobs older than this"),
) -> None:
    """Delete completed, failed and expired jobs."""
    from memoria.config.loader import load_config
    from memoria.queue.store import SqliteJobStore

    config = load_config()
    store = SqliteJobStore(config.resolve_path(config.queue.db_path))
    try:
        removed = store.purge_terminal(older_than_seconds=days * 86400)
    finally:
        store.close()
    console.print(f"[green]✓[/green] Removed {removed} finished job(s)")


# ============================================================================
# Sessions
# ============================================================================


@sessions_app.command("sweep")
def sessions_sweep(
    minutes: int | None = typer.Option(None, "--minutes", "-m", help="Staleness threshold"),
) -> None:
    """Fail agent sessions that stopped making progress."""
    tracker = _open_tracker()
    try:
        swept = tracker.sweep_stale(minutes=minutes)
    finally:
        tracker.store.close()
    console.print(f"[green]✓[/green] Marked {swept} stale session(s) as failed")


@sessions_app.command("show")
def sessions_show(session_id: str = typer.Argument(..., help="Session id")) -> None:
    """Show one agent session and its steps."""
    tracker = _open_tracker()
    try:
        session = tracker.get_session(session_id)
    finally:
        tracker.store.close()
    if session is None:
        console.print(f"[red]Session {session_id} not found[/red]")
        raise typer.Exit(1)

    console.print(f"[bold]{session.id}[/bold] [{session.status}]")
    console.print(f"workspace={session.workspace_id} stream={session.stream_id}")
    console.print(f"trigger={session.triggering_event_id} response={session.response_event_id or '-'}")
    if session.error_message:
        console.print(f"[red]error:[/red] {session.error_message}")

    table = Table(title="Steps")
    table.add_column("Type", style="cyan")
    table.add_column("Status")
    table.add_column("Content")
    table.add_column("Tool")
    for step in session.steps:
        tool = step.tool_name or ""
        if step.tool_result:
            tool = f"{tool}: {step.tool_result[:60]}"
        table.add_row(step.step_type, step.status, step.content[:80], tool)
    console.print(table)


# ============================================================================
# Usage
# ============================================================================


@usage_app.command("show")
def usage_show(
    workspace: str = typer.Argument(..., help="Workspace id"),
    days: int = typer.Option(30, "--days", "-d", help="Window for the breakdown"),
) -> None:
    """Show this month's spend and a breakdown by job type and model."""
    ledger = _open_ledger()
    try:
        budget = ledger.check_budget(workspace)
        monthly = ledger.get_monthly_usage(workspace)
        breakdown = ledger.get_usage_stats(workspace, days=days)
        enabled = ledger.is_ai_enabled(workspace)
    finally:
        ledger.close()

    status = "[green]within budget[/green]" if budget.within_budget else "[red]over budget[/red]"
    console.print(
        f"{workspace}: {budget.used_cents:.2f}/{budget.budget_cents:.0f} cents this month ({status}), "
        f"AI {'enabled' if enabled else 'disabled'}"
    )
    console.print(
        f"{monthly.job_count} call(s), {monthly.total_input_tokens} input / "
        f"{monthly.total_output_tokens} output tokens"
    )
    if not breakdown:
        return

    table = Table(title=f"Last {days} days")
    table.add_column("Job type", style="cyan")
    table.add_column("Model")
    table.add_column("Calls", justify="right")
    table.add_column("Tokens in/out", justify="right")
    table.add_column("Cost (cents)", justify="right")
    for row in breakdown:
        table.add_row(
            row.job_type,
            row.model,
            str(row.calls),
            f"{row.input_tokens}/{row.output_tokens}",
            f"{row.cost_cents:.4f}",
        )
    console.print(table)


@usage_app.command("budget")
def usage_budget(
    workspace: str = typer.Argument(..., help="Workspace id"),
    cents: float = typer.Argument(..., help="Monthly budget in cents"),
) -> None:
    """Set a workspace's monthly AI budget."""
    ledger = _open_ledger()
    try:
        ledger.set_budget(workspace, cents)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1) from e
    finally:
        ledger.close()
    console.print(f"[green]✓[/green] Budget for {workspace} set to {cents:.0f} cents")


@usage_app.command("ai")
def usage_ai(
    workspace: str = typer.Argument(..., help="Workspace id"),
    enabled: bool = typer.Option(True, "--enable/--disable", help="Turn AI features on or off"),
) -> None:
    """Enable or disable AI features for a workspace."""
    ledger = _open_ledger()
    try:
        ledger.set_ai_enabled(workspace, enabled)
    finally:
        ledger.close()
    console.print(f"[green]✓[/green] AI {'enabled' if enabled else 'disabled'} for {workspace}")
