"""Command line interface for managing and running marketflow workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Awaitable, Dict, Optional, Tuple, TypeVar

import typer
import yaml

from .config import MarketflowConfig, load_config
from .engine import EngineServices, WorkflowEngine
from .errors import MarketflowError
from .events import EventDispatcher, EventQueue
from .providers import InMemoryProvider, ProviderRegistry
from .scheduler import Scheduler
from .utils.clock import ensure_utc

T = TypeVar("T")

app = typer.Typer(help="CLI for marketflow workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflows")
execution_app = typer.Typer(help="Commands for inspecting executions")
queue_app = typer.Typer(help="Commands for the event queue")
scheduler_app = typer.Typer(help="Commands for the periodic scheduler")

app.add_typer(workflow_app, name="workflow")
app.add_typer(execution_app, name="execution")
app.add_typer(queue_app, name="queue")
app.add_typer(scheduler_app, name="scheduler")

_state: Dict[str, Any] = {}


@app.callback()
def main(
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a YAML configuration file"
    ),
) -> None:
    """marketflow CLI entry point."""
    config = load_config(str(config_path) if config_path else None)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _state["config"] = config


def _config() -> MarketflowConfig:
    return _state.get("config") or load_config()


def _runtime() -> Tuple[WorkflowEngine, EventQueue]:
    config = _config()
    providers = ProviderRegistry()
    for code in config.dry_run_providers:
        providers.register(code, InMemoryProvider(code))
    services = EngineServices.from_config(
        config, providers=providers, dispatcher=EventDispatcher()
    )
    engine = WorkflowEngine(services)
    engine.register_event_listeners()
    queue = EventQueue(services.store, services.dispatcher, config.queue, services.clock)
    return engine, queue


def _run(coro: Awaitable[T]) -> T:
    try:
        return asyncio.run(coro)
    except MarketflowError as exc:
        typer.secho(f"{type(exc).__name__}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _parse_json(value: Optional[str], option: str) -> Dict[str, Any]:
    if not value:
        return {}
    try:
        data = json.loads(value)
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid JSON for {option}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(data, dict):
        typer.secho(f"{option} must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return data


def _parse_when(value: str) -> datetime:
    try:
        return ensure_utc(datetime.fromisoformat(value))
    except ValueError:
        typer.secho(f"Invalid ISO timestamp: {value}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _echo_model(model: Any) -> None:
    typer.echo(model.model_dump_json(indent=2))


# ----------------------------------------------------------------------
# Workflows
@workflow_app.command("list")
def workflow_list(
    status: Optional[str] = typer.Option(None, help="Filter by status (active/inactive)"),
    type: Optional[str] = typer.Option(None, "--type", help="Filter by workflow type"),
    limit: Optional[int] = typer.Option(None, help="Maximum number of workflows"),
) -> None:
    """
    List workflows, newest first.

    Example:
        marketflow workflow list --status active
        # Output: 3f2a...    active    Welcome series    2 nodes
    """
    engine, _ = _runtime()
    workflows = _run(engine.list_workflows(status=status, type=type, limit=limit))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.workflow_id}\t{wf.status.value}\t{wf.name}\t{len(wf.nodes)} nodes")


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """Show a workflow definition as JSON."""
    engine, _ = _runtime()
    wf = _run(engine.get_workflow(workflow_id))
    if wf is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    _echo_model(wf)


@workflow_app.command("create")
def workflow_create(definition_file: Path) -> None:
    """
    Create a workflow from a YAML or JSON definition file.

    The file holds ``name``, ``type``, ``nodes`` (each with ``id``, ``type``,
    ``config`` and ``next_nodes``) and optional ``description``/``settings``.

    Example:
        marketflow workflow create ./guides/welcome_series.yaml
        # Output: Workflow created: 3f2a... (2 nodes)
    """
    if not definition_file.exists():
        typer.secho("Specified file does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    with open(definition_file) as f:
        definition = yaml.safe_load(f) or {}
    engine, _ = _runtime()
    summary = _run(engine.create_workflow(definition))
    typer.echo(f"Workflow created: {summary.workflow_id} ({summary.nodes_count} nodes)")


@workflow_app.command("update")
def workflow_update(workflow_id: str, definition_file: Path) -> None:
    """Replace a workflow definition from a YAML or JSON file."""
    if not definition_file.exists():
        typer.secho("Specified file does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    with open(definition_file) as f:
        definition = yaml.safe_load(f) or {}
    engine, _ = _runtime()
    summary = _run(engine.update_workflow(workflow_id, definition))
    typer.echo(f"Workflow updated: {summary.workflow_id} ({summary.nodes_count} nodes)")


@workflow_app.command("delete")
def workflow_delete(workflow_id: str) -> None:
    """Delete a workflow that has no running or scheduled executions."""
    engine, _ = _runtime()
    _run(engine.delete_workflow(workflow_id))
    typer.echo(f"Workflow deleted: {workflow_id}")


@workflow_app.command("execute")
def workflow_execute(
    workflow_id: str,
    context: Optional[str] = typer.Option(None, help="Execution context as a JSON object"),
) -> None:
    """
    Execute a workflow immediately.

    Example:
        marketflow workflow execute 3f2a... --context '{"customer_id": 5, "email": "a@b.com"}'
        # Output: Execution 9c1d...: completed
    """
    engine, _ = _runtime()
    execution = _run(engine.execute_workflow(workflow_id, _parse_json(context, "--context")))
    typer.echo(f"Execution {execution.execution_id}: {execution.status.value}")
    if execution.error:
        typer.secho(f"Error: {execution.error}", fg=typer.colors.RED)


@workflow_app.command("schedule")
def workflow_schedule(
    workflow_id: str,
    when: str = typer.Argument(..., help="ISO 8601 timestamp, UTC when no offset given"),
    context: Optional[str] = typer.Option(None, help="Execution context as a JSON object"),
) -> None:
    """Schedule a workflow execution for a future time."""
    engine, _ = _runtime()
    execution = _run(
        engine.schedule_workflow(workflow_id, _parse_json(context, "--context"), _parse_when(when))
    )
    typer.echo(f"Execution {execution.execution_id} scheduled for {execution.scheduled_at}")


@workflow_app.command("stats")
def workflow_stats(workflow_id: str) -> None:
    """Show execution counts and success rate for a workflow."""
    engine, _ = _runtime()
    stats = _run(engine.get_workflow_statistics(workflow_id))
    for key, value in stats.items():
        typer.echo(f"{key}: {value}")


# ----------------------------------------------------------------------
# Executions
@execution_app.command("list")
def execution_list(
    workflow_id: Optional[str] = typer.Option(None, "--workflow", help="Filter by workflow id"),
    status: Optional[str] = typer.Option(None, help="Filter by status"),
    customer_id: Optional[str] = typer.Option(None, "--customer", help="Filter by customer id"),
    limit: Optional[int] = typer.Option(None, help="Maximum number of executions"),
) -> None:
    """List executions, newest first."""
    engine, _ = _runtime()
    executions = _run(
        engine.list_executions(
            workflow_id=workflow_id, status=status, customer_id=customer_id, limit=limit
        )
    )
    if not executions:
        typer.echo("No executions found")
        return
    for ex in executions:
        typer.echo(
            f"{ex.execution_id}\t{ex.workflow_id}\t{ex.status.value}\t{ex.customer_id or '-'}"
        )


@execution_app.command("show")
def execution_show(execution_id: str) -> None:
    """Show an execution record, including per-node results."""
    engine, _ = _runtime()
    execution = _run(engine.get_execution(execution_id))
    if execution is None:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    _echo_model(execution)


@execution_app.command("cancel")
def execution_cancel(execution_id: str) -> None:
    """Cancel a scheduled execution."""
    engine, _ = _runtime()
    if _run(engine.cancel_execution(execution_id)):
        typer.echo(f"Execution cancelled: {execution_id}")
    else:
        typer.secho("Execution is not scheduled or does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)


@execution_app.command("cleanup")
def execution_cleanup(
    days: Optional[int] = typer.Option(None, help="Retention window in days"),
) -> None:
    """Delete finished executions older than the retention window."""
    engine, _ = _runtime()
    removed = _run(engine.cleanup_old_executions(days))
    typer.echo(f"Removed {removed} execution(s)")


# ----------------------------------------------------------------------
# Queue
@queue_app.command("push")
def queue_push(
    event_name: str,
    payload: Optional[str] = typer.Option(None, help="Event payload as a JSON object"),
    priority: int = typer.Option(0, help="Higher values are delivered first"),
    delay: float = typer.Option(0, help="Seconds to wait before delivery"),
) -> None:
    """
    Queue an event for delivery.

    Example:
        marketflow queue push customer.register --payload '{"customer_id": 5}'
        # Output: Queued entry 1
    """
    _, queue = _runtime()
    schedule_time = queue.clock() + timedelta(seconds=delay) if delay else None
    entry_id = _run(
        queue.push(
            event_name,
            schedule_time,
            priority,
            payload=_parse_json(payload, "--payload"),
        )
    )
    typer.echo(f"Queued entry {entry_id}")


@queue_app.command("process")
def queue_process(
    batch_size: Optional[int] = typer.Option(None, help="Maximum entries to deliver"),
    concurrency: int = typer.Option(1, help="Entries delivered in parallel"),
) -> None:
    """Deliver due events once."""
    _, queue = _runtime()
    result = _run(queue.process(batch_size, concurrency))
    typer.echo(
        f"Batch {result.batch}: {result.processed} processed, "
        f"{result.retried} retried, {result.failed} failed"
    )


@queue_app.command("stats")
def queue_stats() -> None:
    """Show queue entry counts per status."""
    _, queue = _runtime()
    for status, count in _run(queue.stats()).items():
        typer.echo(f"{status}: {count}")


@queue_app.command("purge")
def queue_purge(
    days: Optional[int] = typer.Option(None, help="Retention window in days"),
) -> None:
    """Delete processed and dead-lettered entries older than the window."""
    _, queue = _runtime()
    removed = _run(queue.purge(days))
    typer.echo(f"Purged {removed} entries")


@queue_app.command("dead-letters")
def queue_dead_letters(
    limit: Optional[int] = typer.Option(None, help="Maximum entries to show"),
) -> None:
    """List dead-lettered entries."""
    _, queue = _runtime()
    entries = _run(queue.dead_letters(limit))
    if not entries:
        typer.echo("No dead letters")
        return
    for entry in entries:
        typer.echo(f"{entry.id}\t{entry.event_name}\t{entry.attempts}\t{entry.error}")


@queue_app.command("retry")
def queue_retry(entry_id: int) -> None:
    """Move a dead-lettered entry back to pending."""
    _, queue = _runtime()
    if _run(queue.retry(entry_id)):
        typer.echo(f"Entry {entry_id} re-queued")
    else:
        typer.secho(f"Entry {entry_id} is not dead-lettered", fg=typer.colors.RED)
        raise typer.Exit(code=1)


# ----------------------------------------------------------------------
# Scheduler
@scheduler_app.command("run")
def scheduler_run(
    interval: float = typer.Option(60.0, help="Seconds between sweeps"),
    lifespan: Optional[float] = typer.Option(None, help="Stop after this many seconds"),
    concurrency: int = typer.Option(1, help="Queue entries delivered in parallel"),
) -> None:
    """
    Run the periodic sweep draining the queue and scheduled executions.

    Example:
        marketflow scheduler run --interval 30
        marketflow scheduler run --interval 1 --lifespan 10
    """
    engine, queue = _runtime()
    config = _config()
    scheduler = Scheduler(
        engine,
        queue,
        queue_batch_size=config.queue.batch_size,
        execution_batch_size=config.workflow.scheduler_batch_size,
        concurrency=concurrency,
    )
    typer.echo(f"Starting scheduler (interval {interval}s)")
    _run(scheduler.run(interval=interval, lifespan=lifespan))
    typer.echo(f"Scheduler stopped after {scheduler.iterations} sweep(s)")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
