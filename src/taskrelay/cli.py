from __future__ import annotations

import asyncio
import dataclasses
import signal
from pathlib import Path
from typing import Any, Awaitable, Callable

import click

from taskrelay import __version__
from taskrelay.utils.config import Config, get_config
from taskrelay.utils.logger import setup_logging


@click.group()
@click.version_option(version=__version__, prog_name="taskrelay")
@click.option(
    "--store",
    type=click.Choice(["sqlite", "files", "memory"], case_sensitive=False),
    default=None,
    help="State store adapter (default: TASKRELAY_STORE or sqlite).",
)
@click.option("--db-path", default=None, help="SQLite database file for the sqlite store.")
@click.option("--data-dir", default=None, help="Bucket directory root for the files store.")
@click.option("--workers-file", default=None, help="YAML worker roster.")
@click.option("--log-level", default=None, help="Logging level (default: TASKRELAY_LOG_LEVEL or INFO).")
@click.pass_context
def main(
    ctx: click.Context,
    store: str | None,
    db_path: str | None,
    data_dir: str | None,
    workers_file: str | None,
    log_level: str | None,
) -> None:
    """taskrelay - lifecycle orchestration for requests and tasks."""
    overrides: dict[str, Any] = {}
    if store:
        overrides["store"] = store.lower()
    if db_path:
        overrides["db_path"] = Path(db_path)
    if data_dir:
        overrides["data_dir"] = Path(data_dir)
    if workers_file:
        overrides["workers_file"] = Path(workers_file)
    if log_level:
        overrides["log_level"] = log_level
    config = dataclasses.replace(get_config(), **overrides)
    setup_logging(config.log_level)
    ctx.obj = config


def _run_with_orchestrator(config: Config, action: Callable[[Any], Awaitable[Any]]) -> Any:
    """Prepare an orchestrator for a one-shot command and run ``action`` on it."""
    from taskrelay.db.base import StoreError
    from taskrelay.services.approval_gate import InvalidTransitionError
    from taskrelay.services.blocker_registry import BlockerNotFoundError
    from taskrelay.services.completion import UnavailableCompletionService
    from taskrelay.services.lock_manager import ItemQuarantinedError
    from taskrelay.services.orchestrator import Orchestrator

    async def _run() -> Any:
        orchestrator = Orchestrator.from_config(
            config, completion=UnavailableCompletionService("one-shot command")
        )
        try:
            await orchestrator.prepare()
            return await action(orchestrator)
        finally:
            await orchestrator.store.close()

    try:
        return asyncio.run(_run())
    except (
        InvalidTransitionError,
        BlockerNotFoundError,
        ItemQuarantinedError,
        StoreError,
        ValueError,
    ) as exc:
        raise click.ClickException(str(exc)) from exc


@main.command()
@click.pass_obj
def init(config: Config) -> None:
    """Initialize the state store."""
    from taskrelay.db import create_store

    async def _init() -> None:
        store = create_store(config)
        await store.initialize()
        await store.close()

    asyncio.run(_init())
    location = config.db_path if config.store == "sqlite" else config.data_dir
    click.echo(f"{config.store} store initialized at {location}")


@main.command()
@click.option("--no-scheduler", is_flag=True, help="Disable interval ticks and report triggers.")
@click.pass_obj
def run(config: Config, no_scheduler: bool) -> None:
    """Run the orchestrator until interrupted."""
    from taskrelay.services.orchestrator import Orchestrator

    async def _run() -> None:
        orchestrator = Orchestrator.from_config(config)
        await orchestrator.start(with_scheduler=not no_scheduler)

        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                pass

        try:
            await stop_event.wait()
        finally:
            await orchestrator.stop()
            await orchestrator.store.close()
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.remove_signal_handler(sig)
                except (NotImplementedError, ValueError):
                    pass

    click.echo(f"taskrelay running ({config.store} store). Press Ctrl+C to stop.")
    asyncio.run(_run())


@main.command()
def serve() -> None:
    """Start the taskrelay MCP server (runs the orchestrator inside it)."""
    from taskrelay.server import mcp

    click.echo("Starting taskrelay MCP server...")
    mcp.run()


@main.command("add-task")
@click.argument("title")
@click.option("--capability", "-c", required=True, help="Capability tag a worker must have.")
@click.option(
    "--priority",
    "-p",
    type=click.Choice(["critical", "high", "medium", "low"]),
    default="medium",
    show_default=True,
)
@click.option("--depends-on", "-d", multiple=True, help="Task id that must be done first.")
@click.option("--body", default="", help="Task description.")
@click.option("--no-review", is_flag=True, help="Go straight to done on success.")
@click.option("--id", "item_id", default=None, help="Explicit task id.")
@click.pass_obj
def add_task(
    config: Config,
    title: str,
    capability: str,
    priority: str,
    depends_on: tuple[str, ...],
    body: str,
    no_review: bool,
    item_id: str | None,
) -> None:
    """Add a task to the backlog."""
    from taskrelay.services.intake import new_task

    try:
        task = new_task(
            title,
            capability,
            body=body,
            priority=priority,
            dependencies=depends_on,
            requires_review=not no_review,
            item_id=item_id,
        )
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    bucket = _run_with_orchestrator(config, lambda o: o.add_item(task))
    click.echo(f"{task.id} added to {bucket.value}")


@main.command("add-request")
@click.argument("title")
@click.option("--body", default="", help="Request description.")
@click.option("--id", "item_id", default=None, help="Explicit request id.")
@click.pass_obj
def add_request(config: Config, title: str, body: str, item_id: str | None) -> None:
    """Add a request to pending."""
    from taskrelay.services.intake import new_request

    try:
        request = new_request(title, body=body, item_id=item_id)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    bucket = _run_with_orchestrator(config, lambda o: o.add_item(request))
    click.echo(f"{request.id} added to {bucket.value}")


@main.command()
@click.pass_obj
def status(config: Config) -> None:
    """Print a status report."""
    report = _run_with_orchestrator(config, lambda o: o.status_report())
    click.echo(report.render(), nl=False)


@main.command()
@click.argument("item_id")
@click.option("--by", "approver", default="operator", show_default=True)
@click.pass_obj
def approve(config: Config, item_id: str, approver: str) -> None:
    """Approve a task in review or a request in analysis."""
    result = _run_with_orchestrator(config, lambda o: o.approve(item_id, approver))
    click.echo(f"{item_id} -> {result['state']}")
    for task_id in result.get("generated", []):
        click.echo(f"  generated {task_id}")


@main.command()
@click.argument("item_id")
@click.option("--feedback", "-f", required=True, help="Feedback appended to the item.")
@click.option("--by", "reviewer", default="operator", show_default=True)
@click.pass_obj
def reject(config: Config, item_id: str, feedback: str, reviewer: str) -> None:
    """Reject a task in review (back to active) or a request in analysis."""
    result = _run_with_orchestrator(config, lambda o: o.reject(item_id, feedback, reviewer))
    click.echo(f"{item_id} -> {result['state']}")


@main.command()
@click.option("--severity", type=click.Choice(["low", "medium", "high"]), default=None)
@click.option("--worker", "worker_id", default=None)
@click.option("--all", "include_cleared", is_flag=True, help="Include cleared blockers.")
@click.pass_obj
def blockers(config: Config, severity: str | None, worker_id: str | None, include_cleared: bool) -> None:
    """List blockers (details truncated)."""

    async def _list(orchestrator: Any) -> list[dict]:
        return orchestrator.registry.summaries(severity, worker_id, include_cleared)

    rows = _run_with_orchestrator(config, _list)
    if not rows:
        click.echo("No blockers.")
        return
    for row in rows:
        state = "cleared" if row["cleared_at"] else "open"
        if row["escalated"] and not row["cleared_at"]:
            state = "ESCALATED"
        click.echo(f"{row['item_id']} [{row['severity']}] {state} - {row['error']}")
        if row.get("details"):
            click.echo(f"    {row['details']}")


@main.command()
@click.argument("item_id")
@click.pass_obj
def blocker(config: Config, item_id: str) -> None:
    """Show the full diagnostic for one blocked item."""
    info = _run_with_orchestrator(config, lambda o: o.registry.describe(item_id))
    record = info["blocker"]
    click.echo(f"{item_id}: {info['title'] or ''} ({info['bucket'] or 'missing'})")
    status = "open" if info["open"] else "cleared"
    if info["escalated"]:
        status += " (escalated)"
    click.echo(f"Status: {status}")
    if record.get("resolution"):
        click.echo(f"Resolution: {record['resolution']}")
    click.echo(f"Worker: {record['worker_id']}")
    click.echo(f"Severity: {record['severity']}")
    click.echo(f"Error: {record['error']}")
    if record.get("details"):
        click.echo("Details:")
        click.echo(record["details"])
    if info["recent_entries"]:
        click.echo("Recent entries:")
        for entry in info["recent_entries"]:
            click.echo(f"  [{entry['timestamp']}] {entry['author']}: {entry['text']}")


@main.command()
@click.argument("item_id")
@click.option("--by", "operator", default="operator", show_default=True)
@click.option("--resolution", "-r", default=None, help="How the blocker was resolved.")
@click.pass_obj
def clear(config: Config, item_id: str, operator: str, resolution: str | None) -> None:
    """Clear an item's blockers and return it to the backlog."""
    result = _run_with_orchestrator(
        config, lambda o: o.clear_blocker(item_id, operator, resolution)
    )
    suffix = ", returned to backlog" if result["requeued"] else ""
    click.echo(f"Cleared {result['cleared']} blocker(s) on {item_id}{suffix}")


@main.command()
@click.argument("item_id")
@click.option("--by", "operator", default="operator", show_default=True)
@click.pass_obj
def escalate(config: Config, item_id: str, operator: str) -> None:
    """Flag an item's open blockers as urgent."""
    result = _run_with_orchestrator(config, lambda o: o.escalate_blocker(item_id, operator))
    if result["escalated"]:
        click.echo(f"Escalated {result['escalated']} blocker(s) on {item_id}")
    else:
        click.echo(f"{item_id} is already escalated")


@main.command()
def version() -> None:
    """Print the version and exit."""
    click.echo(f"taskrelay {__version__}")


if __name__ == "__main__":
    main()
