"""Command line interface for operating a runwire server."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

import typer

from .retention import wipe_dataclips_for_erase_all_projects
from .runtime import Runtime, build_runtime

T = TypeVar("T")

app = typer.Typer(help="CLI for the runwire run orchestrator")

db_app = typer.Typer(help="Commands for managing the database")
worker_app = typer.Typer(help="Commands for worker credentials")
workorders_app = typer.Typer(help="Commands for inspecting work orders")
runs_app = typer.Typer(help="Commands for inspecting runs")

app.add_typer(db_app, name="db")
app.add_typer(worker_app, name="worker")
app.add_typer(workorders_app, name="workorders")
app.add_typer(runs_app, name="runs")


@app.callback()
def main() -> None:
    """runwire CLI entry point."""
    pass


def _run(op: Callable[[Runtime], Awaitable[T]]) -> T:
    runtime = build_runtime()

    async def wrapper() -> T:
        try:
            return await op(runtime)
        finally:
            await runtime.store.dispose()

    return asyncio.run(wrapper())


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", help="Interface to bind"),
    port: int = typer.Option(4000, help="Port to listen on"),
) -> None:
    """
    Serve the worker WebSocket endpoint.

    Workers connect to ``/worker/websocket?token=<worker token>``.

    Example:
        runwire serve --host 0.0.0.0 --port 4000
    """
    import uvicorn

    from .api import create_app

    uvicorn.run(create_app(build_runtime()), host=host, port=port)


@db_app.command("init")
def db_init() -> None:
    """Create all tables in the configured database."""
    _run(lambda runtime: runtime.store.init_db())
    typer.echo("Database initialized")


@worker_app.command("token")
def worker_token(
    name: str = typer.Option("worker", help="Worker name placed in the token subject"),
    ttl: Optional[int] = typer.Option(None, help="Lifetime in seconds (default: no expiry)"),
) -> None:
    """Print a signed worker token for connecting to the socket."""
    runtime = build_runtime()
    typer.echo(runtime.tokens.generate_worker_token(name, ttl_seconds=ttl))


@app.command("sweep")
def sweep(
    mark_lost: bool = typer.Option(False, help="Finalize stalled runs as lost"),
    wipe: bool = typer.Option(False, help="Wipe dataclips of erase_all projects"),
) -> None:
    """
    Run the periodic maintenance sweeps once.

    Requeues runs claimed but never started, reports stalled started runs and
    optionally marks them lost or wipes retained payloads.

    Example:
        runwire sweep --mark-lost --wipe
    """

    async def op(runtime: Runtime) -> None:
        requeued = await runtime.queue.requeue_unstarted()
        typer.echo(f"Requeued: {len(requeued)}")
        if mark_lost:
            lost = await runtime.queue.mark_lost()
            typer.echo(f"Lost: {len(lost)}")
        else:
            stalled = await runtime.queue.find_stalled()
            typer.echo(f"Stalled: {len(stalled)}")
        if wipe:
            wiped = await wipe_dataclips_for_erase_all_projects(runtime.store)
            typer.echo(f"Wiped: {len(wiped)}")

    _run(op)


@workorders_app.command("list")
def workorders_list(
    workflow: Optional[str] = typer.Option(None, help="Only this workflow id"),
    state: Optional[str] = typer.Option(None, help="Only work orders in this state"),
    limit: int = typer.Option(50, help="Maximum rows"),
) -> None:
    """List recent work orders with their aggregate state."""
    work_orders = _run(
        lambda runtime: runtime.work_orders.list(workflow_id=workflow, state=state, limit=limit)
    )
    if not work_orders:
        typer.echo("No work orders found")
        return
    for wo in work_orders:
        typer.echo(f"{wo.id}\t{wo.state}\t{wo.last_activity.isoformat()}")


@runs_app.command("show")
def runs_show(run_id: str) -> None:
    """
    Show a run, its steps and its log.

    Example:
        runwire runs show 1b7f...
        # Output: Run 1b7f...: failed
        #         - step 9ac2... job 77d1...: fail
        #         [2023-11-08 11:57:33.874083] info Hello
    """

    async def op(runtime: Runtime):
        run = await runtime.runs.get(run_id)
        if run is None:
            return None, [], []
        return run, await runtime.runs.steps_for(run_id), await runtime.runs.log_lines(run_id)

    run, steps, log_lines = _run(op)
    if run is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    typer.echo(f"Run {run.id}: {run.state}")
    if run.error_type:
        typer.echo(f"Error: {run.error_type} {run.error_message or ''}".rstrip())
    for step in steps:
        typer.echo(f"- step {step.id} job {step.job_id}: {step.exit_reason or 'running'}")
    for line in log_lines:
        typer.echo(f"[{line.timestamp}] {line.level or 'info'} {line.message}")
