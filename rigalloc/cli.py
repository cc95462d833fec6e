"""CLI interface for the allocation engine.

Provides commands for:
- Starting the allocation server
- Seeding the reference SQL store from a JSON file
- Querying and changing allocations on a running server
"""

import asyncio
import json
from pathlib import Path

import click
import uvicorn

from rigalloc import __version__
from rigalloc.client import (
    AllocationClient,
    AllocationClientError,
    EquipmentConflictError,
)
from rigalloc.config import get_settings
from rigalloc.models import Collection

_STATUS_COLORS = {
    "available": "green",
    "allocated": "yellow",
    "deployed": "blue",
    "unavailable": "red",
}


def _client(ctx: click.Context) -> AllocationClient:
    return AllocationClient(ctx.obj["url"])


@click.group()
@click.version_option(version=__version__, prog_name="rigalloc")
@click.option(
    "--url",
    envvar="RIGALLOC_URL",
    default=None,
    help="Allocation server URL (defaults to the configured host and port)",
)
@click.pass_context
def cli(ctx: click.Context, url: str | None) -> None:
    """RIGALLOC - equipment allocation for oilfield job diagrams."""
    settings = get_settings()
    ctx.ensure_object(dict)
    ctx.obj["url"] = url or f"http://{settings.host}:{settings.port}"


@cli.command()
@click.option("--host", "-h", default=None, help="Host to bind to")
@click.option("--port", "-p", default=None, type=int, help="Port to bind to")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development")
def serve(host: str | None, port: int | None, reload: bool) -> None:
    """Start the allocation server."""
    settings = get_settings()

    actual_host = host or settings.host
    actual_port = port or settings.port

    click.echo(f"Starting allocation server on {actual_host}:{actual_port}")

    uvicorn.run(
        "rigalloc.server:app",
        host=actual_host,
        port=actual_port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def seed(path: Path) -> None:
    """Load inventory into the SQL store.

    PATH is a JSON object keyed by collection name
    (equipment_types, storage_locations, equipment_items,
    individual_equipment), each holding a list of records.
    """
    from rigalloc.adapters.sql import SQLAdapter

    data = json.loads(path.read_text())
    unknown = set(data) - {c.value for c in Collection}
    if unknown:
        raise click.ClickException(f"Unknown collections: {', '.join(sorted(unknown))}")

    async def run() -> dict[str, int]:
        adapter = SQLAdapter()
        await adapter.initialize()
        counts = {}
        try:
            for collection in Collection:
                if collection.value in data:
                    counts[collection.value] = await adapter.seed(collection, data[collection.value])
        finally:
            await adapter.close()
        return counts

    for name, count in asyncio.run(run()).items():
        click.echo(f"  {name}: {count}")


@cli.command()
@click.argument("equipment_id")
@click.pass_context
def status(ctx: click.Context, equipment_id: str) -> None:
    """Show the status of EQUIPMENT_ID."""
    with _client(ctx) as client:
        value = _call(client.get_status, equipment_id)
    click.echo(f"{equipment_id}: {click.style(value, fg=_STATUS_COLORS.get(value), bold=True)}")


@cli.command()
@click.argument("equipment_id")
@click.argument("job_id")
@click.option("--job-name", default=None, help="Display name of the job")
@click.option("--deploy", is_flag=True, help="Mark as deployed rather than allocated")
@click.option("--quantity", "-q", type=int, default=None, help="Bulk quantity")
@click.pass_context
def allocate(
    ctx: click.Context,
    equipment_id: str,
    job_id: str,
    job_name: str | None,
    deploy: bool,
    quantity: int | None,
) -> None:
    """Allocate EQUIPMENT_ID to JOB_ID."""
    with _client(ctx) as client:
        try:
            allocation = client.allocate(
                equipment_id,
                job_id,
                job_name=job_name,
                status="deployed" if deploy else "allocated",
                quantity=quantity,
            )
        except EquipmentConflictError as e:
            conflict = e.conflict
            raise click.ClickException(
                f"{equipment_id} is held by {conflict.get('current_job_name')} "
                f"({conflict.get('current_job_id')}); conflict recorded"
            ) from e
        except AllocationClientError as e:
            raise click.ClickException(str(e)) from e
    click.echo(
        click.style(
            f"✓ {allocation.equipment_id} {allocation.status} to {allocation.job_name} "
            f"(x{allocation.quantity})",
            fg="green",
        )
    )


@cli.command()
@click.argument("equipment_id")
@click.argument("job_id")
@click.pass_context
def release(ctx: click.Context, equipment_id: str, job_id: str) -> None:
    """Release EQUIPMENT_ID from JOB_ID."""
    with _client(ctx) as client:
        released = _call(client.release, equipment_id, job_id)
    if released:
        click.echo(click.style(f"✓ Released {equipment_id}", fg="green"))
    else:
        click.echo(f"{equipment_id} is not held by {job_id}; nothing to release")


@cli.command()
@click.pass_context
def conflicts(ctx: click.Context) -> None:
    """List open conflicts."""
    with _client(ctx) as client:
        open_conflicts = _call(client.list_conflicts)

    if not open_conflicts:
        click.echo("No open conflicts.")
        return

    click.echo(f"Open conflicts ({len(open_conflicts)}):\n")
    for conflict in open_conflicts:
        click.echo(f"  {click.style(conflict.equipment_id, fg='red', bold=True)} {conflict.equipment_name}")
        click.echo(f"    held by:      {conflict.current_job_name} ({conflict.current_job_id})")
        click.echo(f"    requested by: {conflict.requested_job_name} ({conflict.requested_job_id})")
        click.echo()


@cli.command()
@click.argument("equipment_id")
@click.argument("resolution", type=click.Choice(["current", "requested"]))
@click.pass_context
def resolve(ctx: click.Context, equipment_id: str, resolution: str) -> None:
    """Resolve the conflict on EQUIPMENT_ID in favour of RESOLUTION."""
    with _client(ctx) as client:
        allocation = _call(client.resolve_conflict, equipment_id, resolution)
    holder = allocation.job_name if allocation else "nobody"
    click.echo(click.style(f"✓ {equipment_id} now held by {holder}", fg="green"))


@cli.command()
@click.pass_context
def sync(ctx: click.Context) -> None:
    """Force a full refetch on the server."""
    with _client(ctx) as client:
        report = _call(client.sync)
    color = "green" if not report["failed"] else "red"
    click.echo(
        click.style(
            f"Sync {report['status']}: {len(report['refreshed'])} refreshed, "
            f"{len(report['failed'])} failed ({report['duration_ms']}ms)",
            fg=color,
        )
    )


@cli.command()
@click.option("--clear", is_flag=True, help="Clear completed operations afterwards")
@click.pass_context
def history(ctx: click.Context, clear: bool) -> None:
    """Show bulk operation history."""
    with _client(ctx) as client:
        operations = _call(client.operation_history)
        removed = _call(client.clear_completed_operations) if clear else None

    if not operations:
        click.echo("No bulk operations.")
    for op in operations:
        color = "red" if op.status == "failed" or op.failure_count else "green"
        click.echo(
            f"  {op.id}  {op.type:<14} {click.style(op.status, fg=color)}  "
            f"{op.success_count} ok / {op.failure_count} failed  {op.duration_ms}ms"
        )
        for item, error in (op.failures or {}).items():
            click.echo(f"      {item}: {error}")
    if removed is not None:
        click.echo(click.style(f"✓ Cleared {removed} operations", fg="yellow"))


def _call(fn, *args):
    try:
        return fn(*args)
    except AllocationClientError as e:
        raise click.ClickException(str(e)) from e


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
