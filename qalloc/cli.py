"""CLI interface for QAlloc.

Provides commands for:
- Creating the database schema
- Running a compute allocation task
- Running capacity updates for resource pools
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import click
import pydantic

from qalloc import __version__
from qalloc.capacity import CapacityUpdateTask
from qalloc.compute import ComputeAllocationTask
from qalloc.config import get_settings
from qalloc.db import close_db, get_engine, init_db
from qalloc.db.models import AllocationTaskState, TaskStage
from qalloc.errors import QallocError
from qalloc.logging import configure_logging
from qalloc.metrics import metrics
from qalloc.schemas import AllocationRequest
from qalloc.store import RecordStore
from qalloc.tasks import LogNotifier

T = TypeVar("T")


def _parse_properties(values: tuple[str, ...]) -> dict[str, str]:
    properties: dict[str, str] = {}
    for value in values:
        key, sep, item = value.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"Expected KEY=VALUE, got '{value}'", param_hint="--property")
        properties[key] = item
    return properties


def _run_with_store(action: Callable[[RecordStore], Awaitable[T]]) -> T:
    settings = get_settings()
    configure_logging(json_format=not settings.debug, level=settings.log_level)

    async def runner() -> T:
        engine = get_engine()
        await init_db(engine)
        try:
            return await action(RecordStore.for_engine(engine))
        finally:
            await close_db()

    try:
        return asyncio.run(runner())
    except QallocError as exc:
        raise click.ClickException(str(exc)) from exc


def _echo_metrics(show: bool) -> None:
    if show:
        click.echo(metrics.to_prometheus(), nl=False)


@click.group()
@click.version_option(version=__version__, prog_name="qalloc")
def cli() -> None:
    """QAlloc - compute allocation and pool capacity tasks."""
    pass


@cli.command("init-db")
def init_db_command() -> None:
    """Create the database tables."""

    async def create_tables() -> None:
        try:
            await init_db(get_engine())
        finally:
            await close_db()

    asyncio.run(create_tables())
    click.echo(f"Database ready at {get_settings().database_url}")


@cli.command()
@click.option("--description", "-d", "description_id", required=True, help="Compute description id")
@click.option("--count", "-n", default=1, type=int, help="Number of machines")
@click.option("--pool", "pool_id", default=None, help="Resource pool id")
@click.option("--placement-group", "placement_group_id", default=None, help="Group placement id")
@click.option("--tenant-group", default=None, help="Tenant group of the request")
@click.option("--profile", "profiles", multiple=True, help="Allowed profile id, in preference order")
@click.option("--property", "-p", "properties", multiple=True, help="Custom property KEY=VALUE")
@click.option("--callback", default=None, help="URL notified with the task result")
@click.option("--metrics", "show_metrics", is_flag=True, help="Print metrics after the run")
def allocate(
    description_id: str,
    count: int,
    pool_id: str | None,
    placement_group_id: str | None,
    tenant_group: str | None,
    profiles: tuple[str, ...],
    properties: tuple[str, ...],
    callback: str | None,
    show_metrics: bool,
) -> None:
    """Allocate COUNT machines of a compute description."""
    payload = {
        "resource_description_id": description_id,
        "resource_count": count,
        "resource_pool_id": pool_id,
        "placement_group_id": placement_group_id,
        "tenant_group": tenant_group,
        "profile_constraints": list(profiles) or None,
        "custom_properties": _parse_properties(properties),
        "callback_ref": callback,
    }
    try:
        request = AllocationRequest.model_validate(payload)
    except pydantic.ValidationError as exc:
        raise click.BadParameter(str(exc)) from exc

    async def action(store: RecordStore) -> AllocationTaskState | None:
        notifier = None if callback else LogNotifier()
        task = ComputeAllocationTask(store, notifier, ephemeral=False)
        return await task.allocate_compute(request)

    record = _run_with_store(action)

    if record is None:
        raise click.ClickException("Allocation task could not be created")

    click.echo(f"Task {record.id}: {record.stage.value}")
    if record.stage == TaskStage.ERROR:
        message = (record.error_info or {}).get("message", "unknown error")
        raise click.ClickException(message)

    for link in record.resource_links:
        click.echo(f"  {click.style(link, fg='green')}")
    _echo_metrics(show_metrics)


@cli.group()
def capacity() -> None:
    """Resource pool capacity commands."""
    pass


@capacity.command("update")
@click.option("--pool", "pool_id", default=None, help="Resource pool id")
@click.option("--all", "all_pools", is_flag=True, help="Update every resource pool")
@click.option("--metrics", "show_metrics", is_flag=True, help="Print metrics after the run")
def update_capacity(pool_id: str | None, all_pools: bool, show_metrics: bool) -> None:
    """Aggregate pool capacity and rebalance group placements."""
    if bool(pool_id) == all_pools:
        raise click.UsageError("Pass exactly one of --pool or --all")

    async def action(store: RecordStore):
        task = CapacityUpdateTask(store, LogNotifier())
        if all_pools:
            return await task.trigger_for_all_pools()
        return {pool_id: await task.trigger_for_pool(pool_id)}

    results = _run_with_store(action)
    if not results:
        click.echo("No resource pools found.")

    for pool, record in results.items():
        if record is None:
            click.echo(f"  {pool}: skipped")
        else:
            color = "green" if record.stage == TaskStage.COMPLETED else "red"
            click.echo(f"  {pool}: {click.style(record.stage.value, fg=color)}")
    _echo_metrics(show_metrics)


if __name__ == "__main__":
    cli()
