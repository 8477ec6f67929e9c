"""Command-line entry points for PLO workers."""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from datetime import timedelta
from pathlib import Path
from typing import Any, TypeVar

import click

from .config import Config
from .errors import AdapterError, UnregisteredSourceError
from .logging import setup_logging
from .main import Pipeline, build_pipeline, build_queue, main as run_main, seed_default_rules
from .queue import reconcile_unqueued_events
from .rules.engine import describe_rules
from .scheduler import reconcile_grace_minutes, stale_job_minutes
from .store import PgStore

T = TypeVar("T")


def _config() -> Config:
    try:
        config = Config.from_env()
    except RuntimeError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    setup_logging(config.log_format)
    return config


def _with_pipeline(config: Config, fn: Callable[[Pipeline], Awaitable[T]]) -> T:
    async def runner() -> T:
        store = await PgStore.connect(config.database_url)
        try:
            return await fn(build_pipeline(config, store, build_queue(config, store)))
        finally:
            await store.close()

    return asyncio.run(runner())


@click.group()
def cli():
    """Project lifecycle orchestration workers."""


@cli.command()
@click.option(
    "--queue",
    "queue_backend",
    type=click.Choice(["postgres", "memory"]),
    default="postgres",
    show_default=True,
    help="Job queue backend.",
)
def run(queue_backend: str):
    """Run the worker pool, scheduled triggers and health endpoint."""
    run_main(queue_backend)


@cli.command("init-db")
@click.option("--no-seed", is_flag=True, help="Create tables without seeding the default rules.")
def init_db(no_seed: bool):
    """Apply the schema and seed the default anomaly rules."""
    config = _config()

    async def go(pipeline: Pipeline) -> int:
        await pipeline.store.ensure_schema()
        return 0 if no_seed else await seed_default_rules(pipeline.store)

    seeded = _with_pipeline(config, go)
    click.echo(f"Schema applied; {seeded} rules seeded.")


@cli.command()
@click.argument("source")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def ingest(source: str, file: Path):
    """Adapt and ingest SOURCE events from a JSON FILE (object or list)."""
    config = _config()
    with file.open() as f:
        data = json.load(f)
    payloads: list[dict[str, Any]] = data if isinstance(data, list) else [data]

    async def go(pipeline: Pipeline) -> list[dict[str, Any]]:
        results = []
        for raw in payloads:
            try:
                result = await pipeline.ingestion.ingest_raw(source, raw)
            except (AdapterError, UnregisteredSourceError) as exc:
                results.append({"accepted": False, "error": exc.kind, "message": str(exc)})
                continue
            results.append(result.model_dump())
        return results

    results = _with_pipeline(config, go)
    for result in results:
        click.echo(json.dumps(result, default=str))
    if any(not r.get("accepted") for r in results):
        sys.exit(1)


@cli.command("evaluate-rules")
@click.option("--frequency", type=click.Choice(["hourly", "daily"]), required=True)
def evaluate_rules(frequency: str):
    """Run one scheduled rule sweep now."""
    config = _config()

    async def go(pipeline: Pipeline) -> list[Any]:
        return await pipeline.engine.evaluate_scheduled(frequency)

    fired = _with_pipeline(config, go)
    click.echo(f"{len(fired)} rules triggered.")
    for result in fired:
        click.echo(f"  {result.rule_id} project={result.project_id} order={result.order_id or '-'}")


@cli.command()
def escalate():
    """Run one escalation sweep now."""
    config = _config()

    async def go(pipeline: Pipeline) -> int:
        return await pipeline.notifications.run_escalation_check()

    click.echo(f"{_with_pipeline(config, go)} notifications escalated.")


@cli.command()
@click.option("--grace-minutes", type=int, default=None, help="Only events older than this.")
def reconcile(grace_minutes: int | None):
    """Release stale jobs and re-enqueue events that never reached the queue."""
    config = _config()
    grace = timedelta(minutes=grace_minutes if grace_minutes is not None else reconcile_grace_minutes())

    async def go(pipeline: Pipeline) -> int:
        return await reconcile_unqueued_events(
            pipeline.store, pipeline.queue, grace, stale_after=timedelta(minutes=stale_job_minutes())
        )

    click.echo(f"{_with_pipeline(config, go)} events re-enqueued.")


@cli.command("dead-letters")
@click.option("--limit", type=int, default=50, show_default=True)
def dead_letters(limit: int):
    """List recent dead letters."""
    config = _config()

    async def go(pipeline: Pipeline) -> list[Any]:
        return await pipeline.store.list_dead_letters(limit)

    for entry in _with_pipeline(config, go):
        click.echo(f"{entry.created_at:%Y-%m-%d %H:%M} {entry.kind:<20} {entry.event_id or '-'} {entry.error}")


@cli.command("list-rules")
def list_rules():
    """List the rules stored in the database."""
    config = _config()

    async def go(pipeline: Pipeline) -> list[Any]:
        return await pipeline.store.list_rules()

    for rule in describe_rules(_with_pipeline(config, go)):
        state = "active" if rule["active"] else "inactive"
        click.echo(f"{rule['id']}: {rule['name']} [{rule['frequency']}, {rule['severity']}, {state}]")
