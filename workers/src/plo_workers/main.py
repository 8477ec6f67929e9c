"""PLO workers: wiring and the long-running process."""

import asyncio
import logging
from dataclasses import dataclass

from .adapters import AdapterRegistry, build_default_registry
from .config import Config
from .entity_updates import registered_entity_event_types
from .health import db_checker, start_health_server
from .ingestion import IngestionService
from .logging import setup_logging
from .notifications import NotificationService, PushHub, build_email_transport, build_ticketing
from .queue import JobQueue, MemoryJobQueue, PgJobQueue
from .rules.defaults import default_rules
from .rules.engine import RuleEngine
from .scheduler import build_triggers
from .store import PgStore, Store
from .worker import Worker

logger = logging.getLogger(__name__)


@dataclass
class Pipeline:
    store: Store
    queue: JobQueue
    registry: AdapterRegistry
    push: PushHub
    notifications: NotificationService
    engine: RuleEngine
    ingestion: IngestionService
    worker: Worker


def build_pipeline(config: Config, store: Store, queue: JobQueue) -> Pipeline:
    registry = build_default_registry()
    push = PushHub()
    notifications = NotificationService(
        store,
        build_email_transport(config),
        push=push,
        ticketing=build_ticketing(config),
        config=config,
    )
    engine = RuleEngine(store, notifications, config)
    return Pipeline(
        store=store,
        queue=queue,
        registry=registry,
        push=push,
        notifications=notifications,
        engine=engine,
        ingestion=IngestionService(store, queue, registry),
        worker=Worker(store, queue, engine, config),
    )


def build_queue(config: Config, store: PgStore, backend: str = "postgres") -> JobQueue:
    if backend == "memory":
        return MemoryJobQueue(maxsize=config.queue_maxsize, max_attempts=config.max_attempts)
    return PgJobQueue(store.pool, max_attempts=config.max_attempts, poll_interval=config.poll_interval_seconds)


async def seed_default_rules(store: Store) -> int:
    rules = default_rules()
    for rule in rules:
        await store.save_rule(rule)
    return len(rules)


def main(queue_backend: str = "postgres") -> None:
    config = Config.from_env()
    setup_logging(config.log_format)

    logger.info("PLO worker starting")
    logger.info("Log format: %s", config.log_format)
    logger.info("Health port: %d", config.health_port)
    logger.info("Entity handlers for %d event types", len(registered_entity_event_types()))

    asyncio.run(_run(config, queue_backend))


async def _run(config: Config, queue_backend: str = "postgres") -> None:
    store = await PgStore.connect(config.database_url, max_size=max(4, config.concurrency * 2))
    try:
        await store.ensure_schema()
        pipeline = build_pipeline(config, store, build_queue(config, store, queue_backend))

        health_server = await start_health_server(
            config.health_port,
            db_checker(config.database_url),
            pipeline.queue.depth,
            pipeline.push,
        )
        logger.info("Health server started")

        shutdown = pipeline.worker.shutdown_event
        triggers = build_triggers(store, pipeline.queue, pipeline.engine, pipeline.notifications)
        try:
            async with asyncio.TaskGroup() as tg:
                tg.create_task(pipeline.worker.run())
                for trigger in triggers:
                    tg.create_task(trigger.run(shutdown))
        finally:
            health_server.close()
            await health_server.wait_closed()
    finally:
        await store.close()


if __name__ == "__main__":
    main()
