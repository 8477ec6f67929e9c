import asyncio
import logging
import signal
import time
from collections.abc import Callable
from datetime import datetime
from typing import Any

from .config import Config
from .entity_updates import EntityUpdate, apply_entity_updates
from .errors import ProcessingFailure, classify_error, is_retryable
from .logging import log_context
from .metrics import record_job_completed, record_job_dead, record_job_failed, record_stage
from .models import DeadLetter, Event, utc_now
from .queue import Job, JobQueue
from .rules.engine import RuleEngine
from .steps import upsert_step
from .store import Store

logger = logging.getLogger(__name__)


def retry_delay(attempt: int, base_seconds: float) -> float:
    """Exponential backoff: ``base``, ``2*base``, ``4*base`` ... for attempts 1, 2, 3."""
    return base_seconds * 2 ** max(0, attempt - 1)


class Worker:
    def __init__(
        self,
        store: Store,
        queue: JobQueue,
        engine: RuleEngine,
        config: Config,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.queue = queue
        self.engine = engine
        self.config = config
        self.clock = clock
        self._shutdown = asyncio.Event()

    async def run(self, install_signal_handlers: bool = True) -> None:
        """Run ``concurrency`` consumers until shutdown is requested."""
        if install_signal_handlers:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, self.request_shutdown)

        logger.info(
            "Worker starting (concurrency=%d, max_attempts=%d)",
            self.config.concurrency,
            self.config.max_attempts,
        )
        async with asyncio.TaskGroup() as tg:
            for n in range(self.config.concurrency):
                tg.create_task(self._consume(n))
        logger.info("Worker stopped")

    def request_shutdown(self) -> None:
        logger.info("Shutdown requested")
        self._shutdown.set()

    @property
    def shutdown_event(self) -> asyncio.Event:
        return self._shutdown

    async def _consume(self, n: int) -> None:
        while not self._shutdown.is_set():
            try:
                job = await self.queue.claim(timeout=self.config.poll_interval_seconds)
            except Exception:
                logger.exception("Consumer %d could not claim a job", n)
                await asyncio.sleep(self.config.poll_interval_seconds)
                continue
            if job is not None:
                await self.handle_job(job)
        logger.debug("Consumer %d stopped", n)

    async def handle_job(self, job: Job) -> None:
        """Process one job; never raises."""
        with log_context(event_id=job.event_id, job_attempt=job.attempt):
            await self._handle(job)

    async def _handle(self, job: Job) -> None:
        started = time.monotonic()
        try:
            await self.process_event(job.event_id)
        except Exception as exc:
            record_stage("job", (time.monotonic() - started) * 1000, False)
            logger.exception("Job for event %s failed (attempt %d)", job.event_id, job.attempt)
            try:
                await self._fail(job, exc)
            except Exception:
                logger.exception("Could not record failure of event %s", job.event_id)
            return

        record_stage("job", (time.monotonic() - started) * 1000, True)
        try:
            await self.queue.complete(job)
        except Exception:
            logger.exception("Could not mark job for event %s complete", job.event_id)
        record_job_completed()

    async def _fail(self, job: Job, exc: Exception) -> None:
        error = f"{type(exc).__name__}: {exc}"
        if is_retryable(exc) and job.attempt < job.max_attempts:
            record_job_failed()
            delay = retry_delay(job.attempt, self.config.backoff_base_seconds)
            logger.info(
                "Event %s retrying in %.1fs (attempt=%d)",
                job.event_id,
                delay,
                job.attempt,
            )
            await self.queue.retry(job, error, delay)
            return

        record_job_dead()
        kind = classify_error(exc)
        logger.error(
            "Event %s dead-lettered after %d attempts: %s",
            job.event_id,
            job.attempt,
            error,
            extra={"plo_error_kind": kind},
        )
        await self.queue.dead_letter(job, error)
        await self.store.record_dead_letter(
            DeadLetter(kind=kind, event_id=job.event_id, error=error, payload={"attempts": job.attempt})
        )

    async def process_event(self, event_id: str) -> Event:
        """Run one event through steps, entity updates and realtime rules."""
        event = await self.store.get_event(event_id)
        if event is None:
            raise ProcessingFailure(f"Event {event_id} not found")
        if event.processed_at is not None:
            logger.info("Event %s already processed; skipping", event_id)
            return event

        now = self.clock()
        order_id, installation_id = await self._refresh_scope(event)

        started = time.monotonic()
        async with self.store.transaction():
            step_id = await upsert_step(
                self.store, event.event_type, event.project_id, order_id, installation_id,
                event_id=event.id, now=now,
            )
            outcome = await apply_entity_updates(
                self.store, EntityUpdate(event, event.project_id, order_id, installation_id, now)
            )
            # The handler may have created the entity the step hangs off.
            created = (order_id is None and outcome.created_order_id) or (
                installation_id is None and outcome.created_installation_id
            )
            order_id = order_id or outcome.created_order_id
            installation_id = installation_id or outcome.created_installation_id
            if step_id is None and created:
                step_id = await upsert_step(
                    self.store, event.event_type, event.project_id, order_id, installation_id,
                    event_id=event.id, now=now,
                )

            links: dict[str, Any] = {}
            for name, value in (("order_id", order_id), ("installation_id", installation_id), ("step_id", step_id)):
                if value is not None and getattr(event, name) != value:
                    links[name] = value
            if links:
                await self.store.update_event(event.id, **links)
        record_stage("state", (time.monotonic() - started) * 1000, True)
        event = event.model_copy(update=links)

        await self.engine.evaluate_realtime(event)

        processed_at = self.clock()
        await self.store.update_event(event.id, processed_at=processed_at)
        logger.info(
            "Processed %s %s",
            event.event_type,
            event.id,
            extra={"plo_event_id": event.id, "plo_event_type": event.event_type, "plo_step_id": step_id},
        )
        return event.model_copy(update={"processed_at": processed_at})

    async def _refresh_scope(self, event: Event) -> tuple[str | None, str | None]:
        """Re-resolve scope ids that may have appeared since ingestion."""
        order_id = event.order_id
        if order_id is None and event.order_ref:
            order = await self.store.find_order(event.project_id, event.order_ref)
            order_id = order.id if order else None
        installation_id = event.installation_id
        if installation_id is None:
            installation = await self.store.get_installation(event.project_id)
            installation_id = installation.id if installation else None
        return order_id, installation_id
