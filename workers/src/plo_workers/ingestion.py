"""Event ingestion: resolve, deduplicate, persist, enqueue.

Persisting an event and enqueueing its job are two steps. The event row is
written first with ``processed_at`` unset; if enqueueing then fails for good,
the reconciliation sweep in ``queue`` re-enqueues it.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from pydantic import BaseModel

from . import metrics
from .adapters import AdapterRegistry
from .errors import UnresolvedProjectError
from .models import DeadLetter, Event, NormalizedEvent, Severity
from .queue import JobQueue, enqueue_with_retry
from .store import Store

logger = logging.getLogger(__name__)

CRITICAL_EVENT_TYPES = frozenset(
    {
        "stock.shortage",
        "picking.discrepancy",
        "shipment.exception",
        "consolidation.exception",
        "lastmile.failed",
        "lastmile.partial_delivered",
        "lastmile.damaged",
        "installation.issue",
        "installation.partial",
        "quality.issue_raised",
    }
)

WARNING_EVENT_TYPES = frozenset(
    {
        "stock.partial",
        "inspiration.abandoned",
        "quote_products.expired",
        "shipment.eta_updated",
        "consolidation.eta_updated",
        "lastmile.rescheduled",
        "installation.rescheduled",
        "installation.cancelled",
    }
)


def derive_severity(event_type: str) -> Severity:
    if event_type in CRITICAL_EVENT_TYPES:
        return "critical"
    if event_type in WARNING_EVENT_TYPES:
        return "warning"
    return "info"


class IngestResult(BaseModel):
    accepted: bool
    duplicate: bool = False
    event_id: str | None = None
    project_id: str | None = None
    dead_letter: bool = False
    message: str | None = None


class IngestionService:
    def __init__(
        self,
        store: Store,
        queue: JobQueue,
        registry: AdapterRegistry | None = None,
        enqueue_attempts: int = 3,
        enqueue_base_delay: float = 0.1,
    ) -> None:
        self.store = store
        self.queue = queue
        self.registry = registry
        self.enqueue_attempts = enqueue_attempts
        self.enqueue_base_delay = enqueue_base_delay

    async def ingest_raw(self, source: str, raw: dict[str, Any]) -> IngestResult:
        """Adapt a raw payload with the source's adapter, then ingest it.

        ``AdapterError`` and ``UnregisteredSourceError`` propagate to the caller.
        """
        if self.registry is None:
            raise RuntimeError("IngestionService has no adapter registry")
        return await self.ingest_event(self.registry.adapt(source, raw))

    async def ingest_event(self, event: NormalizedEvent) -> IngestResult:
        started = time.monotonic()
        log_extra = {"plo_source": event.source, "plo_source_ref": event.source_ref}

        project = await self.store.resolve_project(event.project_ref, event.source)
        if project is None:
            error = UnresolvedProjectError(event.project_ref, event.source)
            await self.store.record_dead_letter(
                DeadLetter(
                    kind=error.kind,
                    source=event.source,
                    payload=event.model_dump(mode="json"),
                    error=str(error),
                )
            )
            metrics.incr("events_dead_lettered")
            logger.warning("%s", error, extra={**log_extra, "plo_error_kind": error.kind})
            return IngestResult(accepted=False, dead_letter=True, message=str(error))

        order_id = None
        if event.order_ref:
            order = await self.store.find_order(project.id, event.order_ref)
            order_id = order.id if order else None
        installation = await self.store.get_installation(project.id)

        record = Event(
            project_id=project.id,
            order_id=order_id,
            installation_id=installation.id if installation else None,
            source=event.source,
            source_ref=event.source_ref,
            event_type=event.event_type,
            order_ref=event.order_ref,
            severity=derive_severity(event.event_type),
            occurred_at=event.occurred_at,
            payload=event.payload,
        )
        if not await self.store.insert_event(record):
            existing = await self.store.find_event(event.source, event.source_ref)
            metrics.incr("events_duplicate")
            logger.info("Duplicate event %s/%s ignored", event.source, event.source_ref, extra=log_extra)
            return IngestResult(
                accepted=True,
                duplicate=True,
                event_id=existing.id if existing else None,
                project_id=project.id,
            )

        metrics.incr("events_ingested")
        enqueued = await enqueue_with_retry(
            self.queue, record.id, attempts=self.enqueue_attempts, base_delay=self.enqueue_base_delay
        )
        metrics.record_stage("ingest", (time.monotonic() - started) * 1000, True)
        logger.info(
            "Ingested %s %s",
            event.event_type,
            record.id,
            extra={**log_extra, "plo_event_id": record.id, "plo_event_type": event.event_type},
        )
        return IngestResult(
            accepted=True,
            event_id=record.id,
            project_id=project.id,
            message=None if enqueued else "event stored; enqueue deferred to reconciliation",
        )
