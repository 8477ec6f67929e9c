"""Ingestion: resolve the project, persist once, enqueue."""

from __future__ import annotations

import pytest

from fakes import FlakyQueue, MemoryStore
from plo_workers import metrics
from plo_workers.adapters import build_default_registry
from plo_workers.errors import AdapterError, UnregisteredSourceError
from plo_workers.ingestion import IngestionService, derive_severity
from plo_workers.models import Installation, NormalizedEvent, Order, Project
from plo_workers.queue import MemoryJobQueue


def _raw(event_type="stock.shortage", source_ref="SHORT-1", **overrides) -> dict:
    raw = {
        "source_ref": source_ref,
        "event_type": event_type,
        "project_ref": "CRM-PRJ-1",
        "order_ref": "ERP-1",
        "occurred_at": "2026-03-02T10:00:00Z",
        "payload": {"erp_order_ref": "ERP-1", "sku": "SKU-1"},
    }
    raw.update(overrides)
    return raw


@pytest.fixture
async def store():
    store = MemoryStore()
    await store.insert_project(Project(id="p1", customer_ref="CUST-1"))
    await store.add_external_ref("p1", "crm", "CRM-PRJ-1")
    await store.save_order(Order(id="o1", project_id="p1", erp_order_ref="ERP-1"))
    return store


@pytest.fixture
def queue():
    return MemoryJobQueue()


@pytest.fixture
def service(store, queue):
    return IngestionService(store, queue, build_default_registry(), enqueue_base_delay=0)


def test_severity_derivation():
    assert derive_severity("lastmile.failed") == "critical"
    assert derive_severity("shipment.eta_updated") == "warning"
    assert derive_severity("order.confirmed") == "info"


@pytest.mark.asyncio
async def test_accepts_resolves_and_enqueues(service, store, queue):
    await store.save_installation(Installation(id="i1", project_id="p1"))
    result = await service.ingest_raw("erp", _raw())
    assert result.accepted and not result.duplicate
    assert result.project_id == "p1"

    event = store.events[result.event_id]
    assert event.order_id == "o1"
    assert event.installation_id == "i1"
    assert event.severity == "critical"
    assert event.processed_at is None
    assert (await queue.claim(timeout=0.1)).event_id == result.event_id


@pytest.mark.asyncio
async def test_replayed_event_is_a_duplicate(service, store, queue):
    before = metrics.get_metrics()["events_duplicate"]
    first = await service.ingest_raw("erp", _raw())
    second = await service.ingest_raw("erp", _raw())
    assert second.accepted and second.duplicate
    assert second.event_id == first.event_id
    assert len(store.events) == 1
    assert await queue.depth() == 1
    assert metrics.get_metrics()["events_duplicate"] == before + 1


@pytest.mark.asyncio
async def test_same_ref_from_another_source_is_distinct(service, store):
    await service.ingest_raw("erp", _raw())
    other = await service.ingest_raw(
        "oms",
        _raw("shipment.eta_updated", payload={"shipment_id": "S1", "new_eta": "2026-03-09T10:00:00Z"}),
    )
    assert not other.duplicate
    assert len(store.events) == 2


@pytest.mark.asyncio
async def test_unknown_project_is_dead_lettered(service, store, queue):
    result = await service.ingest_raw("erp", _raw(project_ref="NOPE"))
    assert not result.accepted
    assert result.dead_letter
    assert store.events == {}
    assert store.dead[0].kind == "unresolved_project"
    assert store.dead[0].payload["project_ref"] == "NOPE"
    assert await queue.depth() == 0


@pytest.mark.asyncio
async def test_unknown_order_ref_still_ingests(service, store):
    result = await service.ingest_raw("erp", _raw(order_ref="ERP-404", payload={"sku": "X"}))
    assert result.accepted
    assert store.events[result.event_id].order_id is None
    assert store.events[result.event_id].order_ref == "ERP-404"


@pytest.mark.asyncio
async def test_adapter_errors_propagate(service, store):
    with pytest.raises(AdapterError):
        await service.ingest_raw("erp", _raw(event_type="shipment.dispatched"))
    with pytest.raises(UnregisteredSourceError):
        await service.ingest_raw("fax", _raw())
    assert store.events == {}


@pytest.mark.asyncio
async def test_enqueue_outage_keeps_the_event(store):
    service = IngestionService(store, FlakyQueue(failures=10), enqueue_attempts=2, enqueue_base_delay=0)
    event = NormalizedEvent(
        source="manual",
        source_ref="N1",
        event_type="note.added",
        project_ref="p1",
        occurred_at="2026-03-02T10:00:00Z",
    )
    result = await service.ingest_event(event)
    assert result.accepted
    assert result.message == "event stored; enqueue deferred to reconciliation"
    assert result.event_id in store.events


@pytest.mark.asyncio
async def test_raw_ingest_needs_a_registry(store, queue):
    with pytest.raises(RuntimeError):
        await IngestionService(store, queue).ingest_raw("erp", _raw())
