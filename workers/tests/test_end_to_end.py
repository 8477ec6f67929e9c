"""A project from order confirmation to partial delivery, through every layer."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from fakes import FakeEmail, MemoryStore
from plo_workers.config import Config
from plo_workers.main import build_pipeline, seed_default_rules
from plo_workers.models import Project
from plo_workers.queue import MemoryJobQueue

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

CONFIG = Config(
    database_url="postgresql://unused",
    backoff_base_seconds=0.0,
    alert_emails={
        "coordinateur": "coord@example.fr",
        "manager": "manager@example.fr",
        "ops": "ops@example.fr",
    },
)


def iso(delta: timedelta) -> str:
    return (NOW + delta).isoformat().replace("+00:00", "Z")


def raw(source_ref: str, event_type: str, payload: dict, order_ref: str | None = None) -> dict:
    body = {
        "source_ref": source_ref,
        "event_type": event_type,
        "project_ref": "PRJ-1",
        "occurred_at": iso(timedelta()),
        "payload": payload,
    }
    if order_ref:
        body["order_ref"] = order_ref
    return body


@pytest.fixture
def email():
    return FakeEmail()


@pytest.fixture
async def pipeline(email):
    store = MemoryStore()
    await store.insert_project(Project(id="p1", customer_ref="CUST-1"))
    await store.add_external_ref("p1", "crm", "PRJ-1")
    await seed_default_rules(store)

    pipeline = build_pipeline(CONFIG, store, MemoryJobQueue())
    pipeline.notifications.email = email
    for component in (pipeline.worker, pipeline.engine, pipeline.notifications):
        component.clock = lambda: NOW
    return pipeline


async def feed(pipeline, source: str, body: dict):
    result = await pipeline.ingestion.ingest_raw(source, body)
    while (job := await pipeline.queue.claim(timeout=0.01)) is not None:
        await pipeline.worker.handle_job(job)
    return result


@pytest.mark.asyncio
async def test_project_lifecycle(pipeline, email):
    store = pipeline.store

    await feed(pipeline, "erp", raw("ERP-EV-1", "order.confirmed", {
        "erp_order_ref": "ERP-1",
        "installation_required": True,
        "promised_delivery_date": iso(timedelta(days=3)),
        "lines": [{"sku": "CAB-60", "qty": 2}],
    }, order_ref="ERP-1"))
    await feed(pipeline, "erp", raw("ERP-EV-2", "order.confirmed", {
        "erp_order_ref": "ERP-2",
        "installation_required": True,
    }, order_ref="ERP-2"))
    o1 = await store.find_order("p1", "ERP-1")
    o2 = await store.find_order("p1", "ERP-2")
    assert (await store.get_consolidation("p1")).orders_required == [o1.id, o2.id]
    assert store.step(o1.id, "order_confirmed").status == "completed"

    await feed(pipeline, "wfm", raw("WFM-EV-1", "installation.scheduled", {
        "wfm_job_ref": "WFM-1",
        "scheduled_date": iso(timedelta(hours=36)),
    }))
    installation = await store.get_installation("p1")
    assert installation.orders_prerequisite == [o1.id, o2.id]
    assert store.step(installation.id, "installation_scheduled").status == "anomaly"
    assert {n.rule_id for n in store.notifications.values()} == {"ANO-05", "ANO-11"}

    await feed(pipeline, "oms", raw("OMS-EV-1", "shipment.dispatched", {"shipment_id": "S1"}, order_ref="ERP-1"))
    await feed(pipeline, "oms", raw("OMS-EV-2", "shipment.arrived_at_station", {"shipment_id": "S1"}, order_ref="ERP-1"))
    assert (await store.get_consolidation("p1")).status == "in_progress"

    await feed(pipeline, "tms_lastmile", raw("TMS-EV-1", "lastmile.scheduled", {
        "lastmile_id": "LM-1",
        "scheduled_date": iso(timedelta(hours=30)),
    }))
    assert "ANO-19" in {n.rule_id for n in store.notifications.values()}

    await feed(pipeline, "oms", raw("OMS-EV-3", "shipment.arrived_at_station", {"shipment_id": "S2"}, order_ref="ERP-2"))
    consolidation = await store.get_consolidation("p1")
    assert consolidation.status == "complete"
    assert consolidation.last_mile_eligible_at == NOW

    partial = raw("TMS-EV-2", "lastmile.partial_delivered", {
        "lastmile_id": "LM-1",
        "delivered_at": iso(timedelta(hours=1)),
        "missing_order_ids": ["ERP-2"],
    })
    await feed(pipeline, "tms_lastmile", partial)
    assert (await store.get_order(o1.id)).status == "delivered"
    assert (await store.get_order(o2.id)).status == "confirmed"
    assert store.step(installation.id, "lastmile_delivered").status == "completed"

    fired = sorted(n.rule_id for n in store.notifications.values())
    assert fired == ["ANO-04", "ANO-05", "ANO-11", "ANO-19", "ANO-20"]
    assert len(email.sent) == 5
    assert all(n.status == "sent" for n in store.notifications.values())
    assert "(CUST-1)" in email.sent[0]["subject"]

    replay = await feed(pipeline, "tms_lastmile", partial)
    assert replay.duplicate
    assert len(email.sent) == 5
    assert all(e.processed_at is not None for e in store.events.values())

    escalated = await pipeline.notifications.run_escalation_check(NOW + timedelta(hours=5))
    assert escalated == 2
    assert sorted(n.rule_id for n in store.notifications.values() if n.escalated_at) == ["ANO-04", "ANO-20"]
    assert email.sent[-1]["to"] == ["manager@example.fr", "ops@example.fr"]
    assert await pipeline.notifications.run_escalation_check(NOW + timedelta(hours=6)) == 0
