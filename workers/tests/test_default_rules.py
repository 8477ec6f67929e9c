"""Default rule catalogue against realistic project situations."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from fakes import MemoryStore
from plo_workers.main import seed_default_rules
from plo_workers.models import Consolidation, Event, Installation, Order, Project, Shipment
from plo_workers.rules.defaults import DEFAULT_RULES, default_rules
from plo_workers.rules.engine import RuleEngine
from plo_workers.rules.models import AnomalyRule
from plo_workers.steps import set_step_status

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
async def store():
    store = MemoryStore()
    await store.insert_project(Project(id="p1", customer_ref="CUST-1"))
    await seed_default_rules(store)
    return store


async def fired_for(store, event_type, payload=None, order_id=None, source="erp") -> set[str]:
    event = Event(
        project_id="p1",
        order_id=order_id,
        source=source,
        source_ref=f"{event_type}-1",
        event_type=event_type,
        occurred_at=NOW,
        payload=payload or {},
    )
    results = await RuleEngine(store, clock=lambda: NOW).evaluate_realtime(event)
    return {r.rule_id for r in results}


def test_catalogue_shape():
    ids = [rule.id for rule in DEFAULT_RULES]
    assert ids == [f"ANO-{n:02d}" for n in range(1, 23)]
    for rule in DEFAULT_RULES:
        assert rule.action.notify, rule.id
        if rule.frequency == "realtime":
            assert rule.trigger_events, rule.id


def test_catalogue_survives_json_storage():
    for rule in DEFAULT_RULES:
        restored = AnomalyRule.model_validate(rule.model_dump(mode="json"))
        assert restored.condition == rule.condition, rule.id


def test_default_rules_are_copies():
    copies = default_rules()
    copies[0].active = False
    assert DEFAULT_RULES[0].active is True


@pytest.mark.asyncio
async def test_seeding_is_repeatable(store):
    assert await seed_default_rules(store) == 22
    assert len(store.rules) == 22


class TestStockAndPicking:
    @pytest.mark.asyncio
    async def test_late_shortage(self, store):
        await store.save_order(Order(id="o1", project_id="p1", promised_delivery_date=NOW + timedelta(hours=60)))
        assert "ANO-01" in await fired_for(store, "stock.shortage", {"sku": "A"}, order_id="o1")

    @pytest.mark.asyncio
    async def test_early_shortage_is_quiet(self, store):
        await store.save_order(Order(id="o1", project_id="p1", promised_delivery_date=NOW + timedelta(days=10)))
        assert await fired_for(store, "stock.shortage", {"sku": "A"}, order_id="o1") == set()

    @pytest.mark.asyncio
    async def test_picking_discrepancy_before_and_after_departure(self, store):
        await store.save_order(Order(id="o1", project_id="p1"))
        assert await fired_for(store, "picking.discrepancy", order_id="o1") == {"ANO-02"}

        await store.save_shipment(Shipment(order_id="o1", project_id="p1", oms_ref="S1", status="dispatched"))
        assert await fired_for(store, "picking.discrepancy", order_id="o1") == {"ANO-03"}


class TestLastMile:
    @pytest.mark.asyncio
    async def test_partial_delivery_close_to_installation(self, store):
        await store.save_installation(
            Installation(id="i1", project_id="p1", status="scheduled", scheduled_date=NOW + timedelta(hours=24))
        )
        await store.save_consolidation(Consolidation(project_id="p1", status="complete"))
        fired = await fired_for(store, "lastmile.partial_delivered", {"lastmile_id": "LM"}, source="tms_lastmile")
        assert fired == {"ANO-04", "ANO-20"}

    @pytest.mark.asyncio
    async def test_approved_partial_far_from_installation(self, store):
        await store.save_installation(
            Installation(project_id="p1", status="scheduled", scheduled_date=NOW + timedelta(days=5))
        )
        await store.save_consolidation(
            Consolidation(project_id="p1", status="partial_approved", partial_delivery_approved=True)
        )
        assert await fired_for(store, "lastmile.partial_delivered", source="tms_lastmile") == set()

    @pytest.mark.asyncio
    async def test_lastmile_scheduled_before_consolidation_complete(self, store):
        await store.save_consolidation(Consolidation(project_id="p1", status="in_progress"))
        assert await fired_for(store, "lastmile.scheduled", source="tms_lastmile") == {"ANO-19"}

        await store.save_consolidation(Consolidation(project_id="p1", status="complete"))
        assert await fired_for(store, "lastmile.scheduled", source="tms_lastmile") == set()

    @pytest.mark.asyncio
    async def test_failed_delivery(self, store):
        assert await fired_for(store, "lastmile.failed", source="tms_lastmile") == {"ANO-22"}


class TestInstallation:
    @pytest.mark.asyncio
    async def test_scheduled_with_undelivered_prerequisites(self, store):
        await store.save_order(Order(id="o1", project_id="p1", status="delivered"))
        await store.save_order(Order(id="o2", project_id="p1", status="confirmed"))
        await store.save_installation(Installation(project_id="p1", orders_prerequisite=["o1", "o2"]))
        await store.save_consolidation(Consolidation(project_id="p1", status="complete"))
        assert await fired_for(store, "installation.scheduled", source="wfm") == {"ANO-11"}

    @pytest.mark.asyncio
    async def test_scheduled_without_delivery(self, store):
        await store.save_order(Order(id="o1", project_id="p1", status="delivered"))
        await store.save_installation(Installation(project_id="p1", orders_prerequisite=["o1"]))
        await store.save_consolidation(Consolidation(project_id="p1", status="in_progress"))
        assert await fired_for(store, "installation.scheduled", source="wfm") == {"ANO-05"}

    @pytest.mark.asyncio
    async def test_blocking_issue(self, store):
        fired = await fired_for(store, "installation.issue", {"severity": "blocking"}, source="wfm")
        assert fired == {"ANO-06", "ANO-12"}
        minor = await fired_for(store, "installation.issue", {"severity": "minor"}, source="wfm")
        assert minor == {"ANO-06"}

    @pytest.mark.asyncio
    async def test_refused_signature(self, store):
        refused = {"customer_signature": {"signed": False}}
        assert await fired_for(store, "installation.completed", refused, source="wfm") == {"ANO-15"}
        signed = {"customer_signature": {"signed": True}}
        assert await fired_for(store, "installation.completed", signed, source="wfm") == set()


@pytest.mark.asyncio
async def test_eta_past_promised_date(store):
    await store.save_order(Order(id="o1", project_id="p1", promised_delivery_date=NOW + timedelta(days=3)))
    late = {"shipment_id": "S1", "new_eta": (NOW + timedelta(days=4)).isoformat()}
    assert await fired_for(store, "shipment.eta_updated", late, order_id="o1", source="oms") == {"ANO-16"}
    early = {"shipment_id": "S1", "new_eta": (NOW + timedelta(days=2)).isoformat()}
    assert await fired_for(store, "shipment.eta_updated", early, order_id="o1", source="oms") == set()


@pytest.mark.asyncio
async def test_station_exception(store):
    assert await fired_for(store, "consolidation.exception", source="oms") == {"ANO-18"}


class TestScheduledDefaults:
    @pytest.mark.asyncio
    async def test_installation_quote_overdue(self, store):
        await set_step_status(store, "project", "p1", "quote_products", "completed", now=NOW - timedelta(hours=49))
        fired = await RuleEngine(store, clock=lambda: NOW).evaluate_scheduled("daily")
        assert [r.rule_id for r in fired] == ["ANO-10"]

    @pytest.mark.asyncio
    async def test_technician_late_and_report_missing(self, store):
        await store.save_installation(
            Installation(project_id="p1", status="scheduled", scheduled_date=NOW - timedelta(hours=3))
        )
        fired = await RuleEngine(store, clock=lambda: NOW).evaluate_scheduled("hourly")
        assert [r.rule_id for r in fired] == ["ANO-13"]

        await store.save_installation(
            Installation(
                project_id="p1",
                status="completed",
                scheduled_date=NOW - timedelta(hours=9),
                completed_at=NOW - timedelta(hours=5),
            )
        )
        fired = await RuleEngine(store, clock=lambda: NOW).evaluate_scheduled("hourly")
        assert [r.rule_id for r in fired] == ["ANO-14"]

    @pytest.mark.asyncio
    async def test_consolidation_late_before_customer_date(self, store):
        await store.save_order(Order(id="o1", project_id="p1", promised_delivery_date=NOW + timedelta(hours=50)))
        await store.save_consolidation(Consolidation(project_id="p1", status="waiting", orders_required=["o1"]))
        fired = {r.rule_id for r in await RuleEngine(store, clock=lambda: NOW).evaluate_scheduled("daily")}
        assert fired == {"ANO-17"}
