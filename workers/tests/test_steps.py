"""Step state machine."""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from fakes import MemoryStore
from plo_workers.models import Step
from plo_workers.steps import (
    EVENT_TO_STEP,
    apply_status,
    complete_step,
    mark_step_status,
    new_step,
    step_for_event,
    upsert_step,
    validate_step_scope,
)

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def test_mapping_entries_are_consistent():
    for event_type, mapping in EVENT_TO_STEP.items():
        assert mapping.scope in ("project", "order", "installation"), event_type
        assert mapping.status in ("in_progress", "completed", "anomaly"), event_type


def test_lastmile_steps_hang_off_the_installation():
    assert step_for_event("lastmile.delivered").scope == "installation"
    assert step_for_event("order.confirmed").scope == "order"
    assert step_for_event("quote_products.accepted").scope == "project"
    assert step_for_event("cart.created") is None


def test_step_requires_exactly_one_scope_id():
    with pytest.raises(ValidationError):
        Step(scope="order", owning_id="o1", step_type="stock_check", status="pending")
    with pytest.raises(ValidationError):
        Step(
            scope="order",
            owning_id="o1",
            step_type="stock_check",
            status="pending",
            order_id="o1",
            project_id="p1",
        )
    with pytest.raises(ValidationError):
        Step(scope="order", owning_id="o1", step_type="stock_check", status="pending", order_id="o2")


def test_validate_step_scope_catches_copied_steps():
    step = new_step("order", "o1", "stock_check", "pending")
    broken = step.model_copy(update={"project_id": "p1"})
    with pytest.raises(ValidationError):
        validate_step_scope(broken)
    assert validate_step_scope(step).order_id == "o1"


def test_apply_status_stamps_completed_once():
    step = new_step("project", "p1", "quote_products", "in_progress")
    done = apply_status(step, "completed", T0, "e1")
    assert done.completed_at == T0
    later = apply_status(done, "completed", T0 + timedelta(hours=1), "e2")
    assert later.completed_at == T0
    regressed = apply_status(later, "anomaly", T0 + timedelta(hours=2))
    assert regressed.status == "anomaly"
    assert regressed.completed_at == T0
    assert regressed.events == ["e1", "e2"]


@pytest.mark.asyncio
async def test_upsert_creates_then_updates_single_step():
    store = MemoryStore()
    first = await upsert_step(store, "quote_products.created", "p1", None, None, event_id="e1", now=T0)
    second = await upsert_step(
        store, "quote_products.accepted", "p1", None, None, event_id="e2", now=T0 + timedelta(days=1)
    )
    assert first == second
    step = store.step("p1", "quote_products")
    assert step.status == "completed"
    assert step.completed_at == T0 + timedelta(days=1)
    assert step.events == ["e1", "e2"]
    assert len(store.steps) == 1


@pytest.mark.asyncio
async def test_new_completed_step_gets_completed_at():
    store = MemoryStore()
    await upsert_step(store, "order.confirmed", "p1", "o1", None, now=T0)
    step = store.step("o1", "order_confirmed")
    assert step.scope == "order"
    assert step.order_id == "o1"
    assert step.completed_at == T0


@pytest.mark.asyncio
async def test_upsert_skips_unmapped_or_missing_scope():
    store = MemoryStore()
    assert await upsert_step(store, "cart.created", "p1", None, None) is None
    assert await upsert_step(store, "stock.shortage", "p1", None, None) is None
    assert await upsert_step(store, "lastmile.scheduled", "p1", "o1", None) is None
    assert store.steps == {}


@pytest.mark.asyncio
async def test_replaying_same_event_is_idempotent():
    store = MemoryStore()
    for _ in range(3):
        await upsert_step(store, "stock.shortage", "p1", "o1", None, event_id="e1", now=T0)
    step = store.step("o1", "stock_check")
    assert step.status == "anomaly"
    assert step.events == ["e1"]


@pytest.mark.asyncio
async def test_completed_at_survives_later_anomaly():
    store = MemoryStore()
    await upsert_step(store, "installation.completed", "p1", None, "i1", now=T0)
    await upsert_step(store, "installation.issue", "p1", None, "i1", now=T0 + timedelta(hours=3))
    step = store.step("i1", "installation_completed")
    assert step.status == "anomaly"
    assert step.completed_at == T0


@pytest.mark.asyncio
async def test_mark_step_status_and_complete_step():
    store = MemoryStore()
    step = await complete_step(store, "project", "p1", "consolidation_in_progress", now=T0)
    assert step.completed_at == T0
    assert await mark_step_status(store, step.id, "anomaly", T0 + timedelta(hours=1))
    assert store.steps[step.id].status == "anomaly"
    assert store.steps[step.id].completed_at == T0
    assert not await mark_step_status(store, "missing", "anomaly")
