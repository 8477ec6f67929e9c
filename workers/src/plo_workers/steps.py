"""Step state machine: maps event types onto lifecycle steps.

Each mapped event type targets one step type at one scope level and sets a
target status. Steps are unique per (scope, owning entity, step type);
``completed_at`` is stamped on the first completion and never cleared.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from .models import Step, StepScope, StepStatus, utc_now
from .store import Store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepMapping:
    step_type: str
    status: StepStatus
    scope: StepScope


def _m(step_type: str, status: StepStatus, scope: StepScope) -> StepMapping:
    return StepMapping(step_type, status, scope)


EVENT_TO_STEP: dict[str, StepMapping] = {
    "inspiration.started": _m("inspiration", "in_progress", "project"),
    "inspiration.completed": _m("inspiration", "completed", "project"),
    "inspiration.converted": _m("inspiration", "completed", "project"),
    "inspiration.abandoned": _m("inspiration", "anomaly", "project"),

    "quote_products.created": _m("quote_products", "in_progress", "project"),
    "quote_products.sent": _m("quote_products", "in_progress", "project"),
    "quote_products.accepted": _m("quote_products", "completed", "project"),
    "quote_products.expired": _m("quote_products", "anomaly", "project"),

    "quote_installation.created": _m("quote_installation", "in_progress", "project"),
    "quote_installation.sent": _m("quote_installation", "in_progress", "project"),
    "quote_installation.accepted": _m("quote_installation", "completed", "project"),

    "order.confirmed": _m("order_confirmed", "completed", "order"),
    "order.cancelled": _m("order_confirmed", "anomaly", "order"),

    "stock.check_ok": _m("stock_check", "completed", "order"),
    "stock.shortage": _m("stock_check", "anomaly", "order"),
    "stock.partial": _m("stock_check", "anomaly", "order"),

    "picking.started": _m("picking_preparation", "in_progress", "order"),
    "picking.completed": _m("picking_preparation", "completed", "order"),
    "picking.discrepancy": _m("picking_preparation", "anomaly", "order"),

    "shipment.dispatched": _m("shipment_dispatched", "in_progress", "order"),
    "shipment.in_transit": _m("shipment_in_transit", "in_progress", "order"),
    "shipment.eta_updated": _m("shipment_dispatched", "in_progress", "order"),
    "shipment.arrived_at_station": _m("shipment_arrived_at_station", "completed", "order"),
    "shipment.exception": _m("shipment_dispatched", "anomaly", "order"),

    "consolidation.order_arrived": _m("consolidation_in_progress", "in_progress", "project"),
    "consolidation.eta_updated": _m("consolidation_in_progress", "in_progress", "project"),
    "consolidation.complete": _m("consolidation_complete", "completed", "project"),
    "consolidation.partial_approved": _m("consolidation_complete", "completed", "project"),
    "consolidation.exception": _m("consolidation_in_progress", "anomaly", "project"),

    # Last-mile delivery is tracked against the installation it feeds.
    "lastmile.scheduled": _m("lastmile_scheduled", "in_progress", "installation"),
    "lastmile.rescheduled": _m("lastmile_scheduled", "in_progress", "installation"),
    "lastmile.in_transit": _m("lastmile_scheduled", "in_progress", "installation"),
    "lastmile.delivered": _m("lastmile_delivered", "completed", "installation"),
    "lastmile.partial_delivered": _m("lastmile_delivered", "completed", "installation"),
    "lastmile.failed": _m("lastmile_delivered", "anomaly", "installation"),
    "lastmile.damaged": _m("lastmile_delivered", "anomaly", "installation"),

    "installation.scheduled": _m("installation_scheduled", "in_progress", "installation"),
    "installation.rescheduled": _m("installation_scheduled", "in_progress", "installation"),
    "installation.cancelled": _m("installation_scheduled", "anomaly", "installation"),
    "installation.started": _m("installation_started", "in_progress", "installation"),
    "installation.completed": _m("installation_completed", "completed", "installation"),
    "installation.issue": _m("installation_completed", "anomaly", "installation"),
    "installation.partial": _m("installation_completed", "anomaly", "installation"),

    "project.closed": _m("project_closed", "completed", "project"),
    "project.closed_with_issue": _m("project_closed", "anomaly", "project"),
}


def step_for_event(event_type: str) -> StepMapping | None:
    return EVENT_TO_STEP.get(event_type)


def scope_owner(
    scope: StepScope,
    project_id: str | None,
    order_id: str | None,
    installation_id: str | None,
) -> str | None:
    return {"project": project_id, "order": order_id, "installation": installation_id}[scope]


def new_step(scope: StepScope, owning_id: str, step_type: str, status: StepStatus) -> Step:
    """Build a step carrying exactly one scope id (``Step`` validates this)."""
    return Step(
        scope=scope,
        owning_id=owning_id,
        step_type=step_type,
        status=status,
        **{f"{scope}_id": owning_id},
    )


def apply_status(step: Step, status: StepStatus, now: datetime, event_id: str | None = None) -> Step:
    completed_at = step.completed_at
    if status == "completed" and completed_at is None:
        completed_at = now
    events = list(step.events)
    if event_id and event_id not in events:
        events.append(event_id)
    return step.model_copy(
        update={"status": status, "completed_at": completed_at, "events": events, "updated_at": now}
    )


async def set_step_status(
    store: Store,
    scope: StepScope,
    owning_id: str,
    step_type: str,
    status: StepStatus,
    *,
    event_id: str | None = None,
    now: datetime | None = None,
) -> Step:
    now = now or utc_now()
    existing = await store.get_step(scope, owning_id, step_type)
    step = existing or new_step(scope, owning_id, step_type, status)
    return await store.save_step(validate_step_scope(apply_status(step, status, now, event_id)))


async def upsert_step(
    store: Store,
    event_type: str,
    project_id: str,
    order_id: str | None,
    installation_id: str | None,
    *,
    event_id: str | None = None,
    now: datetime | None = None,
) -> str | None:
    """Create or update the step an event maps to.

    Returns the step id, or ``None`` when the event type is unmapped or the
    entity owning the step does not exist (yet).
    """
    mapping = EVENT_TO_STEP.get(event_type)
    if mapping is None:
        return None

    owning_id = scope_owner(mapping.scope, project_id, order_id, installation_id)
    if not owning_id:
        logger.debug(
            "No %s id for %s; step %s skipped", mapping.scope, event_type, mapping.step_type
        )
        return None

    step = await set_step_status(
        store,
        mapping.scope,
        owning_id,
        mapping.step_type,
        mapping.status,
        event_id=event_id,
        now=now,
    )
    return step.id


async def complete_step(
    store: Store, scope: StepScope, owning_id: str, step_type: str, *, now: datetime | None = None
) -> Step:
    return await set_step_status(store, scope, owning_id, step_type, "completed", now=now)


async def mark_step_status(
    store: Store, step_id: str, status: StepStatus, now: datetime | None = None
) -> bool:
    """Force a known step into ``status`` (rule actions such as blocking)."""
    step = await store.get_step_by_id(step_id)
    if step is None:
        return False
    await store.save_step(validate_step_scope(apply_status(step, status, now or utc_now())))
    return True


def validate_step_scope(step: Step) -> Step:
    """Re-run the single-scope check on a step built outside ``new_step``."""
    return Step.model_validate(step.model_dump())
