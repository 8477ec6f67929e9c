"""Entity update handlers: event families → targeted aggregate mutations.

Handlers register per event type with ``@entity_handler``. Each one touches
only the aggregate its event family implies, is safe to re-run for the same
event, and appends an activity-log entry.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from .models import (
    ActivityEntry,
    Consolidation,
    ConsolidationStatus,
    Event,
    Installation,
    LastMileDelivery,
    Order,
    OrderLine,
    Shipment,
    parse_datetime,
)
from .steps import complete_step
from .store import Store

logger = logging.getLogger(__name__)

FINAL_CONSOLIDATION = ("complete", "partial_approved")


@dataclass(frozen=True)
class EntityUpdate:
    event: Event
    project_id: str
    order_id: str | None
    installation_id: str | None
    now: datetime

    @property
    def payload(self) -> dict[str, Any]:
        return self.event.payload


@dataclass
class EntityUpdateOutcome:
    """Scope entities created while handling an event."""

    created_order_id: str | None = None
    created_installation_id: str | None = None

    def merge(self, other: "EntityUpdateOutcome | None") -> None:
        if other is None:
            return
        self.created_order_id = self.created_order_id or other.created_order_id
        self.created_installation_id = self.created_installation_id or other.created_installation_id


EntityHandlerFn = Callable[[Store, EntityUpdate], Awaitable[EntityUpdateOutcome | None]]

_entity_handlers: dict[str, list[EntityHandlerFn]] = {}


def entity_handler(*event_types: str) -> Callable[[EntityHandlerFn], EntityHandlerFn]:
    """Register an entity handler for one or more event types."""

    def decorator(fn: EntityHandlerFn) -> EntityHandlerFn:
        for et in event_types:
            _entity_handlers.setdefault(et, []).append(fn)
        return fn

    return decorator


def get_entity_handlers(event_type: str) -> list[EntityHandlerFn]:
    return _entity_handlers.get(event_type, [])


def registered_entity_event_types() -> list[str]:
    return sorted(_entity_handlers)


async def apply_entity_updates(store: Store, update: EntityUpdate) -> EntityUpdateOutcome:
    outcome = EntityUpdateOutcome()
    for handler in get_entity_handlers(update.event.event_type):
        outcome.merge(await handler(store, update))
    return outcome


async def _log(
    store: Store,
    update: EntityUpdate,
    entity_type: str,
    entity_id: str | None,
    action: str,
    **details: Any,
) -> None:
    await store.log_activity(
        ActivityEntry(
            project_id=update.project_id,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            details={"event_id": update.event.id, "event_type": update.event.event_type, **details},
            created_at=update.now,
        )
    )


async def _resolve_order(store: Store, update: EntityUpdate, *refs: Any) -> Order | None:
    if update.order_id:
        order = await store.get_order(update.order_id)
        if order is not None:
            return order
    for ref in (*refs, update.event.payload.get("erp_order_ref"), update.event.order_ref):
        if isinstance(ref, str) and ref:
            order = await store.find_order(update.project_id, ref)
            if order is not None:
                return order
    return None


def _slot(value: Any) -> dict[str, str] | None:
    if isinstance(value, dict) and "start" in value and "end" in value:
        return {"start": str(value["start"]), "end": str(value["end"])}
    return None


# --- consolidation ------------------------------------------------------


async def transition_consolidation(
    store: Store,
    update: EntityUpdate,
    consolidation: Consolidation,
    target: ConsolidationStatus,
    **changes: Any,
) -> Consolidation:
    """Move a consolidation to ``target`` after checking where it stands.

    Re-applying a transition is a no-op; a complete or partially approved
    consolidation never regresses to waiting/in_progress, and ``complete``
    stays complete (later changes are still recorded). The first time it
    reaches a final status, ``last_mile_eligible_at`` is stamped.
    """
    current = consolidation.status
    if current in FINAL_CONSOLIDATION and target not in FINAL_CONSOLIDATION:
        return consolidation
    if current == "complete":
        target = "complete"
    if current == target and not changes:
        return consolidation

    data: dict[str, Any] = {"status": target, "updated_at": update.now, **changes}
    if target in FINAL_CONSOLIDATION and consolidation.last_mile_eligible_at is None:
        data["last_mile_eligible_at"] = update.now

    saved = await store.save_consolidation(consolidation.model_copy(update=data))
    if current != target:
        await _log(store, update, "consolidation", saved.id, "status_changed", previous=current, status=target)
        logger.info(
            "Consolidation %s: %s -> %s",
            saved.id,
            current,
            target,
            extra={"plo_event_id": update.event.id, "plo_project_id": update.project_id},
        )
    return saved


async def _refresh_consolidation_progress(
    store: Store, update: EntityUpdate, consolidation: Consolidation
) -> Consolidation:
    if consolidation.is_complete():
        return await transition_consolidation(store, update, consolidation, "complete")
    if consolidation.orders_arrived and consolidation.status == "waiting":
        return await transition_consolidation(store, update, consolidation, "in_progress")
    return consolidation


async def _recompute_estimated_completion(store: Store, update: EntityUpdate) -> None:
    consolidation = await store.get_consolidation(update.project_id, for_update=True)
    if consolidation is None:
        return
    pending = [
        s.estimated_arrival
        for s in await store.list_shipments(update.project_id)
        if s.status != "arrived" and s.estimated_arrival is not None
    ]
    estimated = max(pending) if pending else None
    if estimated != consolidation.estimated_complete_date:
        await store.save_consolidation(
            consolidation.model_copy(update={"estimated_complete_date": estimated, "updated_at": update.now})
        )


async def _mark_order_arrived(store: Store, update: EntityUpdate, order_id: str) -> Consolidation | None:
    consolidation = await store.get_consolidation(update.project_id, for_update=True)
    if consolidation is None:
        logger.warning("No consolidation for project %s; arrival of %s not recorded", update.project_id, order_id)
        return None
    if order_id not in consolidation.orders_arrived:
        consolidation = await store.add_arrived_order(consolidation.id, order_id)
        await _log(store, update, "consolidation", consolidation.id, "order_arrived", order_id=order_id)
    return await _refresh_consolidation_progress(store, update, consolidation)


# --- orders -------------------------------------------------------------


@entity_handler("order.confirmed")
async def handle_order_confirmed(store: Store, update: EntityUpdate) -> EntityUpdateOutcome:
    payload = update.payload
    erp_ref = payload.get("erp_order_ref")
    web_ref = payload.get("ecommerce_order_ref")
    order = await _resolve_order(store, update, erp_ref, web_ref)

    outcome = EntityUpdateOutcome()
    fields: dict[str, Any] = {}
    for key in ("installation_required", "lead_time_days", "delivery_address"):
        if payload.get(key) is not None:
            fields[key] = payload[key]
    if payload.get("promised_delivery_date"):
        fields["promised_delivery_date"] = parse_datetime(payload["promised_delivery_date"])

    if order is None:
        order = await store.save_order(
            Order(
                project_id=update.project_id,
                erp_order_ref=erp_ref,
                ecommerce_order_ref=web_ref,
                status="confirmed",
                created_at=update.now,
                updated_at=update.now,
                **fields,
            )
        )
        lines = [
            OrderLine(
                order_id=order.id,
                sku=line["sku"],
                label=line.get("label") or "",
                quantity=line.get("qty", 1),
                unit_price=line.get("unit_price") or 0,
                installation_required=bool(line.get("installation_required")),
            )
            for line in payload.get("lines") or []
            if isinstance(line, dict) and line.get("sku")
        ]
        if lines:
            await store.insert_order_lines(lines)
        outcome.created_order_id = order.id
        await _log(store, update, "order", order.id, "created", lines=len(lines))
    else:
        if erp_ref and not order.erp_order_ref:
            fields["erp_order_ref"] = erp_ref
        if web_ref and not order.ecommerce_order_ref:
            fields["ecommerce_order_ref"] = web_ref
        if fields:
            await store.update_order(order.id, updated_at=update.now, **fields)
        await _log(store, update, "order", order.id, "confirmed", fields=sorted(fields))

    consolidation = await store.get_consolidation(update.project_id, for_update=True)
    if consolidation is None:
        consolidation = await store.save_consolidation(
            Consolidation(project_id=update.project_id, orders_required=[order.id], updated_at=update.now)
        )
        await _log(store, update, "consolidation", consolidation.id, "created", order_id=order.id)
    elif order.id not in consolidation.orders_required:
        await store.save_consolidation(
            consolidation.model_copy(
                update={
                    "orders_required": [*consolidation.orders_required, order.id],
                    "updated_at": update.now,
                }
            )
        )

    if order.installation_required or fields.get("installation_required"):
        installation = await store.get_installation(update.project_id)
        if installation is not None and order.id not in installation.orders_prerequisite:
            await store.save_installation(
                installation.model_copy(
                    update={"orders_prerequisite": [*installation.orders_prerequisite, order.id]}
                )
            )
    return outcome


@entity_handler("order.line_added")
async def handle_order_line_added(store: Store, update: EntityUpdate) -> None:
    order = await _resolve_order(store, update)
    line = update.payload.get("line") or {}
    if order is None or not line.get("sku"):
        return
    existing = {existing.sku for existing in await store.list_order_lines(order.id)}
    if line["sku"] in existing:
        return
    await store.insert_order_lines([
        OrderLine(
            order_id=order.id,
            sku=line["sku"],
            label=line.get("label") or "",
            quantity=line.get("qty", 1),
            unit_price=line.get("unit_price") or 0,
            installation_required=bool(line.get("installation_required")),
        )
    ])
    await _log(store, update, "order", order.id, "line_added", sku=line["sku"])


@entity_handler("order.cancelled")
async def handle_order_cancelled(store: Store, update: EntityUpdate) -> None:
    order = await _resolve_order(store, update, update.payload.get("ecommerce_order_ref"))
    if order is None or order.status == "cancelled":
        return
    await store.update_order(order.id, status="cancelled", updated_at=update.now)
    await _log(store, update, "order", order.id, "cancelled", reason=update.payload.get("reason"))

    consolidation = await store.get_consolidation(update.project_id, for_update=True)
    if consolidation is not None and order.id in consolidation.orders_required:
        consolidation = await store.save_consolidation(
            consolidation.model_copy(
                update={
                    "orders_required": [o for o in consolidation.orders_required if o != order.id],
                    "updated_at": update.now,
                }
            )
        )
        await _refresh_consolidation_progress(store, update, consolidation)


@entity_handler("stock.shortage")
async def handle_stock_shortage(store: Store, update: EntityUpdate) -> None:
    order = await _resolve_order(store, update)
    if order is None:
        return
    sku = update.payload.get("sku")
    updated = await store.set_line_stock_status(order.id, "shortage", sku=sku)
    await _log(
        store,
        update,
        "order",
        order.id,
        "stock_shortage",
        sku=sku,
        lines=updated,
        expected_restock_date=update.payload.get("expected_restock_date"),
    )


@entity_handler("stock.partial")
async def handle_stock_partial(store: Store, update: EntityUpdate) -> None:
    order = await _resolve_order(store, update)
    if order is None:
        return
    skus = [sku for sku in update.payload.get("shortage_skus") or [] if isinstance(sku, str)]
    for sku in skus:
        await store.set_line_stock_status(order.id, "shortage", sku=sku)
    await _log(store, update, "order", order.id, "stock_partial", skus=skus)


@entity_handler("stock.check_ok")
async def handle_stock_check_ok(store: Store, update: EntityUpdate) -> None:
    order = await _resolve_order(store, update)
    if order is None:
        return
    updated = await store.set_line_stock_status(order.id, "available")
    await _log(store, update, "order", order.id, "stock_available", lines=updated)


# --- shipments ----------------------------------------------------------


_SHIPMENT_STATUS = {
    "shipment.dispatched": "dispatched",
    "shipment.in_transit": "in_transit",
    "shipment.exception": "exception",
}


@entity_handler("shipment.dispatched", "shipment.in_transit", "shipment.exception")
async def handle_shipment_movement(store: Store, update: EntityUpdate) -> None:
    payload = update.payload
    oms_ref = payload.get("shipment_id")
    if not oms_ref:
        return
    status = _SHIPMENT_STATUS[update.event.event_type]
    changes: dict[str, Any] = {"status": status, "updated_at": update.now}
    for key in ("carrier", "carrier_tracking_ref", "origin_type", "origin_ref", "destination_station_id"):
        if payload.get(key):
            changes[key] = payload[key]
    if payload.get("leg_number"):
        changes["leg_number"] = payload["leg_number"]
    if payload.get("estimated_arrival"):
        changes["estimated_arrival"] = parse_datetime(payload["estimated_arrival"])

    shipment = await store.get_shipment(oms_ref)
    if shipment is None:
        order = await _resolve_order(store, update)
        if order is None:
            logger.warning(
                "Shipment %s references no known order; skipped",
                oms_ref,
                extra={"plo_event_id": update.event.id},
            )
            return
        shipment = Shipment(order_id=order.id, project_id=update.project_id, oms_ref=oms_ref)
    elif shipment.status == status and status != "exception":
        return

    saved = await store.save_shipment(shipment.model_copy(update=changes))
    await _log(store, update, "shipment", saved.id, status, oms_ref=oms_ref)


@entity_handler("shipment.eta_updated")
async def handle_shipment_eta_updated(store: Store, update: EntityUpdate) -> None:
    payload = update.payload
    shipment = await store.get_shipment(payload.get("shipment_id") or "")
    new_eta = parse_datetime(payload.get("new_eta") or payload.get("estimated_arrival"))
    if shipment is None or new_eta is None:
        return
    if shipment.estimated_arrival != new_eta:
        await store.save_shipment(shipment.model_copy(update={"estimated_arrival": new_eta, "updated_at": update.now}))
        await _log(
            store,
            update,
            "shipment",
            shipment.id,
            "eta_updated",
            previous_eta=shipment.estimated_arrival,
            new_eta=new_eta,
        )
    await _recompute_estimated_completion(store, update)


@entity_handler("shipment.arrived_at_station")
async def handle_shipment_arrived(store: Store, update: EntityUpdate) -> None:
    payload = update.payload
    if not payload.get("shipment_id"):
        return
    shipment = await store.get_shipment(payload["shipment_id"])
    if shipment is None:
        order = await _resolve_order(store, update)
        if order is None:
            return
        shipment = Shipment(order_id=order.id, project_id=update.project_id, oms_ref=payload["shipment_id"])
    if shipment.status != "arrived":
        actual = parse_datetime(payload.get("actual_arrival")) or update.event.occurred_at
        shipment = await store.save_shipment(
            shipment.model_copy(update={"status": "arrived", "actual_arrival": actual, "updated_at": update.now})
        )
        await _log(store, update, "shipment", shipment.id, "arrived_at_station")
    await _mark_order_arrived(store, update, shipment.order_id)


# --- consolidation ------------------------------------------------------


@entity_handler("consolidation.order_arrived")
async def handle_consolidation_order_arrived(store: Store, update: EntityUpdate) -> None:
    ref = update.payload.get("order_id")
    if not ref:
        return
    order = await store.find_order(update.project_id, ref)
    await _mark_order_arrived(store, update, order.id if order else ref)


@entity_handler("consolidation.eta_updated")
async def handle_consolidation_eta_updated(store: Store, update: EntityUpdate) -> None:
    estimated = parse_datetime(update.payload.get("estimated_complete_date"))
    consolidation = await store.get_consolidation(update.project_id, for_update=True)
    if consolidation is None or estimated is None or consolidation.estimated_complete_date == estimated:
        return
    await store.save_consolidation(
        consolidation.model_copy(update={"estimated_complete_date": estimated, "updated_at": update.now})
    )
    await _log(store, update, "consolidation", consolidation.id, "eta_updated", estimated=estimated)


@entity_handler("consolidation.complete")
async def handle_consolidation_complete(store: Store, update: EntityUpdate) -> None:
    consolidation = await store.get_consolidation(update.project_id, for_update=True)
    if consolidation is None:
        return
    await transition_consolidation(store, update, consolidation, "complete")
    await complete_step(store, "project", update.project_id, "consolidation_in_progress", now=update.now)


@entity_handler("consolidation.partial_approved")
async def handle_consolidation_partial_approved(store: Store, update: EntityUpdate) -> None:
    consolidation = await store.get_consolidation(update.project_id, for_update=True)
    if consolidation is None:
        return
    if consolidation.status == "partial_approved" and consolidation.partial_delivery_approved:
        return
    approval = update.payload.get("partial_approved_by") or {}
    approvers = [who for who in ("customer", "installer") if approval.get(who)]
    await transition_consolidation(
        store,
        update,
        consolidation,
        "partial_approved",
        partial_delivery_approved=True,
        partial_approved_by=",".join(approvers) or None,
        partial_approved_at=parse_datetime(approval.get("approved_at")) or update.event.occurred_at,
    )


# --- last mile ----------------------------------------------------------


async def _save_last_mile(store: Store, update: EntityUpdate, status: str, **changes: Any) -> LastMileDelivery | None:
    ref = update.payload.get("lastmile_id")
    if not ref:
        return None
    existing = await store.get_last_mile(update.project_id)
    if existing is None or existing.tms_delivery_ref != ref:
        consolidation = await store.get_consolidation(update.project_id)
        existing = LastMileDelivery(
            project_id=update.project_id,
            consolidation_id=consolidation.id if consolidation else None,
            tms_delivery_ref=ref,
        )
    if update.payload.get("carrier"):
        changes["carrier"] = update.payload["carrier"]
    saved = await store.save_last_mile(
        existing.model_copy(update={"status": status, "updated_at": update.now, **changes})
    )
    if existing.status != status:
        await _log(store, update, "last_mile", saved.id, status, tms_delivery_ref=ref)
    return saved


@entity_handler("lastmile.scheduled", "lastmile.rescheduled")
async def handle_lastmile_scheduled(store: Store, update: EntityUpdate) -> None:
    payload = update.payload
    changes: dict[str, Any] = {"scheduled_date": parse_datetime(payload.get("scheduled_date"))}
    if _slot(payload.get("time_slot")):
        changes["scheduled_slot"] = _slot(payload.get("time_slot"))
    if "is_partial" in payload:
        changes["is_partial"] = bool(payload["is_partial"])
    if payload.get("missing_order_ids"):
        changes["missing_order_ids"] = list(payload["missing_order_ids"])
    await _save_last_mile(store, update, "scheduled", **changes)


@entity_handler("lastmile.in_transit")
async def handle_lastmile_in_transit(store: Store, update: EntityUpdate) -> None:
    await _save_last_mile(store, update, "in_transit")


@entity_handler("lastmile.delivered", "lastmile.partial_delivered", "lastmile.failed")
async def handle_lastmile_outcome(store: Store, update: EntityUpdate) -> None:
    payload = update.payload
    missing = [str(o) for o in payload.get("missing_order_ids") or []]
    if update.event.event_type == "lastmile.failed":
        await _save_last_mile(store, update, "failed")
        return

    partial = update.event.event_type == "lastmile.partial_delivered" or bool(payload.get("is_partial"))
    status = "partial_delivered" if partial else "delivered"
    saved = await _save_last_mile(
        store,
        update,
        status,
        delivered_at=parse_datetime(payload.get("delivered_at")) or update.event.occurred_at,
        pod_url=payload.get("pod_url"),
        is_partial=partial,
        missing_order_ids=missing,
    )
    if saved is None:
        return

    for order in await store.list_orders(update.project_id):
        skip = order.status in ("cancelled", "delivered", "installed", "closed")
        if skip or order.id in missing or order.erp_order_ref in missing:
            continue
        await store.update_order(order.id, status="delivered", updated_at=update.now)


# --- installation -------------------------------------------------------


async def _prerequisite_orders(store: Store, project_id: str) -> list[str]:
    orders = [o for o in await store.list_orders(project_id) if o.status != "cancelled"]
    flagged = [o.id for o in orders if o.installation_required]
    return flagged or [o.id for o in orders]


@entity_handler("installation.scheduled", "installation.rescheduled")
async def handle_installation_scheduled(store: Store, update: EntityUpdate) -> EntityUpdateOutcome:
    payload = update.payload
    rescheduled = update.event.event_type == "installation.rescheduled"
    date_key, slot_key = (
        ("new_scheduled_date", "new_scheduled_slot") if rescheduled else ("scheduled_date", "scheduled_slot")
    )
    changes: dict[str, Any] = {
        "status": "scheduled",
        "scheduled_date": parse_datetime(payload.get(date_key)),
        "updated_at": update.now,
    }
    if _slot(payload.get(slot_key)):
        changes["scheduled_slot"] = _slot(payload.get(slot_key))
    for key in ("wfm_job_ref", "technician_id", "technician_name"):
        if payload.get(key):
            changes[key] = payload[key]

    outcome = EntityUpdateOutcome()
    installation = await store.get_installation(update.project_id)
    if installation is None:
        installation = Installation(
            project_id=update.project_id,
            orders_prerequisite=await _prerequisite_orders(store, update.project_id),
        )
        outcome.created_installation_id = installation.id
    saved = await store.save_installation(installation.model_copy(update=changes))
    await _log(
        store,
        update,
        "installation",
        saved.id,
        "rescheduled" if rescheduled else "scheduled",
        scheduled_date=changes["scheduled_date"],
    )
    return outcome


_INSTALLATION_PROGRESS = {
    "installation.started": ("in_progress", "started_at"),
    "installation.completed": ("completed", "completed_at"),
    "installation.report_submitted": (None, "report_submitted_at"),
    "installation.cancelled": ("cancelled", None),
}

_PAYLOAD_TIMESTAMP = {
    "started_at": "started_at",
    "completed_at": "completed_at",
    "report_submitted_at": "submitted_at",
}


@entity_handler(*_INSTALLATION_PROGRESS)
async def handle_installation_progress(store: Store, update: EntityUpdate) -> None:
    installation = await store.get_installation(update.project_id)
    if installation is None:
        return
    status, stamp = _INSTALLATION_PROGRESS[update.event.event_type]
    changes: dict[str, Any] = {}
    if status and installation.status != status:
        changes["status"] = status
    if stamp and getattr(installation, stamp) is None:
        changes[stamp] = parse_datetime(update.payload.get(_PAYLOAD_TIMESTAMP[stamp])) or update.event.occurred_at
    if not changes:
        return
    await store.save_installation(installation.model_copy(update={**changes, "updated_at": update.now}))
    await _log(store, update, "installation", installation.id, update.event.event_type.split(".", 1)[1])


# --- project ------------------------------------------------------------


@entity_handler("project.closed", "project.closed_with_issue", "project.reopened")
async def handle_project_status(store: Store, update: EntityUpdate) -> None:
    status = "active" if update.event.event_type == "project.reopened" else "closed"
    project = await store.get_project(update.project_id)
    if project is None or project.status == status:
        return
    await store.update_project(update.project_id, status=status, updated_at=update.now)
    await _log(store, update, "project", update.project_id, f"status_{status}")
