"""Default anomaly rule catalogue (ANO-01 … ANO-22), seeded by ``init-db``."""

from __future__ import annotations

from .conditions import (
    after,
    all_of,
    always,
    any_of,
    count,
    eq,
    exists,
    hours_since,
    hours_until,
    member_of,
    missing,
    none_of,
    not_,
    one_of,
)
from .models import AnomalyRule, RuleAction

DELIVERED_ORDER_STATUSES = ["delivered", "installed", "closed"]
SHIPPED_STATUSES = ["dispatched", "in_transit", "arrived"]
READY_CONSOLIDATION = ["complete", "partial_approved"]


def _rule(rule_id: str, name: str, **kwargs: object) -> AnomalyRule:
    return AnomalyRule(id=rule_id, name=name, **kwargs)


DEFAULT_RULES: list[AnomalyRule] = [
    _rule(
        "ANO-01",
        "Late stock shortage (< 72h before delivery)",
        scope="order",
        step_type="stock_check",
        trigger_events=["stock.shortage"],
        severity="critical",
        condition=hours_until("order.promised_delivery_date", max=72),
        action=RuleAction(notify=["coordinateur", "acheteur"], escalate=True),
    ),
    _rule(
        "ANO-02",
        "Picking discrepancy before truck departure",
        scope="order",
        step_type="picking_preparation",
        trigger_events=["picking.discrepancy"],
        severity="critical",
        condition=count("shipments", one_of("item.status", SHIPPED_STATUSES), max=0),
        action=RuleAction(notify=["entrepot"], block_step=True),
    ),
    _rule(
        "ANO-03",
        "Missing product detected after truck departure",
        scope="order",
        step_type="picking_preparation",
        trigger_events=["picking.discrepancy"],
        severity="critical",
        condition=count("shipments", one_of("item.status", SHIPPED_STATUSES), min=1),
        action=RuleAction(notify=["coordinateur", "ops"], escalate=True),
    ),
    _rule(
        "ANO-04",
        "Partial delivery while installation is < 48h away",
        step_type="lastmile_delivered",
        trigger_events=["lastmile.partial_delivered"],
        severity="critical",
        condition=hours_until("installation.scheduled_date", max=48),
        action=RuleAction(notify=["coordinateur"], escalate=True),
    ),
    _rule(
        "ANO-05",
        "Installation scheduled without confirmed delivery",
        step_type="installation_scheduled",
        trigger_events=["installation.scheduled"],
        severity="critical",
        condition=all_of(
            not_(one_of("last_mile.status", ["delivered", "partial_delivered"])),
            not_(one_of("consolidation.status", READY_CONSOLIDATION)),
        ),
        action=RuleAction(notify=["coordinateur"], block_step=True),
    ),
    _rule(
        "ANO-06",
        "Issue reported during installation",
        step_type="installation_completed",
        trigger_events=["installation.issue"],
        severity="critical",
        condition=always(),
        action=RuleAction(notify=["coordinateur"], create_ticket=True),
    ),
    _rule(
        "ANO-07",
        "Delivery not scheduled 5 days before installation",
        step_type="lastmile_scheduled",
        frequency="daily",
        severity="warning",
        condition=all_of(
            eq("installation.status", "scheduled"),
            hours_until("installation.scheduled_date", min=120, max=144),
            none_of("last_mile.status", ["scheduled", "in_transit", "delivered", "partial_delivered"]),
        ),
        action=RuleAction(notify=["coordinateur"]),
    ),
    _rule(
        "ANO-08",
        "Picking not started 8h before delivery",
        scope="order",
        step_type="picking_preparation",
        frequency="hourly",
        severity="warning",
        condition=all_of(
            hours_until("order.promised_delivery_date", min=0, max=8),
            one_of("order.status", ["confirmed", "in_fulfillment"]),
            none_of("steps.picking_preparation", ["in_progress", "completed"]),
        ),
        action=RuleAction(notify=["entrepot"]),
    ),
    _rule(
        "ANO-09",
        "Delivery not closed 4h after the slot",
        step_type="lastmile_delivered",
        frequency="hourly",
        severity="warning",
        condition=all_of(
            one_of("last_mile.status", ["scheduled", "in_transit"]),
            hours_since("last_mile.scheduled_date", min=4),
        ),
        action=RuleAction(notify=["ops"]),
    ),
    _rule(
        "ANO-10",
        "Installation quote not created 48h after product quote acceptance",
        step_type="quote_installation",
        frequency="daily",
        severity="warning",
        condition=all_of(
            eq("steps.quote_products", "completed"),
            hours_since("step_completed_at.quote_products", min=48),
            missing("steps.quote_installation"),
        ),
        action=RuleAction(notify=["coordinateur"]),
    ),
    _rule(
        "ANO-11",
        "Installation scheduled with prerequisite orders not delivered",
        step_type="installation_scheduled",
        trigger_events=["installation.scheduled"],
        severity="critical",
        condition=count(
            "orders",
            all_of(
                member_of("item.id", "installation.orders_prerequisite"),
                none_of("item.status", DELIVERED_ORDER_STATUSES + ["cancelled"]),
            ),
            min=1,
        ),
        action=RuleAction(notify=["coordinateur"], block_step=True),
    ),
    _rule(
        "ANO-12",
        "Blocking incident during installation",
        step_type="installation_completed",
        trigger_events=["installation.issue"],
        severity="critical",
        condition=any_of(
            eq("event.payload.severity", "blocking"),
            eq("event.payload.is_blocking", True),
        ),
        action=RuleAction(notify=["coordinateur", "manager"], block_step=True, create_ticket=True),
    ),
    _rule(
        "ANO-13",
        "Technician late: installation not started 2h after slot",
        step_type="installation_started",
        frequency="hourly",
        severity="critical",
        condition=all_of(
            eq("installation.status", "scheduled"),
            hours_since("installation.scheduled_date", min=2),
            missing("installation.started_at"),
        ),
        action=RuleAction(notify=["coordinateur"]),
    ),
    _rule(
        "ANO-14",
        "Installation report not submitted 4h after completion",
        step_type="installation_completed",
        frequency="hourly",
        severity="warning",
        condition=all_of(
            eq("installation.status", "completed"),
            hours_since("installation.completed_at", min=4),
            missing("installation.report_submitted_at"),
        ),
        action=RuleAction(notify=["coordinateur"]),
    ),
    _rule(
        "ANO-15",
        "Customer refused to sign",
        step_type="installation_completed",
        trigger_events=["installation.completed", "lastmile.delivered", "customer_signature.signed"],
        severity="critical",
        condition=any_of(
            eq("event.payload.customer_signature.signed", False),
            all_of(eq("event.event_type", "customer_signature.signed"), eq("event.payload.signed", False)),
        ),
        action=RuleAction(notify=["coordinateur"], create_ticket=True),
    ),
    _rule(
        "ANO-16",
        "Shipment ETA past promised delivery date",
        scope="order",
        step_type="shipment_dispatched",
        trigger_events=["shipment.eta_updated"],
        severity="critical",
        condition=any_of(
            after("event.payload.new_eta", "order.promised_delivery_date"),
            all_of(
                missing("event.payload.new_eta"),
                after("event.payload.estimated_arrival", "order.promised_delivery_date"),
            ),
        ),
        action=RuleAction(notify=["coordinateur"], escalate=True),
    ),
    _rule(
        "ANO-17",
        "Consolidation incomplete 3 days before customer date",
        step_type="consolidation_complete",
        frequency="daily",
        severity="critical",
        condition=all_of(
            one_of("consolidation.status", ["waiting", "in_progress"]),
            count(
                "orders",
                all_of(
                    hours_until("item.promised_delivery_date", min=0, max=72),
                    none_of("item.status", ["cancelled"]),
                ),
                min=1,
            ),
        ),
        action=RuleAction(notify=["coordinateur"], escalate=True),
    ),
    _rule(
        "ANO-18",
        "Exception at delivery station",
        step_type="consolidation_in_progress",
        trigger_events=["consolidation.exception"],
        severity="critical",
        condition=always(),
        action=RuleAction(notify=["coordinateur", "acheteur"], escalate=True),
    ),
    _rule(
        "ANO-19",
        "Last mile scheduled before consolidation is complete",
        step_type="lastmile_scheduled",
        trigger_events=["lastmile.scheduled"],
        severity="critical",
        condition=all_of(
            exists("consolidation"),
            not_(one_of("consolidation.status", READY_CONSOLIDATION)),
        ),
        action=RuleAction(notify=["coordinateur"], block_step=True),
    ),
    _rule(
        "ANO-20",
        "Partial last mile without customer and installer approval",
        step_type="lastmile_delivered",
        trigger_events=["lastmile.partial_delivered"],
        severity="critical",
        condition=not_(eq("consolidation.partial_delivery_approved", True)),
        action=RuleAction(notify=["manager"], escalate=True),
    ),
    _rule(
        "ANO-21",
        "OMS silent > 24h on a shipment in transit",
        scope="order",
        step_type="shipment_in_transit",
        frequency="hourly",
        severity="warning",
        condition=count(
            "shipments",
            all_of(
                one_of("item.status", ["dispatched", "in_transit"]),
                hours_since("item.updated_at", min=24),
            ),
            min=1,
        ),
        action=RuleAction(notify=["ops"]),
    ),
    _rule(
        "ANO-22",
        "Last-mile delivery failed",
        step_type="lastmile_delivered",
        trigger_events=["lastmile.failed"],
        severity="critical",
        condition=always(),
        action=RuleAction(notify=["coordinateur", "ops"], escalate=True),
    ),
]


def default_rules() -> list[AnomalyRule]:
    return [rule.model_copy(deep=True) for rule in DEFAULT_RULES]
