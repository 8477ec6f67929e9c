"""Notification & escalation service.

A triggered rule result becomes at most one notification (the dedup key is
inserted atomically; a conflict means some earlier evaluation already
alerted). Delivery problems are recorded on the notification and never abort
the caller. Escalation re-alerts manager and ops for critical notifications
nobody acknowledged in time.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta

from .. import metrics
from ..config import Config
from ..errors import TransportFailure
from ..models import ActivityEntry, Notification, utc_now
from ..rules.models import RuleResult
from ..rules.render import render_pair
from ..steps import mark_step_status
from ..store import Store
from .email import EmailTransport
from .push import PushHub
from .ticketing import SimulatedTicketing, TicketingClient

logger = logging.getLogger(__name__)

ESCALATION_ROLES = ["manager", "ops"]


class NotificationService:
    def __init__(
        self,
        store: Store,
        email: EmailTransport,
        push: PushHub | None = None,
        ticketing: TicketingClient | None = None,
        config: Config | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.email = email
        self.push = push or PushHub()
        self.ticketing = ticketing or SimulatedTicketing()
        self.config = config
        self.clock = clock

    @property
    def escalation_hours(self) -> float:
        return self.config.escalation_hours if self.config else 4.0

    async def handle_rule_result(self, result: RuleResult) -> Notification | None:
        """Turn a triggered result into a delivered notification.

        Returns ``None`` for non-triggered results and for duplicates.
        """
        if not result.triggered:
            return None

        notification = Notification(
            project_id=result.project_id,
            rule_id=result.rule_id,
            event_id=result.event_id,
            dedup_key=result.dedup_key(),
            severity=result.severity,
            recipients=result.recipients,
            subject=result.subject,
            escalate=result.escalate,
            created_at=self.clock(),
        )
        if not await self.store.insert_notification(notification):
            metrics.incr("notifications_deduplicated")
            logger.info(
                "Notification %s already exists; skipped",
                notification.dedup_key,
                extra={"plo_rule_id": result.rule_id, "plo_event_id": result.event_id},
            )
            return None

        notification = await self._deliver(notification, result)
        await self._broadcast(notification)

        if result.create_ticket:
            notification = await self._open_ticket(notification, result)
        if result.block_step and result.step_id:
            if await mark_step_status(self.store, result.step_id, "anomaly", self.clock()):
                logger.info(
                    "Step %s flagged as anomaly by rule %s",
                    result.step_id,
                    result.rule_id,
                    extra={"plo_rule_id": result.rule_id, "plo_step_id": result.step_id},
                )
        return notification

    async def _deliver(self, notification: Notification, result: RuleResult) -> Notification:
        started = time.monotonic()
        delivered = False
        try:
            delivered = await self.email.send(
                result.recipients, result.subject, result.html or "", result.text
            )
        except Exception:
            logger.exception("Email transport raised for %s", notification.dedup_key)
        metrics.record_stage("notify_email", (time.monotonic() - started) * 1000, delivered)

        if delivered:
            fields = {"status": "sent", "sent_at": self.clock()}
            metrics.incr("notifications_sent")
        else:
            fields = {"status": "failed"}
            metrics.incr("transport_failures")
            logger.warning(
                "Notification %s could not be delivered",
                notification.dedup_key,
                extra={"plo_rule_id": result.rule_id, "plo_error_kind": "transport_failure"},
            )
        await self.store.update_notification(notification.id, **fields)
        return notification.model_copy(update=fields)

    async def _broadcast(self, notification: Notification) -> None:
        await self.push.broadcast(
            "notification",
            notification.model_dump(
                mode="json",
                include={"id", "project_id", "rule_id", "event_id", "severity", "status", "subject", "created_at"},
            ),
        )

    async def _open_ticket(self, notification: Notification, result: RuleResult) -> Notification:
        try:
            ref = await self.ticketing.create_ticket(
                notification.id,
                result.project_id,
                result.rule_id,
                result.subject,
                {"event_id": result.event_id, "order_id": result.order_id, "severity": result.severity},
            )
        except TransportFailure as exc:
            metrics.incr("transport_failures")
            logger.warning("Ticket for %s not created: %s", notification.dedup_key, exc)
            return notification

        await self.store.update_notification(notification.id, crm_ticket_ref=ref)
        await self.store.log_activity(
            ActivityEntry(
                project_id=result.project_id,
                entity_type="notification",
                entity_id=notification.id,
                action="crm_ticket_created",
                details={"ticket_ref": ref, "rule_id": result.rule_id},
            )
        )
        return notification.model_copy(update={"crm_ticket_ref": ref})

    async def run_escalation_check(self, now: datetime | None = None) -> int:
        """Escalate overdue critical notifications of escalating rules; returns how many were escalated."""
        now = now or self.clock()
        cutoff = now - timedelta(hours=self.escalation_hours)
        candidates = await self.store.list_escalation_candidates(cutoff)
        recipients = self.config.emails_for_roles(ESCALATION_ROLES) if self.config else []

        escalated = 0
        for notification in candidates:
            # Conditional stamp first: a concurrent sweep that lost the race sends nothing.
            if not await self.store.mark_escalated(notification.id, now):
                continue
            await self._send_escalation(notification, recipients)
            escalated += 1

        if escalated:
            metrics.incr("escalations", escalated)
        logger.info("Escalation sweep: %d candidates, %d escalated", len(candidates), escalated)
        return escalated

    async def _send_escalation(self, notification: Notification, recipients: list[str]) -> None:
        project = await self.store.get_project(notification.project_id)
        project_label = project.customer_ref if project else notification.project_id
        html, text = render_pair(
            "escalation",
            {
                "notification": notification,
                "escalation_hours": self.escalation_hours,
                "project_label": project_label,
                "sent_at_label": (
                    notification.sent_at.isoformat(timespec="minutes") if notification.sent_at else "unknown"
                ),
            },
        )
        subject = f"[PLO] ESCALATION {notification.subject or notification.rule_id}"
        try:
            delivered = await self.email.send(recipients, subject, html, text)
        except Exception:
            logger.exception("Escalation email raised for %s", notification.id)
            delivered = False
        if not delivered:
            metrics.incr("transport_failures")
        logger.warning(
            "Escalated notification %s (%s)",
            notification.id,
            notification.rule_id,
            extra={"plo_rule_id": notification.rule_id, "plo_notification_id": notification.id},
        )
