"""Escalation of unacknowledged critical notifications."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from fakes import FakeEmail, MemoryStore
from plo_workers.config import Config
from plo_workers.models import Event, Notification, Project
from plo_workers.notifications import NotificationService

NOW = datetime(2026, 3, 2, 14, 0, tzinfo=timezone.utc)

CONFIG = Config(
    database_url="postgresql://unused",
    escalation_hours=4.0,
    alert_emails={"manager": "manager@example.fr", "ops": "ops@example.fr", "coordinateur": "coord@example.fr"},
)


@pytest.fixture
async def store():
    store = MemoryStore()
    await store.insert_project(Project(id="p1", customer_ref="CUST-1"))
    return store


async def _notify(
    store, key, *, severity="critical", sent_hours_ago=5.0, event=None, sent=True, escalate=True
) -> Notification:
    sent_at = NOW - timedelta(hours=sent_hours_ago)
    notification = Notification(
        project_id="p1",
        rule_id="ANO-01",
        event_id=event.id if event else None,
        dedup_key=key,
        severity=severity,
        status="sent" if sent else "failed",
        subject=f"[PLO] CRITICAL alert {key}",
        recipients=["coord@example.fr"],
        escalate=escalate,
        sent_at=sent_at if sent else None,
        created_at=sent_at,
    )
    await store.insert_notification(notification)
    return notification


def _service(store, email):
    return NotificationService(store, email, config=CONFIG, clock=lambda: NOW)


@pytest.mark.asyncio
async def test_overdue_critical_is_escalated_once(store):
    email = FakeEmail()
    notification = await _notify(store, "k1")
    service = _service(store, email)

    assert await service.run_escalation_check(NOW) == 1
    assert store.notifications[notification.id].escalated_at == NOW
    assert email.sent[0]["to"] == ["manager@example.fr", "ops@example.fr"]
    assert email.sent[0]["subject"] == "[PLO] ESCALATION [PLO] CRITICAL alert k1"
    assert "CUST-1" in email.sent[0]["text"]
    assert "4.0 hours" in email.sent[0]["text"]

    assert await service.run_escalation_check(NOW + timedelta(hours=1)) == 0
    assert len(email.sent) == 1


@pytest.mark.asyncio
async def test_recent_and_warning_notifications_wait(store):
    email = FakeEmail()
    await _notify(store, "recent", sent_hours_ago=3.5)
    await _notify(store, "warn", severity="warning", sent_hours_ago=10)
    assert await _service(store, email).run_escalation_check(NOW) == 0
    assert email.sent == []


@pytest.mark.asyncio
async def test_acknowledged_event_is_not_escalated(store):
    event = Event(
        project_id="p1",
        source="erp",
        source_ref="S1",
        event_type="stock.shortage",
        occurred_at=NOW - timedelta(hours=6),
        acknowledged_by="coordinator-1",
        acknowledged_at=NOW - timedelta(hours=5),
    )
    await store.insert_event(event)
    await _notify(store, "acked", event=event)
    assert await _service(store, FakeEmail()).run_escalation_check(NOW) == 0


@pytest.mark.asyncio
async def test_unacknowledged_event_is_escalated(store):
    event = Event(
        project_id="p1", source="erp", source_ref="S2", event_type="stock.shortage", occurred_at=NOW
    )
    await store.insert_event(event)
    await _notify(store, "open", event=event)
    assert await _service(store, FakeEmail()).run_escalation_check(NOW) == 1


@pytest.mark.asyncio
async def test_unsent_notification_reports_unknown_send_time(store):
    email = FakeEmail()
    await _notify(store, "failed", sent=False)
    assert await _service(store, email).run_escalation_check(NOW) == 1
    assert "Originally sent: unknown" in email.sent[0]["text"]


@pytest.mark.asyncio
async def test_failed_escalation_email_still_stamps(store):
    notification = await _notify(store, "k1")
    assert await _service(store, FakeEmail(fail=True)).run_escalation_check(NOW) == 1
    assert store.notifications[notification.id].escalated_at == NOW


@pytest.mark.asyncio
async def test_concurrent_sweeps_escalate_once(store):
    email = FakeEmail()
    await _notify(store, "k1")
    first, second = _service(store, email), _service(store, email)
    counts = await asyncio.gather(first.run_escalation_check(NOW), second.run_escalation_check(NOW))
    assert sorted(counts) == [0, 1]
    assert len(email.sent) == 1


@pytest.mark.asyncio
async def test_custom_escalation_window(store):
    await _notify(store, "k1", sent_hours_ago=1.5)
    config = Config(database_url="x", escalation_hours=1.0, alert_emails={"manager": "m@example.fr"})
    service = NotificationService(store, FakeEmail(), config=config)
    assert service.escalation_hours == 1.0
    assert await service.run_escalation_check(NOW) == 1


@pytest.mark.asyncio
async def test_rules_without_escalation_are_left_alone(store):
    email = FakeEmail()
    notification = await _notify(store, "no-esc", escalate=False)
    assert await _service(store, email).run_escalation_check(NOW) == 0
    assert store.notifications[notification.id].escalated_at is None
    assert email.sent == []
