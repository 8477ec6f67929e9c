"""Anomaly rule engine: realtime evaluation per event, scheduled sweeps.

Only active rules are evaluated. Each firing rule yields its own
``RuleResult``; a rule that raises is logged and skipped so the remaining
rules still run.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime
from typing import Any, Protocol

from .. import metrics
from ..config import Config
from ..models import Event, Notification, utc_now
from ..steps import step_for_event
from ..store import Store
from .context import EvaluationContext, build_context
from .models import AnomalyRule, RuleFrequency, RuleResult
from .render import DEFAULT_TEMPLATE, SEVERITY_LABELS, alert_subject, render_pair

logger = logging.getLogger(__name__)


class ResultSink(Protocol):
    async def handle_rule_result(self, result: RuleResult) -> Notification | None: ...


def evaluate_rule(rule: AnomalyRule, ctx: EvaluationContext, config: Config | None = None) -> RuleResult:
    """Pure evaluation of one rule against one context."""
    triggered = rule.condition.evaluate(ctx)
    result = RuleResult(
        rule_id=rule.id,
        rule_name=rule.name,
        triggered=triggered,
        severity=rule.severity,
        project_id=ctx.project_id or "",
        order_id=ctx.order_id,
        installation_id=ctx.installation_id,
        event_id=ctx.event_id,
        step_id=ctx.step_id,
        create_ticket=rule.action.create_ticket,
        block_step=rule.action.block_step,
        escalate=rule.action.escalate,
        evaluated_at=ctx.now,
    )
    if not triggered:
        return result

    project = ctx.facts.get("project") or {}
    recipients = config.emails_for_roles(rule.action.notify) if config else list(rule.action.notify)
    html, text = render_pair(
        rule.action.template or DEFAULT_TEMPLATE,
        {
            "rule": rule,
            "severity": rule.severity,
            "severity_label": SEVERITY_LABELS.get(rule.severity, rule.severity),
            "project": project,
            "order": ctx.facts.get("order"),
            "event": ctx.facts.get("event"),
            "installation": ctx.facts.get("installation"),
            "now": ctx.now.isoformat(timespec="minutes"),
        },
    )
    return result.model_copy(
        update={
            "recipients": recipients,
            "subject": alert_subject(rule.name, rule.severity, project.get("customer_ref")),
            "html": html,
            "text": text,
        }
    )


class RuleEngine:
    def __init__(
        self,
        store: Store,
        sink: ResultSink | None = None,
        config: Config | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.sink = sink
        self.config = config
        self.clock = clock

    async def active_rules(self, frequency: RuleFrequency) -> list[AnomalyRule]:
        return [rule for rule in await self.store.list_rules(frequency) if rule.active]

    def _evaluate_safely(self, rule: AnomalyRule, ctx: EvaluationContext) -> RuleResult | None:
        started = time.monotonic()
        try:
            result = evaluate_rule(rule, ctx, self.config)
        except Exception:
            metrics.incr("rule_failures")
            metrics.record_stage(f"rule:{rule.id}", (time.monotonic() - started) * 1000, False)
            logger.exception(
                "Rule %s failed for project %s",
                rule.id,
                ctx.project_id,
                extra={"plo_rule_id": rule.id, "plo_event_id": ctx.event_id},
            )
            return None
        metrics.record_stage(f"rule:{rule.id}", (time.monotonic() - started) * 1000, True)
        return result

    async def _dispatch(self, results: list[RuleResult]) -> None:
        metrics.incr("rules_triggered", len(results))
        if self.sink is None:
            return
        for result in results:
            await self.sink.handle_rule_result(result)

    async def evaluate_realtime(self, event: Event) -> list[RuleResult]:
        """Evaluate realtime rules triggered by ``event``; returns firing results."""
        mapping = step_for_event(event.event_type)
        rules = [
            rule
            for rule in await self.active_rules("realtime")
            if rule.matches_event(event.event_type, mapping.step_type if mapping else None)
        ]
        if not rules:
            return []

        ctx = await build_context(
            self.store, event.project_id, order_id=event.order_id, event=event, now=self.clock()
        )
        if ctx is None:
            logger.warning("Project %s vanished before rule evaluation", event.project_id)
            return []

        fired: list[RuleResult] = []
        for rule in rules:
            if rule.scope == "order" and ctx.order_id is None:
                continue
            result = self._evaluate_safely(rule, ctx)
            if result is not None and result.triggered:
                logger.info(
                    "Rule %s triggered by %s",
                    rule.id,
                    event.event_type,
                    extra={"plo_rule_id": rule.id, "plo_event_id": event.id, "plo_severity": rule.severity},
                )
                fired.append(result)

        await self._dispatch(fired)
        return fired

    async def evaluate_scheduled(self, frequency: RuleFrequency) -> list[RuleResult]:
        """Sweep every active project (and its orders) against scheduled rules."""
        if frequency == "realtime":
            raise ValueError("scheduled evaluation takes 'hourly' or 'daily'")
        rules = await self.active_rules(frequency)
        if not rules:
            return []
        project_rules = [r for r in rules if r.scope == "project"]
        order_rules = [r for r in rules if r.scope == "order"]

        fired: list[RuleResult] = []
        projects = await self.store.list_active_projects()
        for project in projects:
            try:
                fired.extend(await self._sweep_project(project.id, project_rules, order_rules))
            except Exception:
                logger.exception("Scheduled %s sweep failed for project %s", frequency, project.id)

        logger.info(
            "Scheduled %s sweep: %d projects, %d rules, %d triggered",
            frequency,
            len(projects),
            len(rules),
            len(fired),
            extra={"plo_frequency": frequency},
        )
        await self._dispatch(fired)
        return fired

    async def _sweep_project(
        self,
        project_id: str,
        project_rules: list[AnomalyRule],
        order_rules: list[AnomalyRule],
    ) -> list[RuleResult]:
        fired: list[RuleResult] = []
        now = self.clock()
        if project_rules:
            ctx = await build_context(self.store, project_id, now=now)
            if ctx is not None:
                fired.extend(self._fired(project_rules, ctx))

        if order_rules:
            for order in await self.store.list_orders(project_id):
                if order.status == "cancelled":
                    continue
                ctx = await build_context(self.store, project_id, order_id=order.id, now=now)
                if ctx is not None:
                    fired.extend(self._fired(order_rules, ctx))
        return fired

    def _fired(self, rules: list[AnomalyRule], ctx: EvaluationContext) -> list[RuleResult]:
        results = (self._evaluate_safely(rule, ctx) for rule in rules)
        return [r for r in results if r is not None and r.triggered]


def describe_rules(rules: list[AnomalyRule]) -> list[dict[str, Any]]:
    return [
        {
            "id": rule.id,
            "name": rule.name,
            "frequency": rule.frequency,
            "scope": rule.scope,
            "severity": rule.severity,
            "active": rule.active,
        }
        for rule in rules
    ]
