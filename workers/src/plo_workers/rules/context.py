"""Evaluation context: the fact tree rule conditions read from.

A context is assembled from the store for every evaluation and never reused,
so a rule always sees the aggregates as they are right now.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from ..models import Event, Step, utc_now
from ..store import Store


def _walk(root: Any, parts: list[str]) -> Any:
    node = root
    for part in parts:
        if node is None:
            return None
        if isinstance(node, dict):
            node = node.get(part)
        elif isinstance(node, list) and part.isdigit():
            index = int(part)
            node = node[index] if index < len(node) else None
        else:
            node = getattr(node, part, None)
    return node


@dataclass(frozen=True)
class EvaluationContext:
    now: datetime
    facts: dict[str, Any] = field(default_factory=dict)
    item: Any = None

    def resolve(self, path: str) -> Any:
        parts = path.split(".")
        if parts[0] == "item":
            return _walk(self.item, parts[1:])
        return _walk(self.facts, parts)

    def with_item(self, item: Any) -> "EvaluationContext":
        return replace(self, item=item)

    def _id_of(self, key: str) -> str | None:
        node = self.facts.get(key)
        return node.get("id") if isinstance(node, dict) else None

    @property
    def project_id(self) -> str | None:
        return self._id_of("project")

    @property
    def order_id(self) -> str | None:
        return self._id_of("order")

    @property
    def installation_id(self) -> str | None:
        return self._id_of("installation")

    @property
    def event_id(self) -> str | None:
        return self._id_of("event")

    @property
    def step_id(self) -> str | None:
        event = self.facts.get("event")
        return event.get("step_id") if isinstance(event, dict) else None


def _dump(model: Any) -> dict[str, Any] | None:
    return model.model_dump() if model is not None else None


def _step_facts(steps: list[Step]) -> tuple[dict[str, str], dict[str, datetime | None]]:
    statuses = {step.step_type: step.status for step in steps}
    completed = {step.step_type: step.completed_at for step in steps}
    return statuses, completed


async def build_context(
    store: Store,
    project_id: str,
    *,
    order_id: str | None = None,
    event: Event | None = None,
    now: datetime | None = None,
    recent_limit: int = 20,
) -> EvaluationContext | None:
    """Read project, orders, logistics aggregates, steps and recent events.

    Returns ``None`` when the project no longer exists. When ``order_id`` is
    given the context is order-focused: ``order`` and ``shipments`` refer to
    that order and its order-level steps are visible.
    """
    project = await store.get_project(project_id)
    if project is None:
        return None

    orders = await store.list_orders(project_id)
    order = next((o for o in orders if o.id == order_id), None) if order_id else None
    installation = await store.get_installation(project_id)

    owning_ids = [project_id]
    if installation is not None:
        owning_ids.append(installation.id)
    if order is not None:
        owning_ids.append(order.id)
    steps = await store.list_steps(owning_ids)
    statuses, completed = _step_facts(steps)

    shipments = await store.list_shipments(project_id, order.id if order else None)
    recent = await store.list_recent_events(project_id, limit=recent_limit)

    facts: dict[str, Any] = {
        "project": _dump(project),
        "order": _dump(order),
        "orders": [o.model_dump() for o in orders],
        "shipments": [s.model_dump() for s in shipments],
        "consolidation": _dump(await store.get_consolidation(project_id)),
        "last_mile": _dump(await store.get_last_mile(project_id)),
        "installation": _dump(installation),
        "steps": statuses,
        "step_completed_at": completed,
        "recent_events": [
            {"event_type": e.event_type, "source": e.source, "occurred_at": e.occurred_at}
            for e in recent
        ],
        "event": _dump(event),
    }
    return EvaluationContext(now=now or utc_now(), facts=facts)
