from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_serializer, field_validator

from ..models import RuleSeverity, utc_now
from .conditions import Condition

RuleScope = Literal["project", "order"]
RuleFrequency = Literal["realtime", "hourly", "daily"]


class RuleAction(BaseModel):
    notify: list[str] = Field(default_factory=list)
    template: str | None = None
    create_ticket: bool = False
    block_step: bool = False
    escalate: bool = False


class AnomalyRule(BaseModel):
    id: str
    name: str
    description: str = ""
    scope: RuleScope = "project"
    step_type: str | None = None
    frequency: RuleFrequency = "realtime"
    trigger_events: list[str] = Field(default_factory=list)
    severity: RuleSeverity = "warning"
    condition: Condition
    action: RuleAction = Field(default_factory=RuleAction)
    active: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("trigger_events")
    @classmethod
    def strip_trigger_events(cls, value: list[str]) -> list[str]:
        return [event_type.strip() for event_type in value if event_type.strip()]

    @field_serializer("condition")
    def dump_condition(self, condition: Any) -> dict[str, Any]:
        return condition.model_dump(mode="json")

    def matches_event(self, event_type: str, step_type: str | None) -> bool:
        if self.trigger_events:
            return event_type in self.trigger_events
        return self.step_type is not None and self.step_type == step_type


class RuleResult(BaseModel):
    rule_id: str
    rule_name: str
    triggered: bool
    severity: RuleSeverity = "warning"
    recipients: list[str] = Field(default_factory=list)
    subject: str = ""
    html: str | None = None
    text: str | None = None
    project_id: str
    order_id: str | None = None
    installation_id: str | None = None
    event_id: str | None = None
    step_id: str | None = None
    create_ticket: bool = False
    block_step: bool = False
    escalate: bool = False
    evaluated_at: datetime = Field(default_factory=utc_now)

    def dedup_key(self) -> str:
        """Identity of a notification for this result.

        Event-driven results are keyed on the event; scheduled ones on the
        scope and calendar day, so a daily sweep re-firing stays one alert.
        """
        if self.event_id:
            return f"{self.rule_id}:{self.event_id}"
        parts = [self.rule_id, self.project_id]
        if self.order_id:
            parts.append(self.order_id)
        parts.append(self.evaluated_at.date().isoformat())
        return ":".join(parts)
