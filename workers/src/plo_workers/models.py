"""Domain records shared by the ingestion pipeline, rule engine and notifier."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

Severity = Literal["info", "warning", "critical"]
RuleSeverity = Literal["ok", "warning", "critical"]
StepScope = Literal["project", "order", "installation"]
StepStatus = Literal["pending", "in_progress", "completed", "anomaly", "skipped"]
NotificationStatus = Literal["pending", "sent", "failed"]
ConsolidationStatus = Literal["waiting", "in_progress", "complete", "partial_approved"]


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid4())


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_datetime(value: Any) -> datetime | None:
    """Parse ISO-8601 strings (``Z`` suffix allowed) or pass datetimes through."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, str) and value.strip():
        try:
            return as_utc(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


class NormalizedEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: str
    source_ref: str
    event_type: str
    project_ref: str
    order_ref: str | None = None
    occurred_at: datetime
    payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("occurred_at")
    @classmethod
    def normalize_occurred_at(cls, value: datetime) -> datetime:
        return as_utc(value)


class Event(BaseModel):
    id: str = Field(default_factory=new_id)
    project_id: str
    order_id: str | None = None
    installation_id: str | None = None
    step_id: str | None = None
    source: str
    source_ref: str
    event_type: str
    order_ref: str | None = None
    severity: Severity = "info"
    occurred_at: datetime
    payload: dict[str, Any] = Field(default_factory=dict)
    acknowledged_by: str | None = None
    acknowledged_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)
    processed_at: datetime | None = None


class Step(BaseModel):
    id: str = Field(default_factory=new_id)
    scope: StepScope
    owning_id: str
    step_type: str
    status: StepStatus = "pending"
    project_id: str | None = None
    order_id: str | None = None
    installation_id: str | None = None
    expected_at: datetime | None = None
    completed_at: datetime | None = None
    events: list[str] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def exactly_one_scope(self) -> "Step":
        scope_ids = {
            "project": self.project_id,
            "order": self.order_id,
            "installation": self.installation_id,
        }
        present = [name for name, value in scope_ids.items() if value is not None]
        if present != [self.scope]:
            raise ValueError(
                f"step must carry exactly one {self.scope}_id (got {present or 'none'})"
            )
        if scope_ids[self.scope] != self.owning_id:
            raise ValueError("owning_id must equal the scope id")
        return self


class Project(BaseModel):
    id: str = Field(default_factory=new_id)
    customer_ref: str = ""
    customer_email: str | None = None
    project_type: str = "standard"
    status: str = "active"
    channel: str | None = None
    store_id: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Order(BaseModel):
    id: str = Field(default_factory=new_id)
    project_id: str
    erp_order_ref: str | None = None
    ecommerce_order_ref: str | None = None
    status: str = "confirmed"
    installation_required: bool = False
    lead_time_days: int | None = None
    promised_delivery_date: datetime | None = None
    promised_installation_date: datetime | None = None
    delivery_address: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class OrderLine(BaseModel):
    id: str = Field(default_factory=new_id)
    order_id: str
    sku: str
    label: str = ""
    quantity: float = 1
    unit_price: float = 0
    installation_required: bool = False
    stock_status: str = "pending"


class Shipment(BaseModel):
    id: str = Field(default_factory=new_id)
    order_id: str
    project_id: str
    oms_ref: str
    leg_number: int = 1
    origin_type: str | None = None
    origin_ref: str | None = None
    destination_station_id: str | None = None
    carrier: str | None = None
    carrier_tracking_ref: str | None = None
    status: str = "pending"
    estimated_arrival: datetime | None = None
    actual_arrival: datetime | None = None
    updated_at: datetime = Field(default_factory=utc_now)


class Consolidation(BaseModel):
    id: str = Field(default_factory=new_id)
    project_id: str
    station_id: str = "default"
    station_name: str | None = None
    status: ConsolidationStatus = "waiting"
    orders_required: list[str] = Field(default_factory=list)
    orders_arrived: list[str] = Field(default_factory=list)
    estimated_complete_date: datetime | None = None
    partial_delivery_approved: bool = False
    partial_approved_by: str | None = None
    partial_approved_at: datetime | None = None
    last_mile_eligible_at: datetime | None = None
    updated_at: datetime = Field(default_factory=utc_now)

    def is_complete(self) -> bool:
        return bool(self.orders_required) and all(
            order_id in self.orders_arrived for order_id in self.orders_required
        )


class LastMileDelivery(BaseModel):
    id: str = Field(default_factory=new_id)
    project_id: str
    consolidation_id: str | None = None
    tms_delivery_ref: str
    carrier: str | None = None
    status: str = "pending"
    scheduled_date: datetime | None = None
    scheduled_slot: dict[str, str] | None = None
    delivered_at: datetime | None = None
    pod_url: str | None = None
    is_partial: bool = False
    missing_order_ids: list[str] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=utc_now)


class Installation(BaseModel):
    id: str = Field(default_factory=new_id)
    project_id: str
    wfm_job_ref: str | None = None
    status: str = "pending"
    technician_id: str | None = None
    technician_name: str | None = None
    scheduled_date: datetime | None = None
    scheduled_slot: dict[str, str] | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    report_submitted_at: datetime | None = None
    orders_prerequisite: list[str] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=utc_now)


class Notification(BaseModel):
    id: str = Field(default_factory=new_id)
    project_id: str
    rule_id: str
    event_id: str | None = None
    dedup_key: str
    severity: RuleSeverity = "warning"
    status: NotificationStatus = "pending"
    channel: str = "email"
    recipients: list[str] = Field(default_factory=list)
    subject: str = ""
    sent_at: datetime | None = None
    escalate: bool = False
    escalated_at: datetime | None = None
    crm_ticket_ref: str | None = None
    created_at: datetime = Field(default_factory=utc_now)


class ActivityEntry(BaseModel):
    id: str = Field(default_factory=new_id)
    project_id: str | None = None
    entity_type: str
    entity_id: str | None = None
    action: str
    operator_name: str = "system"
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


class DeadLetter(BaseModel):
    id: str = Field(default_factory=new_id)
    kind: str
    source: str | None = None
    event_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    error: str
    created_at: datetime = Field(default_factory=utc_now)
