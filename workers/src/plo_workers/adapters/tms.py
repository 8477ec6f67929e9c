"""Last-mile TMS adapter (source ``tms_lastmile``)."""

from pydantic import Field

from .base import BaseSourceAdapter, IsoDatetime, PayloadSchema, TimeSlot


class LastMilePayload(PayloadSchema):
    lastmile_id: str
    carrier: str | None = None
    carrier_tracking_ref: str | None = None


class LastMileScheduled(LastMilePayload):
    scheduled_date: IsoDatetime
    time_slot: TimeSlot | None = None
    is_partial: bool = False
    missing_order_ids: list[str] = Field(default_factory=list)


class LastMileRescheduled(LastMilePayload):
    scheduled_date: IsoDatetime
    time_slot: TimeSlot | None = None
    reason: str | None = None
    previous_date: str | None = None


class LastMileDelivered(LastMilePayload):
    delivered_at: IsoDatetime
    pod_url: str | None = None
    is_partial: bool = False
    missing_order_ids: list[str] = Field(default_factory=list)


class LastMilePartialDelivered(LastMilePayload):
    delivered_at: IsoDatetime
    pod_url: str | None = None
    missing_order_ids: list[str] = Field(min_length=1)


class LastMileFailed(LastMilePayload):
    reason: str | None = None
    rescheduled_date: str | None = None


class LastMileDamaged(LastMilePayload):
    damaged_items: list[str] | None = None
    description: str | None = None


class TmsAdapter(BaseSourceAdapter):
    source = "tms_lastmile"
    label = "TMS last mile"
    allowed_event_types = frozenset({
        "lastmile.scheduled",
        "lastmile.rescheduled",
        "lastmile.in_transit",
        "lastmile.delivered",
        "lastmile.partial_delivered",
        "lastmile.failed",
        "lastmile.damaged",
    })
    payload_schemas = {
        "lastmile.scheduled": LastMileScheduled,
        "lastmile.rescheduled": LastMileRescheduled,
        "lastmile.in_transit": LastMilePayload,
        "lastmile.delivered": LastMileDelivered,
        "lastmile.partial_delivered": LastMilePartialDelivered,
        "lastmile.failed": LastMileFailed,
        "lastmile.damaged": LastMileDamaged,
    }
