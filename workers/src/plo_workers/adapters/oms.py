"""OMS adapter: shipments and station consolidation."""

from typing import Literal

from pydantic import PositiveInt

from .base import BaseSourceAdapter, PayloadSchema


class ShipmentPayload(PayloadSchema):
    shipment_id: str
    order_ref: str | None = None
    leg_number: PositiveInt | None = None
    origin_type: Literal["warehouse", "store", "supplier", "crossdock_station"] | None = None
    origin_ref: str | None = None
    destination_station_id: str | None = None
    carrier: str | None = None
    carrier_tracking_ref: str | None = None
    estimated_arrival: str | None = None
    actual_arrival: str | None = None


class ShipmentEtaUpdated(ShipmentPayload):
    previous_eta: str | None = None
    new_eta: str | None = None
    delay_days: float | None = None
    reason: str | None = None


class ShipmentException(ShipmentPayload):
    exception_type: str | None = None
    exception_description: str | None = None


class PartialApproval(PayloadSchema):
    customer: bool
    installer: bool
    approved_at: str


class ConsolidationPayload(PayloadSchema):
    consolidation_id: str
    project_ref: str | None = None
    station_id: str | None = None
    orders_total: int | None = None
    orders_arrived: int | None = None
    orders_missing: list[str] | None = None
    estimated_complete_date: str | None = None
    status: Literal["waiting", "in_progress", "complete", "partial_approved"] | None = None
    partial_approved_by: PartialApproval | None = None


class ConsolidationOrderArrived(ConsolidationPayload):
    order_id: str
    arrived_at: str


class ConsolidationException(ConsolidationPayload):
    exception_type: str | None = None
    affected_order_ids: list[str] | None = None


class OmsAdapter(BaseSourceAdapter):
    source = "oms"
    label = "OMS"
    allowed_event_types = frozenset({
        "shipment.dispatched",
        "shipment.in_transit",
        "shipment.eta_updated",
        "shipment.arrived_at_station",
        "shipment.exception",
        "consolidation.order_arrived",
        "consolidation.eta_updated",
        "consolidation.complete",
        "consolidation.partial_approved",
        "consolidation.exception",
    })
    payload_schemas = {
        "shipment.dispatched": ShipmentPayload,
        "shipment.in_transit": ShipmentPayload,
        "shipment.eta_updated": ShipmentEtaUpdated,
        "shipment.arrived_at_station": ShipmentPayload,
        "shipment.exception": ShipmentException,
        "consolidation.order_arrived": ConsolidationOrderArrived,
        "consolidation.eta_updated": ConsolidationPayload,
        "consolidation.complete": ConsolidationPayload,
        "consolidation.partial_approved": ConsolidationPayload,
        "consolidation.exception": ConsolidationException,
    }
