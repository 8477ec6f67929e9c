"""ERP adapter: inspiration, quotes, orders, stock and picking."""

from pydantic import Field, NonNegativeFloat, PositiveInt

from .base import Address, BaseSourceAdapter, IsoDatetime, PayloadSchema


class ErpOrderLine(PayloadSchema):
    sku: str
    qty: PositiveInt
    label: str | None = None
    warehouse: str | None = None
    unit_price: NonNegativeFloat | None = None
    installation_required: bool | None = None


class OrderConfirmed(PayloadSchema):
    erp_order_ref: str
    delivery_address: Address | None = None
    installation_required: bool | None = None
    lead_time_days: PositiveInt | None = None
    promised_delivery_date: IsoDatetime | None = None
    lines: list[ErpOrderLine] | None = None


class OrderLineAdded(PayloadSchema):
    erp_order_ref: str
    line: ErpOrderLine


class OrderCancelled(PayloadSchema):
    erp_order_ref: str
    reason: str | None = None


class StockShortage(PayloadSchema):
    erp_order_ref: str | None = None
    sku: str
    quantity_ordered: int | None = None
    quantity_available: int | None = None
    expected_restock_date: str | None = None


class StockCheckOk(PayloadSchema):
    erp_order_ref: str | None = None
    lines_checked: int | None = None


class StockPartial(PayloadSchema):
    erp_order_ref: str | None = None
    shortage_skus: list[str] | None = None


class PickingDiscrepancy(PayloadSchema):
    erp_order_ref: str | None = None
    missing_skus: list[str] = Field(default_factory=list)
    damaged_skus: list[str] = Field(default_factory=list)
    operator_id: str | None = None


class ErpAdapter(BaseSourceAdapter):
    source = "erp"
    label = "ERP"
    allowed_event_types = frozenset({
        "inspiration.started",
        "inspiration.completed",
        "inspiration.converted",
        "inspiration.abandoned",
        "quote_products.created",
        "quote_products.sent",
        "quote_products.accepted",
        "quote_products.expired",
        "quote_installation.created",
        "quote_installation.sent",
        "quote_installation.accepted",
        "order.confirmed",
        "order.line_added",
        "order.cancelled",
        "stock.check_ok",
        "stock.shortage",
        "stock.partial",
        "picking.started",
        "picking.completed",
        "picking.discrepancy",
    })
    payload_schemas = {
        "order.confirmed": OrderConfirmed,
        "order.line_added": OrderLineAdded,
        "order.cancelled": OrderCancelled,
        "stock.shortage": StockShortage,
        "stock.check_ok": StockCheckOk,
        "stock.partial": StockPartial,
        "picking.discrepancy": PickingDiscrepancy,
    }
