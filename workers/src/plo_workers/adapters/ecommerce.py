"""E-commerce adapter: online journey, carts, payments, web orders."""

from typing import Literal

from pydantic import NonNegativeFloat, PositiveInt

from .base import Address, BaseSourceAdapter, IsoDatetime, PayloadSchema


class CartLine(PayloadSchema):
    sku: str
    label: str | None = None
    qty: PositiveInt
    unit_price: NonNegativeFloat | None = None
    installation_required: bool | None = None


class InspirationStarted(PayloadSchema):
    session_id: str | None = None
    project_type: Literal["kitchen", "bathroom", "energy_renovation", "other"] | None = None
    channel: str | None = None


class InspirationCompleted(PayloadSchema):
    session_id: str | None = None
    product_count: int | None = None
    total_estimate: NonNegativeFloat | None = None


class InspirationConverted(PayloadSchema):
    session_id: str | None = None
    ecommerce_quote_ref: str | None = None


class InspirationAbandoned(PayloadSchema):
    session_id: str | None = None
    last_step: str | None = None
    time_spent_seconds: int | None = None


class Cart(PayloadSchema):
    ecommerce_cart_ref: str
    lines: list[CartLine] | None = None
    total_amount: NonNegativeFloat | None = None


class CartAbandoned(PayloadSchema):
    ecommerce_cart_ref: str
    total_amount: NonNegativeFloat | None = None
    abandonment_step: str | None = None


class CartConverted(PayloadSchema):
    ecommerce_cart_ref: str
    ecommerce_order_ref: str
    total_amount: NonNegativeFloat | None = None


class Payment(PayloadSchema):
    ecommerce_order_ref: str | None = None
    payment_method: str | None = None
    amount: NonNegativeFloat | None = None
    transaction_ref: str | None = None
    reason: str | None = None


class WebOrderConfirmed(PayloadSchema):
    ecommerce_order_ref: str
    erp_order_ref: str | None = None
    delivery_address: Address | None = None
    installation_required: bool | None = None
    promised_delivery_date: IsoDatetime | None = None
    lines: list[CartLine] | None = None


class WebOrderCancelled(PayloadSchema):
    ecommerce_order_ref: str
    reason: str | None = None


class QuoteCreated(PayloadSchema):
    ecommerce_quote_ref: str
    total_amount: NonNegativeFloat | None = None
    lines: list[CartLine] | None = None
    valid_until: IsoDatetime | None = None


class QuoteAccepted(PayloadSchema):
    ecommerce_quote_ref: str
    accepted_at: IsoDatetime | None = None


class QuoteExpired(PayloadSchema):
    ecommerce_quote_ref: str
    expired_at: IsoDatetime | None = None


class EcommerceAdapter(BaseSourceAdapter):
    source = "ecommerce"
    label = "e-commerce"
    allowed_event_types = frozenset({
        "inspiration.started",
        "inspiration.completed",
        "inspiration.converted",
        "inspiration.abandoned",
        "quote_products.created",
        "quote_products.sent",
        "quote_products.accepted",
        "quote_products.expired",
        "cart.created",
        "cart.updated",
        "cart.abandoned",
        "cart.converted",
        "payment.initiated",
        "payment.confirmed",
        "payment.failed",
        "payment.refunded",
        "order.confirmed",
        "order.cancelled",
        "order.line_added",
    })
    payload_schemas = {
        "inspiration.started": InspirationStarted,
        "inspiration.completed": InspirationCompleted,
        "inspiration.converted": InspirationConverted,
        "inspiration.abandoned": InspirationAbandoned,
        "cart.created": Cart,
        "cart.updated": Cart,
        "cart.abandoned": CartAbandoned,
        "cart.converted": CartConverted,
        "payment.initiated": Payment,
        "payment.confirmed": Payment,
        "payment.failed": Payment,
        "payment.refunded": Payment,
        "order.confirmed": WebOrderConfirmed,
        "order.cancelled": WebOrderCancelled,
        "quote_products.created": QuoteCreated,
        "quote_products.accepted": QuoteAccepted,
        "quote_products.expired": QuoteExpired,
    }
