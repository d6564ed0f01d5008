"""Pydantic models for order requests, responses and collaborator payloads."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model speaking camelCase on the wire while accepting snake_case names."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
        coerce_numbers_to_str=True,
    )


class OrderStatus(str, Enum):
    """Lifecycle status of an order."""

    PENDING = "PENDING"
    PAID = "PAID"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"

    def can_transition_to(self, other: "OrderStatus") -> bool:
        """Check ``other`` against the allowed-transitions table."""
        return other in ALLOWED_TRANSITIONS[self]


ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.CANCELLED}),
    OrderStatus.PAID: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


class OrderItemRequest(CamelModel):
    """A requested line item.

    Attributes:
        product_id (str): Catalog product identifier.
        quantity (int): Units ordered, must be positive.
    """

    product_id: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)


class CreateOrderRequest(CamelModel):
    """Payload for creating an order; at least one item is required."""

    items: list[OrderItemRequest] = Field(..., min_length=1, description="At least one item required")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "items": [
                    {"productId": "p1", "quantity": 2},
                    {"productId": "p2", "quantity": 1},
                ]
            }
        }
    )


class OrderPagination(CamelModel):
    status: Optional[OrderStatus] = None
    page: int = Field(1, ge=1)
    limit: int = Field(10, ge=1)


class StatusUpdate(CamelModel):
    status: OrderStatus


class PaidOrderEvent(CamelModel):
    """Payment confirmation delivered by the payment service.

    The charge reference is accepted under any of the names the payment service has used.
    """

    order_id: str = Field(..., min_length=1)
    payment_provider_charge_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("paymentProviderChargeId", "payment_provider_charge_id", "stripePaymentId", "chargeId"),
        serialization_alias="paymentProviderChargeId",
    )
    receipt_url: str = Field(..., min_length=1)


class Product(CamelModel):
    """Catalog entry as returned by the products service."""

    id: str
    name: str
    price: Decimal = Field(..., ge=0)


class OrderItem(CamelModel):
    """A persisted line item; ``name`` is display-only enrichment from the catalog."""

    product_id: str
    price: Decimal
    quantity: int
    name: Optional[str] = None


class OrderReceipt(CamelModel):
    receipt_url: str
    created_at: Optional[datetime] = None


class OrderSummary(CamelModel):
    """Order row without its owned records, as returned by listings."""

    id: str
    status: OrderStatus
    paid: bool
    paid_at: Optional[datetime] = None
    total_amount: Decimal
    total_items: int
    payment_charge_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Order(OrderSummary):
    items: list[OrderItem] = Field(default_factory=list)
    receipt: Optional[OrderReceipt] = None


class PaginationMeta(CamelModel):
    total: int
    page: int
    last_page: int


class PaginatedOrders(CamelModel):
    data: list[OrderSummary]
    meta: PaginationMeta


class PaymentSessionItem(CamelModel):
    name: Optional[str] = None
    price: float
    quantity: int


class PaymentSessionRequest(CamelModel):
    """Payload sent to the payment service to open a checkout session."""

    order_id: str
    currency: str
    items: list[PaymentSessionItem]


class CreatedOrder(CamelModel):
    order: Order
    payment_session: dict[str, Any]
