"""Order orchestration: creation, reads, status changes and payment handoff."""

import asyncio
import math
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from .catalog import CatalogClient
from .errors import (
    FailureKind,
    InvalidStatusTransitionError,
    OrderCreationError,
    OrderNotFoundError,
    RpcError,
)
from .logger import logger
from .payments import PaymentClient
from .schemas import (
    CreateOrderRequest,
    Order,
    OrderItem,
    OrderItemRequest,
    OrderPagination,
    OrderStatus,
    PaginatedOrders,
    PaginationMeta,
    PaidOrderEvent,
    PaymentSessionItem,
    PaymentSessionRequest,
    Product,
)
from .store import OrderStore

# Scale of the money columns; frozen prices are rounded to it before totals are summed.
PRICE_SCALE = Decimal("0.01")


def calculate_totals(items: list[OrderItem]) -> tuple[Decimal, int]:
    """Sum ``price * quantity`` and ``quantity`` over every line item."""
    total_amount = Decimal("0")
    total_items = 0
    for item in items:
        total_amount += item.price * item.quantity
        total_items += item.quantity
    return total_amount, total_items


def last_page(total: int, limit: int) -> int:
    return math.ceil(total / limit)


def price_items(requested: list[OrderItemRequest], products: list[Product]) -> list[OrderItem]:
    """Freeze the catalog price, rounded to cents, onto each requested line.

    Duplicate products stay separate lines.

    Raises:
        KeyError: If a requested product is missing from ``products``.
    """
    catalog = {product.id: product for product in products}
    return [
        OrderItem(
            product_id=item.product_id,
            price=catalog[item.product_id].price.quantize(PRICE_SCALE, rounding=ROUND_HALF_UP),
            quantity=item.quantity,
            name=catalog[item.product_id].name,
        )
        for item in requested
    ]


class OrdersService:
    """Coordinates the catalog, the order store and the payment service.

    Attributes:
        store: Persistence for orders.
        catalog: Source of truth for product existence, name and price.
        payments: Opens payment sessions.
        currency: Currency code passed through to payment sessions.
        strict_transitions: Reject status changes outside the allowed table.
    """

    def __init__(
        self,
        store: OrderStore,
        catalog: CatalogClient,
        payments: PaymentClient,
        currency: str = "usd",
        strict_transitions: bool = False,
    ):
        self.store = store
        self.catalog = catalog
        self.payments = payments
        self.currency = currency
        self.strict_transitions = strict_transitions

    async def create(self, request: CreateOrderRequest) -> Order:
        """Validate, price and persist a new order.

        The catalog is consulted before anything is written; the order and its items are
        stored in one transaction.

        Args:
            request: Requested line items.

        Returns:
            Order: The stored order, items carrying their catalog names.

        Raises:
            OrderCreationError: On any failure; the cause is logged, not returned.
        """
        if not request.items:
            raise self._creation_failed(FailureKind.VALIDATION, ValueError("Order has no items"))

        product_ids = list(dict.fromkeys(item.product_id for item in request.items))
        try:
            products = await self.catalog.validate_products(product_ids)
            items = price_items(request.items, products)
        except Exception as e:
            raise self._creation_failed(FailureKind.DEPENDENCY, e) from e

        total_amount, total_items = calculate_totals(items)
        try:
            order = await asyncio.to_thread(
                self.store.create_order_with_items, total_amount, total_items, items
            )
        except Exception as e:
            raise self._creation_failed(FailureKind.STORAGE, e) from e

        logger.info(
            f"Order created | order_id={order.id} | total_amount={order.total_amount} | total_items={order.total_items}"
        )
        names = {item.product_id: item.name for item in items}
        return self._with_names(order, names)

    async def find_all(self, pagination: OrderPagination) -> PaginatedOrders:
        total = await asyncio.to_thread(self.store.count, pagination.status)
        data = await asyncio.to_thread(
            self.store.find_many,
            status=pagination.status,
            skip=(pagination.page - 1) * pagination.limit,
            take=pagination.limit,
        )
        return PaginatedOrders(
            data=data,
            meta=PaginationMeta(total=total, page=pagination.page, last_page=last_page(total, pagination.limit)),
        )

    async def find_one(self, order_id: str) -> Order:
        """Fetch an order with its items, enriched with current product names.

        Stored prices are returned as-is. If the catalog cannot resolve the items any more,
        the order is returned without names.

        Raises:
            OrderNotFoundError: If no order has ``order_id``.
        """
        order = await self._get(order_id)

        product_ids = list(dict.fromkeys(item.product_id for item in order.items))
        try:
            products = await self.catalog.validate_products(product_ids)
        except RpcError as e:
            logger.warning(f"Order returned without product names | order_id={order_id} | error={e.message}")
            return order

        return self._with_names(order, {product.id: product.name for product in products})

    async def change_status(self, order_id: str, status: OrderStatus) -> Order:
        """Move an order to ``status``.

        Setting the current status again returns the order without writing.

        Raises:
            OrderNotFoundError: If no order has ``order_id``.
            InvalidStatusTransitionError: In strict mode, for moves outside the allowed table.
        """
        order = await self._get(order_id)
        if order.status == status:
            logger.debug(f"Order status unchanged | order_id={order_id} | status={status.value}")
            return order

        if self.strict_transitions and not order.status.can_transition_to(status):
            raise InvalidStatusTransitionError(order_id, order.status, status)

        updated = await asyncio.to_thread(self.store.update_by_id, order_id, status=status)
        if updated is None:
            raise OrderNotFoundError(order_id)
        logger.info(f"Order status changed | order_id={order_id} | from={order.status.value} | to={status.value}")
        return updated

    async def create_payment_session(self, order: Order) -> dict[str, Any]:
        """Ask the payment service to open a checkout session for a stored order.

        Raises:
            RpcError: If the payment service fails or does not answer.
        """
        request = PaymentSessionRequest(
            order_id=order.id,
            currency=self.currency,
            items=[
                PaymentSessionItem(name=item.name, price=float(item.price), quantity=item.quantity)
                for item in order.items
            ],
        )
        session = await self.payments.create_session(request)
        logger.info(f"Payment session created | order_id={order.id}")
        return session

    async def paid_order(self, event: PaidOrderEvent) -> Order:
        """Apply a payment confirmation to its order.

        A confirmation already applied with the same charge id leaves the order untouched.

        Raises:
            OrderNotFoundError: If no order has ``event.order_id``.
            PaymentConflictError: If the order was paid by a different charge.
        """
        logger.info(f"Order paid | order_id={event.order_id} | charge_id={event.payment_provider_charge_id}")
        outcome = await asyncio.to_thread(
            self.store.mark_paid,
            event.order_id,
            charge_id=event.payment_provider_charge_id,
            receipt_url=event.receipt_url,
            paid_at=datetime.now(timezone.utc),
        )
        if outcome.order is None:
            raise OrderNotFoundError(event.order_id)
        if not outcome.applied:
            logger.info(f"Duplicate payment confirmation ignored | order_id={event.order_id}")
        return outcome.order

    async def _get(self, order_id: str) -> Order:
        order = await asyncio.to_thread(self.store.find_by_id, order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    @staticmethod
    def _with_names(order: Order, names: dict[str, Optional[str]]) -> Order:
        return order.model_copy(
            update={"items": [item.model_copy(update={"name": names.get(item.product_id)}) for item in order.items]}
        )

    @staticmethod
    def _creation_failed(kind: FailureKind, cause: Exception) -> OrderCreationError:
        logger.bind(kind=kind.value).opt(exception=cause).error(
            f"Order creation failed | kind={kind.value} | error_type={type(cause).__name__}"
        )
        return OrderCreationError(kind)
