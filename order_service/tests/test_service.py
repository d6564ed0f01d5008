"""Tests for the order orchestrator."""

import threading
from decimal import Decimal

import pytest

from order_service.errors import (
    FailureKind,
    InvalidStatusTransitionError,
    OrderCreationError,
    OrderNotFoundError,
    PaymentConflictError,
    RpcError,
)
from order_service.schemas import (
    CreateOrderRequest,
    OrderItemRequest,
    OrderPagination,
    OrderStatus,
    PaidOrderEvent,
    Product,
)
from order_service.service import OrdersService, calculate_totals, last_page, price_items


@pytest.mark.asyncio
async def test_create_order_scenario(service, store, order_request):
    """p1 x2 at 10 plus p2 x1 at 5 is a pending, unpaid order of 25 over 3 items."""
    order = await service.create(order_request)

    assert order.total_amount == Decimal("25")
    assert order.total_items == 3
    assert order.status == OrderStatus.PENDING
    assert order.paid is False
    assert order.paid_at is None

    stored = store.find_by_id(order.id)
    assert stored.total_amount == Decimal("25")
    assert stored.total_items == 3
    assert [(item.product_id, item.price, item.quantity) for item in stored.items] == [
        ("p1", Decimal("10"), 2),
        ("p2", Decimal("5"), 1),
    ]


@pytest.mark.asyncio
async def test_create_order_names_items(service, order_request):
    order = await service.create(order_request)
    assert [item.name for item in order.items] == ["Keyboard", "Mouse"]


@pytest.mark.asyncio
async def test_create_order_total_accumulates_every_item(service):
    """The last item must not overwrite the running total."""
    request = CreateOrderRequest(
        items=[
            OrderItemRequest(product_id="p3", quantity=1),
            OrderItemRequest(product_id="p1", quantity=3),
            OrderItemRequest(product_id="p2", quantity=4),
        ]
    )
    order = await service.create(request)

    assert order.total_amount == Decimal("149.99") + Decimal("30") + Decimal("20")
    assert order.total_items == 8


@pytest.mark.asyncio
async def test_create_order_rounds_sub_cent_prices_before_summing(service, store, catalog):
    """Frozen prices match what the money columns hold, so the stored total adds up."""
    catalog.products["p4"] = Product(id="p4", name="Sticker", price=Decimal("0.333"))
    catalog.products["p5"] = Product(id="p5", name="Cable", price=Decimal("2.675"))
    request = CreateOrderRequest(
        items=[
            OrderItemRequest(product_id="p4", quantity=3),
            OrderItemRequest(product_id="p5", quantity=2),
        ]
    )

    order = await service.create(request)
    stored = store.find_by_id(order.id)

    assert [item.price for item in order.items] == [Decimal("0.33"), Decimal("2.68")]
    assert [item.price for item in stored.items] == [item.price for item in order.items]
    assert stored.total_amount == Decimal("6.35")
    assert stored.total_amount == sum(item.price * item.quantity for item in stored.items)
    assert order.total_amount == stored.total_amount

@pytest.mark.asyncio
async def test_create_order_keeps_duplicate_products_as_separate_lines(service, catalog):
    request = CreateOrderRequest(
        items=[
            OrderItemRequest(product_id="p1", quantity=1),
            OrderItemRequest(product_id="p1", quantity=2),
        ]
    )
    order = await service.create(request)

    assert len(order.items) == 2
    assert order.total_amount == Decimal("30")
    assert order.total_items == 3
    # Distinct ids are sent to the catalog once.
    assert catalog.calls == [["p1"]]


@pytest.mark.asyncio
async def test_create_order_unknown_product_stores_nothing(service, store):
    request = CreateOrderRequest(
        items=[
            OrderItemRequest(product_id="p1", quantity=1),
            OrderItemRequest(product_id="missing", quantity=1),
        ]
    )
    with pytest.raises(OrderCreationError) as exc_info:
        await service.create(request)

    assert exc_info.value.kind == FailureKind.DEPENDENCY
    assert exc_info.value.message == "Order creation failed"
    assert "missing" not in exc_info.value.message
    assert store.count() == 0


@pytest.mark.asyncio
async def test_create_order_catalog_unreachable(service, store, catalog, order_request):
    catalog.unreachable = True

    with pytest.raises(OrderCreationError) as exc_info:
        await service.create(order_request)

    assert exc_info.value.kind == FailureKind.DEPENDENCY
    assert exc_info.value.to_payload() == {"status": 400, "message": "Order creation failed"}
    assert store.count() == 0


@pytest.mark.asyncio
async def test_create_order_storage_failure(service, store, order_request, mocker):
    from sqlalchemy.exc import OperationalError

    mocker.patch.object(
        store, "create_order_with_items", side_effect=OperationalError("INSERT", {}, Exception("disk full"))
    )

    with pytest.raises(OrderCreationError) as exc_info:
        await service.create(order_request)

    assert exc_info.value.kind == FailureKind.STORAGE
    assert "disk full" not in exc_info.value.message


@pytest.mark.asyncio
async def test_store_calls_run_off_the_event_loop_thread(service, store, order_request, mocker):
    loop_thread = threading.get_ident()
    store_threads = []

    def recording(method):
        def wrapper(*args, **kwargs):
            store_threads.append(threading.get_ident())
            return method(*args, **kwargs)

        return wrapper

    for name in ("create_order_with_items", "find_by_id", "count", "find_many", "update_by_id", "mark_paid"):
        mocker.patch.object(store, name, side_effect=recording(getattr(store, name)))

    created = await service.create(order_request)
    await service.find_one(created.id)
    await service.find_all(OrderPagination())
    await service.change_status(created.id, OrderStatus.CANCELLED)
    await service.paid_order(
        PaidOrderEvent(order_id=created.id, payment_provider_charge_id="ch_1", receipt_url="https://r")
    )

    assert len(store_threads) == 7
    assert loop_thread not in store_threads

@pytest.mark.asyncio
async def test_create_order_without_items_is_rejected(service, store, catalog):
    request = CreateOrderRequest.model_construct(items=[])

    with pytest.raises(OrderCreationError) as exc_info:
        await service.create(request)

    assert exc_info.value.kind == FailureKind.VALIDATION
    assert catalog.calls == []
    assert store.count() == 0


@pytest.mark.asyncio
async def test_find_one_enriches_names_and_keeps_stored_price(service, catalog, order_request):
    created = await service.create(order_request)
    catalog.products["p1"] = catalog.products["p1"].model_copy(update={"name": "Mechanical Keyboard", "price": Decimal("99")})

    order = await service.find_one(created.id)

    assert order.items[0].name == "Mechanical Keyboard"
    assert order.items[0].price == Decimal("10")
    assert order.total_amount == Decimal("25")


@pytest.mark.asyncio
async def test_find_one_not_found(service):
    with pytest.raises(OrderNotFoundError) as exc_info:
        await service.find_one("does-not-exist")

    assert exc_info.value.order_id == "does-not-exist"
    assert "does-not-exist" in exc_info.value.message
    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
async def test_find_one_without_names_when_product_removed(service, catalog, order_request):
    created = await service.create(order_request)
    del catalog.products["p2"]

    order = await service.find_one(created.id)

    assert order.id == created.id
    assert [item.name for item in order.items] == [None, None]


@pytest.mark.asyncio
async def test_find_all_paginates(service, order_request):
    for _ in range(5):
        await service.create(order_request)

    result = await service.find_all(OrderPagination(page=2, limit=2))

    assert len(result.data) == 2
    assert result.meta.total == 5
    assert result.meta.page == 2
    assert result.meta.last_page == 3


@pytest.mark.asyncio
async def test_find_all_page_beyond_last_is_empty(service, order_request):
    for _ in range(3):
        await service.create(order_request)

    result = await service.find_all(OrderPagination(page=10, limit=2))

    assert result.data == []
    assert result.meta.total == 3
    assert result.meta.page == 10
    assert result.meta.last_page == 2


@pytest.mark.asyncio
async def test_find_all_filters_by_status(service, order_request):
    first = await service.create(order_request)
    await service.create(order_request)
    await service.change_status(first.id, OrderStatus.CANCELLED)

    cancelled = await service.find_all(OrderPagination(status=OrderStatus.CANCELLED))
    pending = await service.find_all(OrderPagination(status=OrderStatus.PENDING))

    assert [order.id for order in cancelled.data] == [first.id]
    assert cancelled.meta.total == 1
    assert pending.meta.total == 1


@pytest.mark.asyncio
async def test_change_status_to_current_status_does_not_write(service, store, catalog, order_request, mocker):
    created = await service.create(order_request)
    update = mocker.spy(store, "update_by_id")
    catalog.calls.clear()

    order = await service.change_status(created.id, OrderStatus.PENDING)

    assert order.status == OrderStatus.PENDING
    assert order.updated_at == store.find_by_id(created.id).updated_at
    update.assert_not_called()
    assert catalog.calls == []


@pytest.mark.asyncio
async def test_change_status_accepts_any_move_by_default(service, store, order_request):
    created = await service.create(order_request)

    delivered = await service.change_status(created.id, OrderStatus.DELIVERED)
    pending = await service.change_status(created.id, OrderStatus.PENDING)

    assert delivered.status == OrderStatus.DELIVERED
    assert pending.status == OrderStatus.PENDING
    assert store.find_by_id(created.id).status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_change_status_strict_rejects_illegal_move(store, catalog, payments, order_request):
    service = OrdersService(store, catalog, payments, strict_transitions=True)
    created = await service.create(order_request)

    with pytest.raises(InvalidStatusTransitionError):
        await service.change_status(created.id, OrderStatus.DELIVERED)

    paid = await service.change_status(created.id, OrderStatus.PAID)
    assert paid.status == OrderStatus.PAID


@pytest.mark.asyncio
async def test_change_status_not_found(service):
    with pytest.raises(OrderNotFoundError) as exc_info:
        await service.change_status("nope", OrderStatus.PAID)
    assert exc_info.value.order_id == "nope"


@pytest.mark.asyncio
async def test_create_payment_session_hands_off_priced_items(service, payments, store, order_request):
    order = await service.create(order_request)

    session = await service.create_payment_session(order)

    assert session["url"].endswith(order.id)
    request = payments.requests[0]
    assert request.order_id == order.id
    assert request.currency == "usd"
    assert [(item.name, item.price, item.quantity) for item in request.items] == [
        ("Keyboard", 10.0, 2),
        ("Mouse", 5.0, 1),
    ]
    assert store.find_by_id(order.id).status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_create_payment_session_failure_propagates(service, payments, store, order_request):
    order = await service.create(order_request)
    payments.unreachable = True

    with pytest.raises(RpcError):
        await service.create_payment_session(order)

    assert store.find_by_id(order.id).status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_paid_order_reconciles(service, store, order_request):
    created = await service.create(order_request)
    event = PaidOrderEvent(
        order_id=created.id, payment_provider_charge_id="ch_123", receipt_url="https://pay.example.com/r/1"
    )

    order = await service.paid_order(event)

    assert order.paid is True
    assert order.status == OrderStatus.PAID
    assert order.paid_at is not None
    assert order.payment_charge_id == "ch_123"
    stored = store.find_by_id(created.id)
    assert stored.paid is True
    assert stored.receipt.receipt_url == "https://pay.example.com/r/1"


@pytest.mark.asyncio
async def test_paid_order_repeated_delivery_is_idempotent(service, store, order_request):
    created = await service.create(order_request)
    event = PaidOrderEvent(order_id=created.id, payment_provider_charge_id="ch_123", receipt_url="https://r/1")

    await service.paid_order(event)
    first = store.find_by_id(created.id)
    second = await service.paid_order(event)

    assert second.paid_at == first.paid_at
    assert second.updated_at == first.updated_at
    assert second.payment_charge_id == "ch_123"
    assert second.receipt.receipt_url == "https://r/1"


@pytest.mark.asyncio
async def test_paid_order_with_different_charge_conflicts(service, order_request):
    created = await service.create(order_request)
    await service.paid_order(PaidOrderEvent(order_id=created.id, payment_provider_charge_id="ch_1", receipt_url="https://r/1"))

    with pytest.raises(PaymentConflictError) as exc_info:
        await service.paid_order(
            PaidOrderEvent(order_id=created.id, payment_provider_charge_id="ch_2", receipt_url="https://r/2")
        )

    assert exc_info.value.existing_charge_id == "ch_1"
    assert exc_info.value.charge_id == "ch_2"


@pytest.mark.asyncio
async def test_paid_order_unknown_order(service):
    with pytest.raises(OrderNotFoundError):
        await service.paid_order(PaidOrderEvent(order_id="ghost", payment_provider_charge_id="ch_1", receipt_url="https://r"))


def test_calculate_totals_sums_each_item(catalog):
    items = price_items(
        [OrderItemRequest(product_id="p1", quantity=2), OrderItemRequest(product_id="p2", quantity=1)],
        list(catalog.products.values()),
    )
    assert calculate_totals(items) == (Decimal("25"), 3)


@pytest.mark.parametrize(
    "total,limit,expected",
    [(0, 10, 0), (1, 10, 1), (10, 10, 1), (11, 10, 2), (25, 3, 9)],
)
def test_last_page(total, limit, expected):
    assert last_page(total, limit) == expected
