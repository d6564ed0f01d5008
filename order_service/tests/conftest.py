"""Test fixtures for the order service tests."""

from decimal import Decimal

import pytest

from order_service.errors import ProductsNotFoundError, RpcError
from order_service.schemas import CreateOrderRequest, OrderItemRequest, Product
from order_service.service import OrdersService
from order_service.store import OrderStore


class FakeCatalog:
    """In-memory products service with failure injection."""

    def __init__(self, products: list[Product]):
        self.products = {product.id: product for product in products}
        self.unreachable = False
        self.calls: list[list[str]] = []

    async def validate_products(self, ids: list[str]) -> list[Product]:
        self.calls.append(list(ids))
        if self.unreachable:
            raise RpcError("products.validate", "products service unreachable")
        missing = [product_id for product_id in ids if product_id not in self.products]
        if missing:
            raise ProductsNotFoundError(missing)
        return [self.products[product_id] for product_id in ids]


class FakePayments:
    """In-memory payments service recording session requests."""

    def __init__(self):
        self.requests = []
        self.unreachable = False

    async def create_session(self, request):
        self.requests.append(request)
        if self.unreachable:
            raise RpcError("payments.create-session", "payments service unreachable")
        return {
            "url": f"https://checkout.example.com/{request.order_id}",
            "successUrl": "https://shop.example.com/success",
            "cancelUrl": "https://shop.example.com/cancel",
        }


@pytest.fixture
def store():
    """Create an order store on a fresh in-memory SQLite database."""
    order_store = OrderStore.from_url("sqlite://")
    order_store.create_all()
    yield order_store
    order_store.engine.dispose()


@pytest.fixture
def catalog():
    return FakeCatalog(
        [
            Product(id="p1", name="Keyboard", price=Decimal("10")),
            Product(id="p2", name="Mouse", price=Decimal("5")),
            Product(id="p3", name="Monitor", price=Decimal("149.99")),
        ]
    )


@pytest.fixture
def payments():
    return FakePayments()


@pytest.fixture
def service(store, catalog, payments):
    """Create an orchestrator wired to the in-memory collaborators."""
    return OrdersService(store=store, catalog=catalog, payments=payments)


@pytest.fixture
def order_request():
    """Two distinct products: p1 x2 at 10 and p2 x1 at 5."""
    return CreateOrderRequest(
        items=[
            OrderItemRequest(product_id="p1", quantity=2),
            OrderItemRequest(product_id="p2", quantity=1),
        ]
    )
