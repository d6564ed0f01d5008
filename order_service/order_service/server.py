"""FastAPI server implementation for the Order Service."""

import asyncio
import threading
from contextlib import asynccontextmanager
from typing import Optional

from confluent_kafka.admin import AdminClient
from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from .catalog import KafkaCatalogClient
from .config import Settings, get_settings
from .consumer import PaymentEventConsumer
from .errors import OrderServiceError
from .logger import logger
from .payments import KafkaPaymentClient
from .rpc import KafkaRpcClient
from .schemas import (
    CreatedOrder,
    CreateOrderRequest,
    Order,
    OrderPagination,
    OrderStatus,
    PaginatedOrders,
    PaidOrderEvent,
    StatusUpdate,
)
from .service import OrdersService
from .store import OrderStore

PAYMENT_EVENT_TIMEOUT = 30.0


class OrderServiceState:
    """Holds the collaborators wired up for the running service."""

    def __init__(self) -> None:
        self.settings: Optional[Settings] = None
        self.store: Optional[OrderStore] = None
        self.rpc: Optional[KafkaRpcClient] = None
        self.service: Optional[OrdersService] = None
        self.payment_consumer: Optional[PaymentEventConsumer] = None
        self._consumer_thread: Optional[threading.Thread] = None

    def start_payment_consumer(self, loop: asyncio.AbstractEventLoop) -> None:
        """Run the payment event consumer on a daemon thread feeding ``paid_order`` on ``loop``."""

        def apply(event: PaidOrderEvent) -> None:
            future = asyncio.run_coroutine_threadsafe(self.service.paid_order(event), loop)
            future.result(timeout=PAYMENT_EVENT_TIMEOUT)

        self.payment_consumer.subscribe([self.settings.payment_events_topic])
        self._consumer_thread = threading.Thread(
            target=self.payment_consumer.process_messages, args=(apply,), name="payment-events", daemon=True
        )
        self._consumer_thread.start()
        logger.info("Payment event consumer thread started")

    def shutdown(self) -> None:
        if self.payment_consumer:
            self.payment_consumer.stop()
            if self._consumer_thread is not None:
                self._consumer_thread.join(timeout=5)
            self.payment_consumer.close()
        if self.rpc:
            self.rpc.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire the store, the Kafka clients and the orchestrator for the app's lifetime."""
    settings = get_settings()
    state.settings = settings

    state.store = OrderStore.from_url(settings.database_url)
    state.store.create_all()

    state.rpc = KafkaRpcClient(
        bootstrap_servers=settings.kafka_bootstrap_servers,
        client_id="order-service",
        reply_topic=settings.rpc_reply_topic,
        timeout=settings.rpc_timeout_seconds,
    )
    state.rpc.start()

    state.service = OrdersService(
        store=state.store,
        catalog=KafkaCatalogClient(state.rpc),
        payments=KafkaPaymentClient(state.rpc),
        currency=settings.payment_currency,
        strict_transitions=settings.strict_status_transitions,
    )

    state.payment_consumer = PaymentEventConsumer(
        bootstrap_servers=settings.kafka_bootstrap_servers,
        group_id=settings.consumer_group_id,
    )
    state.start_payment_consumer(asyncio.get_running_loop())

    yield

    logger.info("Shutting down order service...")
    state.shutdown()
    logger.info("Shutdown complete")


app = FastAPI(title="Order Service", lifespan=lifespan)
router = APIRouter()
state = OrderServiceState()


@app.exception_handler(OrderServiceError)
async def order_service_error_handler(request: Request, exc: OrderServiceError) -> JSONResponse:
    """Render service errors in their stable outward shape."""
    return JSONResponse(status_code=int(exc.status_code), content=exc.to_payload())


@router.get("/health")
def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy"}


@router.get("/health/ready")
def readiness_check():
    """Check if the service is ready to accept traffic.

    Returns:
        dict: Readiness plus Kafka and database connection status.
    """
    kafka_ok = _check_kafka_connection()
    database_ok = _check_database_connection()
    return {
        "status": "ready" if kafka_ok and database_ok else "not_ready",
        "kafka": kafka_ok,
        "database": database_ok,
    }


@router.post("/orders", response_model=CreatedOrder, status_code=201)
async def create_order(request: CreateOrderRequest):
    """Create an order and open its payment session.

    Args:
        request (CreateOrderRequest): Requested line items.

    Returns:
        CreatedOrder: The stored order and the payment session handle.
    """
    logger.info(f"Received new order | items={len(request.items)}")
    order = await state.service.create(request)
    payment_session = await state.service.create_payment_session(order)
    return CreatedOrder(order=order, payment_session=payment_session)


@router.get("/orders", response_model=PaginatedOrders)
async def list_orders(
    status: Optional[OrderStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1),
):
    """List orders, optionally filtered by status."""
    return await state.service.find_all(OrderPagination(status=status, page=page, limit=limit))


@router.get("/orders/{order_id}", response_model=Order)
async def get_order(order_id: str):
    return await state.service.find_one(order_id)


@router.patch("/orders/{order_id}", response_model=Order)
async def change_order_status(order_id: str, update: StatusUpdate):
    return await state.service.change_status(order_id, update.status)


def _check_kafka_connection() -> bool:
    """Check if Kafka connection is available.

    Returns:
        bool: True if Kafka is accessible, False otherwise.
    """
    bootstrap_servers = state.settings.kafka_bootstrap_servers if state.settings else get_settings().kafka_bootstrap_servers
    try:
        admin = AdminClient({"bootstrap.servers": bootstrap_servers})
        return bool(admin.list_topics(timeout=5))
    except Exception as e:
        logger.error(f"Kafka connection failed: {e}")
        return False


def _check_database_connection() -> bool:
    if state.store is None:
        return False
    try:
        return state.store.ping()
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False


app.include_router(router)
logger.info("API router mounted.")
