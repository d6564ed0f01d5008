"""Relational order store backed by SQLAlchemy."""

from datetime import datetime
from decimal import Decimal
from typing import Any, NamedTuple, Optional

from sqlalchemy import create_engine, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import selectinload, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import PaymentConflictError
from .logger import logger
from .models import Base, OrderItemRecord, OrderReceiptRecord, OrderRecord
from .schemas import Order, OrderItem, OrderStatus, OrderSummary

UPDATABLE_FIELDS = frozenset({"status", "paid", "paid_at", "payment_charge_id"})


class PaymentOutcome(NamedTuple):
    order: Optional[Order]
    applied: bool


class OrderStore:
    """Data-access layer for orders and the records they own.

    Every public method runs in its own transaction. Orders are only ever written whole:
    items are inserted together with their order, and the receipt together with the
    paid fields.

    Attributes:
        engine: The SQLAlchemy engine in use.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self._sessions = sessionmaker(engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, url: str, echo: bool = False) -> "OrderStore":
        """Create a store for a database URL.

        Args:
            url: SQLAlchemy database URL
            echo: Log emitted SQL

        Returns:
            OrderStore: A store bound to a new engine.
        """
        if not url.startswith("sqlite"):
            return cls(create_engine(url, echo=echo, pool_pre_ping=True))

        options: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        # An in-memory database lives as long as its single connection.
        if url in ("sqlite://", "sqlite+pysqlite://") or ":memory:" in url:
            options["poolclass"] = StaticPool
        return cls(create_engine(url, echo=echo, **options))

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)
        logger.info(f"Order tables ready | url={self.engine.url.render_as_string(hide_password=True)}")

    def ping(self) -> bool:
        with self.engine.connect() as connection:
            connection.execute(select(1))
        return True

    def create_order_with_items(
        self, total_amount: Decimal, total_items: int, items: list[OrderItem]
    ) -> Order:
        """Insert an order and all of its items in one transaction.

        Args:
            total_amount: Sum of price x quantity over ``items``
            total_items: Sum of quantities over ``items``
            items: Priced line items, at least one

        Returns:
            Order: The stored order with its items.

        Raises:
            ValueError: If ``items`` is empty.
            SQLAlchemyError: If the write fails; nothing is stored.
        """
        if not items:
            raise ValueError("An order needs at least one item")

        with self._sessions.begin() as session:
            record = OrderRecord(
                total_amount=total_amount,
                total_items=total_items,
                items=[
                    OrderItemRecord(product_id=item.product_id, price=item.price, quantity=item.quantity)
                    for item in items
                ],
            )
            session.add(record)
            session.flush()
            return Order.model_validate(record)

    def find_by_id(self, order_id: str) -> Optional[Order]:
        with self._sessions() as session:
            record = session.scalar(
                select(OrderRecord)
                .where(OrderRecord.id == order_id)
                .options(selectinload(OrderRecord.items), selectinload(OrderRecord.receipt))
            )
            return Order.model_validate(record) if record else None

    def find_many(
        self, status: Optional[OrderStatus] = None, skip: int = 0, take: int = 10
    ) -> list[OrderSummary]:
        query = select(OrderRecord).order_by(OrderRecord.created_at, OrderRecord.id).offset(skip).limit(take)
        if status is not None:
            query = query.where(OrderRecord.status == status)
        with self._sessions() as session:
            return [OrderSummary.model_validate(record) for record in session.scalars(query)]

    def count(self, status: Optional[OrderStatus] = None) -> int:
        query = select(func.count()).select_from(OrderRecord)
        if status is not None:
            query = query.where(OrderRecord.status == status)
        with self._sessions() as session:
            return session.scalar(query)

    def update_by_id(self, order_id: str, **fields: Any) -> Optional[Order]:
        """Apply ``fields`` to one order row atomically.

        Returns:
            Order: The updated order, or None when the id is unknown.

        Raises:
            ValueError: If a field is not updatable.
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields not updatable: {sorted(unknown)}")

        with self._sessions.begin() as session:
            record = self._locked(session, order_id)
            if record is None:
                return None
            for name, value in fields.items():
                setattr(record, name, value)
            session.flush()
            return Order.model_validate(record)

    def mark_paid(self, order_id: str, charge_id: str, receipt_url: str, paid_at: datetime) -> PaymentOutcome:
        """Record a payment confirmation and its receipt in one transaction.

        A repeated confirmation carrying the charge id already stored is not written again.

        Raises:
            PaymentConflictError: If the order is already paid by a different charge.
        """
        with self._sessions.begin() as session:
            record = self._locked(session, order_id)
            if record is None:
                return PaymentOutcome(None, False)

            if record.paid:
                if record.payment_charge_id != charge_id:
                    raise PaymentConflictError(order_id, record.payment_charge_id, charge_id)
                return PaymentOutcome(Order.model_validate(record), False)

            record.status = OrderStatus.PAID
            record.paid = True
            record.paid_at = paid_at
            record.payment_charge_id = charge_id
            record.receipt = OrderReceiptRecord(receipt_url=receipt_url)
            session.flush()
            return PaymentOutcome(Order.model_validate(record), True)

    @staticmethod
    def _locked(session, order_id: str) -> Optional[OrderRecord]:
        return session.scalar(
            select(OrderRecord)
            .where(OrderRecord.id == order_id)
            .options(selectinload(OrderRecord.items), selectinload(OrderRecord.receipt))
            .with_for_update()
        )
