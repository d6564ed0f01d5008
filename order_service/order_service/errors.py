"""Error hierarchy for the Order Service.

Every error exposes a stable outward ``message`` and an HTTP-style ``status_code``.
Internal causes stay on the exception (``__cause__``, ``kind``) and in the logs; only
``to_payload()`` crosses the service boundary.
"""

from enum import Enum
from http import HTTPStatus


class FailureKind(str, Enum):
    """Internal classification of an order-creation failure."""

    VALIDATION = "validation"
    DEPENDENCY = "dependency"
    STORAGE = "storage"


class OrderServiceError(Exception):
    """Base class for errors reported to callers of the service."""

    status_code: int = HTTPStatus.INTERNAL_SERVER_ERROR

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_payload(self) -> dict:
        """Outward error shape: ``{"status": ..., "message": ...}``."""
        return {"status": int(self.status_code), "message": self.message}


class OrderNotFoundError(OrderServiceError):
    status_code = HTTPStatus.NOT_FOUND

    def __init__(self, order_id: str):
        super().__init__(f"Order with id {order_id} not found")
        self.order_id = order_id


class OrderCreationError(OrderServiceError):
    """Generic creation failure; ``kind`` is for diagnosis and never part of the message."""

    status_code = HTTPStatus.BAD_REQUEST

    def __init__(self, kind: FailureKind):
        super().__init__("Order creation failed")
        self.kind = kind


class InvalidStatusTransitionError(OrderServiceError):
    status_code = HTTPStatus.CONFLICT

    def __init__(self, order_id: str, current, requested):
        super().__init__(f"Order with id {order_id} cannot move from {current.value} to {requested.value}")
        self.order_id = order_id
        self.current = current
        self.requested = requested


class PaymentConflictError(OrderServiceError):
    status_code = HTTPStatus.CONFLICT

    def __init__(self, order_id: str, existing_charge_id: str | None, charge_id: str):
        super().__init__(f"Order with id {order_id} is already paid by a different charge")
        self.order_id = order_id
        self.existing_charge_id = existing_charge_id
        self.charge_id = charge_id


class RpcError(OrderServiceError):
    """A collaborator call failed remotely or in transport."""

    status_code = HTTPStatus.BAD_GATEWAY
    retryable = False

    def __init__(self, pattern: str, message: str, status_code: int | None = None):
        super().__init__(message, status_code)
        self.pattern = pattern


class RpcTimeoutError(RpcError):
    status_code = HTTPStatus.GATEWAY_TIMEOUT
    retryable = True

    def __init__(self, pattern: str, timeout: float):
        super().__init__(pattern, f"No reply for '{pattern}' within {timeout:g}s")
        self.timeout = timeout


class ProductsNotFoundError(RpcError):
    status_code = HTTPStatus.BAD_REQUEST

    def __init__(self, missing_ids: list[str]):
        super().__init__("products.validate", f"Products not found: {', '.join(missing_ids)}")
        self.missing_ids = missing_ids
