"""Payments service facade used to open checkout sessions."""

from typing import Any, Protocol

from .rpc import KafkaRpcClient
from .schemas import PaymentSessionRequest

CREATE_PAYMENT_SESSION = "payments.create-session"


class PaymentClient(Protocol):
    """Opens a payment session for an order."""

    async def create_session(self, request: PaymentSessionRequest) -> dict[str, Any]:
        """Return the provider's session handle, opaque to the order service."""
        ...


class KafkaPaymentClient:
    """Payment client speaking to the payments service over Kafka RPC."""

    def __init__(self, rpc: KafkaRpcClient):
        self.rpc = rpc

    async def create_session(self, request: PaymentSessionRequest) -> dict[str, Any]:
        session = await self.rpc.send(CREATE_PAYMENT_SESSION, request.model_dump(mode="json", by_alias=True))
        if isinstance(session, dict):
            return session
        return {"session": session}
