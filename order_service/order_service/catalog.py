"""Products service facade used to validate and price order items."""

from typing import Protocol

from pydantic import TypeAdapter, ValidationError

from .errors import ProductsNotFoundError, RpcError
from .rpc import KafkaRpcClient
from .schemas import Product

VALIDATE_PRODUCTS = "products.validate"

_products = TypeAdapter(list[Product])


class CatalogClient(Protocol):
    """Resolves product ids to their current name and price."""

    async def validate_products(self, ids: list[str]) -> list[Product]:
        """Resolve every id or fail.

        Args:
            ids: Distinct product identifiers

        Returns:
            list[Product]: One entry per requested id

        Raises:
            ProductsNotFoundError: If any id is unknown to the catalog.
            RpcError: If the products service cannot be reached or replies with malformed products.
        """
        ...


class KafkaCatalogClient:
    """Catalog client speaking to the products service over Kafka RPC."""

    def __init__(self, rpc: KafkaRpcClient):
        self.rpc = rpc

    async def validate_products(self, ids: list[str]) -> list[Product]:
        reply = await self.rpc.send(VALIDATE_PRODUCTS, ids)
        try:
            products = _products.validate_python(reply or [])
        except ValidationError as e:
            raise RpcError(VALIDATE_PRODUCTS, "Malformed catalog reply") from e

        found = {product.id for product in products}
        missing = [product_id for product_id in ids if product_id not in found]
        if missing:
            raise ProductsNotFoundError(missing)
        return products
