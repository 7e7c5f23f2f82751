"""HTTP clients for the marketplace services the transaction engine depends on.

The product catalogue, the cart and the notification centre are owned by
other services. These thin wrappers speak their REST APIs through
``clients.http.request`` and translate transport failures into
``MarketplaceClientError`` subclasses.

Usage::

    products = ProductServiceClient("http://products:8000")
    product = await products.get_product("prod-1")
"""

import logging
import urllib.error
from typing import Any, Dict, Optional
from urllib.parse import quote

from clients.http import HttpError, request
from clients.marketplace.exceptions import (
    MarketplaceConnectionError,
    MarketplaceResponseError,
)

logger = logging.getLogger(__name__)


class _ServiceClient:
    service_name = "service"

    def __init__(self, base_url: str, timeout: float = 10.0, api_key: Optional[str] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._headers: Dict[str, str] = {}
        if api_key:
            self._headers["Authorization"] = f"Bearer {api_key}"

    async def _call(self, method: str, path: str, json_data: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            return await request(method, url, headers=self._headers, json_data=json_data, timeout=self.timeout)
        except HttpError as e:
            raise MarketplaceResponseError(self.service_name, e.status, str(e.body)) from e
        except (urllib.error.URLError, TimeoutError, ConnectionError) as e:
            raise MarketplaceConnectionError(f"{self.service_name} unreachable at {url}: {e}") from e


class ProductServiceClient(_ServiceClient):
    service_name = "product-service"

    async def get_product(self, product_id: str) -> Optional[Dict[str, Any]]:
        """Fetch a product listing. Returns ``None`` when it does not exist."""
        try:
            return await self._call("GET", f"/products/{quote(product_id)}")
        except MarketplaceResponseError as e:
            if e.status == 404:
                return None
            raise

    async def set_product_status(self, product_id: str, status: str) -> None:
        await self._call("PATCH", f"/products/{quote(product_id)}/status", {"status": status})
        logger.info(f"Product {product_id} status set to {status}")


class CartServiceClient(_ServiceClient):
    service_name = "cart-service"

    async def reserve(
        self,
        beneficiary_id: str,
        product_id: str,
        quantity: float,
        price: float,
        provenance: Dict[str, Any],
    ) -> str:
        """Reserve an item in the beneficiary's cart and return the reservation id.

        The cart service deduplicates on ``provenance["idempotency_key"]``, so a
        retried call returns the reservation created by the first one.
        """
        body = await self._call(
            "POST",
            "/cart/reservations",
            {
                "user_id": beneficiary_id,
                "product_id": product_id,
                "quantity": quantity,
                "price": price,
                "source_type": provenance.get("source", "").upper(),
                "provenance": provenance,
            },
        )
        return str((body or {}).get("id", provenance.get("idempotency_key")))


class NotificationServiceClient(_ServiceClient):
    service_name = "notification-service"

    async def notify(self, user_id: str, title: str, message: str, data: Dict[str, Any]) -> None:
        await self._call(
            "POST",
            "/notifications",
            {"user_id": user_id, "title": title, "message": message, "data": data},
        )
