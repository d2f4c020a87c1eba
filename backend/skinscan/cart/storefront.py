"""
Client for the host storefront's native AJAX cart endpoints:

    GET  /cart.js           → current cart
    POST /cart/add.js       → {"items": [{"id", "quantity", "properties"}]}
    POST /cart/change.js    → {"id": <line key>, "quantity": n}
"""

import httpx

from skinscan.core.config import get_settings
from skinscan.core.logging import get_logger

logger = get_logger("storefront")


class StorefrontError(Exception):
    """The storefront rejected a cart call."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.message = message
        self.status = status


class StorefrontCartApi:
    def __init__(
        self,
        base_url: str,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float | None = None,
    ):
        self._http = httpx.AsyncClient(
            base_url=base_url,
            transport=transport,
            timeout=timeout or get_settings().CART_REQUEST_TIMEOUT_SECONDS,
            headers={"Accept": "application/json"},
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _json(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = await self._http.request(method, path, **kwargs)
        except httpx.TransportError as exc:
            raise StorefrontError(f"Storefront unreachable: {exc}") from exc

        if not response.is_success:
            try:
                body = response.json()
            except ValueError:
                body = {}
            description = (body.get("description") or body.get("message")) if isinstance(body, dict) else None
            raise StorefrontError(
                description or f"Cart request failed ({response.status_code})",
                status=response.status_code,
            )

        try:
            return response.json()
        except ValueError as exc:
            raise StorefrontError(f"Storefront returned invalid JSON for {path}") from exc

    async def get_cart(self) -> dict:
        return await self._json("GET", "/cart.js")

    async def add_item(self, variant_id: int, quantity: int = 1, properties: dict | None = None) -> dict:
        payload = {
            "items": [{"id": variant_id, "quantity": quantity, "properties": properties or {}}]
        }
        logger.info("Adding variant %s x%d to storefront cart", variant_id, quantity)
        return await self._json("POST", "/cart/add.js", json=payload)

    async def change_line(self, line_key: str, quantity: int) -> dict:
        logger.info("Changing cart line %s to quantity %d", line_key, quantity)
        return await self._json("POST", "/cart/change.js", json={"id": line_key, "quantity": quantity})
