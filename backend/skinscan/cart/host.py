"""
Host-page side of the cart bridge.

Cart requests from embedded iframes run against the storefront's native
cart endpoints; replies go to every iframe the host can enumerate
(wildcard target origin). Shortly after attaching it
broadcasts a full CART_INITIAL_STATE so frames whose request was posted
before this listener existed still converge.
"""

import asyncio
from typing import Any, Callable

from skinscan.core.config import get_settings
from skinscan.core.exceptions import ProtocolError
from skinscan.core.logging import get_logger
from skinscan.cart.frames import WILDCARD_ORIGIN, FrameWindow, MessageEvent
from skinscan.cart.protocol import (
    REQUEST_TYPES,
    CartMessageEnvelope,
    CartSnapshot,
    MessageType,
    normalize_variant_id,
)
from skinscan.cart.storefront import StorefrontCartApi, StorefrontError

logger = get_logger("cart.host")


def _attributes_to_properties(payload: dict) -> dict:
    """customAttributes [{key, value}] or a properties dict → properties dict."""
    properties = dict(payload.get("properties") or {})
    for attr in payload.get("customAttributes") or []:
        if isinstance(attr, dict) and attr.get("key"):
            properties[attr["key"]] = attr.get("value")
    return properties


class HostCartBridge:
    def __init__(
        self,
        window: FrameWindow,
        storefront: StorefrontCartApi,
        *,
        navigate: Callable[[str], Any] | None = None,
        on_cart_changed: Callable[[CartSnapshot], Any] | None = None,
        initial_state_delay: float | None = None,
        allowed_origins: list[str] | None = None,
    ):
        settings = get_settings()
        self.window = window
        self.storefront = storefront
        self.navigate = navigate
        self.on_cart_changed = on_cart_changed
        self.initial_state_delay = (
            initial_state_delay
            if initial_state_delay is not None
            else settings.CART_INITIAL_STATE_DELAY_SECONDS
        )
        self.allowed_origins = allowed_origins or settings.CART_ALLOWED_ORIGINS
        self._catch_up_task: asyncio.Task | None = None
        self._handlers = {
            MessageType.GET_CART: self._get_cart,
            MessageType.ADD_TO_CART: self._add_to_cart,
            MessageType.REMOVE_FROM_CART: self._remove_from_cart,
            MessageType.ADD_ROUTINE_TO_CART: self._add_routine_to_cart,
            MessageType.NAVIGATE: self._navigate,
        }

    # ── Lifecycle ────────────────────────────────────────────────────────

    def attach(self) -> None:
        self.window.add_event_listener(self._on_message)
        self._catch_up_task = asyncio.get_running_loop().create_task(self._catch_up())
        logger.info("Cart bridge attached on %s", self.window)

    def detach(self) -> None:
        self.window.remove_event_listener(self._on_message)
        if self._catch_up_task is not None:
            self._catch_up_task.cancel()
            self._catch_up_task = None

    async def _catch_up(self) -> None:
        await asyncio.sleep(self.initial_state_delay)
        await self.refresh_and_notify()

    # ── Inbound ──────────────────────────────────────────────────────────

    def _origin_allowed(self, origin: str) -> bool:
        return WILDCARD_ORIGIN in self.allowed_origins or origin in self.allowed_origins

    async def _on_message(self, event: MessageEvent) -> None:
        if not self._origin_allowed(event.origin):
            logger.warning("Ignoring cart message from disallowed origin %s", event.origin)
            return
        try:
            envelope = CartMessageEnvelope.parse(event.data, origin=event.origin)
        except ProtocolError as exc:
            logger.warning("Dropping cart message from %s: %s", event.origin, exc)
            return
        if envelope.type not in REQUEST_TYPES:
            return
        await self.handle(envelope)

    async def handle(self, envelope: CartMessageEnvelope) -> None:
        """Run one request; every failure becomes a CART_UPDATE_ERROR reply."""
        logger.info("Handling %s (correlation=%s)", envelope.type.value, envelope.correlation_id)
        try:
            await self._handlers[envelope.type](envelope)
        except (StorefrontError, ProtocolError, ValueError) as exc:
            logger.warning("%s failed: %s", envelope.type.value, exc)
            self.broadcast(
                MessageType.CART_UPDATE_ERROR,
                {"error": str(exc), "request": envelope.type.value},
                envelope.correlation_id,
            )

    # ── Handlers ─────────────────────────────────────────────────────────

    async def _get_cart(self, envelope: CartMessageEnvelope) -> None:
        snapshot = await self._snapshot()
        self.broadcast(MessageType.CART_DATA, {"cart": snapshot.to_wire()}, envelope.correlation_id)

    async def _add_to_cart(self, envelope: CartMessageEnvelope) -> None:
        payload = envelope.payload
        raw_id = payload.get("variantId") or payload.get("productId")
        if not raw_id:
            raise ProtocolError("Product/Variant ID is required")
        variant_id = normalize_variant_id(raw_id)
        quantity = int(payload.get("quantity") or 1)

        await self.storefront.add_item(variant_id, quantity, _attributes_to_properties(payload))
        snapshot = await self._snapshot()
        self.broadcast(
            MessageType.CART_UPDATE_SUCCESS,
            {"variantId": variant_id, "quantity": quantity, "cart": snapshot.to_wire()},
            envelope.correlation_id,
        )
        await self._cart_changed(snapshot)

    async def _remove_from_cart(self, envelope: CartMessageEnvelope) -> None:
        raw_id = envelope.payload.get("variantId")
        if not raw_id:
            raise ProtocolError("Variant ID is required")
        variant_id = normalize_variant_id(raw_id)

        current = await self._snapshot()
        line = current.line_for(variant_id)
        if line is None:
            raise StorefrontError("Item not found in cart")

        await self.storefront.change_line(line.key, 0)
        snapshot = await self._snapshot()
        self.broadcast(
            MessageType.CART_UPDATE_SUCCESS,
            {"variantId": variant_id, "cart": snapshot.to_wire()},
            envelope.correlation_id,
        )
        await self._cart_changed(snapshot)

    async def _add_routine_to_cart(self, envelope: CartMessageEnvelope) -> None:
        """
        Add each product with its own call. A failed item is reported and the
        rest still run; items already added are not rolled back.
        """
        products = envelope.payload.get("products")
        if not isinstance(products, list) or not products:
            raise ProtocolError("Routine has no products")

        added: list[dict] = []
        failed: list[dict] = []
        for index, product in enumerate(products):
            raw_id = product.get("variantId") if isinstance(product, dict) else None
            try:
                variant_id = normalize_variant_id(raw_id)
                quantity = int(product.get("quantity") or 1)
                await self.storefront.add_item(variant_id, quantity, product.get("properties") or {})
            except (StorefrontError, ProtocolError, ValueError) as exc:
                failed.append({
                    "index": index,
                    "variantId": raw_id,
                    "name": product.get("name") if isinstance(product, dict) else None,
                    "error": str(exc),
                })
                continue
            added.append({"index": index, "variantId": variant_id, "quantity": quantity})

        snapshot = await self._snapshot()
        if failed:
            self.broadcast(
                MessageType.CART_UPDATE_ERROR,
                {
                    "error": f"{len(failed)} of {len(products)} routine items could not be added",
                    "request": envelope.type.value,
                    "context": {"added": added, "failed": failed},
                    "cart": snapshot.to_wire(),
                },
                envelope.correlation_id,
            )
        else:
            self.broadcast(
                MessageType.CART_UPDATE_SUCCESS,
                {"added": added, "cart": snapshot.to_wire()},
                envelope.correlation_id,
            )
        if added:
            await self._cart_changed(snapshot)

    async def _navigate(self, envelope: CartMessageEnvelope) -> None:
        product_id = envelope.payload.get("productId")
        if product_id and self.navigate is not None:
            self.navigate(f"/products/{product_id}")

    # ── Outbound ─────────────────────────────────────────────────────────

    async def _snapshot(self) -> CartSnapshot:
        return CartSnapshot.from_host(await self.storefront.get_cart())

    async def _cart_changed(self, snapshot: CartSnapshot) -> None:
        if self.on_cart_changed is not None:
            result = self.on_cart_changed(snapshot)
            if asyncio.iscoroutine(result):
                await result
        self.broadcast(MessageType.CART_INITIAL_STATE, {"cart": snapshot.to_wire()})

    async def refresh_and_notify(self) -> None:
        """Re-read the cart and broadcast it; used at startup and on native cart events."""
        try:
            snapshot = await self._snapshot()
        except (StorefrontError, ProtocolError) as exc:
            logger.warning("Could not refresh cart state: %s", exc)
            return
        self.broadcast(MessageType.CART_INITIAL_STATE, {"cart": snapshot.to_wire()})

    def broadcast(
        self,
        message_type: MessageType,
        payload: dict,
        correlation_id: str | None = None,
    ) -> None:
        """Send to every iframe (and the parent, if the host is itself framed)."""
        envelope = CartMessageEnvelope(
            type=message_type,
            payload=payload,
            correlation_id=correlation_id,
            origin=self.window.origin,
        ).to_wire()
        targets = self.window.iframes()
        if not self.window.is_top:
            targets.append(self.window.parent)
        for frame in targets:
            frame.post_message(envelope, WILDCARD_ORIGIN, source=self.window)
        logger.debug("Broadcast %s to %d frames", message_type.value, len(targets))
