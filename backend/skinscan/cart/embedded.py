"""
Embedded-app side of the cart bridge.

Turns cart actions into correlated requests posted to the parent page and
keeps an outstanding-request table keyed by correlationId. A request that
gets no matching reply within the timeout resolves to a NO_RESPONSE reply
instead of hanging. Replies nobody is waiting for are dropped.

The host broadcasts to every iframe it can see, so the same reply or
CART_INITIAL_STATE may arrive more than once; applying a snapshot is
idempotent and listeners only hear about actual changes.
"""

import asyncio
import uuid
from enum import Enum
from typing import Any, Callable

from pydantic import BaseModel, Field

from skinscan.core.config import get_settings
from skinscan.core.exceptions import ProtocolError
from skinscan.core.logging import get_logger
from skinscan.cart.frames import WILDCARD_ORIGIN, FrameWindow, MessageEvent
from skinscan.cart.protocol import (
    REPLY_EXPECTED,
    RESPONSE_TYPES,
    CartMessageEnvelope,
    CartSnapshot,
    MessageType,
    normalize_variant_id,
)

logger = get_logger("cart.embedded")


class ReplyStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    NO_RESPONSE = "no_response"
    SENT = "sent"  # fire-and-forget requests


class CartReply(BaseModel):
    status: ReplyStatus
    request: MessageType
    correlation_id: str
    cart: CartSnapshot | None = None
    error: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status in (ReplyStatus.SUCCESS, ReplyStatus.SENT)


CartListener = Callable[[CartSnapshot], Any]


class EmbeddedCartBridge:
    def __init__(
        self,
        window: FrameWindow,
        *,
        timeout: float | None = None,
        target_origin: str = WILDCARD_ORIGIN,
    ):
        if window.parent is None:
            raise ValueError("EmbeddedCartBridge needs a window with a parent frame")
        self.window = window
        self.timeout = timeout if timeout is not None else get_settings().CART_REQUEST_TIMEOUT_SECONDS
        self.target_origin = target_origin
        self.snapshot: CartSnapshot | None = None
        self._outstanding: dict[str, tuple[MessageType, asyncio.Future]] = {}
        self._listeners: list[CartListener] = []

    # ── Lifecycle ────────────────────────────────────────────────────────

    def attach(self) -> None:
        self.window.add_event_listener(self._on_message)

    def detach(self) -> None:
        self.window.remove_event_listener(self._on_message)
        for _, future in self._outstanding.values():
            future.cancel()
        self._outstanding.clear()

    def subscribe(self, listener: CartListener) -> Callable[[], None]:
        """Register for snapshot changes; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    @property
    def pending_requests(self) -> int:
        return len(self._outstanding)

    # ── Requests ─────────────────────────────────────────────────────────

    async def request(self, message_type: MessageType, payload: dict | None = None) -> CartReply:
        correlation_id = uuid.uuid4().hex
        envelope = CartMessageEnvelope(
            type=message_type,
            payload=payload or {},
            correlation_id=correlation_id,
            origin=self.window.origin,
        )

        if message_type not in REPLY_EXPECTED:
            self.window.parent.post_message(envelope.to_wire(), self.target_origin, source=self.window)
            return CartReply(status=ReplyStatus.SENT, request=message_type, correlation_id=correlation_id)

        future = asyncio.get_running_loop().create_future()
        self._outstanding[correlation_id] = (message_type, future)
        self.window.parent.post_message(envelope.to_wire(), self.target_origin, source=self.window)

        try:
            return await asyncio.wait_for(future, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "No reply to %s within %.1fs (correlation=%s)",
                message_type.value,
                self.timeout,
                correlation_id,
            )
            return CartReply(
                status=ReplyStatus.NO_RESPONSE,
                request=message_type,
                correlation_id=correlation_id,
                error="The store did not respond. Please try again.",
            )
        finally:
            self._outstanding.pop(correlation_id, None)

    async def get_cart(self) -> CartReply:
        return await self.request(MessageType.GET_CART)

    async def add_to_cart(self, variant_id: Any, quantity: int = 1, properties: dict | None = None) -> CartReply:
        payload = {"variantId": normalize_variant_id(variant_id), "quantity": quantity}
        if properties:
            payload["customAttributes"] = [{"key": k, "value": v} for k, v in properties.items()]
        return await self.request(MessageType.ADD_TO_CART, payload)

    async def remove_from_cart(self, variant_id: Any) -> CartReply:
        return await self.request(
            MessageType.REMOVE_FROM_CART,
            {"variantId": normalize_variant_id(variant_id)},
        )

    async def add_routine_to_cart(self, products: list[dict]) -> CartReply:
        items = [
            {
                "variantId": normalize_variant_id(p.get("variantId")),
                "quantity": p.get("quantity", 1),
                "name": p.get("name"),
            }
            for p in products
        ]
        return await self.request(MessageType.ADD_ROUTINE_TO_CART, {"products": items})

    async def navigate(self, product_id: Any) -> CartReply:
        return await self.request(MessageType.NAVIGATE, {"productId": str(product_id)})

    # ── Queries ──────────────────────────────────────────────────────────

    def is_in_cart(self, variant_id: Any) -> bool:
        return self.snapshot is not None and self.snapshot.line_for(variant_id) is not None

    def quantity_of(self, variant_id: Any) -> int:
        return self.snapshot.quantity_of(variant_id) if self.snapshot else 0

    def line_key_for(self, variant_id: Any) -> str | None:
        line = self.snapshot.line_for(variant_id) if self.snapshot else None
        return line.key if line else None

    # ── Inbound ──────────────────────────────────────────────────────────

    async def _on_message(self, event: MessageEvent) -> None:
        try:
            envelope = CartMessageEnvelope.parse(event.data, origin=event.origin)
        except ProtocolError as exc:
            logger.debug("Ignoring non-cart message from %s: %s", event.origin, exc)
            return

        if envelope.type == MessageType.CART_INITIAL_STATE:
            self._apply_cart(envelope.payload.get("cart"))
            return

        if envelope.type not in RESPONSE_TYPES:
            return

        entry = self._outstanding.get(envelope.correlation_id or "")
        if entry is None:
            logger.debug(
                "Dropping %s with unmatched correlation %s",
                envelope.type.value,
                envelope.correlation_id,
            )
            return
        request_type, future = entry
        if future.done():
            return

        snapshot = self._apply_cart(envelope.payload.get("cart"))
        if envelope.type == MessageType.CART_UPDATE_ERROR:
            status, error = ReplyStatus.ERROR, envelope.payload.get("error") or "Cart update failed"
        else:
            status, error = ReplyStatus.SUCCESS, None
        future.set_result(
            CartReply(
                status=status,
                request=request_type,
                correlation_id=envelope.correlation_id,
                cart=snapshot,
                error=error,
                payload=envelope.payload,
            )
        )

    def _apply_cart(self, raw: Any) -> CartSnapshot | None:
        if raw is None:
            return None
        try:
            snapshot = CartSnapshot.from_host(raw)
        except ProtocolError as exc:
            logger.warning("Ignoring malformed cart snapshot: %s", exc)
            return None

        if snapshot == self.snapshot:
            return snapshot
        self.snapshot = snapshot
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Cart listener raised")
        return snapshot
