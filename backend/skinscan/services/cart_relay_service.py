"""
Cart update relay.

Webhook notifications of cart changes made elsewhere on the storefront are
verified and normalized into a CartSnapshot, then handed to the embedded app
over a Server-Sent Events stream (push) or the cart-status endpoint (pull).

Two records are kept per shop:
  • a pending update, delivered at most once and considered stale after
    CART_RELAY_TTL_SECONDS,
  • the latest update, served by the pull endpoint for CART_STATUS_TTL_SECONDS.

The store is in-process by default; set CART_RELAY_BACKEND=redis when more
than one API instance serves the same shops.
"""

import asyncio
import base64
import hashlib
import hmac
import json
import time
from typing import AsyncIterator

from skinscan.cart.protocol import CartSnapshot, PendingCartUpdate
from skinscan.core.config import get_settings
from skinscan.core.exceptions import ProtocolError, SignatureError
from skinscan.core.logging import get_logger, log_context
from skinscan.core.redis import get_redis

logger = get_logger("cart_relay")


# ── Webhook verification ─────────────────────────────────────────────────────

def compute_webhook_signature(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_webhook_signature(raw_body: bytes, signature: str | None, secret: str) -> None:
    """Raise SignatureError unless `signature` is the base64 HMAC-SHA256 of the raw body."""
    if not secret:
        raise SignatureError("Webhook secret is not configured")
    if not signature:
        raise SignatureError("Missing webhook signature")
    expected = compute_webhook_signature(raw_body, secret)
    if not hmac.compare_digest(expected.encode("ascii"), signature.strip().encode("ascii", "ignore")):
        raise SignatureError("Webhook signature mismatch")


def normalize_shop_key(shop: str | None) -> str:
    return (shop or "").strip().lower()


def sse_event(data: dict) -> str:
    return f"data: {json.dumps(data)}\n\n"


# ── Stores ───────────────────────────────────────────────────────────────────

class PendingUpdateStore:
    """Keyed storage for pending and latest cart updates."""

    async def put(self, update: PendingCartUpdate) -> None:
        raise NotImplementedError

    async def take(self, shop_key: str) -> PendingCartUpdate | None:
        """Remove and return the pending update for a shop."""
        raise NotImplementedError

    async def set_latest(self, update: PendingCartUpdate) -> None:
        raise NotImplementedError

    async def latest(self, shop_key: str) -> PendingCartUpdate | None:
        raise NotImplementedError


class InMemoryPendingUpdateStore(PendingUpdateStore):
    """Process-local store. Only correct for a single API instance."""

    def __init__(self, latest_ttl: float, clock=time.monotonic):
        self.latest_ttl = latest_ttl
        self._clock = clock
        self._pending: dict[str, PendingCartUpdate] = {}
        self._latest: dict[str, tuple[PendingCartUpdate, float]] = {}

    async def put(self, update: PendingCartUpdate) -> None:
        self._pending[update.shop_key] = update

    async def take(self, shop_key: str) -> PendingCartUpdate | None:
        return self._pending.pop(shop_key, None)

    async def set_latest(self, update: PendingCartUpdate) -> None:
        self._latest[update.shop_key] = (update, self._clock() + self.latest_ttl)

    async def latest(self, shop_key: str) -> PendingCartUpdate | None:
        entry = self._latest.get(shop_key)
        if entry is None:
            return None
        update, expires_at = entry
        if self._clock() >= expires_at:
            del self._latest[shop_key]
            return None
        return update


class RedisPendingUpdateStore(PendingUpdateStore):
    """Shared store; expiry is left to Redis key TTLs."""

    PENDING_PREFIX = "ss:cart:pending:"
    LATEST_PREFIX = "ss:cart:latest:"

    def __init__(self, pending_ttl: float, latest_ttl: int):
        self.pending_ttl_ms = max(1, int(pending_ttl * 1000))
        self.latest_ttl = latest_ttl

    async def put(self, update: PendingCartUpdate) -> None:
        redis = await get_redis()
        await redis.set(
            self.PENDING_PREFIX + update.shop_key,
            update.model_dump_json(by_alias=True),
            px=self.pending_ttl_ms,
        )

    async def take(self, shop_key: str) -> PendingCartUpdate | None:
        redis = await get_redis()
        data = await redis.getdel(self.PENDING_PREFIX + shop_key)
        return PendingCartUpdate.model_validate_json(data) if data else None

    async def set_latest(self, update: PendingCartUpdate) -> None:
        redis = await get_redis()
        await redis.setex(
            self.LATEST_PREFIX + update.shop_key,
            self.latest_ttl,
            update.model_dump_json(by_alias=True),
        )

    async def latest(self, shop_key: str) -> PendingCartUpdate | None:
        redis = await get_redis()
        data = await redis.get(self.LATEST_PREFIX + shop_key)
        return PendingCartUpdate.model_validate_json(data) if data else None


# ── Relay ────────────────────────────────────────────────────────────────────

class CartUpdateRelay:
    def __init__(
        self,
        store: PendingUpdateStore,
        *,
        webhook_secret: str,
        ttl_seconds: float = 5.0,
        poll_seconds: float = 1.0,
    ):
        self.store = store
        self.webhook_secret = webhook_secret
        self.ttl_seconds = ttl_seconds
        self.poll_seconds = poll_seconds
        self._subscribers: dict[str, set[asyncio.Queue]] = {}

    def verify(self, raw_body: bytes, signature: str | None) -> None:
        verify_webhook_signature(raw_body, signature, self.webhook_secret)

    def subscriber_count(self, shop_key: str) -> int:
        return len(self._subscribers.get(normalize_shop_key(shop_key), ()))

    async def ingest(self, raw_body: bytes, signature: str | None, shop_domain: str) -> PendingCartUpdate:
        """
        Verify and record one webhook delivery. Nothing is stored when the
        signature does not match.
        """
        self.verify(raw_body, signature)

        shop_key = normalize_shop_key(shop_domain)
        if not shop_key:
            raise ProtocolError("Missing shop domain")
        try:
            body = json.loads(raw_body)
        except ValueError as exc:
            raise ProtocolError("Webhook body is not valid JSON") from exc

        update = PendingCartUpdate(shop_key=shop_key, snapshot=CartSnapshot.from_host(body))
        await self.store.set_latest(update)

        delivered = self._fan_out(update)
        if not delivered:
            await self.store.put(update)
        logger.info(
            "Cart update: %d items, pushed to %d subscribers",
            update.snapshot.item_count,
            delivered,
            extra=log_context(shop=shop_key),
        )
        return update

    def _fan_out(self, update: PendingCartUpdate) -> int:
        queues = self._subscribers.get(update.shop_key, set())
        for queue in queues:
            queue.put_nowait(update)
        return len(queues)

    def is_fresh(self, update: PendingCartUpdate) -> bool:
        return update.age_seconds() <= self.ttl_seconds

    async def take_fresh(self, shop_key: str) -> PendingCartUpdate | None:
        """Pop the pending update for a shop, discarding it if stale."""
        update = await self.store.take(normalize_shop_key(shop_key))
        if update is None:
            return None
        if not self.is_fresh(update):
            logger.debug("Discarding stale cart update for %s", update.shop_key)
            return None
        return update

    async def latest(self, shop_key: str) -> PendingCartUpdate | None:
        return await self.store.latest(normalize_shop_key(shop_key))

    async def stream(self, shop: str) -> AsyncIterator[str]:
        """SSE lines for one subscriber; runs until the consumer goes away."""
        shop_key = normalize_shop_key(shop)
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(shop_key, set()).add(queue)
        logger.info("SSE subscriber connected", extra=log_context(shop=shop_key))
        try:
            yield sse_event({"type": "connected", "shop": shop})
            while True:
                try:
                    update = await asyncio.wait_for(queue.get(), timeout=self.poll_seconds)
                except asyncio.TimeoutError:
                    update = await self.take_fresh(shop_key)
                if update is None or not self.is_fresh(update):
                    continue
                yield sse_event({"type": "cart-updated", "data": update.snapshot.to_wire()})
        finally:
            subscribers = self._subscribers.get(shop_key)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    del self._subscribers[shop_key]
            logger.info("SSE subscriber disconnected", extra=log_context(shop=shop_key))


# ── Singleton ────────────────────────────────────────────────────────────────
_relay: CartUpdateRelay | None = None


def build_store() -> PendingUpdateStore:
    settings = get_settings()
    if settings.CART_RELAY_BACKEND == "redis":
        return RedisPendingUpdateStore(settings.CART_RELAY_TTL_SECONDS, settings.CART_STATUS_TTL_SECONDS)
    return InMemoryPendingUpdateStore(settings.CART_STATUS_TTL_SECONDS)


def get_cart_relay() -> CartUpdateRelay:
    global _relay
    if _relay is None:
        settings = get_settings()
        _relay = CartUpdateRelay(
            build_store(),
            webhook_secret=settings.SHOPIFY_WEBHOOK_SECRET,
            ttl_seconds=settings.CART_RELAY_TTL_SECONDS,
            poll_seconds=settings.CART_RELAY_POLL_SECONDS,
        )
    return _relay
