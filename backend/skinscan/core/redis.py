"""
Shared redis.asyncio client.

Backs the inference cache, the per-identity rate limiter and, with
CART_RELAY_BACKEND=redis, the cart relay store. Keys are namespaced per
concern (`ss:cache:`, `ss:rl:`, `ss:cart:`) so all three share one DB.
"""

import redis.asyncio as aioredis

from skinscan.core.config import get_settings

settings = get_settings()

_client: aioredis.Redis | None = None


async def get_redis() -> aioredis.Redis:
    """Lazily connect; the client is shared by every request in the process."""
    global _client
    if _client is None:
        _client = aioredis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
            max_connections=settings.REDIS_MAX_CONNECTIONS,
            socket_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
            health_check_interval=30,
        )
    return _client


async def ping_redis() -> str:
    """'connected', or raises the connection error for the caller to report."""
    redis = await get_redis()
    await redis.ping()
    return "connected"


async def close_redis() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
