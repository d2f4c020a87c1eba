"""
Caching service.
Redis-based caching for inference results keyed by image URL.
"""

import hashlib
import json
from typing import Any

from skinscan.core.logging import get_logger
from skinscan.core.redis import get_redis

logger = get_logger("cache_service")


class CacheService:
    """Redis-based caching. Every failure degrades to a cache miss."""

    @staticmethod
    def _make_key(prefix: str, *args) -> str:
        """Generate a cache key from prefix and arguments."""
        raw = ":".join(str(a) for a in args)
        digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]
        return f"ss:cache:{prefix}:{digest}"

    @staticmethod
    async def get(key: str) -> Any | None:
        """Get a cached value."""
        try:
            redis = await get_redis()
            data = await redis.get(key)
            if data:
                return json.loads(data)
            return None
        except Exception as e:
            logger.warning("Cache get failed for %s: %s", key, str(e))
            return None

    @staticmethod
    async def set(key: str, value: Any, ttl: int = 300) -> bool:
        """Set a cached value with TTL."""
        try:
            redis = await get_redis()
            await redis.setex(key, ttl, json.dumps(value, default=str))
            return True
        except Exception as e:
            logger.warning("Cache set failed for %s: %s", key, str(e))
            return False

    # ── Inference-specific ───────────────────────────────────────────────
    @classmethod
    def inference_key(cls, image_url: str) -> str:
        return cls._make_key("inference", image_url)
