"""
Rate limiter: fixed-window, Redis-backed.

Limits are applied per caller identity: the embedded client sends a stable
`X-User-Id` token with every request. Forwarded IP is the fallback for
callers that do not send one.

Usage in route handlers
-----------------------
    status = await check_rate_limit(request, scope="infer", limit=50)
    apply_rate_limit_headers(response, status)

Raises HTTP 429 with `X-RateLimit-Reset` (ISO-8601, absolute) when exceeded.
"""

from datetime import datetime, timedelta, timezone

from fastapi import HTTPException, Request, Response, status
from pydantic import BaseModel

from skinscan.core.config import get_settings
from skinscan.core.logging import get_logger
from skinscan.core.redis import get_redis

logger = get_logger("rate_limiter")
settings = get_settings()


class RateLimitStatus(BaseModel):
    limit: int
    remaining: int
    reset_at: datetime

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": self.reset_at.isoformat(),
        }


def caller_identity(request: Request) -> str:
    """Resolve the identity a request is counted against."""
    user_id = request.headers.get("x-user-id")
    if user_id:
        return f"user:{user_id}"
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"
    return f"ip:{request.client.host if request.client else 'anonymous'}"


async def check_rate_limit(
    request: Request,
    scope: str,
    limit: int,
    window: int = 3600,
) -> RateLimitStatus:
    """
    Count this request against `limit` per `window` seconds.

    Parameters
    ----------
    request : the FastAPI Request (identity headers are read from it)
    scope   : endpoint family, so upload and inference quotas are separate
    limit   : max requests per window
    window  : window length in seconds (default one hour)
    """
    identity = caller_identity(request)
    key = f"ss:rl:{scope}:{identity}"
    now = datetime.now(timezone.utc)

    try:
        redis = await get_redis()

        pipe = redis.pipeline()
        pipe.incr(key)
        pipe.expire(key, window, nx=True)
        pipe.ttl(key)
        count, _, ttl = await pipe.execute()

    except Exception as exc:
        # Redis outage → fail open (allow the request) but log it
        logger.error("Rate limiter Redis error (allowing request through): %s", exc)
        return RateLimitStatus(limit=limit, remaining=limit, reset_at=now)

    ttl = ttl if ttl and ttl > 0 else window
    result = RateLimitStatus(
        limit=limit,
        remaining=max(0, limit - int(count)),
        reset_at=now + timedelta(seconds=ttl),
    )

    if int(count) > limit:
        logger.warning("Rate limit hit: %s on %s (%d req/%ds)", identity, scope, limit, window)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "error": "Too Many Requests",
                "message": "Rate limit exceeded. Please try again later.",
                "retryAfter": result.reset_at.isoformat(),
            },
            headers=result.headers(),
        )

    return result


def apply_rate_limit_headers(response: Response, result: RateLimitStatus) -> None:
    """Copy quota headers onto a successful response."""
    for name, value in result.headers().items():
        response.headers[name] = value


# ── Convenience wrappers ─────────────────────────────────────────────────────

async def rate_limit_upload(request: Request) -> RateLimitStatus:
    """Limit upload-target issuance per caller identity."""
    return await check_rate_limit(
        request, scope="upload", limit=settings.RATE_LIMIT_UPLOAD_PER_HOUR
    )


async def rate_limit_infer(request: Request) -> RateLimitStatus:
    """Limit inference requests per caller identity."""
    return await check_rate_limit(
        request, scope="infer", limit=settings.RATE_LIMIT_INFER_PER_HOUR
    )
