"""
Resilient HTTP client used by the capture pipeline.

Every call carries the caller identity (`X-User-Id`), which the server uses
for per-identity rate limiting. Failures are classified by status:

    429, 400, 401          → terminal, surfaced immediately
    other non-2xx, network → retryable, up to `max_attempts`

Backoff before attempt n+1 is `base_delay * 2**(n-1)`; the caller's
`on_retry` hook runs before each sleep.
"""

import asyncio
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable

import httpx

from skinscan.core.config import get_settings
from skinscan.core.exceptions import (
    ApiError,
    AuthError,
    RateLimitedError,
    ServerError,
    TransientNetworkError,
    ValidationError,
)
from skinscan.core.logging import get_logger
from skinscan.client.identity import ClientIdentity

logger = get_logger("client.api")

DEFAULT_RATE_LIMIT_WAIT_MS = 60_000
NON_RETRYABLE_STATUSES = frozenset({400, 401, 429})

RetryHook = Callable[[int, int, ApiError, int], Awaitable[None] | None]


# ── Call outcomes ────────────────────────────────────────────────────────────

class Success:
    """2xx response."""

    retryable = False

    def __init__(self, response: httpx.Response):
        self.response = response


class RetryableFailure:
    """Transient failure; another attempt may succeed."""

    retryable = True

    def __init__(self, error: ApiError):
        self.error = error


class TerminalFailure:
    """Failure that retrying cannot fix (or retries are used up)."""

    retryable = False

    def __init__(self, error: ApiError):
        self.error = error


Outcome = Success | RetryableFailure | TerminalFailure


# ── Helpers ──────────────────────────────────────────────────────────────────

def parse_rate_limit_reset(value: str | None, now: float) -> int:
    """
    Milliseconds until the quota resets, from an `X-RateLimit-Reset` value.
    Accepts ISO-8601, HTTP-date, or epoch seconds/milliseconds.
    Falls back to 60 seconds when the header is absent or unreadable.
    """
    if not value:
        return DEFAULT_RATE_LIMIT_WAIT_MS

    raw = value.strip()
    reset_at: float | None = None
    try:
        number = float(raw)
        reset_at = number / 1000 if number > 1e12 else number
    except ValueError:
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            try:
                parsed = parsedate_to_datetime(raw)
            except (TypeError, ValueError):
                parsed = None
        if parsed is not None:
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            reset_at = parsed.timestamp()

    if reset_at is None:
        return DEFAULT_RATE_LIMIT_WAIT_MS
    return max(0, int(round((reset_at - now) * 1000)))


def server_message(response: httpx.Response) -> str:
    """Best-effort human message from an error body."""
    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict):
        detail = body.get("detail")
        if isinstance(detail, dict) and detail.get("message"):
            return str(detail["message"])
        if isinstance(detail, str) and detail:
            return detail
        for field in ("message", "error"):
            if body.get(field):
                return str(body[field])
    return f"Error {response.status_code}"


def backoff_delay_ms(attempt: int, base_delay_ms: int) -> int:
    """Delay before attempt `attempt + 1`."""
    return base_delay_ms * 2 ** (attempt - 1)


# ── Client ───────────────────────────────────────────────────────────────────

class ResilientApiClient:
    """
    Thin retry/classification layer over an `httpx.AsyncClient`.

    `sleep` and `clock` are injectable so backoff can be observed without
    waiting in real time.
    """

    def __init__(
        self,
        base_url: str | None = None,
        identity: ClientIdentity | None = None,
        *,
        max_attempts: int | None = None,
        base_delay_ms: int | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        settings = get_settings()
        self.identity = identity or ClientIdentity()
        self.max_attempts = max_attempts or settings.CLIENT_MAX_ATTEMPTS
        self.base_delay_ms = (
            base_delay_ms if base_delay_ms is not None else settings.CLIENT_BASE_DELAY_MS
        )
        self._sleep = sleep
        self._clock = clock
        self._http = httpx.AsyncClient(
            base_url=base_url or settings.CLIENT_API_BASE_URL,
            timeout=timeout or settings.CLIENT_TIMEOUT_SECONDS,
            transport=transport,
            headers={"X-Client-Version": settings.APP_VERSION},
        )

    async def __aenter__(self) -> "ResilientApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ── Single attempt ───────────────────────────────────────────────────

    async def attempt(
        self,
        method: str,
        url: str,
        *,
        identify: bool = True,
        **kwargs,
    ) -> Outcome:
        """Issue one request and classify what came back."""
        headers = dict(kwargs.pop("headers", None) or {})
        if identify:
            headers["X-User-Id"] = self.identity.token

        try:
            response = await self._http.request(method, url, headers=headers, **kwargs)
        except httpx.TransportError as exc:
            return RetryableFailure(
                TransientNetworkError(f"Network error: {exc}", details={"url": str(url)})
            )

        if response.is_success:
            return Success(response)

        status = response.status_code
        message = server_message(response)

        if status == 429:
            wait_ms = parse_rate_limit_reset(
                response.headers.get("X-RateLimit-Reset"), self._clock()
            )
            return TerminalFailure(RateLimitedError(message, wait_ms=wait_ms))
        if status == 400:
            return TerminalFailure(ValidationError(message, status=status))
        if status == 401:
            return TerminalFailure(AuthError(message, status=status))
        return RetryableFailure(ServerError(message, status=status))

    # ── Retry loop ───────────────────────────────────────────────────────

    async def execute(
        self,
        method: str,
        url: str,
        *,
        max_attempts: int | None = None,
        on_retry: RetryHook | None = None,
        **kwargs,
    ) -> Success | TerminalFailure:
        """Run the retry policy and return a typed outcome instead of raising."""
        attempts = max(1, max_attempts or self.max_attempts)

        for n in range(1, attempts + 1):
            outcome = await self.attempt(method, url, **kwargs)

            if isinstance(outcome, Success):
                return outcome

            outcome.error.attempts = n
            if isinstance(outcome, TerminalFailure):
                logger.warning(
                    "%s %s failed terminally (%s): %s",
                    method, url, outcome.error.status, outcome.error.message,
                )
                return outcome

            if n == attempts:
                outcome.error.exhausted = True
                logger.error(
                    "%s %s failed after %d attempts: %s",
                    method, url, n, outcome.error.message,
                )
                return TerminalFailure(outcome.error)

            delay_ms = backoff_delay_ms(n, self.base_delay_ms)
            logger.warning(
                "%s %s attempt %d/%d failed: %s. Retry in %dms",
                method, url, n, attempts, outcome.error.message, delay_ms,
            )
            if on_retry is not None:
                notified = on_retry(n + 1, attempts, outcome.error, delay_ms)
                if asyncio.iscoroutine(notified):
                    await notified
            await self._sleep(delay_ms / 1000)

        raise RuntimeError("retry loop exited without an outcome")

    async def call(
        self,
        method: str,
        url: str,
        *,
        max_attempts: int | None = None,
        on_retry: RetryHook | None = None,
        **kwargs,
    ) -> httpx.Response:
        """Like `execute`, but returns the response or raises the ApiError."""
        outcome = await self.execute(
            method, url, max_attempts=max_attempts, on_retry=on_retry, **kwargs
        )
        if isinstance(outcome, Success):
            return outcome.response
        raise outcome.error
