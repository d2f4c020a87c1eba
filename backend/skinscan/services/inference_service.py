"""
Inference proxy.

Forwards an uploaded image URL to the hosted detection model, retrying
transient upstream failures with exponential backoff. When every attempt
fails the caller gets a fallback result (no predictions, `fallback: true`)
instead of an error, so the embedded app can still show something.
Successful results are cached per image URL.

Calls go through a circuit breaker: once the failure share over the
rolling window reaches the threshold, the upstream is skipped entirely
and cached or fallback results are served until the reset period passes.
"""

import asyncio
import time
from collections import deque
from functools import lru_cache

import httpx

from skinscan.core.config import get_settings
from skinscan.core.exceptions import UpstreamError
from skinscan.core.logging import get_logger
from skinscan.services.cache_service import CacheService

logger = get_logger("inference_service")

TRANSIENT_STATUSES = (429, 500, 502, 503, 504)
DEFAULT_CONFIDENCE = 20
DEFAULT_OVERLAP = 50


def fallback_result() -> dict:
    return {"predictions": [], "image": {"width": 0, "height": 0}, "fallback": True}


# ── Circuit breaker ──────────────────────────────────────────────────────────

class CircuitBreaker:
    """
    Error-rate breaker around the upstream model.

    closed: calls pass; outcomes are kept for `window_seconds`. Opens when at
        least `min_calls` outcomes are in the window and the failure share
        reaches `error_rate`.
    open: calls are refused until `reset_seconds` after opening.
    half_open: one trial call is let through; its outcome closes or reopens.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        *,
        error_rate: float = 0.5,
        min_calls: int = 3,
        window_seconds: float = 10.0,
        reset_seconds: float = 30.0,
        clock=time.monotonic,
        name: str = "inference",
    ):
        self.error_rate = error_rate
        self.min_calls = max(1, min_calls)
        self.window_seconds = window_seconds
        self.reset_seconds = reset_seconds
        self.name = name
        self._clock = clock
        self.state = self.CLOSED
        self._outcomes: deque[tuple[float, bool]] = deque()
        self._opened_at = 0.0
        self._trial_in_flight = False
        self._trial_started = 0.0

    @classmethod
    def from_settings(cls) -> "CircuitBreaker":
        settings = get_settings()
        return cls(
            error_rate=settings.INFERENCE_BREAKER_ERROR_RATE,
            min_calls=settings.INFERENCE_BREAKER_MIN_CALLS,
            window_seconds=settings.INFERENCE_BREAKER_WINDOW_SECONDS,
            reset_seconds=settings.INFERENCE_BREAKER_RESET_SECONDS,
        )

    def allow(self) -> bool:
        if self.state == self.OPEN:
            if self._clock() - self._opened_at < self.reset_seconds:
                return False
            self.state = self.HALF_OPEN
            self._trial_in_flight = False
            logger.info("Circuit breaker %s half-open", self.name)
        if self.state == self.HALF_OPEN:
            # A trial that never reported back (cancelled) expires after reset_seconds
            if self._trial_in_flight and self._clock() - self._trial_started < self.reset_seconds:
                return False
            self._trial_in_flight = True
            self._trial_started = self._clock()
        return True

    def record_success(self) -> None:
        if self.state == self.HALF_OPEN:
            logger.info("Circuit breaker %s closed (upstream recovered)", self.name)
            self._outcomes.clear()
        self.state = self.CLOSED
        self._trial_in_flight = False
        self._record(True)

    def record_failure(self) -> None:
        if self.state == self.HALF_OPEN:
            self._open()
            return
        self._record(False)
        failures = sum(1 for _, ok in self._outcomes if not ok)
        if len(self._outcomes) >= self.min_calls and failures / len(self._outcomes) >= self.error_rate:
            self._open()

    def _record(self, ok: bool) -> None:
        now = self._clock()
        self._outcomes.append((now, ok))
        while self._outcomes and now - self._outcomes[0][0] > self.window_seconds:
            self._outcomes.popleft()

    def _open(self) -> None:
        self.state = self.OPEN
        self._opened_at = self._clock()
        self._trial_in_flight = False
        self._outcomes.clear()
        logger.warning(
            "Circuit breaker %s opened; upstream skipped for %.0fs", self.name, self.reset_seconds
        )


@lru_cache
def get_inference_breaker() -> CircuitBreaker:
    """Process-wide breaker shared by every InferenceService."""
    return CircuitBreaker.from_settings()


# ── Service ──────────────────────────────────────────────────────────────────

class InferenceService:
    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        version: str,
        api_key: str,
        timeout: float = 30.0,
        max_retries: int = 2,
        backoff_base: float = 1.0,
        breaker: CircuitBreaker | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep=asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.version = version
        self.api_key = api_key
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.breaker = breaker or get_inference_breaker()
        self._transport = transport
        self._sleep = sleep

    @classmethod
    def from_settings(cls, **overrides) -> "InferenceService":
        settings = get_settings()
        options = dict(
            base_url=settings.INFERENCE_URL,
            model=settings.INFERENCE_MODEL,
            version=settings.INFERENCE_MODEL_VERSION,
            api_key=settings.INFERENCE_API_KEY,
            timeout=settings.INFERENCE_TIMEOUT_SECONDS,
            max_retries=settings.INFERENCE_MAX_RETRIES,
        )
        options.update(overrides)
        return cls(**options)

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/{self.model}/{self.version}"

    def build_params(self, image_url: str) -> dict:
        return {
            "api_key": self.api_key,
            "image": image_url,
            "confidence": DEFAULT_CONFIDENCE,
            "overlap": DEFAULT_OVERLAP,
        }

    async def infer(self, image_url: str) -> dict:
        """
        Run the model on one image.
        Raises UpstreamError for non-transient failures (bad key, rejected
        image); returns the fallback result once transient retries run out
        or while the circuit breaker is open.
        """
        if not self.api_key:
            raise UpstreamError("Inference API key not configured. Set INFERENCE_API_KEY in .env")

        if not self.breaker.allow():
            logger.warning("Inference circuit open, serving fallback without calling upstream")
            return fallback_result()

        try:
            result = await self._call_with_retries(image_url)
        except UpstreamError:
            # Rejections are upstream answers, not outages
            self.breaker.record_success()
            raise

        if result is None:
            self.breaker.record_failure()
            return fallback_result()
        self.breaker.record_success()
        return result

    async def _call_with_retries(self, image_url: str) -> dict | None:
        """The model's JSON, or None once transient failures exhaust the retries."""
        max_attempts = self.max_retries + 1
        timeout = httpx.Timeout(self.timeout, connect=10.0)
        last_error: str | None = None

        for attempt in range(1, max_attempts + 1):
            try:
                async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                    response = await client.post(self.endpoint, params=self.build_params(image_url))
            except httpx.TransportError as exc:
                last_error = f"{type(exc).__name__}: {exc}"
            else:
                if response.status_code in TRANSIENT_STATUSES:
                    last_error = f"Inference API error ({response.status_code}): {response.text[:200]}"
                elif not response.is_success:
                    raise UpstreamError(
                        f"Inference API rejected the request ({response.status_code})",
                        details={"status": response.status_code, "body": response.text[:500]},
                    )
                else:
                    try:
                        return response.json()
                    except ValueError as exc:
                        raise UpstreamError("Inference API returned invalid JSON") from exc

            if attempt < max_attempts:
                wait = self.backoff_base * (2 ** (attempt - 1))
                logger.warning(
                    "Inference transient failure (attempt %d/%d). Retry in %.1fs: %s",
                    attempt, max_attempts, wait, last_error,
                )
                await self._sleep(wait)

        logger.error("Inference failed after %d attempts, serving fallback: %s", max_attempts, last_error)
        return None

    async def analyze(self, image_url: str, use_cache: bool = True) -> tuple[dict, bool]:
        """Cached inference. Returns (result, cache_hit). Fallback results are never cached."""
        key = CacheService.inference_key(image_url)
        if use_cache:
            cached = await CacheService.get(key)
            if cached is not None:
                return cached, True

        result = await self.infer(image_url)
        if use_cache and not result.get("fallback"):
            await CacheService.set(key, result, ttl=get_settings().INFERENCE_CACHE_TTL)
        return result, False


def get_inference_service() -> InferenceService:
    return InferenceService.from_settings()
