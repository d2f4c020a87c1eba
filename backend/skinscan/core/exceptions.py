"""
Error taxonomy shared by the embedded client and the relay service.

Every error carries a `category` used to pick the user-facing message and
a `retryable` flag the resilient client's retry policy reads.
"""

from enum import Enum


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    NETWORK = "network"
    RATE_LIMITED = "rate_limited"
    SERVER = "server"
    DECODE = "decode"
    UNKNOWN = "unknown"


class SkinScanError(Exception):
    """Base class for all application errors."""

    category: ErrorCategory = ErrorCategory.UNKNOWN
    retryable: bool = False

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "category": self.category.value,
            "message": self.message,
            "details": self.details,
        }


# ── HTTP call failures (raised by ResilientApiClient) ────────────────────────

class ApiError(SkinScanError):
    """A failed HTTP call. `exhausted` is set once retries have run out."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        details: dict | None = None,
    ):
        super().__init__(message, details)
        self.status = status
        self.attempts = 0
        self.exhausted = False


class ValidationError(ApiError):
    """Bad input (HTTP 400 or rejected locally). Never retried."""

    category = ErrorCategory.VALIDATION


class AuthError(ApiError):
    """HTTP 401. Never retried."""

    category = ErrorCategory.UNKNOWN


class RateLimitedError(ApiError):
    """HTTP 429. Carries how long to wait; never auto-retried."""

    category = ErrorCategory.RATE_LIMITED

    def __init__(self, message: str, wait_ms: int, details: dict | None = None):
        super().__init__(message, status=429, details=details)
        self.wait_ms = wait_ms


class TransientNetworkError(ApiError):
    """The request never produced an HTTP response."""

    category = ErrorCategory.NETWORK
    retryable = True


class ServerError(ApiError):
    """Any other non-2xx response."""

    category = ErrorCategory.SERVER
    retryable = True


# ── Local failures ───────────────────────────────────────────────────────────

class DecodeError(SkinScanError):
    """The captured blob could not be decoded as an image. Fatal for the capture."""

    category = ErrorCategory.DECODE


class CameraUnavailableError(SkinScanError):
    """Camera access was denied or no camera exists."""


class ProtocolError(SkinScanError):
    """Malformed or unsolicited cross-frame message. Logged and dropped."""


class SignatureError(SkinScanError):
    """Webhook signature missing or wrong."""


class UpstreamError(SkinScanError):
    """The inference backend failed or is not configured."""

    category = ErrorCategory.SERVER
    retryable = True
