"""
User-facing status text for the capture pipeline.
"""

import asyncio
import math
from urllib.parse import urlparse

from skinscan.core.exceptions import ErrorCategory, RateLimitedError, SkinScanError

# Status levels the UI styles differently
INFO = "info"
WARNING = "warning"
ERROR = "error"
SUCCESS = "success"

STEP_MESSAGES = {
    "validating": "Checking image...",
    "downscaling": "Optimizing image...",
    "requesting_upload_target": "Preparing upload...",
    "uploading": "Uploading image...",
    "previewing": "Upload complete.",
    "inferring": "Analyzing...",
}


def wait_minutes(wait_ms: int) -> int:
    """Whole minutes to show in a rate-limit countdown (rounded up, at least 1)."""
    return max(1, math.ceil(wait_ms / 60_000))


def retry_message(attempt: int, max_attempts: int) -> str:
    return f"Retrying ({attempt}/{max_attempts})..."


def describe_failure(error: SkinScanError, online: bool = True) -> str:
    """Map a terminal error to one message per category."""
    if isinstance(error, RateLimitedError):
        minutes = wait_minutes(error.wait_ms)
        unit = "minute" if minutes == 1 else "minutes"
        return f"Too many attempts. Try again in {minutes} {unit}."

    if error.category is ErrorCategory.NETWORK or not online:
        if not online:
            return "You appear to be offline. Check your connection."
        return "Server unreachable. Please try again shortly."

    if error.category is ErrorCategory.VALIDATION:
        return error.message or "Invalid image. Please try another photo."

    if error.category is ErrorCategory.DECODE:
        return "Could not read that image. Please try another photo."

    return "Something went wrong. Please try again."


def describe_result(payload: dict) -> tuple[str, str]:
    """Completion text for a synchronous inference result."""
    if payload.get("fallback"):
        return "Analysis service is temporarily limited.", WARNING
    count = len(payload.get("predictions") or [])
    if count:
        return f"Analysis complete: found {count} areas of interest.", SUCCESS
    return "Analysis complete: no areas of interest detected.", SUCCESS


async def probe_online(url: str, timeout: float = 2.0) -> bool:
    """
    Rough connectivity check: can the API host name be resolved at all?
    A DNS failure means we are offline rather than the server being down.
    """
    host = urlparse(url).hostname
    if not host:
        return True
    loop = asyncio.get_running_loop()
    try:
        await asyncio.wait_for(loop.getaddrinfo(host, None), timeout)
    except (OSError, asyncio.TimeoutError):
        return False
    return True
