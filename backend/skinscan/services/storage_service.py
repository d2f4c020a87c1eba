"""
AWS S3 storage service for captured images.

The browser never sees storage credentials: it receives a short-lived,
write-only pre-signed PUT URL (the upload ticket) and a separate read URL
that the inference service fetches the image from.
"""

import asyncio
import functools
import threading
import uuid
from datetime import datetime, timezone
from typing import Optional

from skinscan.core.logging import get_logger
from skinscan.core.validators import extension_for

logger = get_logger("storage")

# ── Thread-local boto3 client (boto3 clients are not thread-safe) ────────────
_thread_local = threading.local()


def _make_boto3_client():
    """Create a boto3 S3 client using current settings. Called once per thread."""
    import boto3
    from skinscan.core.config import get_settings
    s = get_settings()
    kwargs: dict = {
        "region_name": s.AWS_REGION or "us-east-1",
    }
    if s.AWS_ACCESS_KEY_ID:
        kwargs["aws_access_key_id"] = s.AWS_ACCESS_KEY_ID
    if s.AWS_SECRET_ACCESS_KEY:
        kwargs["aws_secret_access_key"] = s.AWS_SECRET_ACCESS_KEY
    if s.AWS_ENDPOINT_URL:
        # Allows using MinIO or LocalStack for local dev
        kwargs["endpoint_url"] = s.AWS_ENDPOINT_URL
    return boto3.client("s3", **kwargs)


def _s3():
    """Return this thread's S3 client, creating it if needed."""
    if not hasattr(_thread_local, "client"):
        _thread_local.client = _make_boto3_client()
    return _thread_local.client


# ── Storage service ──────────────────────────────────────────────────────────
class StorageService:
    """
    Async-compatible S3 storage via boto3 + ThreadPoolExecutor.

    All boto3 calls (synchronous) are wrapped in run_in_executor so they
    never block the event loop.

    S3 key convention
    ─────────────────
    • Captures : uploads/{YYYY-MM-DD}/{uuid}.{ext}
    """

    def __init__(self) -> None:
        from skinscan.core.config import get_settings
        s = get_settings()
        self.bucket: str = s.S3_BUCKET_NAME
        self.upload_ttl: int = s.S3_UPLOAD_URL_TTL
        self.public_base_url: str = s.S3_PUBLIC_BASE_URL.rstrip("/")

    # ── Internal helper ──────────────────────────────────────────────────────

    @staticmethod
    async def _run(fn, *args, **kwargs) -> object:
        """Run a synchronous callable in the default thread-pool executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, functools.partial(fn, *args, **kwargs)
        )

    # ── Public API ───────────────────────────────────────────────────────────

    async def presigned_upload_url(self, key: str, content_type: str) -> str:
        """Generate a write-only pre-signed PUT URL for a single object."""
        def _sign() -> str:
            return _s3().generate_presigned_url(
                "put_object",
                Params={"Bucket": self.bucket, "Key": key, "ContentType": content_type},
                ExpiresIn=self.upload_ttl,
            )

        url: str = await self._run(_sign)  # type: ignore[assignment]
        return url

    async def read_url(self, key: str) -> str:
        """
        URL the inference service reads the image from.
        A public bucket base URL is used when configured, otherwise a
        read-only pre-signed GET valid as long as the upload target.
        """
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"

        def _sign() -> str:
            return _s3().generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=self.upload_ttl,
            )

        url: str = await self._run(_sign)  # type: ignore[assignment]
        return url

    async def ping(self) -> bool:
        """Return True if the bucket is reachable with current credentials."""
        def _head():
            _s3().head_bucket(Bucket=self.bucket)

        await self._run(_head)
        return True

    # ── Convenience helpers ──────────────────────────────────────────────────

    @staticmethod
    def key_for_capture(mime_type: str, now: datetime | None = None) -> str:
        """Build a fresh, never-reused key for one captured image."""
        day = (now or datetime.now(timezone.utc)).date().isoformat()
        return f"uploads/{day}/{uuid.uuid4()}.{extension_for(mime_type)}"


# ── Singleton ─────────────────────────────────────────────────────────────────
_storage_instance: Optional[StorageService] = None


def get_storage() -> StorageService:
    """Return the application-wide StorageService singleton."""
    global _storage_instance
    if _storage_instance is None:
        _storage_instance = StorageService()
    return _storage_instance
