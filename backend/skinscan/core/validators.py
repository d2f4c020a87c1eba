"""
Image rules shared by the upload endpoints and the capture pipeline.

The client enforces a soft size ceiling before spending any network time;
the server enforces its own, larger hard cap independently:
  • Client soft limit: CLIENT_MAX_UPLOAD_MB (5 MB by default)
  • Server hard limit: MAX_IMAGE_SIZE_BYTES (10 MB)
"""

from fastapi import HTTPException

# ── MIME rules ────────────────────────────────────────────────────────────────

# What the capture pipeline will accept from the camera or the file picker
ACCEPTED_CAPTURE_MIME_TYPES: frozenset[str] = frozenset({
    "image/jpeg",
    "image/png",
    "image/webp",
})

# What the upload-url endpoint will issue targets for ("image/jpg" is a
# common non-standard alias some browsers still send)
ALLOWED_UPLOAD_MIME_TYPES: frozenset[str] = ACCEPTED_CAPTURE_MIME_TYPES | {"image/jpg"}

# File-magic signatures → canonical MIME type
_MAGIC: list[tuple[bytes, str]] = [
    (b"\xff\xd8\xff", "image/jpeg"),             # JPEG
    (b"\x89PNG\r\n\x1a\n", "image/png"),         # PNG
    (b"RIFF", "image/webp"),                     # WebP (needs secondary check)
]

MAX_IMAGE_SIZE_BYTES: int = 10 * 1024 * 1024    # 10 MB hard cap
MAX_IMAGE_URL_LENGTH: int = 2048


def sniff_image_mime(data: bytes) -> str | None:
    """Return the MIME type implied by the file header, or None if unknown."""
    for magic, mime in _MAGIC:
        if data[: len(magic)] == magic:
            # WebP has an extra four-byte 'WEBP' marker at offset 8
            if mime == "image/webp" and data[8:12] != b"WEBP":
                continue
            return mime
    return None


def extension_for(mime_type: str) -> str:
    """File extension used in blob names ("image/jpg" → "jpg")."""
    return mime_type.split("/", 1)[1].lower()


def validate_upload_mime(mime_type: str) -> str:
    """Reject MIME types we will not issue upload targets for."""
    normalized = (mime_type or "").strip().lower()
    if normalized not in ALLOWED_UPLOAD_MIME_TYPES:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "Validation Error",
                "message": "Unsupported image format. Use JPEG, PNG or WebP.",
            },
        )
    return normalized


def validate_image_size(size_bytes: int, limit: int = MAX_IMAGE_SIZE_BYTES) -> None:
    """Reject payloads that exceed the hard size cap."""
    if size_bytes > limit:
        mb = limit // (1024 * 1024)
        raise HTTPException(
            status_code=413,
            detail={
                "error": "Payload Too Large",
                "message": f"Image too large. Maximum allowed size is {mb} MB.",
            },
        )
