"""
Upload-target endpoint.
Issues a one-time, write-only pre-signed URL for a single captured image.
"""

from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from skinscan.core.logging import get_logger
from skinscan.core.rate_limiter import apply_rate_limit_headers, rate_limit_upload
from skinscan.core.validators import validate_image_size, validate_upload_mime
from skinscan.schemas.upload import UploadUrlRequest, UploadUrlResponse
from skinscan.services.storage_service import StorageService, get_storage

router = APIRouter(tags=["Uploads"])
logger = get_logger("uploads")


@router.post("/upload-url", response_model=UploadUrlResponse)
async def create_upload_url(
    data: UploadUrlRequest,
    request: Request,
    response: Response,
    storage: StorageService = Depends(get_storage),
):
    """
    Validate the declared image type and hand back a fresh upload target.
    Every call gets a new blob name, so a target is never shared between captures.
    """
    quota = await rate_limit_upload(request)
    mime_type = validate_upload_mime(data.mime_type)
    if data.size_bytes is not None:
        validate_image_size(data.size_bytes)

    blob_name = StorageService.key_for_capture(mime_type)
    try:
        upload_url = await storage.presigned_upload_url(blob_name, mime_type)
        public_url = await storage.read_url(blob_name)
    except Exception as e:
        logger.error("Failed to issue upload URL for %s: %s", blob_name, str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error": "Service Unavailable",
                "message": "Could not create an upload URL. Please try again.",
                "retryAfter": 30,
            },
        )

    apply_rate_limit_headers(response, quota)
    logger.info(
        "Issued upload URL %s (user=%s, source=%s)",
        blob_name,
        data.metadata.user_id or request.headers.get("x-user-id") or "anonymous",
        data.metadata.source or "unknown",
    )
    return UploadUrlResponse(
        upload_url=upload_url,
        public_url=public_url,
        blob_url=public_url,
        blob_name=blob_name,
        expires_at=datetime.now(timezone.utc) + timedelta(seconds=storage.upload_ttl),
    )
