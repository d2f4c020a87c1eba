"""
Inference endpoint.
Runs the model synchronously (cached per image URL) or queues it on Celery.
"""

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from skinscan.core.exceptions import UpstreamError
from skinscan.core.logging import get_logger
from skinscan.core.rate_limiter import apply_rate_limit_headers, rate_limit_infer
from skinscan.schemas.inference import InferQueuedResponse, InferRequest
from skinscan.services.inference_service import InferenceService, get_inference_service

router = APIRouter(tags=["Inference"])
logger = get_logger("inference")


def _unavailable(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"error": "Service Unavailable", "message": message, "retryAfter": 30},
        headers={"Retry-After": "30"},
    )


@router.post("/infer")
async def infer(
    data: InferRequest,
    request: Request,
    response: Response,
    service: InferenceService = Depends(get_inference_service),
):
    """
    Analyze an uploaded image.
    `sync: false` returns 202 with a job ID; the result goes to `webhookUrl` if given.
    """
    quota = await rate_limit_infer(request)
    image_url = str(data.image_url)
    user_id = data.user_id or request.headers.get("x-user-id")

    if not data.sync:
        from skinscan.workers.inference_tasks import run_inference

        try:
            job = await run_in_threadpool(
                run_inference.delay,
                image_url,
                user_id,
                str(data.webhook_url) if data.webhook_url else None,
            )
        except Exception as e:
            logger.error("Failed to queue inference for %s: %s", user_id or "anonymous", str(e))
            raise _unavailable("Could not queue the analysis. Please try again.")

        body = InferQueuedResponse(job_id=str(job.id)).model_dump(by_alias=True)
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=body, headers=quota.headers())

    try:
        result, cache_hit = await service.analyze(image_url)
    except UpstreamError as e:
        logger.error("Inference failed for %s: %s", user_id or "anonymous", e.message)
        raise _unavailable("Analysis service temporarily unavailable. Please try again.")

    apply_rate_limit_headers(response, quota)
    response.headers["X-Cache"] = "HIT" if cache_hit else "MISS"
    return result
