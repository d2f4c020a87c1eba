"""
Queued inference jobs (`POST /infer` with `sync: false`).
Runs the model, then POSTs the result to the caller's webhook if one was given.
"""

import asyncio

import httpx

from skinscan.celery_app import celery_app
from skinscan.core.exceptions import UpstreamError
from skinscan.core.logging import get_logger, log_context
from skinscan.services.inference_service import InferenceService

logger = get_logger("workers.inference")


def _deliver(webhook_url: str, body: dict) -> None:
    try:
        response = httpx.post(webhook_url, json=body, timeout=10.0)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        logger.warning(
            "Inference webhook delivery failed: %s", str(exc),
            extra=log_context(jobId=body.get("jobId"), webhook=webhook_url),
        )


@celery_app.task(
    bind=True,
    max_retries=2,
    default_retry_delay=30,
    name="skinscan.workers.inference_tasks.run_inference",
)
def run_inference(self, image_url: str, user_id: str | None = None, webhook_url: str | None = None):
    """Run inference for one image; the return value is stored as the task result."""
    context = log_context(jobId=self.request.id, userId=user_id or "anonymous")
    service = InferenceService.from_settings()
    try:
        result = asyncio.run(service.infer(image_url))
    except UpstreamError as exc:
        logger.error("Queued inference failed: %s", exc.message, extra=context)
        if webhook_url:
            _deliver(webhook_url, {"jobId": self.request.id, "status": "failed", "error": exc.to_dict()})
        raise

    logger.info(
        "Queued inference done: %d predictions%s",
        len(result.get("predictions") or []),
        " (fallback)" if result.get("fallback") else "",
        extra=context,
    )
    if webhook_url:
        _deliver(webhook_url, {"jobId": self.request.id, "status": "completed", "result": result})
    return result
