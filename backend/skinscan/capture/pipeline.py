"""
Capture-to-inference pipeline.

One run moves a capture session through:

    Idle → Validating → Downscaling → RequestingUploadTarget → Uploading
         → Previewing → Inferring → { Completed | Queued | Failed }

Steps run strictly in order. Starting a new run bumps the generation;
a superseded run keeps going on the network but no longer touches the UI
and its outcome is flagged `superseded`.
"""

import asyncio
import functools
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Awaitable, Callable, Literal, Union

import httpx
from pydantic import BaseModel, Field

from skinscan.client.api_client import ResilientApiClient, Success
from skinscan.core.config import get_settings
from skinscan.core.exceptions import (
    ApiError,
    DecodeError,
    ErrorCategory,
    ServerError,
    SkinScanError,
    ValidationError,
)
from skinscan.core.logging import get_logger
from skinscan.core.validators import ACCEPTED_CAPTURE_MIME_TYPES
from skinscan.capture import messages
from skinscan.capture.media import CaptureSession
from skinscan.capture.preprocess import OUTPUT_MIME_TYPE, recompress

logger = get_logger("pipeline")


class PipelineState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    DOWNSCALING = "downscaling"
    REQUESTING_UPLOAD_TARGET = "requesting_upload_target"
    UPLOADING = "uploading"
    PREVIEWING = "previewing"
    INFERRING = "inferring"
    COMPLETED = "completed"
    QUEUED = "queued"
    FAILED = "failed"


TERMINAL_STATES = frozenset({PipelineState.COMPLETED, PipelineState.QUEUED, PipelineState.FAILED})


# ── Data ─────────────────────────────────────────────────────────────────────

class UploadTicket(BaseModel):
    upload_url: str
    public_url: str
    mime_type: str
    blob_name: str | None = None
    expires_at: datetime | None = None


class InferenceReady(BaseModel):
    kind: Literal["ready"] = "ready"
    payload: dict


class InferenceQueued(BaseModel):
    kind: Literal["queued"] = "queued"
    retry_after_hint: int | None = None   # seconds
    job_id: str | None = None
    payload: dict | None = None


class InferenceFailed(BaseModel):
    kind: Literal["failed"] = "failed"
    reason: str


InferenceResult = Annotated[
    Union[InferenceReady, InferenceQueued, InferenceFailed],
    Field(discriminator="kind"),
]


class PipelineStatus(BaseModel):
    session_id: str
    generation: int
    state: PipelineState
    message: str
    level: str = messages.INFO
    attempt: int | None = None
    max_attempts: int | None = None
    category: ErrorCategory | None = None
    wait_ms: int | None = None


class PipelineOutcome(BaseModel):
    session_id: str
    generation: int
    state: PipelineState
    message: str
    result: InferenceResult | None = None
    category: ErrorCategory | None = None
    wait_ms: int | None = None
    public_url: str | None = None
    superseded: bool = False


class PipelineView:
    """UI hooks the pipeline drives. The defaults do nothing."""

    def set_controls_enabled(self, enabled: bool) -> None:
        pass

    def show_preview(self, image_url: str) -> None:
        pass

    def show_live(self) -> None:
        pass

    def show_status(self, status: PipelineStatus) -> None:
        pass


# ── Pipeline ─────────────────────────────────────────────────────────────────

class UploadPipeline:
    """Runs capture sessions through preprocessing, upload, and inference."""

    def __init__(
        self,
        client: ResilientApiClient,
        view: PipelineView | None = None,
        *,
        max_upload_bytes: int | None = None,
        max_dimension: int | None = None,
        quality: float | None = None,
        preprocess: Callable[[bytes, int, float], bytes] = recompress,
        online_probe: Callable[[], Awaitable[bool]] | None = None,
        source: str = "web",
    ):
        settings = get_settings()
        self.client = client
        self.view = view or PipelineView()
        self.max_upload_bytes = max_upload_bytes or settings.client_max_upload_bytes
        self.max_dimension = max_dimension or settings.CLIENT_MAX_DIMENSION
        self.quality = quality or settings.CLIENT_JPEG_QUALITY
        self.preprocess = preprocess
        self.online_probe = online_probe or functools.partial(
            messages.probe_online, settings.CLIENT_API_BASE_URL
        )
        self.source = source

        self.state = PipelineState.IDLE
        self.history: list[PipelineStatus] = []
        self._generation = 0
        self._used_upload_urls: set[str] = set()

    @property
    def generation(self) -> int:
        return self._generation

    def is_current(self, generation: int) -> bool:
        return generation == self._generation

    # ── Status plumbing ──────────────────────────────────────────────────

    def _emit(
        self,
        generation: int,
        session: CaptureSession,
        state: PipelineState,
        message: str,
        level: str = messages.INFO,
        **extra: Any,
    ) -> PipelineStatus:
        status = PipelineStatus(
            session_id=session.session_id,
            generation=generation,
            state=state,
            message=message,
            level=level,
            **extra,
        )
        if self.is_current(generation):
            self.state = state
            self.history.append(status)
            self.view.show_status(status)
        else:
            logger.debug("Discarding stale status %s for generation %d", state.value, generation)
        return status

    def _step(self, generation: int, session: CaptureSession, state: PipelineState) -> None:
        self._emit(generation, session, state, messages.STEP_MESSAGES[state.value])

    def _retry_hook(self, generation: int, session: CaptureSession, state: PipelineState):
        def _notify(attempt: int, max_attempts: int, error: ApiError, delay_ms: int) -> None:
            self._emit(
                generation,
                session,
                state,
                messages.retry_message(attempt, max_attempts),
                messages.WARNING,
                attempt=attempt,
                max_attempts=max_attempts,
            )
        return _notify

    # ── Run ──────────────────────────────────────────────────────────────

    async def run(
        self,
        session: CaptureSession,
        user_data: dict | None = None,
        metadata: dict | None = None,
    ) -> PipelineOutcome:
        """Drive one session to a terminal state. Never raises for pipeline failures."""
        self._generation += 1
        generation = self._generation
        self.view.set_controls_enabled(False)

        try:
            outcome = await self._run_steps(generation, session, user_data, metadata)
        except (ApiError, DecodeError) as exc:
            outcome = await self._fail(generation, session, exc)
        except Exception as exc:
            logger.exception("Unexpected pipeline failure for session %s", session.session_id)
            outcome = await self._fail(generation, session, SkinScanError(str(exc)))
        finally:
            if self.is_current(generation):
                self.view.set_controls_enabled(True)

        outcome.superseded = not self.is_current(generation)
        return outcome

    async def _run_steps(
        self,
        generation: int,
        session: CaptureSession,
        user_data: dict | None,
        metadata: dict | None,
    ) -> PipelineOutcome:
        # ── Validate ─────────────────────────────────────────────────────
        self._step(generation, session, PipelineState.VALIDATING)
        self._validate(session)

        # ── Downscale ────────────────────────────────────────────────────
        self._step(generation, session, PipelineState.DOWNSCALING)
        loop = asyncio.get_running_loop()
        blob = await loop.run_in_executor(
            None,
            functools.partial(self.preprocess, session.raw_blob, self.max_dimension, self.quality),
        )

        # ── Upload target ────────────────────────────────────────────────
        state = PipelineState.REQUESTING_UPLOAD_TARGET
        self._step(generation, session, state)
        response = await self.client.call(
            "POST",
            "/upload-url",
            json={
                "mimeType": OUTPUT_MIME_TYPE,
                "metadata": {"userId": self.client.identity.token, "source": self.source},
            },
            on_retry=self._retry_hook(generation, session, state),
        )
        ticket = self._parse_ticket(response)

        # ── Upload ───────────────────────────────────────────────────────
        state = PipelineState.UPLOADING
        self._step(generation, session, state)
        await self.client.call(
            "PUT",
            ticket.upload_url,
            content=blob,
            headers={"Content-Type": ticket.mime_type},
            identify=False,
            on_retry=self._retry_hook(generation, session, state),
        )

        # ── Preview ──────────────────────────────────────────────────────
        self._step(generation, session, PipelineState.PREVIEWING)
        if self.is_current(generation):
            self.view.show_preview(ticket.public_url)

        # ── Inference ────────────────────────────────────────────────────
        state = PipelineState.INFERRING
        self._step(generation, session, state)
        body: dict = {"imageUrl": ticket.public_url, "userId": self.client.identity.token}
        if user_data:
            body["userData"] = user_data
        if metadata:
            body["metadata"] = metadata
        response = await self.client.call(
            "POST",
            "/infer",
            json=body,
            on_retry=self._retry_hook(generation, session, state),
        )
        return self._interpret(generation, session, ticket, response)

    def _validate(self, session: CaptureSession) -> None:
        if session.mime_type not in ACCEPTED_CAPTURE_MIME_TYPES:
            raise ValidationError("Unsupported format. Use JPEG, PNG or WebP.")
        if session.size_bytes > self.max_upload_bytes:
            mb = self.max_upload_bytes // (1024 * 1024)
            raise ValidationError(f"Image too large (max {mb} MB).")

    def _parse_ticket(self, response: httpx.Response) -> UploadTicket:
        try:
            data = response.json()
            ticket = UploadTicket(
                upload_url=data["uploadUrl"],
                public_url=data.get("publicUrl") or data["blobUrl"],
                mime_type=OUTPUT_MIME_TYPE,
                blob_name=data.get("blobName"),
                expires_at=data.get("expiresAt"),
            )
        except (ValueError, KeyError, TypeError) as exc:
            raise ServerError(f"Malformed upload target response: {exc}") from exc

        if ticket.upload_url in self._used_upload_urls:
            raise ServerError("Upload target was already used by another capture")
        self._used_upload_urls.add(ticket.upload_url)
        return ticket

    def _interpret(
        self,
        generation: int,
        session: CaptureSession,
        ticket: UploadTicket,
        response: httpx.Response,
    ) -> PipelineOutcome:
        try:
            payload = response.json() if response.content else {}
        except ValueError:
            payload = {}

        if response.status_code == 202:
            hint = payload.get("retryAfter") or response.headers.get("Retry-After")
            result = InferenceQueued(
                retry_after_hint=int(hint) if str(hint or "").isdigit() else None,
                job_id=payload.get("jobId"),
                payload=payload or None,
            )
            message = "Analysis queued. Try again in a few seconds."
            self._emit(generation, session, PipelineState.QUEUED, message, messages.WARNING)
            return PipelineOutcome(
                session_id=session.session_id,
                generation=generation,
                state=PipelineState.QUEUED,
                message=message,
                result=result,
                public_url=ticket.public_url,
            )

        if not isinstance(payload, dict):
            raise ServerError("Inference response was not a JSON object")

        message, level = messages.describe_result(payload)
        self._emit(generation, session, PipelineState.COMPLETED, message, level)
        logger.info("Session %s completed (generation %d)", session.session_id, generation)
        return PipelineOutcome(
            session_id=session.session_id,
            generation=generation,
            state=PipelineState.COMPLETED,
            message=message,
            result=InferenceReady(payload=payload),
            public_url=ticket.public_url,
        )

    async def _fail(
        self,
        generation: int,
        session: CaptureSession,
        error: SkinScanError,
    ) -> PipelineOutcome:
        online = True
        if error.category is ErrorCategory.NETWORK:
            online = await self.online_probe()

        message = messages.describe_failure(error, online=online)
        wait_ms = getattr(error, "wait_ms", None)
        self._emit(
            generation,
            session,
            PipelineState.FAILED,
            message,
            messages.ERROR,
            category=error.category,
            wait_ms=wait_ms,
        )
        logger.warning(
            "Session %s failed (%s): %s", session.session_id, error.category.value, error.message
        )
        return PipelineOutcome(
            session_id=session.session_id,
            generation=generation,
            state=PipelineState.FAILED,
            message=message,
            result=InferenceFailed(reason=error.message),
            category=error.category,
            wait_ms=wait_ms,
        )

    # ── Other UI actions ─────────────────────────────────────────────────

    def reset(self) -> None:
        """Back to the live view, ready for a new capture."""
        self._generation += 1
        self.state = PipelineState.IDLE
        self.view.show_live()
        self.view.set_controls_enabled(True)

    async def check_health(self) -> bool:
        """Probe `/health` once. Failure is a warning, never a hard stop."""
        outcome = await self.client.attempt("GET", "/health")
        healthy = isinstance(outcome, Success)
        if not healthy:
            logger.warning("API health check failed: %s", outcome.error.message)
            self.view.show_status(
                PipelineStatus(
                    session_id="",
                    generation=self._generation,
                    state=self.state,
                    message="Analysis service is not reachable right now.",
                    level=messages.WARNING,
                )
            )
        return healthy
