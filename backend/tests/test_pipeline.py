import asyncio
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from skinscan.capture.media import CaptureSession, CaptureSource
from skinscan.capture.pipeline import PipelineState, PipelineView, UploadPipeline
from skinscan.client.api_client import ResilientApiClient
from skinscan.client.identity import ClientIdentity
from skinscan.core.exceptions import DecodeError, ErrorCategory

HAPPY_STATES = [
    PipelineState.VALIDATING,
    PipelineState.DOWNSCALING,
    PipelineState.REQUESTING_UPLOAD_TARGET,
    PipelineState.UPLOADING,
    PipelineState.PREVIEWING,
    PipelineState.INFERRING,
    PipelineState.COMPLETED,
]


class _RecordingView(PipelineView):
    def __init__(self):
        self.controls = []
        self.previews = []
        self.statuses = []
        self.live = 0

    def set_controls_enabled(self, enabled):
        self.controls.append(enabled)

    def show_preview(self, image_url):
        self.previews.append(image_url)

    def show_live(self):
        self.live += 1

    def show_status(self, status):
        self.statuses.append(status)


class _FakeApi:
    """Upload-url, blob PUT and infer endpoints with scriptable failures."""

    def __init__(self):
        self.requests = []
        self.counter = 0
        self.upload_url_responses = []
        self.infer_responses = []
        self.fixed_upload_url = None
        self.infer_gate = None
        self.infer_started = asyncio.Event()

    async def __call__(self, request):
        self.requests.append(request)
        if request.url.path == "/upload-url":
            if self.upload_url_responses:
                return self._next(self.upload_url_responses, request)
            self.counter += 1
            return httpx.Response(
                200,
                json={
                    "uploadUrl": self.fixed_upload_url or f"https://blob.test/put/{self.counter}?sig=abc",
                    "publicUrl": f"https://cdn.test/uploads/{self.counter}.jpeg",
                    "blobName": f"uploads/{self.counter}.jpeg",
                },
            )
        if request.url.host == "blob.test":
            return httpx.Response(201)
        if request.url.path == "/infer":
            if self.infer_gate is not None:
                gate, self.infer_gate = self.infer_gate, None
                self.infer_started.set()
                await gate.wait()
            if self.infer_responses:
                return self._next(self.infer_responses, request)
            return httpx.Response(200, json={"predictions": [{"class": "acne", "confidence": 0.9}]})
        return httpx.Response(404)

    @staticmethod
    def _next(queue, request):
        item = queue.pop(0)
        if isinstance(item, type) and issubclass(item, httpx.TransportError):
            raise item("unreachable", request=request)
        return item

    def paths(self):
        return [(r.method, r.url.host, r.url.path) for r in self.requests]


def _session(mime_type="image/png", size=1000):
    return CaptureSession(
        source=CaptureSource.FILE,
        raw_blob=b"x" * size,
        mime_type=mime_type,
        size_bytes=size,
    )


def _pipeline(tmp_path, api, view=None, online=True, preprocess=None, **kwargs):
    async def _sleep(seconds):
        pass

    async def _probe():
        return online

    client = ResilientApiClient(
        "http://api.test",
        ClientIdentity(tmp_path / "identity"),
        max_attempts=3,
        base_delay_ms=10,
        transport=httpx.MockTransport(api),
        sleep=_sleep,
    )
    return UploadPipeline(
        client,
        view or _RecordingView(),
        preprocess=preprocess or (lambda blob, max_dim, quality: b"jpeg-bytes"),
        online_probe=_probe,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_happy_path_runs_every_step_in_order(tmp_path):
    api = _FakeApi()
    view = _RecordingView()
    pipeline = _pipeline(tmp_path, api, view)

    outcome = await pipeline.run(_session(), user_data={"age": 30})

    assert outcome.state is PipelineState.COMPLETED
    assert outcome.result.kind == "ready"
    assert outcome.superseded is False
    assert [s.state for s in pipeline.history] == HAPPY_STATES
    assert view.controls == [False, True]
    assert view.previews == ["https://cdn.test/uploads/1.jpeg"]

    upload_target, put, infer = api.requests
    assert json.loads(upload_target.content)["mimeType"] == "image/jpeg"
    assert put.method == "PUT"
    assert put.content == b"jpeg-bytes"
    assert put.headers["Content-Type"] == "image/jpeg"
    assert "X-User-Id" not in put.headers
    infer_body = json.loads(infer.content)
    assert infer_body["imageUrl"] == "https://cdn.test/uploads/1.jpeg"
    assert infer_body["userData"] == {"age": 30}
    assert infer_body["userId"] == infer.headers["X-User-Id"]


@pytest.mark.asyncio
async def test_unsupported_mime_fails_before_any_network_call(tmp_path):
    api = _FakeApi()
    view = _RecordingView()
    pipeline = _pipeline(tmp_path, api, view)

    outcome = await pipeline.run(_session(mime_type="image/gif"))

    assert outcome.state is PipelineState.FAILED
    assert outcome.category is ErrorCategory.VALIDATION
    assert "JPEG, PNG or WebP" in outcome.message
    assert api.requests == []
    assert view.controls == [False, True]


@pytest.mark.asyncio
async def test_oversized_capture_is_rejected_locally(tmp_path):
    api = _FakeApi()
    pipeline = _pipeline(tmp_path, api, max_upload_bytes=500)

    outcome = await pipeline.run(_session(size=501))

    assert outcome.category is ErrorCategory.VALIDATION
    assert api.requests == []


@pytest.mark.asyncio
async def test_accepted_inference_is_queued(tmp_path):
    api = _FakeApi()
    api.infer_responses.append(
        httpx.Response(202, json={"message": "Inference queued", "jobId": "job-7", "status": "queued"})
    )
    pipeline = _pipeline(tmp_path, api)

    outcome = await pipeline.run(_session())

    assert outcome.state is PipelineState.QUEUED
    assert outcome.result.kind == "queued"
    assert outcome.result.job_id == "job-7"
    assert pipeline.state is PipelineState.QUEUED


@pytest.mark.asyncio
async def test_rate_limited_inference_shows_countdown(tmp_path):
    api = _FakeApi()
    reset = (datetime.now(timezone.utc) + timedelta(seconds=150)).isoformat()
    api.infer_responses.append(httpx.Response(429, headers={"X-RateLimit-Reset": reset}))
    view = _RecordingView()
    pipeline = _pipeline(tmp_path, api, view)

    outcome = await pipeline.run(_session())

    assert outcome.state is PipelineState.FAILED
    assert outcome.category is ErrorCategory.RATE_LIMITED
    assert outcome.message == "Too many attempts. Try again in 3 minutes."
    assert sum(1 for r in api.requests if r.url.path == "/infer") == 1
    assert view.controls == [False, True]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "online,message",
    [
        (False, "You appear to be offline. Check your connection."),
        (True, "Server unreachable. Please try again shortly."),
    ],
)
async def test_network_failure_distinguishes_offline(tmp_path, online, message):
    api = _FakeApi()
    api.upload_url_responses.extend([httpx.ConnectError] * 3)
    pipeline = _pipeline(tmp_path, api, online=online)

    outcome = await pipeline.run(_session())

    assert outcome.category is ErrorCategory.NETWORK
    assert outcome.message == message
    assert len(api.requests) == 3


@pytest.mark.asyncio
async def test_transient_upload_target_failure_is_retried_with_status(tmp_path):
    api = _FakeApi()
    api.upload_url_responses.append(httpx.Response(500))
    pipeline = _pipeline(tmp_path, api)

    outcome = await pipeline.run(_session())

    assert outcome.state is PipelineState.COMPLETED
    retries = [s for s in pipeline.history if s.attempt is not None]
    assert len(retries) == 1
    assert retries[0].state is PipelineState.REQUESTING_UPLOAD_TARGET
    assert (retries[0].attempt, retries[0].max_attempts) == (2, 3)


@pytest.mark.asyncio
async def test_decode_failure_is_reported(tmp_path):
    def _broken(blob, max_dim, quality):
        raise DecodeError("cannot identify image file")

    api = _FakeApi()
    pipeline = _pipeline(tmp_path, api, preprocess=_broken)

    outcome = await pipeline.run(_session())

    assert outcome.category is ErrorCategory.DECODE
    assert api.requests == []


@pytest.mark.asyncio
async def test_upload_target_is_never_reused(tmp_path):
    api = _FakeApi()
    api.fixed_upload_url = "https://blob.test/put/same?sig=1"
    pipeline = _pipeline(tmp_path, api)

    first = await pipeline.run(_session())
    second = await pipeline.run(_session())

    assert first.state is PipelineState.COMPLETED
    assert second.state is PipelineState.FAILED
    assert second.category is ErrorCategory.SERVER
    assert sum(1 for r in api.requests if r.method == "PUT") == 1


@pytest.mark.asyncio
async def test_superseded_run_no_longer_drives_the_ui(tmp_path):
    api = _FakeApi()
    api.infer_gate = asyncio.Event()
    gate = api.infer_gate
    view = _RecordingView()
    pipeline = _pipeline(tmp_path, api, view)
    old, new = _session(), _session()

    old_run = asyncio.create_task(pipeline.run(old))
    await api.infer_started.wait()

    new_outcome = await pipeline.run(new)
    gate.set()
    old_outcome = await old_run

    assert new_outcome.superseded is False
    assert old_outcome.superseded is True
    assert old_outcome.state is PipelineState.COMPLETED
    assert pipeline.state is PipelineState.COMPLETED
    assert pipeline.history[-1].session_id == new.session_id

    first_new = next(i for i, s in enumerate(view.statuses) if s.session_id == new.session_id)
    assert all(s.session_id == new.session_id for s in view.statuses[first_new:])
    # old run disabled, new run disabled then re-enabled; the old run never re-enables
    assert view.controls == [False, False, True]


@pytest.mark.asyncio
async def test_reset_returns_to_live_view(tmp_path):
    view = _RecordingView()
    pipeline = _pipeline(tmp_path, _FakeApi(), view)
    await pipeline.run(_session())

    pipeline.reset()

    assert pipeline.state is PipelineState.IDLE
    assert view.live == 1
    assert view.controls[-1] is True


@pytest.mark.asyncio
async def test_failed_health_check_only_warns(tmp_path):
    def _down(request):
        return httpx.Response(503)

    view = _RecordingView()
    pipeline = _pipeline(tmp_path, _down, view)

    assert await pipeline.check_health() is False
    assert view.statuses[-1].level == "warning"
