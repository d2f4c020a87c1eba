import asyncio

import pytest

from skinscan.capture.media import (
    CameraBackend,
    CameraStream,
    CaptureController,
    CaptureSource,
    Facing,
)
from skinscan.core.exceptions import CameraUnavailableError

PNG_HEADER = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16


class _FakeBackend(CameraBackend):
    def __init__(self, inputs=2, deny=False):
        self.inputs = inputs
        self.deny = deny
        self.opened = []

    async def open(self, facing):
        await asyncio.sleep(0)
        if self.deny:
            raise PermissionError("NotAllowedError")
        stream = CameraStream(facing)
        self.opened.append(stream)
        return stream

    async def list_video_inputs(self):
        return [f"video{i}" for i in range(self.inputs)]

    async def grab(self, stream):
        return b"\xff\xd8\xff" + b"frame"

    def active_streams(self):
        return [s for s in self.opened if s.active]


@pytest.mark.asyncio
async def test_repeated_switching_leaves_one_active_stream():
    backend = _FakeBackend()
    controller = CaptureController(backend)
    await controller.start()

    for _ in range(5):
        await controller.switch_facing()

    assert len(backend.active_streams()) == 1
    assert controller.stream is backend.active_streams()[0]
    assert controller.facing is Facing.ENVIRONMENT


@pytest.mark.asyncio
async def test_concurrent_switching_leaves_one_active_stream():
    backend = _FakeBackend()
    controller = CaptureController(backend)
    await controller.start()

    await asyncio.gather(*(controller.switch_facing() for _ in range(6)))

    assert len(backend.opened) == 7
    assert len(backend.active_streams()) == 1
    assert controller.facing is Facing.USER


@pytest.mark.asyncio
async def test_denied_camera_falls_back_to_file_only():
    controller = CaptureController(_FakeBackend(deny=True))

    assert await controller.start() is False
    assert controller.file_only is True
    assert controller.switch_available is False
    with pytest.raises(CameraUnavailableError):
        await controller.capture()


@pytest.mark.asyncio
@pytest.mark.parametrize("inputs,available", [(1, False), (2, True)])
async def test_switch_control_follows_camera_count(inputs, available):
    controller = CaptureController(_FakeBackend(inputs=inputs))
    await controller.start()
    assert controller.switch_available is available


@pytest.mark.asyncio
async def test_stop_releases_the_stream():
    backend = _FakeBackend()
    controller = CaptureController(backend)
    await controller.start()

    await controller.stop()

    assert backend.active_streams() == []
    assert controller.stream is None


@pytest.mark.asyncio
async def test_new_capture_replaces_active_session():
    seen = []
    controller = CaptureController(_FakeBackend(), on_session=seen.append)
    await controller.start()

    first = await controller.capture()
    second = controller.select_file(PNG_HEADER)

    assert first.source is CaptureSource.CAMERA
    assert first.mime_type == "image/jpeg"
    assert second.mime_type == "image/png"
    assert controller.session is second
    assert seen == [first, second]

    controller.end_session(first.session_id)
    assert controller.session is second
    controller.end_session(second.session_id)
    assert controller.session is None


def test_file_type_falls_back_to_filename():
    controller = CaptureController(_FakeBackend())
    session = controller.select_file(b"????", filename="selfie.png")
    assert session.mime_type == "image/png"
