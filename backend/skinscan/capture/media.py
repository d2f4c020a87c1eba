"""
Camera and file capture.

`CaptureController` exclusively owns the live camera stream and the single
active capture session. Device access goes through a `CameraBackend`
so the controller's lifecycle rules can be exercised without hardware.
"""

import asyncio
import mimetypes
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

from pydantic import BaseModel, Field

from skinscan.core.exceptions import CameraUnavailableError
from skinscan.core.logging import get_logger
from skinscan.core.validators import sniff_image_mime

logger = get_logger("media")


class Facing(str, Enum):
    USER = "user"
    ENVIRONMENT = "environment"

    @property
    def opposite(self) -> "Facing":
        return Facing.ENVIRONMENT if self is Facing.USER else Facing.USER


class CaptureSource(str, Enum):
    CAMERA = "camera"
    FILE = "file"


class CaptureSession(BaseModel):
    """One user-initiated photo moving through the pipeline."""

    session_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    source: CaptureSource
    raw_blob: bytes
    mime_type: str
    size_bytes: int
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ── Device access ────────────────────────────────────────────────────────────

class CameraStream:
    """A live device stream; holds a hardware lock until stopped."""

    def __init__(self, facing: Facing, handle: object = None):
        self.facing = facing
        self.handle = handle
        self.active = True

    def stop(self) -> None:
        self.active = False


class CameraBackend:
    """Platform camera access. Subclasses implement the three methods."""

    async def open(self, facing: Facing) -> CameraStream:
        raise NotImplementedError

    async def list_video_inputs(self) -> list[str]:
        raise NotImplementedError

    async def grab(self, stream: CameraStream) -> bytes:
        """Return one JPEG-encoded frame."""
        raise NotImplementedError

    def release(self, stream: CameraStream) -> None:
        stream.stop()


class OpenCVCameraBackend(CameraBackend):
    """
    OpenCV-backed camera. Facing maps to a device index
    (user → 0, environment → 1) since desktop drivers expose no facing hint.
    """

    MAX_PROBE_INDEX = 4

    def __init__(self, width: int = 1920, height: int = 1080, jpeg_quality: int = 90):
        self.width = width
        self.height = height
        self.jpeg_quality = jpeg_quality

    @staticmethod
    async def _run(fn, *args):
        return await asyncio.get_running_loop().run_in_executor(None, fn, *args)

    async def open(self, facing: Facing) -> CameraStream:
        import cv2

        index = 0 if facing is Facing.USER else 1

        def _open():
            cap = cv2.VideoCapture(index)
            if not cap.isOpened():
                cap.release()
                raise CameraUnavailableError(f"No camera at index {index}")
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
            return cap

        cap = await self._run(_open)
        return CameraStream(facing, handle=cap)

    async def list_video_inputs(self) -> list[str]:
        import cv2

        def _probe() -> list[str]:
            found = []
            for index in range(self.MAX_PROBE_INDEX):
                cap = cv2.VideoCapture(index)
                if cap.isOpened():
                    found.append(f"video{index}")
                cap.release()
            return found

        return await self._run(_probe)

    async def grab(self, stream: CameraStream) -> bytes:
        import cv2

        def _grab() -> bytes:
            ok, frame = stream.handle.read()
            if not ok:
                raise CameraUnavailableError("Camera returned no frame")
            ok, encoded = cv2.imencode(
                ".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), self.jpeg_quality]
            )
            if not ok:
                raise CameraUnavailableError("Could not encode camera frame")
            return encoded.tobytes()

        return await self._run(_grab)

    def release(self, stream: CameraStream) -> None:
        if stream.handle is not None:
            stream.handle.release()
        stream.stop()


# ── Controller ───────────────────────────────────────────────────────────────

class CaptureController:
    """
    Owns the camera stream and the current capture session.

    Invariants
    ──────────
    • At most one live stream: the old stream is released before a new one
      is opened, and start/switch/stop are serialized by a lock.
    • At most one session: a new capture replaces the previous one.
    """

    def __init__(
        self,
        backend: CameraBackend,
        on_session: Callable[[CaptureSession], None] | None = None,
    ):
        self.backend = backend
        self.on_session = on_session
        self.stream: CameraStream | None = None
        self.facing = Facing.USER
        self.session: CaptureSession | None = None
        self.switch_available = False
        self.file_only = False
        self._lock = asyncio.Lock()

    # ── Stream lifecycle ─────────────────────────────────────────────────

    async def start(self, facing: Facing = Facing.USER) -> bool:
        """
        Acquire the camera. Returns False (and falls back to file-picker-only
        mode) when access is denied or no camera exists.
        """
        async with self._lock:
            return await self._start_locked(facing)

    async def _start_locked(self, facing: Facing) -> bool:
        self._release_stream()

        try:
            self.stream = await self.backend.open(facing)
        except (CameraUnavailableError, PermissionError, OSError) as exc:
            logger.warning("Camera unavailable (%s): %s", facing.value, exc)
            self.stream = None
            self.switch_available = False
            self.file_only = True
            return False

        self.facing = facing
        self.file_only = False

        try:
            inputs = await self.backend.list_video_inputs()
        except (CameraUnavailableError, OSError) as exc:
            logger.warning("Could not enumerate video inputs: %s", exc)
            inputs = []
        self.switch_available = len(inputs) > 1

        logger.info(
            "Camera started (facing=%s, inputs=%d, switch=%s)",
            facing.value, len(inputs), self.switch_available,
        )
        return True

    async def switch_facing(self) -> bool:
        """Re-acquire the stream with the opposite facing."""
        async with self._lock:
            return await self._start_locked(self.facing.opposite)

    async def stop(self) -> None:
        async with self._lock:
            self._release_stream()

    def _release_stream(self) -> None:
        if self.stream is not None:
            self.backend.release(self.stream)
            self.stream = None

    # ── Sessions ─────────────────────────────────────────────────────────

    async def capture(self) -> CaptureSession:
        """Take a still from the live stream and make it the active session."""
        async with self._lock:
            if self.stream is None or not self.stream.active:
                raise CameraUnavailableError("Camera is not running")
            blob = await self.backend.grab(self.stream)
        return self._begin_session(CaptureSource.CAMERA, blob, "image/jpeg")

    def select_file(
        self,
        data: bytes,
        mime_type: str | None = None,
        filename: str | None = None,
    ) -> CaptureSession:
        """Make a picked file the active session."""
        mime = mime_type or sniff_image_mime(data)
        if not mime and filename:
            mime = mimetypes.guess_type(filename)[0]
        return self._begin_session(CaptureSource.FILE, data, mime or "application/octet-stream")

    def _begin_session(self, source: CaptureSource, blob: bytes, mime_type: str) -> CaptureSession:
        session = CaptureSession(
            source=source,
            raw_blob=blob,
            mime_type=mime_type,
            size_bytes=len(blob),
        )
        if self.session is not None:
            logger.info("Session %s superseded by %s", self.session.session_id, session.session_id)
        self.session = session
        if self.on_session is not None:
            self.on_session(session)
        return session

    def end_session(self, session_id: str) -> None:
        """Drop the session once its pipeline run is finished."""
        if self.session is not None and self.session.session_id == session_id:
            self.session = None
