"""
Capture Controller: owns one camera stream and produces still frames.

Lifecycle: idle -> requesting -> active -> (captured | error).
switch_facing re-enters requesting. Only one stream is open per controller;
concurrent start/switch calls are serialised by an asyncio lock, and every
exit path goes through stop(), which is idempotent.

Device errors are surfaced to the caller and never retried here.
"""
import asyncio
import logging
import os
import sys
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional

import cv2
import numpy as np
from fastapi.concurrency import run_in_threadpool

from models.domain import CaptureFrame, Facing, FrameSource
from utils.config import (
    CAMERA_BACK_INDEX,
    CAMERA_FRONT_INDEX,
    CAPTURE_HEIGHT,
    CAPTURE_JPEG_QUALITY,
    CAPTURE_WIDTH,
)
from utils.date_utils import utc_now
from utils.exceptions import (
    CaptureError,
    CaptureNotReadyError,
    DeviceError,
    DeviceNotFoundError,
    PermissionDeniedError,
)
from utils.image_manager import encode_data_uri

logger = logging.getLogger(__name__)


class CaptureState(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    ACTIVE = "active"
    CAPTURED = "captured"
    ERROR = "error"


class CameraBackend(ABC):
    """Hardware access. Methods are blocking and run in a worker thread."""

    @abstractmethod
    def open(self, facing: Facing, width: int, height: int) -> Any:
        """Open a device; raise a CaptureError subclass on failure."""

    @abstractmethod
    def read(self, device: Any) -> Optional[np.ndarray]:
        """Latest BGR frame, or None if the stream has not produced one yet."""

    @abstractmethod
    def release(self, device: Any) -> None:
        ...


class OpenCVCameraBackend(CameraBackend):
    """cv2.VideoCapture backend. Facing maps to a configured device index."""

    def __init__(self, front_index: int = CAMERA_FRONT_INDEX, back_index: int = CAMERA_BACK_INDEX):
        self.indexes = {Facing.FRONT: front_index, Facing.BACK: back_index}

    def open(self, facing: Facing, width: int, height: int) -> cv2.VideoCapture:
        index = self.indexes[facing]
        device_path = f"/dev/video{index}"
        on_linux = sys.platform.startswith("linux")

        if on_linux and os.path.exists(device_path) and not os.access(device_path, os.R_OK | os.W_OK):
            raise PermissionDeniedError(details={"facing": facing.value})

        cap = cv2.VideoCapture(index)
        if not cap.isOpened():
            cap.release()
            if on_linux and not os.path.exists(device_path):
                raise DeviceNotFoundError(details={"facing": facing.value})
            raise DeviceError(details={"facing": facing.value, "index": index})

        # resolution is a hint; drivers may pick the closest supported mode
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
        return cap

    def read(self, device: cv2.VideoCapture) -> Optional[np.ndarray]:
        ok, frame = device.read()
        if not ok or frame is None:
            return None
        return frame

    def release(self, device: cv2.VideoCapture) -> None:
        device.release()


@dataclass(eq=False)
class StreamHandle:
    facing: Facing
    width: int
    height: int
    device: Any = field(repr=False)
    opened_at: datetime = field(default_factory=utc_now)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    preview_surface: Optional[str] = None
    released: bool = False

    @property
    def active(self) -> bool:
        return not self.released

    @property
    def mirror_preview(self) -> bool:
        """Selfie-style preview: the front camera is shown flipped."""
        return self.facing is Facing.FRONT


class CaptureController:
    def __init__(
        self,
        backend: CameraBackend,
        jpeg_quality: int = CAPTURE_JPEG_QUALITY,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.backend = backend
        self.jpeg_quality = jpeg_quality
        self.state = CaptureState.IDLE
        self._clock = clock
        self._handle: Optional[StreamHandle] = None
        self._last_captured_at: Optional[datetime] = None
        self._lock = asyncio.Lock()

    @property
    def active_handle(self) -> Optional[StreamHandle]:
        return self._handle

    @property
    def is_streaming(self) -> bool:
        return self._handle is not None and self._handle.active

    async def start(
        self,
        facing: Facing = Facing.FRONT,
        target_width: int = CAPTURE_WIDTH,
        target_height: int = CAPTURE_HEIGHT,
    ) -> StreamHandle:
        """
        Open a stream with the preferred facing and resolution hint.

        A start with the facing of the already-open stream returns that
        stream. A start with a different facing is refused (use
        switch_facing).

        Raises:
            PermissionDeniedError, DeviceNotFoundError, DeviceError
        """
        async with self._lock:
            return await self._open(facing, target_width, target_height)

    async def _open(self, facing: Facing, width: int, height: int) -> StreamHandle:
        if self.is_streaming:
            if self._handle.facing == facing:
                return self._handle
            raise DeviceError(
                "Another camera stream is already open",
                code="DEVICE_BUSY",
                details={"facing": self._handle.facing.value},
            )

        self.state = CaptureState.REQUESTING
        try:
            device = await run_in_threadpool(self.backend.open, facing, width, height)
        except CaptureError as e:
            self.state = CaptureState.ERROR
            logger.warning("Camera start failed: %s", e.code, extra={"operation": "capture_start", "outcome": e.code})
            raise

        self._handle = StreamHandle(facing=facing, width=width, height=height, device=device)
        self.state = CaptureState.ACTIVE
        logger.info("Camera stream %s opened (%s)", self._handle.id, facing.value)
        return self._handle

    def attach_preview(self, handle: StreamHandle, surface: str = "default") -> None:
        """Bind the stream to a preview surface. Re-attaching is a no-op."""
        self._require_current(handle)
        if handle.preview_surface == surface:
            return
        handle.preview_surface = surface

    async def capture(self, handle: StreamHandle) -> CaptureFrame:
        """
        Freeze the current frame as a JPEG data URI.

        The frame keeps sensor orientation even when the preview is
        mirrored; the registry matches against unmirrored photos.

        Raises:
            CaptureNotReadyError: No frame yet, or the stream is not open
        """
        self._require_current(handle)
        image = await run_in_threadpool(self.backend.read, handle.device)
        if image is None or image.size == 0:
            raise CaptureNotReadyError(details={"stream_id": handle.id})

        try:
            payload = await run_in_threadpool(encode_data_uri, image, "jpeg", self.jpeg_quality)
        except ValueError as e:
            self.state = CaptureState.ERROR
            raise DeviceError(f"Could not encode frame: {e}")

        h, w = image.shape[:2]
        frame = CaptureFrame(
            image_format="jpeg",
            payload=payload,
            captured_at=self._next_timestamp(),
            facing=handle.facing,
            source=FrameSource.DEVICE,
            width=w,
            height=h,
        )
        self.state = CaptureState.CAPTURED
        return frame

    async def switch_facing(self, handle: StreamHandle) -> StreamHandle:
        """Release the current stream, then open the opposite facing."""
        async with self._lock:
            self._require_current(handle)
            self._release(handle)
            return await self._open(handle.facing.opposite(), handle.width, handle.height)

    def stop(self, handle: Optional[StreamHandle] = None) -> None:
        """Release the stream. Safe to call repeatedly and with no stream open."""
        handle = handle or self._handle
        if handle is not None:
            self._release(handle)

    def _release(self, handle: StreamHandle) -> None:
        if handle.released:
            return
        handle.released = True
        try:
            self.backend.release(handle.device)
        finally:
            if self._handle is handle:
                self._handle = None
                self.state = CaptureState.IDLE
            logger.info("Camera stream %s released", handle.id)

    def _require_current(self, handle: StreamHandle) -> None:
        if handle.released or handle is not self._handle:
            raise CaptureNotReadyError(details={"stream_id": handle.id, "reason": "stream not open"})

    def _next_timestamp(self) -> datetime:
        # capture timestamps strictly increase per controller
        now = self._clock()
        if self._last_captured_at is not None and now <= self._last_captured_at:
            now = self._last_captured_at + timedelta(microseconds=1)
        self._last_captured_at = now
        return now

    async def __aenter__(self) -> "CaptureController":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.stop()
