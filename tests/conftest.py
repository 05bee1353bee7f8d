"""
Pytest Configuration and Fixtures

Shared fixtures for the identity verification test suite.
Run with: pytest -v
"""
import os
import sys
import threading
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

# Tests run against in-memory SQLite, without auth or a real camera.
# Must be set before any application module reads utils.config.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["API_KEYS"] = ""
os.environ["CAMERA_BACKEND"] = "none"
os.environ["LOG_JSON_FORMAT"] = "false"

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import cv2
import numpy as np
import pytest
import pytest_asyncio

from models.domain import CaptureFrame, Facing, FrameSource, RegistryResponse, VerificationSubject
from services.capture_controller import CameraBackend
from services.db import build_engine, build_session_factory, init_db
from services.quota_guard import InMemoryQuotaStore, QuotaGuard
from services.registry_client import RegistryTransport
from utils.exceptions import DeviceError


SAMPLE_IDENTITY_NUMBER = "11793253275"


class FixedClock:
    """Controllable UTC clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 10, 18, 9, 30, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeTransport(RegistryTransport):
    """
    Registry stand-in that records every call.

    `gate` (optional) blocks the call until set, to simulate a slow registry.
    """
    name = "fake"

    def __init__(self, score: float = 0.92, error: Optional[Exception] = None):
        self.response = RegistryResponse(score=score, raw={"matchScore": score})
        self.error = error
        self.calls: List[tuple] = []
        self.entered = threading.Event()
        self.gate: Optional[threading.Event] = None

    def respond(self, score: float = None, error: Optional[Exception] = None, mismatched_fields=None):
        if score is not None:
            self.response = RegistryResponse(
                score=score,
                raw={"matchScore": score},
                mismatched_fields=mismatched_fields or [],
            )
        self.error = error

    def _answer(self) -> RegistryResponse:
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.error is not None:
            raise self.error
        return self.response

    def match_attributes(self, request):
        self.calls.append(("attributes", request))
        return self._answer()

    def match_face(self, identity_number, image_base64):
        self.calls.append(("face", identity_number, image_base64))
        return self._answer()


class FakeCameraBackend(CameraBackend):
    """
    Camera stand-in enforcing exclusive access like real hardware:
    opening a second device while one is open fails with DEVICE_BUSY.
    """

    def __init__(self, ready: bool = True, open_error: Optional[Exception] = None):
        self.ready = ready
        self.open_error = open_error
        self.open_devices: List[dict] = []
        self.opened: List[Facing] = []
        self.released: List[dict] = []

    def open(self, facing, width, height):
        if self.open_error is not None:
            raise self.open_error
        if self.open_devices:
            raise DeviceError("Device already in use", code="DEVICE_BUSY")
        device = {"facing": facing, "width": width, "height": height}
        self.open_devices.append(device)
        self.opened.append(facing)
        return device

    def read(self, device):
        if not self.ready:
            return None
        # left half white, right half black: mirroring is observable
        image = np.zeros((120, 160, 3), dtype=np.uint8)
        image[:, :80] = 255
        return image

    def release(self, device):
        self.open_devices.remove(device)
        self.released.append(device)


def make_image_payload(width: int = 160, height: int = 120, prefix: bool = True) -> str:
    """A small JPEG as a data URI (or raw base64)."""
    import base64

    image = np.full((height, width, 3), 128, dtype=np.uint8)
    cv2.circle(image, (width // 2, height // 2), min(width, height) // 3, (200, 180, 160), -1)
    ok, buffer = cv2.imencode(".jpg", image)
    assert ok
    encoded = base64.b64encode(buffer.tobytes()).decode("ascii")
    return f"data:image/jpeg;base64,{encoded}" if prefix else encoded


def make_frame(clock: FixedClock, source: FrameSource = FrameSource.CLIENT, payload: Optional[str] = None) -> CaptureFrame:
    return CaptureFrame(
        image_format="jpeg",
        payload=payload if payload is not None else make_image_payload(),
        captured_at=clock(),
        facing=Facing.FRONT,
        source=source,
    )


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def subject():
    """Sample subject used across verification scenarios."""
    return VerificationSubject(
        user_id="user-aicha",
        identity_number=SAMPLE_IDENTITY_NUMBER,
        first_name="Aïcha",
        last_name="Koné",
        birth_date=date(1990, 5, 12),
        birth_town="Abidjan",
    )


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def camera_backend():
    return FakeCameraBackend()


@pytest.fixture
def quota_store():
    return InMemoryQuotaStore()


@pytest.fixture
def quota_guard(quota_store, clock):
    return QuotaGuard(quota_store, daily_limit=100, low_threshold=10, clock=clock)


@pytest_asyncio.fixture
async def db_engine():
    """Fresh in-memory database per test."""
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    await init_db(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)
