"""
Service wiring shared by the API routes.

The lifespan in main.py builds one VerificationServices instance and puts
it on app.state; routes reach it through the get_services dependency.
Runtime config overrides are resolved per request (get_settings) and
applied when a route asks for a quota guard or a verifier.
"""
from dataclasses import dataclass, field
from typing import Callable, Optional

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models.domain import VerificationMethod
from services.attribute_verifier import AttributeVerifier
from services.capture_controller import CameraBackend, CaptureController, OpenCVCameraBackend
from services.config_service import VerificationSettings, load_verification_settings
from services.db import get_db
from services.face_verifier import FaceVerifier
from services.quota_guard import QuotaGuard, QuotaStore, SqlQuotaStore
from services.record_store import VerificationRecordStore
from services.registry_client import RegistryTransport, build_transport
from services.session_machine import SessionRegistry, VerificationSession, VerificationSessionStateMachine
from utils.config import (
    CAMERA_BACKEND,
    DAILY_QUOTA_LIMIT,
    FRAME_MAX_AGE_SECONDS,
    LOW_QUOTA_WARNING_THRESHOLD,
    MATCH_THRESHOLD,
)

DEFAULT_SETTINGS = VerificationSettings(
    match_threshold=MATCH_THRESHOLD,
    daily_quota_limit=DAILY_QUOTA_LIMIT,
    low_quota_warning_threshold=LOW_QUOTA_WARNING_THRESHOLD,
    frame_max_age_seconds=FRAME_MAX_AGE_SECONDS,
)


@dataclass
class VerificationServices:
    quota_store: QuotaStore
    transport: RegistryTransport
    record_store: VerificationRecordStore
    camera_backend: Optional[CameraBackend] = None
    sessions: SessionRegistry = field(init=False)

    def __post_init__(self):
        self.sessions = SessionRegistry(self.new_machine)

    def quota_guard(self, settings: VerificationSettings = DEFAULT_SETTINGS) -> QuotaGuard:
        return QuotaGuard(
            self.quota_store,
            daily_limit=settings.daily_quota_limit,
            low_threshold=settings.low_quota_warning_threshold,
        )

    def verifier_for(self, method: VerificationMethod, settings: VerificationSettings = DEFAULT_SETTINGS):
        guard = self.quota_guard(settings)
        if method is VerificationMethod.ATTRIBUTE:
            return AttributeVerifier(self.transport, guard, match_threshold=settings.match_threshold)
        return FaceVerifier(
            self.transport,
            guard,
            match_threshold=settings.match_threshold,
            frame_max_age_seconds=settings.frame_max_age_seconds,
        )

    def new_machine(self, session: VerificationSession, on_finished: Callable) -> VerificationSessionStateMachine:
        controller = None
        if session.method is VerificationMethod.FACE and self.camera_backend is not None:
            controller = CaptureController(self.camera_backend)
        return VerificationSessionStateMachine(
            session,
            self.verifier_for(session.method),
            self.record_store,
            capture_controller=controller,
            on_finished=on_finished,
        )


def build_camera_backend(kind: str = CAMERA_BACKEND) -> Optional[CameraBackend]:
    if kind == "none":
        return None
    if kind == "opencv":
        return OpenCVCameraBackend()
    raise ValueError(f"Unknown CAMERA_BACKEND: {kind!r} (expected 'opencv' or 'none')")


def build_services(
    session_factory: async_sessionmaker,
    transport: Optional[RegistryTransport] = None,
    camera_backend: Optional[CameraBackend] = None,
) -> VerificationServices:
    return VerificationServices(
        quota_store=SqlQuotaStore(session_factory),
        transport=transport or build_transport(),
        record_store=VerificationRecordStore(session_factory),
        camera_backend=camera_backend,
    )


def get_services(request: Request) -> VerificationServices:
    return request.app.state.services


async def get_settings(db: AsyncSession = Depends(get_db)) -> VerificationSettings:
    return await load_verification_settings(db)
