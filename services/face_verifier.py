"""
Face Verifier: checks a claimed identity number against a live face capture.

Same gate as the attribute verifier (validation, then quota, then one
registry call). The frame payload is decoded, downscaled and re-encoded as
raw base64 JPEG before it leaves the process; image bytes are never logged.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from fastapi.concurrency import run_in_threadpool

from models.domain import CaptureFrame, FrameSource, VerificationMethod, VerificationResult, is_match
from services.attribute_verifier import check_identity_number
from services.quota_guard import QuotaGuard
from services.registry_client import RegistryTransport
from utils.config import (
    FACE_IMAGE_JPEG_QUALITY,
    FACE_IMAGE_MAX_SIDE,
    FRAME_MAX_AGE_SECONDS,
    IDENTITY_NUMBER_MIN_LENGTH,
    MATCH_THRESHOLD,
    SUPPORTED_FRAME_FORMATS,
)
from utils.date_utils import utc_now
from utils.exceptions import InvalidInputError
from utils.image_manager import prepare_registry_image
from utils.logging_config import mask_identity_number

logger = logging.getLogger(__name__)


class FaceVerifier:
    method = VerificationMethod.FACE

    def __init__(
        self,
        transport: RegistryTransport,
        quota_guard: QuotaGuard,
        match_threshold: float = MATCH_THRESHOLD,
        min_length: int = IDENTITY_NUMBER_MIN_LENGTH,
        frame_max_age_seconds: int = FRAME_MAX_AGE_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.transport = transport
        self.quota_guard = quota_guard
        self.match_threshold = match_threshold
        self.min_length = min_length
        self.frame_max_age = timedelta(seconds=frame_max_age_seconds)
        self._clock = clock

    def check_frame(self, frame: CaptureFrame) -> None:
        """
        Reject frames that were not captured from a camera or are unusable.

        Raises:
            InvalidInputError: field="frame"
        """
        if frame is None or not (frame.payload or "").strip():
            raise InvalidInputError("A face photo is required", field="frame")
        if not isinstance(frame.source, FrameSource):
            raise InvalidInputError("Frame was not captured from a camera", field="frame")
        if frame.image_format not in SUPPORTED_FRAME_FORMATS:
            raise InvalidInputError(f"Unsupported frame format: {frame.image_format}", field="frame")

        captured_at = frame.captured_at
        if captured_at.tzinfo is None:
            captured_at = captured_at.replace(tzinfo=timezone.utc)
        if self._clock() - captured_at > self.frame_max_age:
            raise InvalidInputError("Photo is too old, please take a new one", field="frame")

    async def prepare_image(self, frame: CaptureFrame) -> str:
        """Raw base64 JPEG for the registry (data-URI prefix stripped)."""
        try:
            image_b64, _ = await run_in_threadpool(
                prepare_registry_image, frame.payload, FACE_IMAGE_MAX_SIDE, FACE_IMAGE_JPEG_QUALITY
            )
        except ValueError as e:
            raise InvalidInputError(f"Photo could not be read: {e}", field="frame")
        return image_b64

    async def authenticate(self, identity_number: str, frame: CaptureFrame, caller_id: str) -> VerificationResult:
        identity_number = check_identity_number(identity_number, self.min_length)
        self.check_frame(frame)
        image_b64 = await self.prepare_image(frame)

        remaining = await self.quota_guard.try_consume(caller_id)
        response = await run_in_threadpool(self.transport.match_face, identity_number, image_b64)

        result = VerificationResult(
            matched=is_match(response.score, self.match_threshold),
            score=response.score,
            raw=response.raw,
            evaluated_at=self._clock(),
            method=self.method,
            identity_number=identity_number,
            mismatched_fields=list(response.mismatched_fields),
        )
        logger.info(
            "Face match for %s: confidence=%.3f matched=%s (quota remaining %d)",
            mask_identity_number(identity_number), result.score, result.matched, remaining,
            extra={"caller_id": caller_id, "verification_type": self.method.value},
        )
        return result
