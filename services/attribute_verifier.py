"""
Attribute Verifier: checks claimed biographic attributes against the registry.

Order of operations for every call:
    1. local validation      -> InvalidInputError, nothing consumed
    2. QuotaGuard.try_consume -> QuotaExceededError, no network call
    3. one registry call      -> ServiceUnavailable / Unauthenticated
    4. score vs MATCH_THRESHOLD

A low score is a normal result (matched=False), not an error.
"""
import logging
from datetime import datetime
from typing import Callable

from fastapi.concurrency import run_in_threadpool

from models.domain import VerificationMethod, VerificationResult, VerificationSubject, is_match
from services.quota_guard import QuotaGuard
from services.registry_client import AttributeMatchRequest, RegistryTransport
from utils.config import IDENTITY_NUMBER_MIN_LENGTH, MATCH_THRESHOLD
from utils.date_utils import utc_now
from utils.exceptions import InvalidInputError
from utils.logging_config import mask_identity_number

logger = logging.getLogger(__name__)


def check_identity_number(identity_number: str, min_length: int = IDENTITY_NUMBER_MIN_LENGTH) -> str:
    """
    Validate an identity number and return it without surrounding whitespace.

    Raises:
        InvalidInputError: If empty or shorter than `min_length`
    """
    cleaned = (identity_number or "").strip()
    if not cleaned:
        raise InvalidInputError("Identity number is required", field="identity_number")
    if len(cleaned) < min_length:
        raise InvalidInputError(
            f"Identity number must be at least {min_length} characters",
            field="identity_number",
        )
    return cleaned


class AttributeVerifier:
    method = VerificationMethod.ATTRIBUTE

    def __init__(
        self,
        transport: RegistryTransport,
        quota_guard: QuotaGuard,
        match_threshold: float = MATCH_THRESHOLD,
        min_length: int = IDENTITY_NUMBER_MIN_LENGTH,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.transport = transport
        self.quota_guard = quota_guard
        self.match_threshold = match_threshold
        self.min_length = min_length
        self._clock = clock

    def validate(self, subject: VerificationSubject) -> str:
        """
        Raise InvalidInputError for the first missing or invalid field.

        Returns:
            The identity number without surrounding whitespace
        """
        identity_number = check_identity_number(subject.identity_number, self.min_length)
        if not (subject.first_name or "").strip():
            raise InvalidInputError("First name is required", field="first_name")
        if not (subject.last_name or "").strip():
            raise InvalidInputError("Last name is required", field="last_name")
        if subject.birth_date is None:
            raise InvalidInputError("Birth date is required", field="birth_date")
        if subject.birth_date > self._clock().date():
            raise InvalidInputError("Birth date cannot be in the future", field="birth_date")
        return identity_number

    async def verify(self, subject: VerificationSubject, caller_id: str) -> VerificationResult:
        identity_number = self.validate(subject)
        remaining = await self.quota_guard.try_consume(caller_id)

        request = AttributeMatchRequest.from_subject(subject, identity_number=identity_number)
        response = await run_in_threadpool(self.transport.match_attributes, request)

        result = VerificationResult(
            matched=is_match(response.score, self.match_threshold),
            score=response.score,
            raw=response.raw,
            evaluated_at=self._clock(),
            method=self.method,
            identity_number=request.identity_number,
            mismatched_fields=list(response.mismatched_fields),
        )
        logger.info(
            "Attribute match for %s: score=%.3f matched=%s (quota remaining %d)",
            mask_identity_number(request.identity_number), result.score, result.matched, remaining,
            extra={"caller_id": caller_id, "subject_id": subject.user_id, "verification_type": self.method.value},
        )
        return result
