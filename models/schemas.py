"""
Pydantic models for API request/response schemas.
"""
from datetime import datetime
from typing import Optional, List, Literal, Dict, Any
from pydantic import BaseModel, Field

from models.domain import (
    Facing,
    TrustProfileFlags,
    VerificationMethod,
    VerificationRecord,
    VerificationResult,
)
# Import form validators for subject data entry
from models.form_validators import VerificationSubjectForm


# =============================================================================
# SESSION REQUESTS
# =============================================================================

class CreateSessionRequest(BaseModel):
    """Open (or resume) a verification session for a user."""
    user_id: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Platform user being verified (trust profile owner)"
    )
    method: VerificationMethod = Field(
        ...,
        description="'attribute' (identity number + biographic data) or 'face' (identity number + live photo)"
    )
    subject: VerificationSubjectForm

    class Config:
        json_schema_extra = {
            "example": {
                "user_id": "user-42",
                "method": "attribute",
                "subject": {
                    "identity_number": "11793253275",
                    "first_name": "Aïcha",
                    "last_name": "Koné",
                    "birth_date": "1990-05-12",
                    "birth_town": "Abidjan"
                }
            }
        }


class UpdateInputRequest(BaseModel):
    """Replace the entered subject data while the session is collecting input."""
    subject: VerificationSubjectForm


class CaptureRequest(BaseModel):
    facing: Facing = Field(
        Facing.FRONT,
        description="Camera to use: 'front' (selfie) or 'back'"
    )


class FrameUploadRequest(BaseModel):
    """A still captured by the browser camera."""
    image: str = Field(
        ...,
        min_length=1,
        description="Base64 image, with or without a data:image/...;base64, prefix"
    )
    image_format: Literal["jpeg", "png"] = "jpeg"
    facing: Facing = Facing.FRONT
    captured_at: Optional[datetime] = Field(
        None,
        description="When the client took the photo (defaults to receipt time)"
    )


# =============================================================================
# SESSION RESPONSES
# =============================================================================

class SessionFailureOut(BaseModel):
    reason: str = Field(..., description="Failure reason code, e.g. 'low_match_score'")
    recovery: str = Field(..., description="Suggested next step: correct_input, retake, retry, wait, grant_permission")
    message: str
    score_percent: Optional[int] = None
    mismatched_fields: List[str] = []


class VerificationResultOut(BaseModel):
    matched: bool
    score: float = Field(..., description="Registry score normalised to 0.0-1.0")
    score_percent: int
    evaluated_at: datetime
    mismatched_fields: List[str] = []

    @classmethod
    def from_domain(cls, result: VerificationResult) -> "VerificationResultOut":
        return cls(
            matched=result.matched,
            score=result.score,
            score_percent=result.score_percent,
            evaluated_at=result.evaluated_at,
            mismatched_fields=result.mismatched_fields,
        )


class QuotaOut(BaseModel):
    caller_id: str
    limit: int
    used: int
    remaining: int
    low: bool = Field(..., description="True when fewer calls remain than the warning threshold")
    resets_at: datetime


class SessionResponse(BaseModel):
    """Current view of a verification session."""
    session_id: str
    user_id: str
    method: VerificationMethod
    state: str
    attempt_count: int
    started_at: datetime
    updated_at: datetime
    has_frame: bool = Field(False, description="A captured photo is waiting for confirmation")
    failure: Optional[SessionFailureOut] = None
    result: Optional[VerificationResultOut] = None
    record_id: Optional[int] = None
    warnings: List[str] = []
    quota: Optional[QuotaOut] = None

    class Config:
        json_schema_extra = {
            "example": {
                "session_id": "5b0f3c1e9d6a4f5e8c2b7a9d0e1f2a3b",
                "user_id": "user-42",
                "method": "attribute",
                "state": "failed",
                "attempt_count": 1,
                "started_at": "2026-10-18T09:12:00Z",
                "updated_at": "2026-10-18T09:12:04Z",
                "has_frame": False,
                "failure": {
                    "reason": "low_match_score",
                    "recovery": "correct_input",
                    "message": "Match score: 42%, please verify your details",
                    "score_percent": 42,
                    "mismatched_fields": []
                },
                "warnings": []
            }
        }


# =============================================================================
# RECORDS & PROFILES
# =============================================================================

class RecordOut(BaseModel):
    id: int
    subject_id: str
    verification_type: VerificationMethod
    matched: bool
    score: float
    verified_at: datetime
    identity_number_masked: str

    @classmethod
    def from_domain(cls, record: VerificationRecord, masked: str) -> "RecordOut":
        return cls(
            id=record.id,
            subject_id=record.subject_id,
            verification_type=record.verification_type,
            matched=record.matched,
            score=record.score,
            verified_at=record.verified_at,
            identity_number_masked=masked,
        )


class RecordListResponse(BaseModel):
    subject_id: str
    records: List[RecordOut]
    total: int


class TrustProfileResponse(BaseModel):
    subject_id: str
    identity_number_verified: bool
    identity_number_masked: Optional[str] = None
    identity_verification_date: Optional[datetime] = None
    facial_verification_status: str
    facial_verification_date: Optional[datetime] = None

    @classmethod
    def from_domain(cls, flags: TrustProfileFlags, masked: Optional[str]) -> "TrustProfileResponse":
        return cls(
            subject_id=flags.subject_id,
            identity_number_verified=flags.identity_number_verified,
            identity_number_masked=masked,
            identity_verification_date=flags.identity_verification_date,
            facial_verification_status=flags.facial_verification_status.value,
            facial_verification_date=flags.facial_verification_date,
        )


# =============================================================================
# OPS
# =============================================================================

class HealthResponse(BaseModel):
    """Health check response."""
    status: str = "ok"
    database_ready: bool = False
    registry_configured: bool = False
    registry_transport: str = ""
    camera_backend: Optional[str] = None


class ErrorResponse(BaseModel):
    status: Literal["error"] = "error"
    code: str
    message: str
    details: Dict[str, Any] = {}
