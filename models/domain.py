"""
Domain types for the identity verification engine.

These are plain dataclasses shared by the verifiers, the session state
machine and the record store. Pydantic models in ``models/schemas.py``
convert to and from them at the HTTP boundary.
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class VerificationMethod(str, Enum):
    ATTRIBUTE = "attribute"
    FACE = "face"


class Facing(str, Enum):
    FRONT = "front"
    BACK = "back"

    def opposite(self) -> "Facing":
        return Facing.BACK if self is Facing.FRONT else Facing.FRONT


class FrameSource(str, Enum):
    DEVICE = "device"   # produced by CaptureController from a local camera
    CLIENT = "client"   # captured by a browser camera and posted to the API


class FacialVerificationStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"


@dataclass(frozen=True)
class VerificationSubject:
    """The person being verified. Immutable for the lifetime of a session."""
    user_id: str
    identity_number: str
    first_name: str
    last_name: str
    birth_date: Optional[date]
    gender: Optional[str] = None
    birth_town: Optional[str] = None
    birth_country: Optional[str] = None
    nationality: Optional[str] = None
    residence_address_line1: Optional[str] = None
    residence_address_line2: Optional[str] = None
    residence_town: Optional[str] = None


@dataclass(frozen=True)
class CaptureFrame:
    """A single still image taken from a live camera stream."""
    image_format: str
    payload: str  # base64, usually as a data URI
    captured_at: datetime
    facing: Facing
    source: FrameSource = FrameSource.DEVICE
    width: Optional[int] = None
    height: Optional[int] = None

    def __repr__(self) -> str:
        # keep image bytes out of logs and tracebacks
        return (
            f"CaptureFrame(format={self.image_format!r}, facing={self.facing.value!r}, "
            f"source={self.source.value!r}, captured_at={self.captured_at.isoformat()!r}, "
            f"payload_len={len(self.payload)})"
        )


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of one registry call."""
    matched: bool
    score: float
    raw: Dict[str, Any]
    evaluated_at: datetime
    method: VerificationMethod
    identity_number: str
    mismatched_fields: List[str] = field(default_factory=list)

    @property
    def score_percent(self) -> int:
        return int(round(self.score * 100))


@dataclass(frozen=True)
class VerificationRecord:
    """Durable, append-only audit row for a successful verification."""
    id: int
    subject_id: str
    verification_type: VerificationMethod
    identity_number_used: str
    matched: bool
    score: float
    raw_response: Dict[str, Any]
    verified_at: datetime
    flags_updated: bool = True


@dataclass
class TrustProfileFlags:
    """Subset of the trust profile owned by the verification core."""
    subject_id: str
    identity_number_verified: bool = False
    identity_number: Optional[str] = None
    identity_verification_date: Optional[datetime] = None
    facial_verification_status: FacialVerificationStatus = FacialVerificationStatus.NONE
    facial_verification_date: Optional[datetime] = None


@dataclass(frozen=True)
class RegistryResponse:
    """Normalised registry answer, independent of the transport used."""
    score: float
    raw: Dict[str, Any]
    registry_matched: Optional[bool] = None
    mismatched_fields: List[str] = field(default_factory=list)


SCORE_SCALES = ("auto", "fraction", "percent")


def normalize_score(value: Any, scale: str = "auto") -> float:
    """
    Normalise a registry score to [0, 1].

    Registries report either fractions (0.92) or percentages (92). With
    scale="auto" anything above 1 is treated as a percentage, so a
    percent-scale score of 1 is ambiguous; pin the scale when the
    registry is known.
    """
    if scale not in SCORE_SCALES:
        raise ValueError(f"Unknown score scale: {scale!r}")
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 0.0
    if scale == "percent" or (scale == "auto" and score > 1.0):
        score = score / 100.0
    return max(0.0, min(1.0, score))


def is_match(score: float, threshold: float) -> bool:
    """A score equal to the threshold is a match."""
    return round(score, 6) >= round(threshold, 6)
