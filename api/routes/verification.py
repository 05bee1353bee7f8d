"""Identity verification session endpoints."""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Response

from api.dependencies import VerificationServices, get_services, get_settings
from models.domain import CaptureFrame, FrameSource, VerificationMethod
from models.schemas import (
    CaptureRequest,
    CreateSessionRequest,
    FrameUploadRequest,
    QuotaOut,
    RecordListResponse,
    RecordOut,
    SessionFailureOut,
    SessionResponse,
    TrustProfileResponse,
    UpdateInputRequest,
    VerificationResultOut,
)
from services.config_service import VerificationSettings
from services.session_machine import SessionState, VerificationSessionStateMachine
from utils.date_utils import utc_now
from utils.exceptions import ResourceNotFoundError
from utils.logging_config import mask_identity_number

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/verification", tags=["Verification"])


async def _quota(services: VerificationServices, settings: VerificationSettings, caller_id: str) -> QuotaOut:
    status = await services.quota_guard(settings).status(caller_id)
    return QuotaOut(
        caller_id=status.caller_id,
        limit=status.limit,
        used=status.used,
        remaining=status.remaining,
        low=status.low,
        resets_at=status.resets_at,
    )


async def _session_response(
    machine: VerificationSessionStateMachine,
    services: VerificationServices,
    settings: VerificationSettings,
) -> SessionResponse:
    session = machine.session
    failure = None
    if session.last_error is not None:
        error = session.last_error
        failure = SessionFailureOut(
            reason=error.reason.value,
            recovery=error.recovery.value,
            message=error.message,
            score_percent=int(round(error.score * 100)) if error.score is not None else None,
            mismatched_fields=error.mismatched_fields,
        )

    return SessionResponse(
        session_id=session.id,
        user_id=session.subject.user_id,
        method=session.method,
        state=session.state.value,
        attempt_count=session.attempt_count,
        started_at=session.started_at,
        updated_at=session.updated_at,
        has_frame=session.frame is not None,
        failure=failure,
        result=VerificationResultOut.from_domain(session.result) if session.result else None,
        record_id=session.record.id if session.record else None,
        warnings=list(session.warnings),
        quota=await _quota(services, settings, session.caller_id),
    )


# ── sessions ─────────────────────────────────────────────────────────────

@router.post("/sessions", response_model=SessionResponse, status_code=201)
async def open_session(
    body: CreateSessionRequest,
    response: Response,
    services: VerificationServices = Depends(get_services),
    settings: VerificationSettings = Depends(get_settings),
):
    """
    Open a verification session for a user, or resume the active one.

    Returns 201 for a new session and 200 when the user's active session
    (same method) is reused. A different method while one is active
    returns 409.
    """
    subject = body.subject.to_subject(body.user_id)
    # quota is per platform user
    machine, created = services.sessions.open(subject, body.method, caller_id=body.user_id)
    if not created:
        response.status_code = 200
        if machine.state is SessionState.COLLECTING_INPUT:
            machine.update_subject(subject)

    logger.info(
        "%s %s session for %s",
        "Opened" if created else "Resumed", body.method.value, mask_identity_number(subject.identity_number),
        extra={"session_id": machine.session.id, "subject_id": body.user_id},
    )
    return await _session_response(machine, services, settings)


@router.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: str,
    services: VerificationServices = Depends(get_services),
    settings: VerificationSettings = Depends(get_settings),
):
    machine = services.sessions.get(session_id)
    return await _session_response(machine, services, settings)


@router.post("/sessions/{session_id}/input", response_model=SessionResponse)
async def update_input(
    session_id: str,
    body: UpdateInputRequest,
    services: VerificationServices = Depends(get_services),
    settings: VerificationSettings = Depends(get_settings),
):
    """Correct the entered data before (re)submitting."""
    machine = services.sessions.get(session_id)
    machine.update_subject(body.subject.to_subject(machine.session.subject.user_id))
    return await _session_response(machine, services, settings)


@router.post("/sessions/{session_id}/capture", response_model=SessionResponse)
async def capture_frame(
    session_id: str,
    body: Optional[CaptureRequest] = None,
    services: VerificationServices = Depends(get_services),
    settings: VerificationSettings = Depends(get_settings),
):
    """Take a photo with the server-attached camera (face sessions)."""
    machine = services.sessions.get(session_id)
    await machine.capture((body or CaptureRequest()).facing)
    return await _session_response(machine, services, settings)


@router.post("/sessions/{session_id}/frame", response_model=SessionResponse)
async def upload_frame(
    session_id: str,
    body: FrameUploadRequest,
    services: VerificationServices = Depends(get_services),
    settings: VerificationSettings = Depends(get_settings),
):
    """Attach a photo taken by the browser camera (face sessions)."""
    machine = services.sessions.get(session_id)
    frame = CaptureFrame(
        image_format=body.image_format,
        payload=body.image,
        captured_at=body.captured_at or utc_now(),
        facing=body.facing,
        source=FrameSource.CLIENT,
    )
    machine.accept_frame(frame, services.verifier_for(VerificationMethod.FACE, settings))
    return await _session_response(machine, services, settings)


@router.post("/sessions/{session_id}/retake", response_model=SessionResponse)
async def retake_frame(
    session_id: str,
    services: VerificationServices = Depends(get_services),
    settings: VerificationSettings = Depends(get_settings),
):
    machine = services.sessions.get(session_id)
    machine.retake()
    return await _session_response(machine, services, settings)


@router.post("/sessions/{session_id}/submit", response_model=SessionResponse)
async def submit_session(
    session_id: str,
    services: VerificationServices = Depends(get_services),
    settings: VerificationSettings = Depends(get_settings),
):
    """
    Send the session to the registry.

    A rejected match or a registry error is not an HTTP error: the session
    moves to `failed` and `failure` says why and what to do next.
    Missing or invalid input returns 422 and leaves the session unchanged.
    """
    machine = services.sessions.get(session_id)
    await machine.submit(services.verifier_for(machine.session.method, settings))
    return await _session_response(machine, services, settings)


@router.post("/sessions/{session_id}/retry", response_model=SessionResponse)
async def retry_session(
    session_id: str,
    services: VerificationServices = Depends(get_services),
    settings: VerificationSettings = Depends(get_settings),
):
    machine = services.sessions.get(session_id)
    machine.retry()
    return await _session_response(machine, services, settings)


@router.post("/sessions/{session_id}/cancel", response_model=SessionResponse)
async def cancel_session(
    session_id: str,
    services: VerificationServices = Depends(get_services),
    settings: VerificationSettings = Depends(get_settings),
):
    machine = services.sessions.get(session_id)
    machine.cancel()
    return await _session_response(machine, services, settings)


# ── quota, records, profiles ─────────────────────────────────────────────

@router.get("/quota/{caller_id}", response_model=QuotaOut)
async def get_quota(
    caller_id: str,
    services: VerificationServices = Depends(get_services),
    settings: VerificationSettings = Depends(get_settings),
):
    """Remaining registry calls today. Does not consume anything."""
    return await _quota(services, settings, caller_id)


@router.get("/records/{subject_id}", response_model=RecordListResponse)
async def list_records(
    subject_id: str,
    verification_type: Optional[VerificationMethod] = None,
    services: VerificationServices = Depends(get_services),
):
    records = await services.record_store.list_records(subject_id, verification_type)
    return RecordListResponse(
        subject_id=subject_id,
        records=[RecordOut.from_domain(r, mask_identity_number(r.identity_number_used)) for r in records],
        total=len(records),
    )


@router.get("/profiles/{subject_id}", response_model=TrustProfileResponse)
async def get_trust_profile(
    subject_id: str,
    services: VerificationServices = Depends(get_services),
):
    flags = await services.record_store.get_trust_profile(subject_id)
    if flags is None:
        raise ResourceNotFoundError("Trust profile", subject_id)
    return TrustProfileResponse.from_domain(flags, mask_identity_number(flags.identity_number) or None)


@router.post("/profiles/{subject_id}/reconcile", response_model=TrustProfileResponse)
async def reconcile_trust_profile(
    subject_id: str,
    services: VerificationServices = Depends(get_services),
):
    """Rebuild the trust flags from the stored verification records."""
    flags = await services.record_store.reconcile_trust_flags(subject_id)
    return TrustProfileResponse.from_domain(flags, mask_identity_number(flags.identity_number) or None)
