"""
Verification Session State Machine.

One session drives one subject through one verification method:

    COLLECTING_INPUT --submit--> SUBMITTING --> SUCCESS | FAILED
    FAILED --retry--> COLLECTING_INPUT
    any non-terminal --cancel--> CANCELLED

The face method adds a preview step:

    COLLECTING_INPUT --capture/accept_frame--> CAPTURED --submit--> SUBMITTING
    CAPTURED --retake--> COLLECTING_INPUT

Every state change goes through `_transition`, which consults the table
for the session's method; anything else raises IllegalTransitionError.
Verifier and capture errors are mapped to a FAILED state carrying a
reason code and a suggested recovery action.
"""
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Union

from models.domain import (
    CaptureFrame,
    Facing,
    FrameSource,
    VerificationMethod,
    VerificationRecord,
    VerificationResult,
    VerificationSubject,
)
from services.attribute_verifier import AttributeVerifier, check_identity_number
from services.capture_controller import CaptureController
from services.face_verifier import FaceVerifier
from services.metrics import SESSIONS_FINISHED
from services.record_store import VerificationRecordStore
from utils.date_utils import utc_now
from utils.exceptions import (
    CaptureError,
    CaptureNotReadyError,
    DeviceNotFoundError,
    IllegalTransitionError,
    ImageRejectedError,
    InvalidInputError,
    PermissionDeniedError,
    QuotaExceededError,
    ResourceNotFoundError,
    ServiceUnavailableError,
    SessionConflictError,
    StoreError,
    UnauthenticatedError,
    VerifyError,
)
from utils.logging_config import mask_identity_number

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    COLLECTING_INPUT = "collecting_input"
    CAPTURED = "captured"
    SUBMITTING = "submitting"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = {SessionState.SUCCESS, SessionState.CANCELLED}


class SessionEvent(str, Enum):
    CAPTURE = "capture"
    ACCEPT_FRAME = "accept_frame"
    CAPTURE_FAILED = "capture_failed"
    RETAKE = "retake"
    SUBMIT = "submit"
    MATCHED = "matched"
    REJECTED = "rejected"
    RETRY = "retry"
    CANCEL = "cancel"


class FailureReason(str, Enum):
    LOW_MATCH_SCORE = "low_match_score"
    FACE_NOT_RECOGNIZED = "face_not_recognized"
    IMAGE_REJECTED = "image_rejected"
    INVALID_INPUT = "invalid_input"
    SERVICE_UNAVAILABLE = "service_unavailable"
    QUOTA_EXCEEDED = "quota_exceeded"
    CAPTURE_PERMISSION_DENIED = "capture_permission_denied"
    CAPTURE_DEVICE_NOT_FOUND = "capture_device_not_found"
    CAPTURE_DEVICE_ERROR = "capture_device_error"


class RecoveryAction(str, Enum):
    CORRECT_INPUT = "correct_input"
    RETAKE = "retake"
    RETRY = "retry"
    WAIT = "wait"
    GRANT_PERMISSION = "grant_permission"


_S, _E = SessionState, SessionEvent

_COMMON_TRANSITIONS = {
    (_S.SUBMITTING, _E.MATCHED): _S.SUCCESS,
    (_S.SUBMITTING, _E.REJECTED): _S.FAILED,
    (_S.FAILED, _E.RETRY): _S.COLLECTING_INPUT,
    (_S.COLLECTING_INPUT, _E.CANCEL): _S.CANCELLED,
    (_S.SUBMITTING, _E.CANCEL): _S.CANCELLED,
    (_S.FAILED, _E.CANCEL): _S.CANCELLED,
}

TRANSITIONS = {
    VerificationMethod.ATTRIBUTE: {
        **_COMMON_TRANSITIONS,
        (_S.COLLECTING_INPUT, _E.SUBMIT): _S.SUBMITTING,
    },
    VerificationMethod.FACE: {
        **_COMMON_TRANSITIONS,
        (_S.COLLECTING_INPUT, _E.CAPTURE): _S.CAPTURED,
        (_S.COLLECTING_INPUT, _E.ACCEPT_FRAME): _S.CAPTURED,
        (_S.COLLECTING_INPUT, _E.CAPTURE_FAILED): _S.FAILED,
        (_S.CAPTURED, _E.RETAKE): _S.COLLECTING_INPUT,
        (_S.CAPTURED, _E.SUBMIT): _S.SUBMITTING,
        (_S.CAPTURED, _E.CANCEL): _S.CANCELLED,
    },
}

del _S, _E


@dataclass(frozen=True)
class SessionFailure:
    """Why a session is FAILED and what the user should do next."""
    reason: FailureReason
    recovery: RecoveryAction
    message: str
    score: Optional[float] = None
    mismatched_fields: List[str] = field(default_factory=list)


@dataclass
class VerificationSession:
    subject: VerificationSubject
    method: VerificationMethod
    caller_id: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: SessionState = SessionState.COLLECTING_INPUT
    attempt_count: int = 1
    started_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    last_error: Optional[SessionFailure] = None
    frame: Optional[CaptureFrame] = None
    result: Optional[VerificationResult] = None
    record: Optional[VerificationRecord] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


def failure_for_error(error: Exception) -> SessionFailure:
    """Map a verifier or capture error to the failure shown to the user."""
    if isinstance(error, ImageRejectedError):
        return SessionFailure(FailureReason.IMAGE_REJECTED, RecoveryAction.RETAKE, error.message)
    if isinstance(error, QuotaExceededError):
        return SessionFailure(FailureReason.QUOTA_EXCEEDED, RecoveryAction.WAIT, error.message)
    if isinstance(error, InvalidInputError):
        recovery = RecoveryAction.RETAKE if error.field == "frame" else RecoveryAction.CORRECT_INPUT
        return SessionFailure(FailureReason.INVALID_INPUT, recovery, error.message)
    if isinstance(error, PermissionDeniedError):
        return SessionFailure(FailureReason.CAPTURE_PERMISSION_DENIED, RecoveryAction.GRANT_PERMISSION, error.message)
    if isinstance(error, DeviceNotFoundError):
        return SessionFailure(FailureReason.CAPTURE_DEVICE_NOT_FOUND, RecoveryAction.RETRY, error.message)
    if isinstance(error, CaptureError):
        return SessionFailure(FailureReason.CAPTURE_DEVICE_ERROR, RecoveryAction.RETRY, error.message)
    # ServiceUnavailable, Unauthenticated and anything unexpected
    return SessionFailure(
        FailureReason.SERVICE_UNAVAILABLE,
        RecoveryAction.RETRY,
        ServiceUnavailableError().message,
    )


def failure_for_result(result: VerificationResult) -> SessionFailure:
    if result.method is VerificationMethod.FACE:
        return SessionFailure(
            FailureReason.FACE_NOT_RECOGNIZED,
            RecoveryAction.RETAKE,
            f"Face not recognized (confidence: {result.score_percent}%), please retake the photo",
            score=result.score,
        )
    return SessionFailure(
        FailureReason.LOW_MATCH_SCORE,
        RecoveryAction.CORRECT_INPUT,
        f"Match score: {result.score_percent}%, please verify your details",
        score=result.score,
        mismatched_fields=list(result.mismatched_fields),
    )


Verifier = Union[AttributeVerifier, FaceVerifier]


class VerificationSessionStateMachine:
    def __init__(
        self,
        session: VerificationSession,
        verifier: Verifier,
        record_store: VerificationRecordStore,
        capture_controller: Optional[CaptureController] = None,
        on_finished: Optional[Callable[["VerificationSessionStateMachine"], None]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        if verifier.method is not session.method:
            raise ValueError(f"{type(verifier).__name__} cannot drive a {session.method.value} session")
        self.session = session
        self.verifier = verifier
        self.record_store = record_store
        self.capture_controller = capture_controller
        self._on_finished = on_finished
        self._clock = clock

    @property
    def state(self) -> SessionState:
        return self.session.state

    def can(self, event: SessionEvent) -> bool:
        return (self.session.state, event) in TRANSITIONS[self.session.method]

    def _check(self, event: SessionEvent) -> None:
        if not self.can(event):
            raise IllegalTransitionError(self.session.state.value, event.value)

    def _transition(self, event: SessionEvent) -> SessionState:
        self._check(event)
        previous = self.session.state
        self.session.state = TRANSITIONS[self.session.method][(previous, event)]
        self.session.updated_at = self._clock()
        logger.info(
            "Session %s -> %s on %s", previous.value, self.session.state.value, event.value,
            extra={"session_id": self.session.id, "verification_type": self.session.method.value},
        )
        if self.session.is_terminal:
            SESSIONS_FINISHED.labels(method=self.session.method.value, state=self.session.state.value).inc()
            if self._on_finished is not None:
                self._on_finished(self)
        return self.session.state

    def _fail(self, failure: SessionFailure, event: SessionEvent = SessionEvent.REJECTED) -> None:
        self.session.last_error = failure
        self._transition(event)

    def _stop_camera(self) -> None:
        if self.capture_controller is not None:
            self.capture_controller.stop()

    # ------------------------------------------------------------------
    # Face preview step
    # ------------------------------------------------------------------

    async def capture(self, facing: Facing = Facing.FRONT) -> VerificationSession:
        """
        Take a frame from the device camera (face method only).

        The stream is released whenever this call returns or raises; a
        retake opens a new one. NotReady leaves the session unchanged so the
        user can try again; any other capture error fails the session.
        """
        self._check(SessionEvent.CAPTURE)
        if self.capture_controller is None:
            raise InvalidInputError("No camera is available on this server; upload a frame instead", field="frame")

        controller = self.capture_controller
        # the stream never outlives this call
        async with controller:
            try:
                handle = await controller.start(facing)
                controller.attach_preview(handle, surface=self.session.id)
                frame = await controller.capture(handle)
            except CaptureNotReadyError:
                raise
            except CaptureError as e:
                controller.stop()
                if self.session.state is SessionState.CANCELLED:
                    return self.session
                logger.warning("Capture failed: %s", e.code, extra={"session_id": self.session.id})
                self._fail(failure_for_error(e), SessionEvent.CAPTURE_FAILED)
                return self.session

        if self.session.state is SessionState.CANCELLED:
            return self.session
        self.session.frame = frame
        self._transition(SessionEvent.CAPTURE)
        return self.session

    def accept_frame(self, frame: CaptureFrame, verifier: Optional[FaceVerifier] = None) -> VerificationSession:
        """Use a frame captured by the client's own camera (face method only)."""
        self._check(SessionEvent.ACCEPT_FRAME)
        if frame.source is not FrameSource.CLIENT:
            raise InvalidInputError("Uploaded frames must come from the client camera", field="frame")
        (verifier or self.verifier).check_frame(frame)
        self.session.frame = frame
        self._transition(SessionEvent.ACCEPT_FRAME)
        return self.session

    def retake(self) -> VerificationSession:
        """Discard the captured frame and return to input collection."""
        self._transition(SessionEvent.RETAKE)
        self.session.frame = None
        return self.session

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def update_subject(self, subject: VerificationSubject) -> VerificationSession:
        """Replace the entered attributes while input is still being collected."""
        if self.session.state is not SessionState.COLLECTING_INPUT:
            raise IllegalTransitionError(self.session.state.value, "update_input")
        if subject.user_id != self.session.subject.user_id:
            raise InvalidInputError("Input belongs to a different user", field="user_id")
        self.session.subject = subject
        self.session.updated_at = self._clock()
        return self.session

    def check_preconditions(self, verifier: Optional[Verifier] = None) -> None:
        """Raise InvalidInputError if the session is not ready to submit."""
        verifier = verifier or self.verifier
        if self.session.method is VerificationMethod.ATTRIBUTE:
            verifier.validate(self.session.subject)
        else:
            check_identity_number(self.session.subject.identity_number, verifier.min_length)
            verifier.check_frame(self.session.frame)

    async def submit(self, verifier: Optional[Verifier] = None) -> VerificationSession:
        """
        Send the session to the registry and record the outcome.

        Preconditions are checked before any state change; a violation
        raises InvalidInputError and leaves the session where it was.

        Args:
            verifier: Overrides the session's verifier for this call
                (e.g. one built with runtime config overrides)
        """
        verifier = verifier or self.verifier
        self._check(SessionEvent.SUBMIT)
        self.check_preconditions(verifier)
        self._transition(SessionEvent.SUBMIT)

        session = self.session
        try:
            if session.method is VerificationMethod.ATTRIBUTE:
                result = await verifier.verify(session.subject, session.caller_id)
            else:
                result = await verifier.authenticate(session.subject.identity_number, session.frame, session.caller_id)
        except VerifyError as e:
            if session.state is SessionState.CANCELLED:
                logger.info("Discarding registry error for cancelled session", extra={"session_id": session.id})
                return session
            if isinstance(e, UnauthenticatedError):
                logger.error("Registry authentication problem: %s", e.reason,
                             extra={"session_id": session.id, "caller_id": session.caller_id})
            if isinstance(e, (ImageRejectedError, InvalidInputError)) and session.method is VerificationMethod.FACE:
                session.frame = None
            self._fail(failure_for_error(e))
            return session
        except Exception as e:
            logger.exception("Unexpected error during submission", extra={"session_id": session.id})
            if session.state is SessionState.SUBMITTING:
                self._fail(failure_for_error(e))
            raise

        if session.state is SessionState.CANCELLED:
            logger.info("Discarding registry result for cancelled session", extra={"session_id": session.id})
            return session

        session.result = result
        if not result.matched:
            self._fail(failure_for_result(result))
            return session

        session.last_error = None
        try:
            session.record = await self.record_store.commit(session.subject, session.method, result)
            if not session.record.flags_updated:
                session.warnings.append("Verification saved but profile flags could not be updated")
        except StoreError as e:
            logger.error(
                "Verification for %s succeeded but could not be stored: %s",
                mask_identity_number(result.identity_number), e.cause,
                extra={"session_id": session.id, "caller_id": session.caller_id},
            )
            session.warnings.append("Verification succeeded but could not be saved")
        session.frame = None
        self._transition(SessionEvent.MATCHED)
        return session

    def retry(self) -> VerificationSession:
        """User-initiated retry after a failure. Attempts are not capped here."""
        self._transition(SessionEvent.RETRY)
        self.session.attempt_count += 1
        self.session.last_error = None
        self.session.frame = None
        return self.session

    def cancel(self) -> VerificationSession:
        """
        Cancel from any non-terminal state.

        The camera is released before the state changes. An in-flight
        registry call is left to finish; its outcome is discarded.
        """
        self._check(SessionEvent.CANCEL)
        self._stop_camera()
        self.session.frame = None
        self._transition(SessionEvent.CANCEL)
        return self.session


class SessionRegistry:
    """
    At most one active session per subject.

    open() reuses the subject's active session when the method matches and
    refuses a second method while one is active. Finished sessions stay
    readable until evicted.
    """

    def __init__(
        self,
        machine_factory: Callable[[VerificationSession, Callable], VerificationSessionStateMachine],
        max_finished: int = 1000,
    ):
        self._machine_factory = machine_factory
        self._max_finished = max_finished
        self._sessions: Dict[str, VerificationSessionStateMachine] = {}
        self._active_by_subject: Dict[str, str] = {}
        self._finished: "OrderedDict[str, None]" = OrderedDict()

    def open(
        self,
        subject: VerificationSubject,
        method: VerificationMethod,
        caller_id: str,
    ):
        """
        Returns:
            (machine, created) tuple

        Raises:
            SessionConflictError: Another method is active for this subject
        """
        active_id = self._active_by_subject.get(subject.user_id)
        if active_id is not None:
            machine = self._sessions[active_id]
            if machine.session.method is not method:
                raise SessionConflictError(subject.user_id, active_id)
            return machine, False

        session = VerificationSession(subject=subject, method=method, caller_id=caller_id)
        machine = self._machine_factory(session, self._on_finished)
        self._sessions[session.id] = machine
        self._active_by_subject[subject.user_id] = session.id
        logger.info("Opened %s verification session", method.value,
                    extra={"session_id": session.id, "subject_id": subject.user_id, "caller_id": caller_id})
        return machine, True

    def get(self, session_id: str) -> VerificationSessionStateMachine:
        machine = self._sessions.get(session_id)
        if machine is None:
            raise ResourceNotFoundError("Verification session", session_id)
        return machine

    def active_for(self, subject_id: str) -> Optional[VerificationSessionStateMachine]:
        session_id = self._active_by_subject.get(subject_id)
        return self._sessions.get(session_id) if session_id else None

    def close_all(self) -> None:
        """Cancel every active session (shutdown)."""
        for session_id in list(self._active_by_subject.values()):
            machine = self._sessions[session_id]
            if machine.can(SessionEvent.CANCEL):
                machine.cancel()

    def _on_finished(self, machine: VerificationSessionStateMachine) -> None:
        session = machine.session
        if self._active_by_subject.get(session.subject.user_id) == session.id:
            del self._active_by_subject[session.subject.user_id]
        self._finished[session.id] = None
        while len(self._finished) > self._max_finished:
            evicted, _ = self._finished.popitem(last=False)
            self._sessions.pop(evicted, None)
