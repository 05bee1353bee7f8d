"""
Registry Client: transports to the external national identity registry.

Two transports implement the same interface and are selected by
configuration (REGISTRY_TRANSPORT):

- DirectRegistryTransport: this process holds the registry credentials,
  exchanges them for a bearer token (cached until shortly before expiry)
  and calls the registry itself.
- ServerMediatedTransport: calls a backend proxy that holds the
  credentials and forwards to the registry.

Transports are synchronous (requests); verifiers run them in a thread
pool. Every call is single-shot: no retries happen at this layer.
"""
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import requests

from models.domain import RegistryResponse, VerificationSubject, normalize_score
from services.metrics import REGISTRY_CALLS
from utils.config import (
    REGISTRY_API_KEY,
    REGISTRY_BASE_URL,
    REGISTRY_SCORE_SCALE,
    REGISTRY_SECRET_KEY,
    REGISTRY_SERVER_API_KEY,
    REGISTRY_SERVER_URL,
    REGISTRY_TIMEOUT_SECONDS,
    REGISTRY_TOKEN_REFRESH_MARGIN_SECONDS,
    REGISTRY_TRANSPORT,
)
from utils.date_utils import format_date
from utils.exceptions import (
    ImageRejectedError,
    QuotaExceededError,
    ServiceUnavailableError,
    UnauthenticatedError,
)
from utils.logging_config import log_execution_time

logger = logging.getLogger(__name__)

SCORE_KEYS = ("matchScore", "score", "confidence", "confidenceScore", "MATCH_SCORE")
MATCHED_KEYS = ("matched", "isMatch", "authenticated", "isAuthenticated", "verified")

# Registry error codes that mean "this person/biometric does not match"
NON_MATCH_CODES = {
    "1": "Identity number invalid or not found",
    "2": "No biometric record for this identity number",
    "99": "Submitted data is invalid for this identity number",
}
# Error codes that mean the image itself is unusable
IMAGE_REJECTED_CODES = {
    "3": "No face detected in the image",
    "4": "Image quality too low",
}


@dataclass(frozen=True)
class AttributeMatchRequest:
    identity_number: str
    first_name: str
    last_name: str
    birth_date: str
    gender: Optional[str] = None
    birth_town: Optional[str] = None
    birth_country: Optional[str] = None
    nationality: Optional[str] = None
    residence_address_line1: Optional[str] = None
    residence_address_line2: Optional[str] = None
    residence_town: Optional[str] = None

    @classmethod
    def from_subject(cls, subject: VerificationSubject, identity_number: Optional[str] = None) -> "AttributeMatchRequest":
        return cls(
            identity_number=identity_number or subject.identity_number,
            first_name=subject.first_name,
            last_name=subject.last_name,
            birth_date=format_date(subject.birth_date),
            gender=subject.gender,
            birth_town=subject.birth_town,
            birth_country=subject.birth_country,
            nationality=subject.nationality,
            residence_address_line1=subject.residence_address_line1,
            residence_address_line2=subject.residence_address_line2,
            residence_town=subject.residence_town,
        )

    def to_payload(self) -> Dict[str, str]:
        """
        Registry request body. Text attributes are upper-cased; optional
        attributes are only sent when present.
        """
        payload = {
            "identityNumber": self.identity_number,
            "firstName": self.first_name.strip().upper(),
            "lastName": self.last_name.strip().upper(),
            "birthDate": self.birth_date,
        }
        optional = {
            "gender": self.gender,
            "birthTown": self.birth_town,
            "birthCountry": self.birth_country,
            "nationality": self.nationality,
            "residenceAddressLine1": self.residence_address_line1,
            "residenceAddressLine2": self.residence_address_line2,
            "residenceTown": self.residence_town,
        }
        for key, value in optional.items():
            if value and value.strip():
                payload[key] = value.strip().upper()
        return payload


def parse_registry_payload(payload: Any, operation: str, score_scale: str = REGISTRY_SCORE_SCALE) -> RegistryResponse:
    """
    Interpret a registry response body.

    Raises:
        ImageRejectedError: Registry could not use the face image
        ServiceUnavailableError: Technical or unrecognised error
    """
    # A list of per-attribute error codes: the person exists but attributes differ
    if isinstance(payload, list):
        mismatched: List[str] = []
        for item in payload:
            if isinstance(item, dict) and (item.get("ErrorCode") or item.get("errorCode")):
                mismatched.append(item.get("AttributeName") or item.get("attributeName") or "UNKNOWN")
        if mismatched:
            return RegistryResponse(
                score=0.0,
                raw={"errors": payload},
                registry_matched=False,
                mismatched_fields=mismatched,
            )
        raise ServiceUnavailableError(details={"operation": operation, "reason": "unexpected list response"})

    if not isinstance(payload, dict):
        raise ServiceUnavailableError(details={"operation": operation, "reason": "unexpected response type"})

    score_key = next((k for k in SCORE_KEYS if k in payload), None)
    if score_key is None:
        code = payload.get("code", payload.get("Code"))
        if code is not None:
            code = str(code)
            if code in NON_MATCH_CODES:
                return RegistryResponse(
                    score=0.0,
                    raw=payload,
                    registry_matched=False,
                    mismatched_fields=["identityNumber"] if code == "1" else [],
                )
            if code in IMAGE_REJECTED_CODES:
                raise ImageRejectedError(details={"registry_code": code, "reason": IMAGE_REJECTED_CODES[code]})
            raise ServiceUnavailableError(details={"operation": operation, "registry_code": code})
        if not payload:
            # empty body: the registry found nothing to match against
            return RegistryResponse(score=0.0, raw=payload, registry_matched=False)
        raise ServiceUnavailableError(details={"operation": operation, "reason": "no score in response"})

    matched_key = next((k for k in MATCHED_KEYS if k in payload), None)
    return RegistryResponse(
        score=normalize_score(payload[score_key], score_scale),
        raw=payload,
        registry_matched=bool(payload[matched_key]) if matched_key else None,
    )


class RegistryTransport(ABC):
    """How a verifier reaches the registry."""

    name = "abstract"

    @abstractmethod
    def match_attributes(self, request: AttributeMatchRequest) -> RegistryResponse:
        ...

    @abstractmethod
    def match_face(self, identity_number: str, image_base64: str) -> RegistryResponse:
        ...


class _HttpTransport(RegistryTransport):
    """Shared request/response handling for the HTTP transports."""

    def __init__(self, timeout: float = REGISTRY_TIMEOUT_SECONDS, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.http = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        return {}

    def _on_unauthorized(self) -> None:
        """Hook called when the registry answers 401/403."""

    def _post(self, url: str, body: Dict[str, Any], operation: str) -> RegistryResponse:
        try:
            response = self.http.post(url, json=body, headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as e:
            REGISTRY_CALLS.labels(operation=operation, outcome="network_error").inc()
            logger.warning("Registry %s call failed: %s", operation, type(e).__name__,
                           extra={"operation": operation, "outcome": "network_error"})
            raise ServiceUnavailableError(details={"operation": operation})

        status = response.status_code
        if status in (401, 403):
            REGISTRY_CALLS.labels(operation=operation, outcome="unauthenticated").inc()
            self._on_unauthorized()
            logger.error("Registry rejected credentials on %s (HTTP %d)", operation, status,
                         extra={"operation": operation, "status_code": status})
            raise UnauthenticatedError(f"registry returned HTTP {status}")
        if status == 429:
            REGISTRY_CALLS.labels(operation=operation, outcome="throttled").inc()
            raise QuotaExceededError("registry", details={"upstream": True})
        if status >= 500:
            REGISTRY_CALLS.labels(operation=operation, outcome="server_error").inc()
            logger.warning("Registry %s returned HTTP %d", operation, status,
                           extra={"operation": operation, "status_code": status})
            raise ServiceUnavailableError(details={"operation": operation, "status_code": status})

        try:
            payload = response.json()
        except ValueError:
            REGISTRY_CALLS.labels(operation=operation, outcome="bad_response").inc()
            raise ServiceUnavailableError(details={"operation": operation, "reason": "invalid JSON"})

        if status >= 400 and not payload:
            REGISTRY_CALLS.labels(operation=operation, outcome="client_error").inc()
            raise ServiceUnavailableError(details={"operation": operation, "status_code": status})

        try:
            parsed = parse_registry_payload(payload, operation)
        except (ImageRejectedError, ServiceUnavailableError) as e:
            REGISTRY_CALLS.labels(operation=operation, outcome=e.code.lower()).inc()
            raise
        REGISTRY_CALLS.labels(operation=operation, outcome="ok").inc()
        return parsed


class DirectRegistryTransport(_HttpTransport):
    name = "direct"

    def __init__(
        self,
        base_url: str = REGISTRY_BASE_URL,
        api_key: str = REGISTRY_API_KEY,
        secret_key: str = REGISTRY_SECRET_KEY,
        timeout: float = REGISTRY_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(timeout, session)
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.secret_key = secret_key
        self._clock = clock
        self._token: Optional[str] = None
        self._token_expiry: float = 0.0
        self._token_lock = threading.Lock()

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url and self.api_key and self.secret_key)

    def clear_token(self) -> None:
        with self._token_lock:
            self._token = None
            self._token_expiry = 0.0

    def _on_unauthorized(self) -> None:
        self.clear_token()

    def _bearer_token(self) -> str:
        """Return a cached token, authenticating when missing or about to expire."""
        if not self.is_configured:
            raise UnauthenticatedError("registry credentials are not configured")

        with self._token_lock:
            if self._token and self._clock() < self._token_expiry:
                return self._token

            try:
                response = self.http.post(
                    f"{self.base_url}/authenticate",
                    json={"apiKey": self.api_key, "secretKey": self.secret_key},
                    timeout=self.timeout,
                )
            except requests.RequestException as e:
                REGISTRY_CALLS.labels(operation="authenticate", outcome="network_error").inc()
                logger.warning("Registry authentication failed: %s", type(e).__name__)
                raise ServiceUnavailableError(details={"operation": "authenticate"})

            if response.status_code in (400, 401, 403):
                REGISTRY_CALLS.labels(operation="authenticate", outcome="unauthenticated").inc()
                logger.error("Registry rejected API credentials (HTTP %d)", response.status_code)
                raise UnauthenticatedError(f"authentication returned HTTP {response.status_code}")
            if not response.ok:
                REGISTRY_CALLS.labels(operation="authenticate", outcome="server_error").inc()
                raise ServiceUnavailableError(details={"operation": "authenticate", "status_code": response.status_code})

            try:
                data = response.json()
                token = data["bearerToken"]
                expires_in = float(data.get("expiresIn", 0))
            except (ValueError, KeyError, TypeError):
                raise ServiceUnavailableError(details={"operation": "authenticate", "reason": "invalid token response"})

            REGISTRY_CALLS.labels(operation="authenticate", outcome="ok").inc()
            self._token = token
            self._token_expiry = self._clock() + expires_in - REGISTRY_TOKEN_REFRESH_MARGIN_SECONDS
            return token

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._bearer_token()}"}

    @log_execution_time
    def match_attributes(self, request: AttributeMatchRequest) -> RegistryResponse:
        return self._post(
            f"{self.base_url}/persons/{request.identity_number}/match",
            request.to_payload(),
            "attribute_match",
        )

    @log_execution_time
    def match_face(self, identity_number: str, image_base64: str) -> RegistryResponse:
        return self._post(
            f"{self.base_url}/face-auth",
            {"identityNumber": identity_number, "imageBase64": image_base64},
            "face_match",
        )


class ServerMediatedTransport(_HttpTransport):
    name = "server"

    def __init__(
        self,
        server_url: str = REGISTRY_SERVER_URL,
        api_key: str = REGISTRY_SERVER_API_KEY,
        timeout: float = REGISTRY_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        super().__init__(timeout, session)
        self.server_url = server_url.rstrip("/")
        self.api_key = api_key

    def _headers(self) -> Dict[str, str]:
        if not self.server_url:
            raise UnauthenticatedError("verification server URL is not configured")
        return {"X-API-Key": self.api_key} if self.api_key else {}

    @log_execution_time
    def match_attributes(self, request: AttributeMatchRequest) -> RegistryResponse:
        return self._post(
            f"{self.server_url}/identity-verification/attributes",
            request.to_payload(),
            "attribute_match",
        )

    @log_execution_time
    def match_face(self, identity_number: str, image_base64: str) -> RegistryResponse:
        return self._post(
            f"{self.server_url}/identity-verification/face",
            {"identityNumber": identity_number, "imageBase64": image_base64},
            "face_match",
        )


def build_transport(kind: str = REGISTRY_TRANSPORT) -> RegistryTransport:
    """Create the transport named by configuration."""
    if kind == "direct":
        return DirectRegistryTransport()
    if kind == "server":
        return ServerMediatedTransport()
    raise ValueError(f"Unknown REGISTRY_TRANSPORT: {kind!r} (expected 'direct' or 'server')")
