"""
API Endpoint Tests

Tests for the FastAPI endpoints using TestClient (in-memory SQLite,
fake registry, no camera).
Run with: pytest tests/test_endpoints.py -v
"""
import uuid

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import SAMPLE_IDENTITY_NUMBER, FakeCameraBackend, FakeTransport, make_image_payload
from main import app
from middleware.api_key import APIKeyMiddleware


@pytest.fixture(scope="module")
def client():
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def transport(client):
    fake = FakeTransport()
    services = client.app.state.services
    original = services.transport
    services.transport = fake
    yield fake
    services.transport = original


@pytest.fixture
def user_id():
    # module-scoped app: every test gets its own user and quota row
    return f"user-{uuid.uuid4().hex[:8]}"


def subject_payload(**overrides):
    payload = {
        "identity_number": "117 932 532 75",
        "first_name": "Aïcha",
        "last_name": "Koné",
        "birth_date": "12/05/1990",
        "gender": "female",
        "birth_town": "Abidjan",
    }
    payload.update(overrides)
    return payload


def open_session(client, user_id, method="attribute", **subject):
    return client.post(
        "/api/v1/verification/sessions",
        json={"user_id": user_id, "method": method, "subject": subject_payload(**subject)},
    )


class TestHealthEndpoint:
    """Test /api/v1/health endpoint."""

    def test_health_check(self, client):
        response = client.get("/api/v1/health")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "ok"
        assert data["database_ready"] is True
        assert data["registry_transport"] == "direct"
        assert data["camera_backend"] is None

    def test_request_id_header(self, client):
        response = client.get("/api/v1/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"


class TestAPIInfo:

    def test_api_info(self, client):
        response = client.get("/api")
        assert response.status_code == 200
        assert response.json()["name"] == "Identity Verification API"


class TestAttributeSession:
    """Attribute method through the HTTP surface."""

    def test_open_and_submit_success(self, client, transport, user_id):
        response = open_session(client, user_id)
        assert response.status_code == 201
        session = response.json()
        assert session["state"] == "collecting_input"
        assert session["quota"]["remaining"] == session["quota"]["limit"]

        response = client.post(f"/api/v1/verification/sessions/{session['session_id']}/submit")
        assert response.status_code == 200
        data = response.json()
        assert data["state"] == "success"
        assert data["result"]["matched"] is True
        assert data["record_id"] is not None
        assert data["quota"]["used"] == 1

        # form clean-up reached the registry
        _, request = transport.calls[0]
        assert request.identity_number == SAMPLE_IDENTITY_NUMBER
        assert request.gender == "F"
        assert request.birth_date == "1990-05-12"

    def test_low_score_then_retry(self, client, transport, user_id):
        transport.respond(score=0.42)
        session_id = open_session(client, user_id).json()["session_id"]

        data = client.post(f"/api/v1/verification/sessions/{session_id}/submit").json()
        assert data["state"] == "failed"
        assert data["failure"]["reason"] == "low_match_score"
        assert data["failure"]["score_percent"] == 42
        assert data["failure"]["message"] == "Match score: 42%, please verify your details"

        data = client.post(f"/api/v1/verification/sessions/{session_id}/retry").json()
        assert data["state"] == "collecting_input"
        assert data["attempt_count"] == 2

        response = client.post(
            f"/api/v1/verification/sessions/{session_id}/input",
            json={"subject": subject_payload(first_name="Aissata")},
        )
        assert response.status_code == 200

        transport.respond(score=0.9)
        data = client.post(f"/api/v1/verification/sessions/{session_id}/submit").json()
        assert data["state"] == "success"

    def test_missing_name_is_422_and_state_unchanged(self, client, transport, user_id):
        session_id = open_session(client, user_id, first_name="").json()["session_id"]

        response = client.post(f"/api/v1/verification/sessions/{session_id}/submit")
        assert response.status_code == 422
        assert response.json()["code"] == "INVALID_INPUT"
        assert transport.calls == []

        data = client.get(f"/api/v1/verification/sessions/{session_id}").json()
        assert data["state"] == "collecting_input"
        assert data["quota"]["used"] == 0

    def test_invalid_form_is_rejected(self, client, user_id):
        response = open_session(client, user_id, first_name="R2-D2")
        assert response.status_code == 422

    def test_reopen_same_method_resumes(self, client, transport, user_id):
        first = open_session(client, user_id)
        second = open_session(client, user_id, first_name="Aissata")

        assert first.status_code == 201
        assert second.status_code == 200
        assert second.json()["session_id"] == first.json()["session_id"]

    def test_other_method_conflicts(self, client, transport, user_id):
        open_session(client, user_id)
        response = open_session(client, user_id, method="face")
        assert response.status_code == 409
        assert response.json()["code"] == "SESSION_CONFLICT"

    def test_unknown_session(self, client):
        response = client.get(f"/api/v1/verification/sessions/{'0' * 32}")
        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    def test_illegal_transition(self, client, transport, user_id):
        session_id = open_session(client, user_id).json()["session_id"]
        response = client.post(f"/api/v1/verification/sessions/{session_id}/retry")
        assert response.status_code == 409
        assert response.json()["code"] == "ILLEGAL_TRANSITION"

    def test_cancel(self, client, transport, user_id):
        session_id = open_session(client, user_id).json()["session_id"]
        data = client.post(f"/api/v1/verification/sessions/{session_id}/cancel").json()
        assert data["state"] == "cancelled"

        # subject is free for a new session
        assert open_session(client, user_id, method="face").status_code == 201

    def test_unconfigured_registry_is_generic_service_error(self, client, user_id):
        # the real transport has no credentials in tests
        session_id = open_session(client, user_id).json()["session_id"]
        data = client.post(f"/api/v1/verification/sessions/{session_id}/submit").json()

        assert data["state"] == "failed"
        assert data["failure"]["reason"] == "service_unavailable"
        assert "credential" not in data["failure"]["message"]


class TestFaceSession:

    def test_uploaded_frame_flow(self, client, transport, user_id):
        session_id = open_session(client, user_id, method="face").json()["session_id"]

        response = client.post(
            f"/api/v1/verification/sessions/{session_id}/frame",
            json={"image": make_image_payload(), "image_format": "jpeg", "facing": "front"},
        )
        assert response.status_code == 200
        assert response.json()["state"] == "captured"
        assert response.json()["has_frame"] is True

        data = client.post(f"/api/v1/verification/sessions/{session_id}/retake").json()
        assert data["state"] == "collecting_input"
        assert data["has_frame"] is False

        client.post(
            f"/api/v1/verification/sessions/{session_id}/frame",
            json={"image": make_image_payload(prefix=False)},
        )
        data = client.post(f"/api/v1/verification/sessions/{session_id}/submit").json()
        assert data["state"] == "success"
        assert transport.calls[0][0] == "face"

        profile = client.get(f"/api/v1/verification/profiles/{user_id}").json()
        assert profile["facial_verification_status"] == "verified"

    def test_capture_without_server_camera(self, client, transport, user_id):
        session_id = open_session(client, user_id, method="face").json()["session_id"]
        response = client.post(f"/api/v1/verification/sessions/{session_id}/capture")
        assert response.status_code == 422

    def test_capture_with_server_camera(self, client, transport, user_id):
        services = client.app.state.services
        services.camera_backend = FakeCameraBackend()
        try:
            session_id = open_session(client, user_id, method="face").json()["session_id"]
            response = client.post(
                f"/api/v1/verification/sessions/{session_id}/capture",
                json={"facing": "back"},
            )
        finally:
            services.camera_backend = None

        assert response.status_code == 200
        assert response.json()["state"] == "captured"

    def test_image_rejected_asks_for_retake(self, client, transport, user_id):
        from utils.exceptions import ImageRejectedError

        transport.respond(error=ImageRejectedError())
        session_id = open_session(client, user_id, method="face").json()["session_id"]
        client.post(f"/api/v1/verification/sessions/{session_id}/frame", json={"image": make_image_payload()})

        data = client.post(f"/api/v1/verification/sessions/{session_id}/submit").json()
        assert data["failure"]["reason"] == "image_rejected"
        assert data["failure"]["recovery"] == "retake"
        assert data["has_frame"] is False


class TestQuotaRecordsProfiles:

    def test_quota_read_is_free(self, client, user_id):
        for _ in range(3):
            data = client.get(f"/api/v1/verification/quota/{user_id}").json()
        assert data["used"] == 0
        assert data["remaining"] == data["limit"]
        assert data["resets_at"].endswith(("T00:00:00Z", "T00:00:00+00:00"))

    def test_records_are_masked(self, client, transport, user_id):
        session_id = open_session(client, user_id).json()["session_id"]
        client.post(f"/api/v1/verification/sessions/{session_id}/submit")

        data = client.get(f"/api/v1/verification/records/{user_id}").json()
        assert data["total"] == 1
        record = data["records"][0]
        assert record["identity_number_masked"] == "*******3275"
        assert SAMPLE_IDENTITY_NUMBER not in str(data)

        filtered = client.get(f"/api/v1/verification/records/{user_id}?verification_type=face").json()
        assert filtered["total"] == 0

    def test_profile_not_found(self, client, user_id):
        response = client.get(f"/api/v1/verification/profiles/{user_id}")
        assert response.status_code == 404

    def test_reconcile(self, client, transport, user_id):
        session_id = open_session(client, user_id).json()["session_id"]
        client.post(f"/api/v1/verification/sessions/{session_id}/submit")

        data = client.post(f"/api/v1/verification/profiles/{user_id}/reconcile").json()
        assert data["identity_number_verified"] is True
        assert data["identity_number_masked"] == "*******3275"


class TestAdminConfig:

    def test_list_configs(self, client):
        data = client.get("/api/v1/admin/config").json()
        keys = {c["key"] for c in data["configs"]}
        assert {"MATCH_THRESHOLD", "DAILY_QUOTA_LIMIT"} <= keys

    def test_threshold_override_applies_to_next_submit(self, client, transport, user_id):
        transport.respond(score=0.92)
        response = client.post("/api/v1/admin/config", json={"key": "MATCH_THRESHOLD", "value": "0.95"})
        assert response.status_code == 200
        try:
            session_id = open_session(client, user_id).json()["session_id"]
            data = client.post(f"/api/v1/verification/sessions/{session_id}/submit").json()
            assert data["state"] == "failed"
        finally:
            client.delete("/api/v1/admin/config/MATCH_THRESHOLD")

    def test_quota_override(self, client, transport, user_id):
        client.post("/api/v1/admin/config", json={"key": "DAILY_QUOTA_LIMIT", "value": "0"})
        try:
            session_id = open_session(client, user_id).json()["session_id"]
            data = client.post(f"/api/v1/verification/sessions/{session_id}/submit").json()
            assert data["failure"]["reason"] == "quota_exceeded"
            assert data["failure"]["recovery"] == "wait"
            assert transport.calls == []
        finally:
            client.delete("/api/v1/admin/config/DAILY_QUOTA_LIMIT")

    def test_update_reports_previous_value_and_effective_settings(self, client):
        response = client.post("/api/v1/admin/config", json={"key": "FRAME_MAX_AGE_SECONDS", "value": "60"})
        try:
            data = response.json()
            assert data["value"] == 60
            assert data["previous_value"] == 300

            effective = client.get("/api/v1/admin/config/effective").json()
            assert effective["frame_max_age_seconds"] == 60
            assert effective["match_threshold"] == pytest.approx(0.7)
        finally:
            client.delete("/api/v1/admin/config/FRAME_MAX_AGE_SECONDS")

    def test_revert_unknown_key(self, client):
        assert client.delete("/api/v1/admin/config/NOPE").status_code == 422

    def test_unknown_key(self, client):
        response = client.post("/api/v1/admin/config", json={"key": "NOPE", "value": "1"})
        assert response.status_code == 422

    def test_out_of_range_value(self, client):
        response = client.post("/api/v1/admin/config", json={"key": "MATCH_THRESHOLD", "value": "1.5"})
        assert response.status_code == 422

    def test_revert_without_override(self, client):
        data = client.delete("/api/v1/admin/config/FRAME_MAX_AGE_SECONDS").json()
        assert data["reverted"] is False


class TestMetrics:

    def test_metrics_exposed(self, client):
        client.get("/api/v1/health")
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "idv_requests_total" in response.text

    def test_endpoint_label_is_route_template(self, client):
        caller_id = f"metrics-{uuid.uuid4().hex[:8]}"
        client.get(f"/api/v1/verification/quota/{caller_id}")
        client.get(f"/api/v1/verification/records/{caller_id}")

        text = client.get("/metrics").text
        assert 'endpoint="/api/v1/verification/quota/{caller_id}"' in text
        assert 'endpoint="/api/v1/verification/records/{subject_id}"' in text
        assert caller_id not in text

    def test_unmatched_paths_share_one_label(self, client):
        client.get("/api/v1/no-such-route/abc123")
        text = client.get("/metrics").text
        assert 'endpoint="unmatched"' in text
        assert "abc123" not in text


class TestAPIKeyMiddleware:
    """Auth is disabled in the test app; exercise the middleware on its own."""

    @pytest.fixture
    def secured(self):
        secured_app = FastAPI()
        secured_app.add_middleware(APIKeyMiddleware, api_keys=["user-key", "admin-key"], admin_api_keys=["admin-key"])

        @secured_app.get("/api/v1/health")
        async def health():
            return {"status": "ok"}

        @secured_app.get("/api/v1/verification/quota/x")
        async def quota():
            return {"remaining": 1}

        @secured_app.get("/api/v1/admin/config")
        async def configs():
            return {"configs": []}

        return TestClient(secured_app)

    def test_public_path(self, secured):
        assert secured.get("/api/v1/health").status_code == 200

    def test_missing_key(self, secured):
        response = secured.get("/api/v1/verification/quota/x")
        assert response.status_code == 401
        assert response.json()["code"] == "UNAUTHORIZED"

    def test_valid_key(self, secured):
        response = secured.get("/api/v1/verification/quota/x", headers={"X-API-Key": "user-key"})
        assert response.status_code == 200

    def test_admin_route_needs_admin_key(self, secured):
        assert secured.get("/api/v1/admin/config", headers={"X-API-Key": "user-key"}).status_code == 401
        assert secured.get("/api/v1/admin/config", headers={"X-API-Key": "admin-key"}).status_code == 200
