"""
Face Verifier Tests

Frame checks, image preparation for the registry and the quota gate.
Run with: pytest tests/test_face_verifier.py -v
"""
import base64
from dataclasses import replace

import pytest

from conftest import SAMPLE_IDENTITY_NUMBER, make_frame, make_image_payload
from models.domain import VerificationMethod
from services.face_verifier import FaceVerifier
from utils.exceptions import ImageRejectedError, InvalidInputError
from utils.image_manager import load_image, strip_data_uri_prefix


@pytest.fixture
def verifier(transport, quota_guard, clock):
    return FaceVerifier(transport, quota_guard, match_threshold=0.7, frame_max_age_seconds=300, clock=clock)


class TestImagePreparation:

    @pytest.mark.asyncio
    async def test_registry_receives_raw_base64(self, verifier, transport, clock):
        await verifier.authenticate(SAMPLE_IDENTITY_NUMBER, make_frame(clock), "caller-1")

        kind, identity_number, image_b64 = transport.calls[0]
        assert kind == "face"
        assert identity_number == SAMPLE_IDENTITY_NUMBER
        assert not image_b64.startswith("data:")
        # decodes to a real image
        assert load_image(base64.b64decode(image_b64)).shape[2] == 3

    @pytest.mark.asyncio
    async def test_unprefixed_payload_is_accepted(self, verifier, transport, clock):
        frame = make_frame(clock, payload=make_image_payload(prefix=False))
        result = await verifier.authenticate(SAMPLE_IDENTITY_NUMBER, frame, "caller-1")
        assert result.matched is True
        assert len(transport.calls) == 1

    @pytest.mark.asyncio
    async def test_large_frame_is_downscaled(self, verifier, transport, clock):
        frame = make_frame(clock, payload=make_image_payload(width=1600, height=1200))
        await verifier.authenticate(SAMPLE_IDENTITY_NUMBER, frame, "caller-1")

        image = load_image(transport.calls[0][2])
        assert max(image.shape[:2]) == 800

    def test_strip_data_uri_prefix(self):
        assert strip_data_uri_prefix("data:image/png;base64,AAAA") == "AAAA"
        assert strip_data_uri_prefix("AAAA") == "AAAA"


class TestFrameChecks:
    """Rejected frames consume no quota and make no registry call."""

    @pytest.mark.asyncio
    async def test_stale_frame(self, verifier, transport, quota_guard, clock):
        frame = make_frame(clock)
        clock.advance(seconds=301)

        with pytest.raises(InvalidInputError) as exc_info:
            await verifier.authenticate(SAMPLE_IDENTITY_NUMBER, frame, "caller-1")

        assert exc_info.value.field == "frame"
        assert transport.calls == []
        assert await quota_guard.remaining("caller-1") == 100

    @pytest.mark.asyncio
    async def test_frame_at_max_age_is_accepted(self, verifier, clock):
        frame = make_frame(clock)
        clock.advance(seconds=300)
        result = await verifier.authenticate(SAMPLE_IDENTITY_NUMBER, frame, "caller-1")
        assert result.method is VerificationMethod.FACE

    @pytest.mark.asyncio
    async def test_undecodable_payload(self, verifier, transport, quota_guard, clock):
        frame = make_frame(clock, payload="data:image/jpeg;base64,bm90IGFuIGltYWdl")

        with pytest.raises(InvalidInputError):
            await verifier.authenticate(SAMPLE_IDENTITY_NUMBER, frame, "caller-1")
        assert transport.calls == []
        assert await quota_guard.remaining("caller-1") == 100

    @pytest.mark.asyncio
    async def test_empty_payload(self, verifier, clock):
        with pytest.raises(InvalidInputError):
            await verifier.authenticate(SAMPLE_IDENTITY_NUMBER, make_frame(clock, payload="  "), "caller-1")

    @pytest.mark.asyncio
    async def test_unsupported_format(self, verifier, clock):
        frame = replace(make_frame(clock), image_format="gif")
        with pytest.raises(InvalidInputError):
            await verifier.authenticate(SAMPLE_IDENTITY_NUMBER, frame, "caller-1")

    @pytest.mark.asyncio
    async def test_missing_frame(self, verifier):
        with pytest.raises(InvalidInputError):
            await verifier.authenticate(SAMPLE_IDENTITY_NUMBER, None, "caller-1")

    @pytest.mark.asyncio
    async def test_short_identity_number_checked_before_frame(self, verifier, transport, clock):
        with pytest.raises(InvalidInputError) as exc_info:
            await verifier.authenticate("12345", make_frame(clock), "caller-1")
        assert exc_info.value.field == "identity_number"
        assert transport.calls == []


class TestRegistryOutcome:

    @pytest.mark.asyncio
    async def test_low_confidence_is_a_non_match(self, verifier, transport, clock):
        transport.respond(score=0.41)
        result = await verifier.authenticate(SAMPLE_IDENTITY_NUMBER, make_frame(clock), "caller-1")
        assert result.matched is False
        assert result.score_percent == 41

    @pytest.mark.asyncio
    async def test_image_rejected_propagates_after_consuming_quota(self, verifier, transport, quota_guard, clock):
        transport.respond(error=ImageRejectedError())

        with pytest.raises(ImageRejectedError):
            await verifier.authenticate(SAMPLE_IDENTITY_NUMBER, make_frame(clock), "caller-1")
        assert await quota_guard.remaining("caller-1") == 99

    def test_frame_repr_hides_payload(self, clock):
        frame = make_frame(clock)
        assert frame.payload not in repr(frame)
        assert "payload_len" in repr(frame)
