"""
Verification Record Store Tests

Append-only records, trust flag updates in a separate transaction and
reconciliation of flags from records.
Run with: pytest tests/test_record_store.py -v
"""
from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from models.domain import FacialVerificationStatus, VerificationMethod, VerificationResult
from models.sql_models import VerificationRecordRow
from services.db import build_engine, build_session_factory
from services.record_store import VerificationRecordStore
from utils.exceptions import StoreError


def matched_result(method: VerificationMethod, evaluated_at: datetime, score: float = 0.91) -> VerificationResult:
    return VerificationResult(
        matched=True,
        score=score,
        raw={"matchScore": score},
        evaluated_at=evaluated_at,
        method=method,
        identity_number="11793253275",
    )


@pytest.fixture
def store(session_factory):
    return VerificationRecordStore(session_factory)


async def count_records(session_factory) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(VerificationRecordRow))).scalar_one()


class TestCommit:

    @pytest.mark.asyncio
    async def test_attribute_record_sets_identity_flags(self, store, subject, clock):
        record = await store.commit(subject, VerificationMethod.ATTRIBUTE, matched_result(VerificationMethod.ATTRIBUTE, clock()))

        assert record.id is not None
        assert record.flags_updated is True
        assert record.verified_at == clock()
        assert record.raw_response == {"matchScore": 0.91}

        flags = await store.get_trust_profile(subject.user_id)
        assert flags.identity_number_verified is True
        assert flags.identity_number == "11793253275"
        assert flags.identity_verification_date == clock()
        assert flags.facial_verification_status is FacialVerificationStatus.NONE

    @pytest.mark.asyncio
    async def test_face_record_sets_facial_status(self, store, subject, clock):
        await store.commit(subject, VerificationMethod.FACE, matched_result(VerificationMethod.FACE, clock()))

        flags = await store.get_trust_profile(subject.user_id)
        assert flags.facial_verification_status is FacialVerificationStatus.VERIFIED
        assert flags.facial_verification_date == clock()
        assert flags.identity_number_verified is False

    @pytest.mark.asyncio
    async def test_unmatched_result_is_refused(self, store, subject, clock):
        result = VerificationResult(
            matched=False, score=0.2, raw={}, evaluated_at=clock(),
            method=VerificationMethod.ATTRIBUTE, identity_number="11793253275",
        )
        with pytest.raises(ValueError):
            await store.commit(subject, VerificationMethod.ATTRIBUTE, result)

    @pytest.mark.asyncio
    async def test_records_are_appended(self, store, session_factory, subject, clock):
        for _ in range(3):
            await store.commit(subject, VerificationMethod.ATTRIBUTE, matched_result(VerificationMethod.ATTRIBUTE, clock()))
            clock.advance(minutes=5)

        assert await count_records(session_factory) == 3

    @pytest.mark.asyncio
    async def test_insert_failure_raises_store_error(self, subject, clock):
        # no tables created on this engine
        engine = build_engine("sqlite+aiosqlite:///:memory:")
        try:
            store = VerificationRecordStore(build_session_factory(engine))
            with pytest.raises(StoreError) as exc_info:
                await store.commit(subject, VerificationMethod.ATTRIBUTE, matched_result(VerificationMethod.ATTRIBUTE, clock()))
            assert exc_info.value.details["operation"] == "insert_record"
        finally:
            await engine.dispose()

    @pytest.mark.asyncio
    async def test_flag_failure_keeps_record(self, store, session_factory, subject, clock, monkeypatch):
        async def broken_flags(*args, **kwargs):
            raise OperationalError("UPDATE trust_profiles", {}, Exception("database is locked"))

        monkeypatch.setattr(store, "_write_flags", broken_flags)

        record = await store.commit(subject, VerificationMethod.ATTRIBUTE, matched_result(VerificationMethod.ATTRIBUTE, clock()))

        assert record.flags_updated is False
        assert await count_records(session_factory) == 1
        assert await store.get_trust_profile(subject.user_id) is None


class TestQueries:

    @pytest.mark.asyncio
    async def test_latest_record_is_most_recent(self, store, subject, clock):
        await store.commit(subject, VerificationMethod.FACE, matched_result(VerificationMethod.FACE, clock(), score=0.8))
        clock.advance(hours=1)
        await store.commit(subject, VerificationMethod.FACE, matched_result(VerificationMethod.FACE, clock(), score=0.95))

        latest = await store.latest_record(subject.user_id, VerificationMethod.FACE)
        assert latest.score == pytest.approx(0.95)
        assert await store.latest_record(subject.user_id, VerificationMethod.ATTRIBUTE) is None

    @pytest.mark.asyncio
    async def test_list_records_newest_first_and_filtered(self, store, subject, clock):
        await store.commit(subject, VerificationMethod.ATTRIBUTE, matched_result(VerificationMethod.ATTRIBUTE, clock()))
        clock.advance(minutes=1)
        await store.commit(subject, VerificationMethod.FACE, matched_result(VerificationMethod.FACE, clock()))

        records = await store.list_records(subject.user_id)
        assert [r.verification_type for r in records] == [VerificationMethod.FACE, VerificationMethod.ATTRIBUTE]

        only_face = await store.list_records(subject.user_id, VerificationMethod.FACE)
        assert len(only_face) == 1

    @pytest.mark.asyncio
    async def test_unknown_subject(self, store):
        assert await store.list_records("nobody") == []
        assert await store.get_trust_profile("nobody") is None


class TestReconcile:

    @pytest.mark.asyncio
    async def test_rebuilds_flags_from_records(self, store, subject, clock, monkeypatch):
        async def broken_flags(*args, **kwargs):
            raise OperationalError("UPDATE trust_profiles", {}, Exception("database is locked"))

        monkeypatch.setattr(store, "_write_flags", broken_flags)
        await store.commit(subject, VerificationMethod.ATTRIBUTE, matched_result(VerificationMethod.ATTRIBUTE, clock()))
        clock.advance(minutes=2)
        await store.commit(subject, VerificationMethod.FACE, matched_result(VerificationMethod.FACE, clock()))
        monkeypatch.undo()

        flags = await store.reconcile_trust_flags(subject.user_id)

        assert flags.identity_number_verified is True
        assert flags.facial_verification_status is FacialVerificationStatus.VERIFIED
        assert flags.facial_verification_date == datetime(2026, 10, 18, 9, 32, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_no_records_gives_empty_profile(self, store):
        flags = await store.reconcile_trust_flags("user-without-records")
        assert flags.identity_number_verified is False
        assert flags.facial_verification_status is FacialVerificationStatus.NONE
