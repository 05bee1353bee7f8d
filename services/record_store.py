"""
Verification Record Store.

Persists successful verifications as append-only rows in
`verification_records` and keeps the denormalised trust flags in
`trust_profiles` up to date.

The record insert and the flag update run in separate transactions: once
the record is committed it is never rolled back, even if the flag update
fails. Flags can be rebuilt from the records with reconcile_trust_flags().
"""
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models.domain import (
    FacialVerificationStatus,
    TrustProfileFlags,
    VerificationMethod,
    VerificationRecord,
    VerificationResult,
    VerificationSubject,
)
from models.sql_models import TrustProfile, VerificationRecordRow
from services.metrics import STORE_FAILURES
from utils.exceptions import StoreError
from utils.logging_config import mask_identity_number

logger = logging.getLogger(__name__)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_record(row: VerificationRecordRow, flags_updated: bool = True) -> VerificationRecord:
    return VerificationRecord(
        id=row.id,
        subject_id=row.subject_id,
        verification_type=VerificationMethod(row.verification_type),
        identity_number_used=row.identity_number_used,
        matched=row.matched,
        score=row.score,
        raw_response=row.raw_response or {},
        verified_at=_as_utc(row.verified_at),
        flags_updated=flags_updated,
    )


def _to_flags(profile: TrustProfile) -> TrustProfileFlags:
    return TrustProfileFlags(
        subject_id=profile.subject_id,
        identity_number_verified=profile.identity_number_verified,
        identity_number=profile.identity_number,
        identity_verification_date=_as_utc(profile.identity_verification_date),
        facial_verification_status=FacialVerificationStatus(profile.facial_verification_status),
        facial_verification_date=_as_utc(profile.facial_verification_date),
    )


def _apply_record(profile: TrustProfile, verification_type: VerificationMethod,
                  identity_number: str, verified_at: datetime) -> None:
    if verification_type is VerificationMethod.ATTRIBUTE:
        profile.identity_number_verified = True
        profile.identity_number = identity_number
        profile.identity_verification_date = verified_at
    else:
        profile.facial_verification_status = FacialVerificationStatus.VERIFIED.value
        profile.facial_verification_date = verified_at


class VerificationRecordStore:
    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def commit(
        self,
        subject: VerificationSubject,
        verification_type: VerificationMethod,
        result: VerificationResult,
    ) -> VerificationRecord:
        """
        Write the audit record, then update the subject's trust flags.

        Returns:
            The stored record; `flags_updated` is False when only the
            flag update failed

        Raises:
            StoreError: If the record itself could not be written
        """
        if not result.matched:
            raise ValueError("Only matched results are committed")

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    row = VerificationRecordRow(
                        subject_id=subject.user_id,
                        verification_type=verification_type.value,
                        identity_number_used=result.identity_number,
                        matched=result.matched,
                        score=result.score,
                        raw_response=result.raw,
                        verified_at=result.evaluated_at,
                    )
                    session.add(row)
                    await session.flush()
                record = _to_record(row)
        except SQLAlchemyError as e:
            STORE_FAILURES.labels(operation="insert_record").inc()
            logger.error(
                "Failed to write verification record at %s",
                result.evaluated_at.isoformat(),
                exc_info=True,
                extra={"subject_id": subject.user_id, "verification_type": verification_type.value},
            )
            raise StoreError(str(e), operation="insert_record")

        try:
            await self._write_flags(subject.user_id, verification_type, result.identity_number, result.evaluated_at)
        except SQLAlchemyError:
            STORE_FAILURES.labels(operation="update_flags").inc()
            logger.error(
                "Record %d written but trust flag update failed; reconcile later",
                record.id,
                exc_info=True,
                extra={"subject_id": subject.user_id, "verification_type": verification_type.value},
            )
            return replace(record, flags_updated=False)

        logger.info(
            "Stored %s verification for %s",
            verification_type.value, mask_identity_number(result.identity_number),
            extra={"subject_id": subject.user_id, "verification_type": verification_type.value},
        )
        return record

    async def _write_flags(self, subject_id: str, verification_type: VerificationMethod,
                           identity_number: str, verified_at: datetime) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                profile = await self._get_or_create_profile(session, subject_id)
                _apply_record(profile, verification_type, identity_number, verified_at)

    @staticmethod
    async def _get_or_create_profile(session: AsyncSession, subject_id: str) -> TrustProfile:
        profile = await session.get(TrustProfile, subject_id)
        if profile is None:
            profile = TrustProfile(
                subject_id=subject_id,
                identity_number_verified=False,
                facial_verification_status=FacialVerificationStatus.NONE.value,
            )
            session.add(profile)
        return profile

    async def latest_record(self, subject_id: str, verification_type: VerificationMethod) -> Optional[VerificationRecord]:
        """The authoritative record for a (subject, type) pair is the most recent one."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(VerificationRecordRow)
                .where(
                    VerificationRecordRow.subject_id == subject_id,
                    VerificationRecordRow.verification_type == verification_type.value,
                )
                .order_by(VerificationRecordRow.verified_at.desc(), VerificationRecordRow.id.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return _to_record(row) if row else None

    async def list_records(
        self,
        subject_id: str,
        verification_type: Optional[VerificationMethod] = None,
    ) -> List[VerificationRecord]:
        """All records for a subject, newest first."""
        query = select(VerificationRecordRow).where(VerificationRecordRow.subject_id == subject_id)
        if verification_type is not None:
            query = query.where(VerificationRecordRow.verification_type == verification_type.value)
        query = query.order_by(VerificationRecordRow.verified_at.desc(), VerificationRecordRow.id.desc())

        async with self._session_factory() as session:
            result = await session.execute(query)
            return [_to_record(row) for row in result.scalars().all()]

    async def get_trust_profile(self, subject_id: str) -> Optional[TrustProfileFlags]:
        async with self._session_factory() as session:
            profile = await session.get(TrustProfile, subject_id)
            return _to_flags(profile) if profile else None

    async def reconcile_trust_flags(self, subject_id: str) -> TrustProfileFlags:
        """
        Rebuild the trust flags from the latest record of each type.

        Used after a commit returned flags_updated=False.
        """
        latest = {
            method: await self.latest_record(subject_id, method)
            for method in VerificationMethod
        }

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    profile = await self._get_or_create_profile(session, subject_id)
                    for method, record in latest.items():
                        if record is not None:
                            _apply_record(profile, method, record.identity_number_used, record.verified_at)
                    await session.flush()
                    flags = _to_flags(profile)
        except SQLAlchemyError as e:
            STORE_FAILURES.labels(operation="reconcile_flags").inc()
            logger.error("Trust flag reconciliation failed", exc_info=True, extra={"subject_id": subject_id})
            raise StoreError(str(e), operation="reconcile_flags")

        logger.info(
            "Reconciled trust flags from %d record type(s)",
            sum(1 for r in latest.values() if r is not None),
            extra={"subject_id": subject_id},
        )
        return flags
