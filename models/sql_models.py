"""
SQLAlchemy Models for the identity verification engine.
"""
from datetime import date, datetime
from typing import Optional
from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from services.db import Base

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class VerificationRecordRow(Base):
    """Append-only audit trail. Rows are never updated or deleted."""
    __tablename__ = "verification_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subject_id: Mapped[str] = mapped_column(String(100), nullable=False)
    verification_type: Mapped[str] = mapped_column(String(20), nullable=False)  # 'attribute', 'face'
    identity_number_used: Mapped[str] = mapped_column(String(50), nullable=False)

    matched: Mapped[bool] = mapped_column(Boolean, nullable=False)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    raw_response: Mapped[dict] = mapped_column(JSONType, default=dict)

    verified_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_verification_records_subject_type", "subject_id", "verification_type", "verified_at"),
    )


class TrustProfile(Base):
    """Verification flags of a user's trust profile (denormalised from records)."""
    __tablename__ = "trust_profiles"

    subject_id: Mapped[str] = mapped_column(String(100), primary_key=True)

    identity_number_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    identity_number: Mapped[Optional[str]] = mapped_column(String(50))
    identity_verification_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    facial_verification_status: Mapped[str] = mapped_column(String(20), default="none", nullable=False)
    facial_verification_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class QuotaCounter(Base):
    """Per-caller registry call count for one UTC day."""
    __tablename__ = "quota_counters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    caller_id: Mapped[str] = mapped_column(String(100), nullable=False)
    day: Mapped[date] = mapped_column(Date, nullable=False)
    count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        UniqueConstraint("caller_id", "day", name="uq_quota_counters_caller_day"),
    )


class SystemConfig(Base):
    """Dynamic configuration overrides set via Admin API."""
    __tablename__ = "system_configs"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(500))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
