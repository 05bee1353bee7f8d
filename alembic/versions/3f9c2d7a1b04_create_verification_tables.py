"""create verification tables

Revision ID: 3f9c2d7a1b04
Revises:
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "3f9c2d7a1b04"
down_revision = None
branch_labels = None
depends_on = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "verification_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("subject_id", sa.String(100), nullable=False),
        sa.Column("verification_type", sa.String(20), nullable=False),
        sa.Column("identity_number_used", sa.String(50), nullable=False),
        sa.Column("matched", sa.Boolean(), nullable=False),
        sa.Column("score", sa.Float(), nullable=False),
        sa.Column("raw_response", JSONType, nullable=True),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "idx_verification_records_subject_type",
        "verification_records",
        ["subject_id", "verification_type", "verified_at"],
    )

    op.create_table(
        "trust_profiles",
        sa.Column("subject_id", sa.String(100), primary_key=True),
        sa.Column("identity_number_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("identity_number", sa.String(50), nullable=True),
        sa.Column("identity_verification_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("facial_verification_status", sa.String(20), nullable=False, server_default="none"),
        sa.Column("facial_verification_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )

    op.create_table(
        "quota_counters",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("caller_id", sa.String(100), nullable=False),
        sa.Column("day", sa.Date(), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False, server_default="0"),
        sa.UniqueConstraint("caller_id", "day", name="uq_quota_counters_caller_day"),
    )

    op.create_table(
        "system_configs",
        sa.Column("key", sa.String(100), primary_key=True),
        sa.Column("value", sa.String(500), nullable=False),
        sa.Column("description", sa.String(500), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )


def downgrade() -> None:
    op.drop_table("system_configs")
    op.drop_table("quota_counters")
    op.drop_table("trust_profiles")
    op.drop_index("idx_verification_records_subject_type", table_name="verification_records")
    op.drop_table("verification_records")
