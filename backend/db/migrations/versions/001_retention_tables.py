"""
Retention policies and archival execution log

Revision ID: 001
Revises: None
Create Date: 2026-03-02
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

ENTITY_TYPES = (
    "'AUDIT_LOG', 'PATIENT_RECORD', 'MEDICAL_RECORD', 'BILLING_RECORD', "
    "'APPOINTMENT', 'PRESCRIPTION', 'CONSENT_RECORD', 'SESSION', 'NOTIFICATION'"
)


def upgrade() -> None:
    # 1. Retention policies
    op.create_table(
        "data_retention_policies",
        sa.Column("policy_id", sa.Uuid(), primary_key=True),
        sa.Column("entity_type", sa.String(50), nullable=False, unique=True),
        sa.Column("retention_days", sa.Integer, nullable=False),
        sa.Column("grace_period_days", sa.Integer, nullable=False, server_default="0"),
        sa.Column("archival_action", sa.String(20), nullable=False),
        sa.Column("enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("last_execution", sa.DateTime),
        sa.Column("records_archived", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("retention_days >= 0", name="ck_retention_days_non_negative"),
        sa.CheckConstraint("grace_period_days >= 0", name="ck_retention_grace_non_negative"),
        sa.CheckConstraint("records_archived >= 0", name="ck_retention_records_non_negative"),
        sa.CheckConstraint(f"entity_type IN ({ENTITY_TYPES})", name="ck_retention_entity_type"),
        sa.CheckConstraint(
            "archival_action IN ('SOFT_DELETE', 'EXPORT_TO_S3', 'ANONYMIZE', 'HARD_DELETE')",
            name="ck_retention_archival_action",
        ),
    )

    # 2. Archival execution log
    op.create_table(
        "data_archival_log",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("policy_id", sa.Uuid(), sa.ForeignKey("data_retention_policies.policy_id"), nullable=False),
        sa.Column("execution_date", sa.Date, nullable=False),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("records_processed", sa.Integer, nullable=False, server_default="0"),
        sa.Column("records_archived", sa.Integer, nullable=False, server_default="0"),
        sa.Column("records_failed", sa.Integer, nullable=False, server_default="0"),
        sa.Column("start_time", sa.DateTime, nullable=False),
        sa.Column("end_time", sa.DateTime),
        sa.Column("duration_seconds", sa.Integer),
        sa.Column("status", sa.String(20), nullable=False, server_default="RUNNING"),
        sa.Column("error_message", sa.Text),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("policy_id", "execution_date", name="uq_archival_log_policy_date"),
        sa.CheckConstraint("status IN ('RUNNING', 'COMPLETED', 'FAILED')", name="ck_archival_log_status"),
        sa.CheckConstraint(
            "records_processed >= 0 AND records_archived >= 0 AND records_failed >= 0",
            name="ck_archival_log_counts_non_negative",
        ),
        sa.CheckConstraint("records_archived <= records_processed", name="ck_archival_log_archived_le_processed"),
        sa.CheckConstraint("end_time IS NULL OR end_time >= start_time", name="ck_archival_log_end_after_start"),
        sa.CheckConstraint(
            "duration_seconds IS NULL OR duration_seconds >= 0", name="ck_archival_log_duration_non_negative"
        ),
    )
    op.create_index("ix_archival_log_status", "data_archival_log", ["status"])
    op.create_index("ix_archival_log_execution_date", "data_archival_log", ["execution_date"])


def downgrade() -> None:
    op.drop_index("ix_archival_log_execution_date", table_name="data_archival_log")
    op.drop_index("ix_archival_log_status", table_name="data_archival_log")
    op.drop_table("data_archival_log")
    op.drop_table("data_retention_policies")
