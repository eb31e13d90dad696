"""
ClinicOps Database Models

Persisted side of the data-retention workflow. Everything else in the
engine is computed on demand and never stored.

Tables:
  1. data_retention_policies - Retention window and archival action per entity type
  2. data_archival_log       - One row per policy execution day (RUNNING → terminal)
"""

import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID

from core.clock import utcnow
from db.session import Base


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


_ENTITY_TYPES = (
    "'AUDIT_LOG', 'PATIENT_RECORD', 'MEDICAL_RECORD', 'BILLING_RECORD', "
    "'APPOINTMENT', 'PRESCRIPTION', 'CONSENT_RECORD', 'SESSION', 'NOTIFICATION'"
)


# ─── 1. Retention Policies ─────────────────────────────────────────────────


class DataRetentionPolicy(Base):
    __tablename__ = "data_retention_policies"

    policy_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    entity_type = Column(String(50), nullable=False, unique=True)
    retention_days = Column(Integer, nullable=False)
    grace_period_days = Column(Integer, nullable=False, default=0)
    archival_action = Column(String(20), nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)
    last_execution = Column(DateTime)
    records_archived = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("retention_days >= 0", name="ck_retention_days_non_negative"),
        CheckConstraint("grace_period_days >= 0", name="ck_retention_grace_non_negative"),
        CheckConstraint("records_archived >= 0", name="ck_retention_records_non_negative"),
        CheckConstraint(f"entity_type IN ({_ENTITY_TYPES})", name="ck_retention_entity_type"),
        CheckConstraint(
            "archival_action IN ('SOFT_DELETE', 'EXPORT_TO_S3', 'ANONYMIZE', 'HARD_DELETE')",
            name="ck_retention_archival_action",
        ),
    )


# ─── 2. Archival Execution Log ─────────────────────────────────────────────


class DataArchivalLog(Base):
    """One execution of a retention policy.

    The (policy_id, execution_date) unique constraint makes a second run of
    the same policy on the same day fail at insert time.
    """

    __tablename__ = "data_archival_log"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    policy_id = Column(GUID(), ForeignKey("data_retention_policies.policy_id"), nullable=False)
    execution_date = Column(Date, nullable=False)
    entity_type = Column(String(50), nullable=False)
    records_processed = Column(Integer, nullable=False, default=0)
    records_archived = Column(Integer, nullable=False, default=0)
    records_failed = Column(Integer, nullable=False, default=0)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime)
    duration_seconds = Column(Integer)
    status = Column(String(20), nullable=False, default="RUNNING")
    error_message = Column(Text)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("policy_id", "execution_date", name="uq_archival_log_policy_date"),
        CheckConstraint("status IN ('RUNNING', 'COMPLETED', 'FAILED')", name="ck_archival_log_status"),
        CheckConstraint(
            "records_processed >= 0 AND records_archived >= 0 AND records_failed >= 0",
            name="ck_archival_log_counts_non_negative",
        ),
        CheckConstraint("records_archived <= records_processed", name="ck_archival_log_archived_le_processed"),
        CheckConstraint("end_time IS NULL OR end_time >= start_time", name="ck_archival_log_end_after_start"),
        CheckConstraint(
            "duration_seconds IS NULL OR duration_seconds >= 0", name="ck_archival_log_duration_non_negative"
        ),
        Index("ix_archival_log_status", "status"),
        Index("ix_archival_log_execution_date", "execution_date"),
    )
