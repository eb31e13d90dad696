"""
SQL-backed archival execution log.

Same lifecycle rules as the in-memory tracker, enforced by the database so
that several scheduler processes can share one log table:

  - the (policy_id, execution_date) unique constraint lets exactly one
    start() per policy and day succeed;
  - every transition is a conditional UPDATE that matches the RUNNING row
    and the counts it was built from, so at most one terminal transition
    wins and a stale write never erases recorded progress.

Each public method except replace() is its own unit of work and commits on
success.
"""

import uuid
from collections.abc import Callable
from datetime import date, datetime

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from compliance.archival import (
    MAX_COMMIT_ATTEMPTS,
    ArchivalExecutionLog,
    ArchivalStatus,
    EntityType,
    check_date_range,
    completed,
    failed,
    log_rejected_transition,
    new_execution,
    with_progress,
)
from compliance.retention import RetentionPolicy
from core.clock import Clock, utcnow
from core.errors import (
    DuplicateExecutionError,
    InvariantViolationError,
    LogNotFoundError,
    StaleLogError,
    TerminalStateError,
    ValidationError,
)
from db.models import DataArchivalLog, DataRetentionPolicy

logger = structlog.get_logger()


def _to_log(row: DataArchivalLog) -> ArchivalExecutionLog:
    return ArchivalExecutionLog(
        id=row.id,
        policy_id=row.policy_id,
        execution_date=row.execution_date,
        entity_type=EntityType.parse(row.entity_type),
        start_time=row.start_time,
        status=ArchivalStatus.parse(row.status),
        records_processed=row.records_processed,
        records_archived=row.records_archived,
        records_failed=row.records_failed,
        end_time=row.end_time,
        duration_seconds=row.duration_seconds,
        error_message=row.error_message,
    )


def _to_policy(row: DataRetentionPolicy) -> RetentionPolicy:
    return RetentionPolicy(
        policy_id=row.policy_id,
        entity_type=row.entity_type,
        retention_days=row.retention_days,
        archival_action=row.archival_action,
        grace_period_days=row.grace_period_days,
        enabled=row.enabled,
        last_execution=row.last_execution,
        records_archived=row.records_archived,
    )


class ArchivalLogRepository:
    def __init__(self, session: AsyncSession, clock: Clock = utcnow):
        self.session = session
        self.clock = clock

    # ── Policies ──────────────────────────────────────────────────────────

    async def save_policy(self, policy: RetentionPolicy) -> RetentionPolicy:
        row = DataRetentionPolicy(
            policy_id=policy.policy_id,
            entity_type=policy.entity_type.value,
            retention_days=policy.retention_days,
            grace_period_days=policy.grace_period_days,
            archival_action=policy.archival_action.value,
            enabled=policy.enabled,
            last_execution=policy.last_execution,
            records_archived=policy.records_archived,
        )
        await self.session.merge(row)
        await self.session.commit()
        return policy

    async def get_policy(self, policy_id: uuid.UUID) -> RetentionPolicy | None:
        result = await self.session.execute(
            select(DataRetentionPolicy)
            .where(DataRetentionPolicy.policy_id == policy_id)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return _to_policy(row) if row else None

    async def record_policy_execution(self, log_id: uuid.UUID) -> RetentionPolicy:
        """Fold a COMPLETED log into its policy's last_execution and running total."""
        log = await self.get(log_id)
        policy = await self.get_policy(log.policy_id)
        if policy is None:
            raise ValidationError(f"Retention policy not found: {log.policy_id}")
        updated = policy.record_execution(log)
        await self.session.execute(
            update(DataRetentionPolicy)
            .where(DataRetentionPolicy.policy_id == policy.policy_id)
            .values(
                last_execution=updated.last_execution,
                records_archived=updated.records_archived,
                updated_at=self.clock(),
            )
        )
        await self.session.commit()
        return updated

    # ── Execution log ─────────────────────────────────────────────────────

    async def start(
        self,
        policy_id: uuid.UUID,
        entity_type: EntityType | str,
        execution_date: date | None = None,
        start_time: datetime | None = None,
    ) -> ArchivalExecutionLog:
        start_time = start_time or self.clock()
        execution_date = execution_date or start_time.date()
        log = new_execution(policy_id, entity_type, execution_date, start_time)

        self.session.add(
            DataArchivalLog(
                id=log.id,
                policy_id=log.policy_id,
                execution_date=log.execution_date,
                entity_type=log.entity_type.value,
                records_processed=0,
                records_archived=0,
                records_failed=0,
                start_time=log.start_time,
                status=log.status.value,
            )
        )
        try:
            await self.session.commit()
        except IntegrityError as exc:
            await self.session.rollback()
            logger.warning(
                "archival.duplicate_execution",
                policy_id=str(policy_id),
                execution_date=execution_date.isoformat(),
            )
            raise DuplicateExecutionError(policy_id, execution_date) from exc

        logger.info(
            "archival.started",
            log_id=str(log.id),
            policy_id=str(policy_id),
            entity_type=log.entity_type.value,
            execution_date=execution_date.isoformat(),
            store="sql",
        )
        return log

    async def get(self, log_id: uuid.UUID) -> ArchivalExecutionLog:
        result = await self.session.execute(
            select(DataArchivalLog)
            .where(DataArchivalLog.id == log_id)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        if row is None:
            raise LogNotFoundError(log_id)
        return _to_log(row)

    async def list_logs(
        self,
        policy_id: uuid.UUID | None = None,
        status: ArchivalStatus | str | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> list[ArchivalExecutionLog]:
        """Newest first. Date bounds are inclusive and apply to execution_date."""
        check_date_range(start_date, end_date)
        query = select(DataArchivalLog).order_by(
            DataArchivalLog.execution_date.desc(), DataArchivalLog.start_time.desc()
        )
        if policy_id is not None:
            query = query.where(DataArchivalLog.policy_id == policy_id)
        if status is not None:
            query = query.where(DataArchivalLog.status == ArchivalStatus.parse(status).value)
        if start_date is not None:
            query = query.where(DataArchivalLog.execution_date >= start_date)
        if end_date is not None:
            query = query.where(DataArchivalLog.execution_date <= end_date)
        result = await self.session.execute(query.execution_options(populate_existing=True))
        return [_to_log(row) for row in result.scalars().all()]

    async def record_progress(
        self, log_id: uuid.UUID, records_archived: int, records_failed: int
    ) -> ArchivalExecutionLog:
        return await self._commit(
            log_id, lambda current: with_progress(current, records_archived, records_failed), "progress"
        )

    async def complete(
        self,
        log_id: uuid.UUID,
        records_archived: int,
        records_failed: int = 0,
        end_time: datetime | None = None,
    ) -> ArchivalExecutionLog:
        end_time = end_time or self.clock()
        return await self._commit(
            log_id, lambda current: completed(current, records_archived, records_failed, end_time), "complete"
        )

    async def fail(self, log_id: uuid.UUID, error_message: str, end_time: datetime | None = None) -> ArchivalExecutionLog:
        end_time = end_time or self.clock()
        return await self._commit(log_id, lambda current: failed(current, error_message, end_time), "fail")

    async def replace(self, expected: ArchivalExecutionLog, updated: ArchivalExecutionLog) -> None:
        """Conditional UPDATE: the row must still be RUNNING with the counts ``expected`` carries.

        Committed by the caller. On a miss the session is rolled back and the
        fresh row decides between TerminalStateError and StaleLogError.
        """
        result = await self.session.execute(
            update(DataArchivalLog)
            .where(
                DataArchivalLog.id == expected.id,
                DataArchivalLog.status == ArchivalStatus.RUNNING.value,
                DataArchivalLog.records_processed == expected.records_processed,
                DataArchivalLog.records_archived == expected.records_archived,
                DataArchivalLog.records_failed == expected.records_failed,
            )
            .values(
                status=updated.status.value,
                records_processed=updated.records_processed,
                records_archived=updated.records_archived,
                records_failed=updated.records_failed,
                end_time=updated.end_time,
                duration_seconds=updated.duration_seconds,
                error_message=updated.error_message,
            )
        )
        if result.rowcount == 1:
            return

        await self.session.rollback()
        latest = await self.get(expected.id)
        if latest.status.is_terminal:
            raise TerminalStateError(latest.id, latest.status.value)
        raise StaleLogError(latest.id)

    async def _commit(
        self,
        log_id: uuid.UUID,
        build: Callable[[ArchivalExecutionLog], ArchivalExecutionLog],
        action: str,
    ) -> ArchivalExecutionLog:
        for attempt in range(1, MAX_COMMIT_ATTEMPTS + 1):
            current = await self.get(log_id)
            try:
                updated = build(current)
                await self.replace(current, updated)
            except StaleLogError as exc:
                if attempt < MAX_COMMIT_ATTEMPTS:
                    logger.info(
                        "archival.stale_snapshot", log_id=str(log_id), action=action, attempt=attempt, store="sql"
                    )
                    continue
                log_rejected_transition(current, action, exc, store="sql")
                raise
            except (InvariantViolationError, ValidationError) as exc:
                log_rejected_transition(current, action, exc, store="sql")
                raise
            break

        await self.session.commit()
        logger.info(
            "archival.transition",
            log_id=str(updated.id),
            action=action,
            status=updated.status.value,
            records_processed=updated.records_processed,
            records_archived=updated.records_archived,
            records_failed=updated.records_failed,
            duration_seconds=updated.duration_seconds,
            store="sql",
        )
        return updated
