"""
Archival Execution Tracker — lifecycle of one retention-policy run.

State machine per (policy_id, execution_date):

    RUNNING ──complete()──▶ COMPLETED
       │
       └────fail()────────▶ FAILED

Terminal states are final. Every transition is built as a new log value,
checked against the invariants below, and only then handed to the store.
A rejected transition leaves the stored log untouched.

Invariants:
  1. records_processed, records_archived, records_failed ≥ 0
  2. records_archived ≤ records_processed
  3. records_processed = records_archived + records_failed
  4. end_time ≥ start_time (end_time absent while RUNNING)
  5. status ∈ {RUNNING, COMPLETED, FAILED}; error_message present iff FAILED
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import date, datetime
from typing import Protocol

import structlog

from core.clock import Clock, utcnow
from core.enums import ParseableEnum
from core.errors import (
    DuplicateExecutionError,
    InvariantViolationError,
    LogNotFoundError,
    StaleLogError,
    TerminalStateError,
    ValidationError,
)

logger = structlog.get_logger()


class EntityType(ParseableEnum):
    AUDIT_LOG = "AUDIT_LOG"
    PATIENT_RECORD = "PATIENT_RECORD"
    MEDICAL_RECORD = "MEDICAL_RECORD"
    BILLING_RECORD = "BILLING_RECORD"
    APPOINTMENT = "APPOINTMENT"
    PRESCRIPTION = "PRESCRIPTION"
    CONSENT_RECORD = "CONSENT_RECORD"
    SESSION = "SESSION"
    NOTIFICATION = "NOTIFICATION"


class ArchivalAction(ParseableEnum):
    SOFT_DELETE = "SOFT_DELETE"
    EXPORT_TO_S3 = "EXPORT_TO_S3"
    ANONYMIZE = "ANONYMIZE"
    HARD_DELETE = "HARD_DELETE"


class ArchivalStatus(ParseableEnum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not ArchivalStatus.RUNNING


@dataclass(frozen=True)
class ArchivalExecutionLog:
    id: uuid.UUID
    policy_id: uuid.UUID
    execution_date: date
    entity_type: EntityType
    start_time: datetime
    status: ArchivalStatus = ArchivalStatus.RUNNING
    records_processed: int = 0
    records_archived: int = 0
    records_failed: int = 0
    end_time: datetime | None = None
    duration_seconds: int | None = None
    error_message: str | None = None

    @property
    def key(self) -> tuple[uuid.UUID, date]:
        return (self.policy_id, self.execution_date)


def validate_log(log: ArchivalExecutionLog) -> None:
    """Raise InvariantViolationError naming the first broken invariant."""
    if not isinstance(log.status, ArchivalStatus):
        raise InvariantViolationError("status_domain", f"unknown status {log.status!r}")

    for name in ("records_processed", "records_archived", "records_failed"):
        if getattr(log, name) < 0:
            raise InvariantViolationError("non_negative_counts", f"{name}={getattr(log, name)}")

    if log.records_archived > log.records_processed:
        raise InvariantViolationError(
            "archived_within_processed",
            f"records_archived={log.records_archived} > records_processed={log.records_processed}",
        )

    if log.records_processed != log.records_archived + log.records_failed:
        raise InvariantViolationError(
            "processed_equals_archived_plus_failed",
            f"{log.records_processed} != {log.records_archived} + {log.records_failed}",
        )

    if log.status is ArchivalStatus.RUNNING:
        if log.end_time is not None:
            raise InvariantViolationError("end_after_start", "RUNNING log cannot have an end_time")
    else:
        if log.end_time is None:
            raise InvariantViolationError("end_after_start", f"{log.status.value} log requires an end_time")
        if log.end_time < log.start_time:
            raise InvariantViolationError(
                "end_after_start",
                f"end_time {log.end_time.isoformat()} precedes start_time {log.start_time.isoformat()}",
            )

    has_error = bool(log.error_message and log.error_message.strip())
    if (log.status is ArchivalStatus.FAILED) != has_error:
        raise InvariantViolationError("error_message_iff_failed", f"status={log.status.value}")


# ── Pure transitions ──────────────────────────────────────────────────────


def new_execution(
    policy_id: uuid.UUID,
    entity_type: EntityType | str,
    execution_date: date,
    start_time: datetime,
    log_id: uuid.UUID | None = None,
) -> ArchivalExecutionLog:
    log = ArchivalExecutionLog(
        id=log_id or uuid.uuid4(),
        policy_id=policy_id,
        execution_date=execution_date,
        entity_type=EntityType.parse(entity_type),
        start_time=start_time,
    )
    validate_log(log)
    return log


def _require_running(log: ArchivalExecutionLog) -> None:
    if log.status.is_terminal:
        raise TerminalStateError(log.id, log.status.value)


def _check_counts(records_archived: int, records_failed: int) -> None:
    if records_archived < 0 or records_failed < 0:
        raise InvariantViolationError(
            "non_negative_counts",
            f"records_archived={records_archived}, records_failed={records_failed}",
        )


def with_progress(log: ArchivalExecutionLog, records_archived: int, records_failed: int) -> ArchivalExecutionLog:
    _require_running(log)
    _check_counts(records_archived, records_failed)
    updated = replace(
        log,
        records_archived=records_archived,
        records_failed=records_failed,
        records_processed=records_archived + records_failed,
    )
    validate_log(updated)
    return updated


def completed(
    log: ArchivalExecutionLog,
    records_archived: int,
    records_failed: int,
    end_time: datetime,
    records_processed: int | None = None,
) -> ArchivalExecutionLog:
    """
    RUNNING → COMPLETED.

    ``records_processed`` defaults to archived + failed. Callers that count
    processed rows independently may pass it; it is then checked, not trusted.
    """
    _require_running(log)
    _check_counts(records_archived, records_failed)
    processed = records_archived + records_failed if records_processed is None else records_processed
    updated = replace(
        log,
        status=ArchivalStatus.COMPLETED,
        records_processed=processed,
        records_archived=records_archived,
        records_failed=records_failed,
        end_time=end_time,
        duration_seconds=_duration_seconds(log.start_time, end_time),
    )
    validate_log(updated)
    return updated


def failed(log: ArchivalExecutionLog, error_message: str, end_time: datetime) -> ArchivalExecutionLog:
    """RUNNING → FAILED, keeping whatever partial counts were recorded."""
    _require_running(log)
    if not error_message or not error_message.strip():
        raise ValidationError("error_message is required to fail an archival execution")
    updated = replace(
        log,
        status=ArchivalStatus.FAILED,
        end_time=end_time,
        duration_seconds=_duration_seconds(log.start_time, end_time),
        error_message=error_message,
    )
    validate_log(updated)
    return updated


def _duration_seconds(start_time: datetime, end_time: datetime) -> int:
    seconds = (end_time - start_time).total_seconds()
    if seconds < 0:
        raise InvariantViolationError(
            "end_after_start",
            f"end_time {end_time.isoformat()} precedes start_time {start_time.isoformat()}",
        )
    return int(seconds)


# ── Stores ────────────────────────────────────────────────────────────────


class ArchivalLogStore(Protocol):
    def insert(self, log: ArchivalExecutionLog) -> None:
        """Persist a new log; raise DuplicateExecutionError on key clash."""

    def get(self, log_id: uuid.UUID) -> ArchivalExecutionLog:
        """Return the log or raise LogNotFoundError."""

    def replace(self, expected: ArchivalExecutionLog, updated: ArchivalExecutionLog) -> None:
        """Swap ``expected`` for ``updated``.

        Raises TerminalStateError if the stored log already finished and
        StaleLogError if it still runs but no longer equals ``expected``.
        """


def check_date_range(start_date: date | None, end_date: date | None) -> None:
    if start_date is not None and end_date is not None and start_date > end_date:
        raise ValidationError(f"start_date {start_date.isoformat()} is after end_date {end_date.isoformat()}")


class InMemoryArchivalLogStore:
    """Process-local store. The key index plays the role of a unique constraint."""

    def __init__(self):
        self._lock = threading.Lock()
        self._logs: dict[uuid.UUID, ArchivalExecutionLog] = {}
        self._keys: dict[tuple[uuid.UUID, date], uuid.UUID] = {}

    def insert(self, log: ArchivalExecutionLog) -> None:
        with self._lock:
            if log.key in self._keys:
                raise DuplicateExecutionError(log.policy_id, log.execution_date)
            self._keys[log.key] = log.id
            self._logs[log.id] = log

    def get(self, log_id: uuid.UUID) -> ArchivalExecutionLog:
        with self._lock:
            try:
                return self._logs[log_id]
            except KeyError:
                raise LogNotFoundError(log_id) from None

    def replace(self, expected: ArchivalExecutionLog, updated: ArchivalExecutionLog) -> None:
        with self._lock:
            current = self._logs.get(expected.id)
            if current is None:
                raise LogNotFoundError(expected.id)
            if current.status.is_terminal:
                raise TerminalStateError(current.id, current.status.value)
            if current != expected:
                raise StaleLogError(current.id)
            self._logs[updated.id] = updated

    def find(self, policy_id: uuid.UUID, execution_date: date) -> ArchivalExecutionLog | None:
        with self._lock:
            log_id = self._keys.get((policy_id, execution_date))
            return self._logs.get(log_id) if log_id else None

    def list_logs(
        self,
        status: ArchivalStatus | str | None = None,
        policy_id: uuid.UUID | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> list[ArchivalExecutionLog]:
        """Newest first. Date bounds are inclusive and apply to execution_date."""
        check_date_range(start_date, end_date)
        status = ArchivalStatus.parse_optional(status)
        with self._lock:
            logs = list(self._logs.values())
        logs = [
            log
            for log in logs
            if (status is None or log.status is status)
            and (policy_id is None or log.policy_id == policy_id)
            and (start_date is None or log.execution_date >= start_date)
            and (end_date is None or log.execution_date <= end_date)
        ]
        return sorted(logs, key=lambda log: (log.execution_date, log.start_time), reverse=True)


# Re-reads allowed when a concurrent progress update races a transition.
MAX_COMMIT_ATTEMPTS = 3


class ArchivalExecutionTracker:
    """Records retention-policy runs and enforces their lifecycle."""

    def __init__(self, store: ArchivalLogStore | None = None, clock: Clock = utcnow):
        self.store = store if store is not None else InMemoryArchivalLogStore()
        self.clock = clock

    def start(
        self,
        policy_id: uuid.UUID,
        entity_type: EntityType | str,
        execution_date: date | None = None,
        start_time: datetime | None = None,
    ) -> ArchivalExecutionLog:
        start_time = start_time or self.clock()
        execution_date = execution_date or start_time.date()
        log = new_execution(policy_id, entity_type, execution_date, start_time)
        try:
            self.store.insert(log)
        except DuplicateExecutionError:
            logger.warning(
                "archival.duplicate_execution",
                policy_id=str(policy_id),
                execution_date=execution_date.isoformat(),
            )
            raise
        logger.info(
            "archival.started",
            log_id=str(log.id),
            policy_id=str(policy_id),
            entity_type=log.entity_type.value,
            execution_date=execution_date.isoformat(),
        )
        return log

    def record_progress(self, log_id: uuid.UUID, records_archived: int, records_failed: int) -> ArchivalExecutionLog:
        return self._commit(log_id, lambda current: with_progress(current, records_archived, records_failed), "progress")

    def complete(
        self,
        log_id: uuid.UUID,
        records_archived: int,
        records_failed: int = 0,
        end_time: datetime | None = None,
        records_processed: int | None = None,
    ) -> ArchivalExecutionLog:
        end_time = end_time or self.clock()
        return self._commit(
            log_id,
            lambda current: completed(current, records_archived, records_failed, end_time, records_processed),
            "complete",
        )

    def fail(self, log_id: uuid.UUID, error_message: str, end_time: datetime | None = None) -> ArchivalExecutionLog:
        end_time = end_time or self.clock()
        return self._commit(log_id, lambda current: failed(current, error_message, end_time), "fail")

    def get(self, log_id: uuid.UUID) -> ArchivalExecutionLog:
        return self.store.get(log_id)

    def _commit(
        self,
        log_id: uuid.UUID,
        build: Callable[[ArchivalExecutionLog], ArchivalExecutionLog],
        action: str,
    ) -> ArchivalExecutionLog:
        """Build the transition from the latest stored log and swap it in.

        A StaleLogError means another writer got in between the read and the
        write; the transition is rebuilt from the fresh log, so a failure
        keeps progress recorded in the meantime.
        """
        for attempt in range(1, MAX_COMMIT_ATTEMPTS + 1):
            current = self.store.get(log_id)
            try:
                updated = build(current)
                self.store.replace(current, updated)
            except StaleLogError as exc:
                if attempt < MAX_COMMIT_ATTEMPTS:
                    logger.info("archival.stale_snapshot", log_id=str(log_id), action=action, attempt=attempt)
                    continue
                log_rejected_transition(current, action, exc)
                raise
            except (InvariantViolationError, ValidationError) as exc:
                log_rejected_transition(current, action, exc)
                raise
            break

        logger.info(
            "archival.transition",
            log_id=str(updated.id),
            action=action,
            status=updated.status.value,
            records_processed=updated.records_processed,
            records_archived=updated.records_archived,
            records_failed=updated.records_failed,
            duration_seconds=updated.duration_seconds,
        )
        return updated


def log_rejected_transition(current: ArchivalExecutionLog, action: str, exc: Exception, **context) -> None:
    logger.warning(
        "archival.transition_rejected",
        log_id=str(current.id),
        action=action,
        status=current.status.value,
        invariant=getattr(exc, "invariant", "validation"),
        error=str(exc),
        **context,
    )
