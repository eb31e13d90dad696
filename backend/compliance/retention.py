"""
Data retention policies and the runner that executes them.

A policy keeps records of one entity type for ``retention_days``; after that
they are archived with the policy's action, and hard deletion waits another
``grace_period_days``. The runner does not touch records itself: it hands
the cutoffs to a caller-supplied archiver and books the outcome through the
ArchivalExecutionTracker.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

import structlog

from compliance.archival import (
    ArchivalAction,
    ArchivalExecutionLog,
    ArchivalExecutionTracker,
    ArchivalStatus,
    EntityType,
)
from core.clock import Clock, utcnow
from core.enums import ParseableEnum
from core.errors import TerminalStateError, ValidationError

logger = structlog.get_logger()


@dataclass(frozen=True)
class RetentionPolicy:
    policy_id: uuid.UUID
    entity_type: EntityType
    retention_days: int
    archival_action: ArchivalAction
    grace_period_days: int = 0
    enabled: bool = True
    last_execution: datetime | None = None
    records_archived: int = 0

    def __post_init__(self):
        object.__setattr__(self, "entity_type", EntityType.parse(self.entity_type))
        object.__setattr__(self, "archival_action", ArchivalAction.parse(self.archival_action))
        if self.retention_days < 0:
            raise ValidationError(f"retention_days must be >= 0, got {self.retention_days}")
        if self.grace_period_days < 0:
            raise ValidationError(f"grace_period_days must be >= 0, got {self.grace_period_days}")
        if self.records_archived < 0:
            raise ValidationError(f"records_archived must be >= 0, got {self.records_archived}")

    def archive_cutoff(self, now: datetime) -> datetime:
        """Records created before this instant are due for archival."""
        return now - timedelta(days=self.retention_days)

    def delete_cutoff(self, now: datetime) -> datetime:
        return self.archive_cutoff(now) - timedelta(days=self.grace_period_days)

    def record_execution(self, log: ArchivalExecutionLog) -> "RetentionPolicy":
        """Fold a COMPLETED run into last_execution and the cumulative count."""
        if log.policy_id != self.policy_id:
            raise ValidationError(f"Log {log.id} belongs to policy {log.policy_id}, not {self.policy_id}")
        if log.status is not ArchivalStatus.COMPLETED:
            raise ValidationError(f"Only COMPLETED runs count towards a policy, got {log.status.value}")
        return replace(
            self,
            last_execution=log.end_time,
            records_archived=self.records_archived + log.records_archived,
        )


@dataclass(frozen=True)
class ArchivalOutcome:
    """What the archiver reports back for one run."""

    records_archived: int
    records_failed: int = 0


# archiver(policy, archive_cutoff, delete_cutoff) -> ArchivalOutcome
Archiver = Callable[[RetentionPolicy, datetime, datetime], ArchivalOutcome]


class PolicyRunStatus(ParseableEnum):
    COMPLETED = "COMPLETED"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class PolicyRunResult:
    """Outcome of one policy inside a run_all() pass."""

    policy: RetentionPolicy
    status: PolicyRunStatus
    error: str | None = None


class RetentionPolicyRunner:
    """Runs retention policies. Failures are recorded on the log, then re-raised."""

    def __init__(self, tracker: ArchivalExecutionTracker | None = None, clock: Clock = utcnow):
        self.clock = clock
        self.tracker = tracker or ArchivalExecutionTracker(clock=clock)

    def run(self, policy: RetentionPolicy, archiver: Archiver) -> RetentionPolicy:
        if not policy.enabled:
            logger.info("retention.policy_skipped", policy_id=str(policy.policy_id), reason="disabled")
            return policy

        now = self.clock()
        archive_cutoff = policy.archive_cutoff(now)
        delete_cutoff = policy.delete_cutoff(now)
        log = self.tracker.start(policy.policy_id, policy.entity_type, now.date(), now)

        logger.info(
            "retention.policy_started",
            policy_id=str(policy.policy_id),
            entity_type=policy.entity_type.value,
            archival_action=policy.archival_action.value,
            archive_cutoff=archive_cutoff.isoformat(),
            delete_cutoff=delete_cutoff.isoformat(),
        )

        try:
            outcome = archiver(policy, archive_cutoff, delete_cutoff)
            finished = self.tracker.complete(log.id, outcome.records_archived, outcome.records_failed)
        except TerminalStateError:
            # Someone else already finished this log; nothing left to record.
            raise
        except Exception as exc:
            self.tracker.fail(log.id, str(exc) or type(exc).__name__)
            logger.error(
                "retention.policy_failed",
                policy_id=str(policy.policy_id),
                log_id=str(log.id),
                error=str(exc),
                exc_info=True,
            )
            raise

        updated = policy.record_execution(finished)
        logger.info(
            "retention.policy_completed",
            policy_id=str(policy.policy_id),
            records_archived=finished.records_archived,
            records_failed=finished.records_failed,
            total_archived=updated.records_archived,
        )
        return updated

    def run_all(self, policies: Iterable[RetentionPolicy], archiver: Archiver) -> list[PolicyRunResult]:
        """Run every policy in turn. A failing policy is reported and the pass continues."""
        results = []
        for policy in policies:
            try:
                updated = self.run(policy, archiver)
            except Exception as exc:
                results.append(PolicyRunResult(policy, PolicyRunStatus.FAILED, str(exc) or type(exc).__name__))
                continue
            status = PolicyRunStatus.COMPLETED if policy.enabled else PolicyRunStatus.SKIPPED
            results.append(PolicyRunResult(updated, status))

        logger.info(
            "retention.run_all_finished",
            policies=len(results),
            completed=sum(1 for r in results if r.status is PolicyRunStatus.COMPLETED),
            failed=sum(1 for r in results if r.status is PolicyRunStatus.FAILED),
            skipped=sum(1 for r in results if r.status is PolicyRunStatus.SKIPPED),
        )
        return results


# Baseline policies seeded for every new clinic: (entity, retention days, grace days, action).
DEFAULT_POLICY_SETTINGS = (
    (EntityType.AUDIT_LOG, 2555, 30, ArchivalAction.EXPORT_TO_S3),
    (EntityType.PATIENT_RECORD, 2555, 30, ArchivalAction.EXPORT_TO_S3),
    (EntityType.SESSION, 90, 7, ArchivalAction.HARD_DELETE),
    (EntityType.NOTIFICATION, 30, 0, ArchivalAction.HARD_DELETE),
)


def default_policies() -> list[RetentionPolicy]:
    return [
        RetentionPolicy(
            policy_id=uuid.uuid4(),
            entity_type=entity_type,
            retention_days=retention_days,
            archival_action=action,
            grace_period_days=grace_days,
        )
        for entity_type, retention_days, grace_days, action in DEFAULT_POLICY_SETTINGS
    ]
