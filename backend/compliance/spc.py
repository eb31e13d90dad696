"""
Compliance Monitor — Statistical Process Control for SLA compliance rates.

Shewhart control chart over a trailing window of daily compliance rates:

  center = mean(rate)
  σ      = population std dev of rate
  UCL    = min(1, center + kσ)
  LCL    = max(0, center − kσ)          (k = 3 by default)

Only the low side is actionable: a rate is bounded above by 1.0, so
exceeding UCL is never a violation. Severity grows with the distance below
LCL measured in σ:

  LOW       < 1σ beyond LCL
  MEDIUM    1σ – 2σ
  HIGH      2σ – 3σ
  CRITICAL  > 3σ

A metric is out of control once its violations in the window reach the
configured threshold (2 by default).
"""

from __future__ import annotations

import math
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date, timedelta

import numpy as np
import structlog

from core.config import Settings, get_settings
from core.enums import ParseableEnum
from core.errors import ValidationError

logger = structlog.get_logger()

_VIOLATION_NAMESPACE = uuid.UUID("6f1c8a52-52c4-4c1e-9a55-0b7d8f6e0c11")

# Float noise floor: means of identical rates can drift by an ulp.
_EPSILON = 1e-9


class ComplianceMetricType(ParseableEnum):
    QUEUE_STABILITY = "QUEUE_STABILITY"
    WAIT_TIME_SLA = "WAIT_TIME_SLA"
    CACHE_HIT_RATE = "CACHE_HIT_RATE"
    ERROR_RATE = "ERROR_RATE"
    ACCESS_LOG_COVERAGE = "ACCESS_LOG_COVERAGE"
    DATA_RETENTION_COMPLIANCE = "DATA_RETENTION_COMPLIANCE"
    CONSENT_VALIDITY = "CONSENT_VALIDITY"


class Severity(ParseableEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


@dataclass(frozen=True)
class SPCThresholds:
    sigma_multiplier: float = 3.0
    out_of_control_threshold: int = 2
    recent_violations_limit: int = 10
    min_samples: int = 2

    def __post_init__(self):
        if self.sigma_multiplier <= 0:
            raise ValidationError("sigma_multiplier must be > 0")
        if self.out_of_control_threshold < 1:
            raise ValidationError("out_of_control_threshold must be >= 1")
        if self.recent_violations_limit < 0:
            raise ValidationError("recent_violations_limit must be >= 0")
        if self.min_samples < 2:
            raise ValidationError("min_samples must be >= 2")

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "SPCThresholds":
        settings = settings or get_settings()
        return cls(
            sigma_multiplier=settings.spc_sigma_multiplier,
            out_of_control_threshold=settings.spc_out_of_control_threshold,
            recent_violations_limit=settings.spc_recent_violations_limit,
            min_samples=settings.spc_min_samples,
        )


@dataclass(frozen=True)
class ComplianceSample:
    metric_type: ComplianceMetricType
    date: date
    compliance_rate: float

    def __post_init__(self):
        object.__setattr__(self, "metric_type", ComplianceMetricType.parse(self.metric_type))
        try:
            rate = float(self.compliance_rate)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"compliance_rate must be numeric, got {self.compliance_rate!r}") from exc
        if math.isnan(rate) or not 0.0 <= rate <= 1.0:
            raise ValidationError(f"compliance_rate must be in [0, 1], got {rate}")
        object.__setattr__(self, "compliance_rate", rate)


@dataclass(frozen=True)
class ControlLimits:
    metric_type: ComplianceMetricType
    center_line: float | None
    upper_control_limit: float | None
    lower_control_limit: float | None
    std_deviation: float | None
    sample_count: int
    days_analyzed: int
    status: str = "computed"

    @property
    def has_limits(self) -> bool:
        return self.status == "computed"


@dataclass(frozen=True)
class ComplianceViolation:
    violation_id: str
    metric_type: ComplianceMetricType
    violation_date: date
    compliance_rate: float
    upper_control_limit: float
    lower_control_limit: float
    severity: Severity
    description: str
    sigma_distance: float


@dataclass(frozen=True)
class MetricSummary:
    metric_type: ComplianceMetricType
    current_rate: float | None
    average_rate: float | None
    min_rate: float | None
    violations: int
    out_of_control: bool


@dataclass(frozen=True)
class ComplianceDashboard:
    days_analyzed: int
    average_compliance_rate: float | None
    total_violations: int
    violations_days: int
    metrics_summary: dict[ComplianceMetricType, MetricSummary] = field(default_factory=dict)
    recent_violations: tuple[ComplianceViolation, ...] = ()


@dataclass(frozen=True)
class ComplianceReport:
    limits: dict[ComplianceMetricType, ControlLimits]
    violations: tuple[ComplianceViolation, ...]
    dashboard: ComplianceDashboard


def classify_severity(sigma_distance: float) -> Severity:
    if sigma_distance < 1.0:
        return Severity.LOW
    if sigma_distance < 2.0:
        return Severity.MEDIUM
    if sigma_distance <= 3.0:
        return Severity.HIGH
    return Severity.CRITICAL


def violation_id(metric_type: ComplianceMetricType, violation_date: date) -> str:
    """Deterministic id so re-running a window yields the same violations."""
    return str(uuid.uuid5(_VIOLATION_NAMESPACE, f"{metric_type.value}:{violation_date.isoformat()}"))


def trailing_window(samples: Iterable[ComplianceSample], days: int, as_of: date) -> list[ComplianceSample]:
    """Samples dated in (as_of − days, as_of], oldest first."""
    start = as_of - timedelta(days=days)
    window = [s for s in samples if start < s.date <= as_of]
    return sorted(window, key=lambda s: s.date)


class ComplianceMonitor:
    """Stateless SPC engine. Each call works on its own sample snapshot."""

    def __init__(self, thresholds: SPCThresholds | None = None):
        self.thresholds = thresholds or SPCThresholds.from_settings()

    # ── Control limits ───────────────────────────────────────────────

    def compute_control_limits(
        self,
        metric_type: ComplianceMetricType | str,
        samples: Sequence[ComplianceSample],
        days_analyzed: int,
    ) -> ControlLimits:
        metric = ComplianceMetricType.parse(metric_type)
        rates = np.array([s.compliance_rate for s in samples if s.metric_type == metric], dtype=float)

        if rates.size < self.thresholds.min_samples:
            center = float(rates.mean()) if rates.size else None
            logger.info("spc.insufficient_data", metric_type=metric.value, sample_count=int(rates.size))
            return ControlLimits(
                metric_type=metric,
                center_line=center,
                upper_control_limit=None,
                lower_control_limit=None,
                std_deviation=None,
                sample_count=int(rates.size),
                days_analyzed=days_analyzed,
                status="insufficient_data",
            )

        center = float(rates.mean())
        sigma = float(rates.std(ddof=0))
        spread = self.thresholds.sigma_multiplier * sigma
        return ControlLimits(
            metric_type=metric,
            center_line=center,
            upper_control_limit=min(1.0, center + spread),
            lower_control_limit=max(0.0, center - spread),
            std_deviation=sigma,
            sample_count=int(rates.size),
            days_analyzed=days_analyzed,
        )

    # ── Violations ───────────────────────────────────────────────────

    def detect_violations(
        self,
        samples: Sequence[ComplianceSample],
        limits: ControlLimits,
    ) -> list[ComplianceViolation]:
        if not limits.has_limits:
            return []

        lcl = limits.lower_control_limit
        sigma = limits.std_deviation or 0.0
        violations: list[ComplianceViolation] = []
        for sample in samples:
            if sample.metric_type != limits.metric_type or sample.compliance_rate >= lcl - _EPSILON:
                continue

            gap = lcl - sample.compliance_rate
            distance = gap / sigma if sigma > _EPSILON else math.inf
            severity = classify_severity(distance)
            distance_text = f"{distance:.1f}σ" if math.isfinite(distance) else "zero-variance baseline"
            violations.append(
                ComplianceViolation(
                    violation_id=violation_id(limits.metric_type, sample.date),
                    metric_type=limits.metric_type,
                    violation_date=sample.date,
                    compliance_rate=sample.compliance_rate,
                    upper_control_limit=limits.upper_control_limit,
                    lower_control_limit=lcl,
                    severity=severity,
                    description=(
                        f"{limits.metric_type.value} compliance {sample.compliance_rate:.2%} fell below "
                        f"lower control limit {lcl:.2%} ({distance_text})"
                    ),
                    sigma_distance=distance,
                )
            )
            logger.warning(
                "spc.violation_detected",
                metric_type=limits.metric_type.value,
                violation_date=sample.date.isoformat(),
                compliance_rate=sample.compliance_rate,
                lower_control_limit=round(lcl, 4),
                severity=severity.value,
            )
        return violations

    # ── Full evaluation ──────────────────────────────────────────────

    def evaluate(
        self,
        samples: Sequence[ComplianceSample],
        days_analyzed: int,
        as_of: date | None = None,
    ) -> ComplianceReport:
        """
        Compute limits, violations and the dashboard for every metric present.

        The window is the ``days_analyzed`` days ending at ``as_of`` (defaults
        to the latest sample date).
        """
        if days_analyzed < 1:
            raise ValidationError(f"days_analyzed must be >= 1, got {days_analyzed}")
        if not samples:
            return ComplianceReport(
                limits={},
                violations=(),
                dashboard=ComplianceDashboard(
                    days_analyzed=days_analyzed,
                    average_compliance_rate=None,
                    total_violations=0,
                    violations_days=0,
                ),
            )

        as_of = as_of or max(s.date for s in samples)
        window = trailing_window(samples, days_analyzed, as_of)
        metrics = sorted({s.metric_type for s in window}, key=lambda m: m.value)

        limits: dict[ComplianceMetricType, ControlLimits] = {}
        violations: list[ComplianceViolation] = []
        for metric in metrics:
            metric_samples = [s for s in window if s.metric_type == metric]
            metric_limits = self.compute_control_limits(metric, metric_samples, days_analyzed)
            limits[metric] = metric_limits
            violations.extend(self.detect_violations(metric_samples, metric_limits))

        dashboard = self.build_dashboard(window, violations, days_analyzed)
        return ComplianceReport(limits=limits, violations=tuple(violations), dashboard=dashboard)

    def is_out_of_control(self, violation_count: int) -> bool:
        return violation_count >= self.thresholds.out_of_control_threshold

    def build_dashboard(
        self,
        window: Sequence[ComplianceSample],
        violations: Sequence[ComplianceViolation],
        days_analyzed: int,
    ) -> ComplianceDashboard:
        rates = np.array([s.compliance_rate for s in window], dtype=float)
        summaries: dict[ComplianceMetricType, MetricSummary] = {}

        for metric in sorted({s.metric_type for s in window}, key=lambda m: m.value):
            metric_samples = sorted((s for s in window if s.metric_type == metric), key=lambda s: s.date)
            metric_rates = np.array([s.compliance_rate for s in metric_samples], dtype=float)
            count = sum(1 for v in violations if v.metric_type == metric)
            summaries[metric] = MetricSummary(
                metric_type=metric,
                current_rate=metric_samples[-1].compliance_rate,
                average_rate=float(metric_rates.mean()),
                min_rate=float(metric_rates.min()),
                violations=count,
                out_of_control=self.is_out_of_control(count),
            )

        recent = sorted(violations, key=lambda v: (v.violation_date, v.metric_type.value), reverse=True)
        return ComplianceDashboard(
            days_analyzed=days_analyzed,
            average_compliance_rate=float(rates.mean()) if rates.size else None,
            total_violations=len(violations),
            violations_days=len({v.violation_date for v in violations}),
            metrics_summary=summaries,
            recent_violations=tuple(recent[: self.thresholds.recent_violations_limit]),
        )


def render_sla_summary(dashboard: ComplianceDashboard, report_date: date) -> str:
    """Plain-text daily SLA summary for administrators."""
    lines = [f"Daily SLA Compliance Summary - {report_date.isoformat()}", ""]
    flagged = [s for s in dashboard.metrics_summary.values() if s.out_of_control]
    if flagged:
        lines.append("Out-of-control metrics:")
        for summary in flagged:
            current = f"{summary.current_rate:.2%}" if summary.current_rate is not None else "n/a"
            lines.append(f"  - {summary.metric_type.value}: current {current}, {summary.violations} violations")
    else:
        lines.append("No metrics out of control.")

    lines.append("")
    overall = dashboard.average_compliance_rate
    lines.append(f"Overall compliance: {overall:.2%}" if overall is not None else "Overall compliance: n/a")
    lines.append(
        f"Violations: {dashboard.total_violations} across {dashboard.violations_days} day(s) "
        f"in the last {dashboard.days_analyzed} day(s)"
    )
    return "\n".join(lines)
