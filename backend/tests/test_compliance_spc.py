"""
Tests for the Compliance Monitor — SPC control limits and violations.

Covers:
  - Control limits (mean ± 3σ, clamped to [0, 1])
  - Violation detection below LCL only
  - Severity escalation by σ-distance
  - Dashboard aggregation and out-of-control flag
  - Insufficient data and empty windows
"""

from datetime import date, timedelta

import pytest

from compliance.spc import (
    ComplianceMetricType,
    ComplianceMonitor,
    ComplianceSample,
    ControlLimits,
    Severity,
    SPCThresholds,
    classify_severity,
    render_sla_summary,
    trailing_window,
    violation_id,
)
from core.errors import UnknownValueError, ValidationError

AS_OF = date(2026, 3, 31)
WAIT = ComplianceMetricType.WAIT_TIME_SLA
QUEUE = ComplianceMetricType.QUEUE_STABILITY


def _series(metric, rates, end=AS_OF):
    start = end - timedelta(days=len(rates) - 1)
    return [ComplianceSample(metric, start + timedelta(days=i), rate) for i, rate in enumerate(rates)]


def _limits(center, sigma, lcl, metric=WAIT):
    return ControlLimits(
        metric_type=metric,
        center_line=center,
        upper_control_limit=1.0,
        lower_control_limit=lcl,
        std_deviation=sigma,
        sample_count=30,
        days_analyzed=30,
    )


def _mixed_samples():
    """Thirty days of two metrics; WAIT_TIME_SLA collapses on the last two days."""
    stable = [0.95, 0.96, 0.94, 0.95] * 7
    wait = _series(WAIT, stable + [0.20, 0.10])
    queue = _series(QUEUE, [0.99, 0.98] * 15)
    return wait + queue


@pytest.fixture
def monitor():
    return ComplianceMonitor(SPCThresholds())


# ── Control Limits ─────────────────────────────────────────────────────


class TestControlLimits:
    def test_perfect_compliance_has_no_violations(self, monitor):
        samples = _series(WAIT, [1.0] * 14)
        report = monitor.evaluate(samples, days_analyzed=30)
        limits = report.limits[WAIT]
        assert limits.center_line == 1.0
        assert limits.std_deviation == 0.0
        assert report.violations == ()

    def test_mean_and_population_sigma(self, monitor):
        limits = monitor.compute_control_limits(WAIT, _series(WAIT, [0.9, 0.8, 0.9, 0.8]), 30)
        assert limits.center_line == pytest.approx(0.85)
        assert limits.std_deviation == pytest.approx(0.05)
        assert limits.upper_control_limit == pytest.approx(1.0)
        assert limits.lower_control_limit == pytest.approx(0.70)

    def test_limits_clamped_to_unit_interval(self, monitor):
        limits = monitor.compute_control_limits(WAIT, _series(WAIT, [0.0, 1.0]), 30)
        assert limits.upper_control_limit == 1.0
        assert limits.lower_control_limit == 0.0

    def test_custom_sigma_multiplier(self):
        monitor = ComplianceMonitor(SPCThresholds(sigma_multiplier=2.0))
        limits = monitor.compute_control_limits(WAIT, _series(WAIT, [0.9, 0.8, 0.9, 0.8]), 30)
        assert limits.lower_control_limit == pytest.approx(0.75)

    def test_single_sample_is_insufficient(self, monitor):
        limits = monitor.compute_control_limits(WAIT, _series(WAIT, [0.6]), 30)
        assert limits.status == "insufficient_data"
        assert not limits.has_limits
        assert limits.center_line == pytest.approx(0.6)
        assert limits.lower_control_limit is None
        assert monitor.detect_violations(_series(WAIT, [0.0]), limits) == []

    def test_other_metrics_ignored(self, monitor):
        samples = _series(WAIT, [0.9, 0.8]) + _series(QUEUE, [0.1])
        assert monitor.compute_control_limits(WAIT, samples, 30).sample_count == 2


# ── Violations & Severity ──────────────────────────────────────────────


class TestSeverity:
    @pytest.mark.parametrize(
        "lcl,expected",
        [
            (0.05, Severity.LOW),
            (0.15, Severity.MEDIUM),
            (0.25, Severity.HIGH),
            (0.35, Severity.CRITICAL),
        ],
    )
    def test_zero_rate_escalates_with_sigma_distance(self, monitor, lcl, expected):
        """Rate 0.0 against center 0.9, σ = 0.1: distance = LCL / σ."""
        sample = ComplianceSample(WAIT, AS_OF, 0.0)
        violations = monitor.detect_violations([sample], _limits(0.9, 0.1, lcl))
        assert len(violations) == 1
        assert violations[0].severity == expected
        assert violations[0].sigma_distance == pytest.approx(lcl / 0.1)

    @pytest.mark.parametrize(
        "distance,expected",
        [(0.0, Severity.LOW), (1.0, Severity.MEDIUM), (2.0, Severity.HIGH), (3.0, Severity.HIGH), (3.01, Severity.CRITICAL)],
    )
    def test_band_edges(self, distance, expected):
        assert classify_severity(distance) == expected

    def test_rate_on_lcl_is_not_a_violation(self, monitor):
        sample = ComplianceSample(WAIT, AS_OF, 0.7)
        assert monitor.detect_violations([sample], _limits(0.85, 0.05, 0.7)) == []

    def test_high_side_never_violates(self, monitor):
        sample = ComplianceSample(WAIT, AS_OF, 1.0)
        limits = ControlLimits(WAIT, 0.5, 0.8, 0.2, 0.1, 30, 30)
        assert monitor.detect_violations([sample], limits) == []

    def test_zero_variance_baseline_is_critical(self, monitor):
        sample = ComplianceSample(WAIT, AS_OF, 0.9)
        violations = monitor.detect_violations([sample], _limits(1.0, 0.0, 1.0))
        assert violations[0].severity == Severity.CRITICAL
        assert "zero-variance" in violations[0].description

    def test_violation_fields(self, monitor):
        sample = ComplianceSample(WAIT, AS_OF, 0.5)
        violation = monitor.detect_violations([sample], _limits(0.85, 0.05, 0.7))[0]
        assert violation.violation_id == violation_id(WAIT, AS_OF)
        assert violation.violation_date == AS_OF
        assert violation.lower_control_limit == 0.7
        assert violation.upper_control_limit == 1.0
        assert "WAIT_TIME_SLA" in violation.description


# ── Evaluation & Dashboard ─────────────────────────────────────────────


class TestEvaluate:
    def test_violations_found_per_metric(self, monitor):
        report = monitor.evaluate(_mixed_samples(), days_analyzed=30)
        assert {v.metric_type for v in report.violations} == {WAIT}
        assert report.dashboard.total_violations == len(report.violations)
        assert set(report.limits) == {WAIT, QUEUE}

    def test_out_of_control_flag(self, monitor):
        dashboard = monitor.evaluate(_mixed_samples(), days_analyzed=30).dashboard
        wait = dashboard.metrics_summary[WAIT]
        assert wait.violations == 2
        assert wait.out_of_control is True
        assert wait.current_rate == pytest.approx(0.10)
        assert wait.min_rate == pytest.approx(0.10)
        assert dashboard.metrics_summary[QUEUE].out_of_control is False

    def test_summaries_keyed_like_limits(self, monitor):
        report = monitor.evaluate(_mixed_samples(), days_analyzed=30)
        assert set(report.dashboard.metrics_summary) == set(report.limits)
        assert all(isinstance(key, ComplianceMetricType) for key in report.dashboard.metrics_summary)

    def test_recent_violations_newest_first_and_limited(self):
        monitor = ComplianceMonitor(SPCThresholds(recent_violations_limit=1))
        dashboard = monitor.evaluate(_mixed_samples(), days_analyzed=30).dashboard
        assert dashboard.total_violations == 2
        assert dashboard.violations_days == 2
        assert [v.violation_date for v in dashboard.recent_violations] == [AS_OF]

    def test_window_excludes_old_samples(self, monitor):
        old = _series(WAIT, [0.0], end=AS_OF - timedelta(days=45))
        recent = _series(WAIT, [0.9, 0.9, 0.9])
        report = monitor.evaluate(old + recent, days_analyzed=30, as_of=AS_OF)
        assert report.limits[WAIT].sample_count == 3
        assert report.violations == ()

    def test_trailing_window_bounds(self):
        samples = _series(WAIT, [0.9] * 5)
        window = trailing_window(samples, 3, AS_OF)
        assert [s.date for s in window] == [AS_OF - timedelta(days=2), AS_OF - timedelta(days=1), AS_OF]

    def test_empty_input(self, monitor):
        report = monitor.evaluate([], days_analyzed=30)
        assert report.violations == ()
        assert report.dashboard.average_compliance_rate is None
        assert report.dashboard.metrics_summary == {}

    def test_rerun_is_deterministic(self, monitor):
        samples = _mixed_samples()
        first = monitor.evaluate(samples, days_analyzed=30)
        second = monitor.evaluate(samples, days_analyzed=30)
        assert [v.violation_id for v in first.violations] == [v.violation_id for v in second.violations]

    def test_days_analyzed_must_be_positive(self, monitor):
        with pytest.raises(ValidationError):
            monitor.evaluate(_mixed_samples(), days_analyzed=0)


class TestSamples:
    def test_rate_out_of_range(self):
        with pytest.raises(ValidationError):
            ComplianceSample(WAIT, AS_OF, 1.2)

    @pytest.mark.parametrize("rate", ["abc", None, object()])
    def test_non_numeric_rate_rejected(self, rate):
        with pytest.raises(ValidationError):
            ComplianceSample(WAIT, AS_OF, rate)

    def test_numeric_string_rate_coerced(self):
        assert ComplianceSample(WAIT, AS_OF, "0.9").compliance_rate == pytest.approx(0.9)

    def test_metric_parsed_from_string(self):
        assert ComplianceSample("wait_time_sla", AS_OF, 0.9).metric_type == WAIT

    def test_unknown_metric(self):
        with pytest.raises(UnknownValueError):
            ComplianceSample("UPTIME", AS_OF, 0.9)


class TestSlaSummary:
    def test_summary_lists_out_of_control_metrics(self, monitor):
        samples = _mixed_samples()
        dashboard = monitor.evaluate(samples, days_analyzed=30).dashboard
        text = render_sla_summary(dashboard, AS_OF)
        assert text.startswith("Daily SLA Compliance Summary - 2026-03-31")
        assert "WAIT_TIME_SLA" in text
        assert "Violations: 2" in text

    def test_summary_when_all_clear(self, monitor):
        dashboard = monitor.evaluate(_series(WAIT, [1.0] * 5), days_analyzed=30).dashboard
        assert "No metrics out of control." in render_sla_summary(dashboard, AS_OF)
