"""
Wait Time Estimator — M/M/1 Queueing Model.

Turns the current arrival and service rates of a doctor's queue into a
per-appointment wait estimate the front desk can show to patients.

Algorithm:
  ρ = λ / μ                       (utilization)
  W = 1 / (μ − λ)                 (hours in system, only defined for ρ < 1)
  W_adjusted = W × ⌈p / 5⌉        (positions are batched in groups of 5)

Confidence:
  LOW     queue unstable (ρ ≥ 1) or too little history behind λ, μ
  HIGH    ρ < 0.7
  MEDIUM  0.7 ≤ ρ < 1

An unstable queue is a degraded result, not an error: the estimate is still
returned, flagged with is_unstable=True, using a fixed per-batch fallback
because W has no finite value there.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

import structlog

from core.config import Settings, get_settings
from core.enums import ParseableEnum
from core.errors import ValidationError

logger = structlog.get_logger()


class Confidence(ParseableEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


@dataclass(frozen=True)
class WaitTimeThresholds:
    high_confidence_utilization: float = 0.7
    position_batch_size: int = 5
    min_history_samples: int = 20
    unstable_fallback_minutes: int = 30

    def __post_init__(self):
        if not 0.0 < self.high_confidence_utilization <= 1.0:
            raise ValidationError("high_confidence_utilization must be in (0, 1]")
        if self.position_batch_size < 1:
            raise ValidationError("position_batch_size must be >= 1")
        if self.min_history_samples < 0:
            raise ValidationError("min_history_samples must be >= 0")
        if self.unstable_fallback_minutes < 0:
            raise ValidationError("unstable_fallback_minutes must be >= 0")

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "WaitTimeThresholds":
        settings = settings or get_settings()
        return cls(
            high_confidence_utilization=settings.wait_high_confidence_utilization,
            position_batch_size=settings.wait_position_batch_size,
            min_history_samples=settings.wait_min_history_samples,
            unstable_fallback_minutes=settings.wait_unstable_fallback_minutes,
        )


@dataclass(frozen=True)
class QueueSnapshot:
    """Queue state for one appointment, supplied by the scheduling layer."""

    arrival_rate: float
    service_rate: float
    position: int
    appointment_id: uuid.UUID | None = None
    history_sufficient: bool = True
    history_sample_count: int | None = None

    def __post_init__(self):
        arrival_rate, service_rate = validate_rates(self.arrival_rate, self.service_rate)
        object.__setattr__(self, "arrival_rate", arrival_rate)
        object.__setattr__(self, "service_rate", service_rate)
        if isinstance(self.position, bool) or not isinstance(self.position, int):
            raise ValidationError(f"Queue position must be an integer, got {self.position!r}")
        if self.position < 1:
            raise ValidationError(f"Queue position must be >= 1, got {self.position}")
        if self.history_sample_count is not None and self.history_sample_count < 0:
            raise ValidationError("history_sample_count must be >= 0")


@dataclass(frozen=True)
class WaitTimeEstimate:
    appointment_id: uuid.UUID | None
    estimated_wait_minutes: int
    confidence: Confidence
    is_unstable: bool
    utilization: float
    arrival_rate: float
    service_rate: float
    base_wait_minutes: float | None
    position_multiplier: int


def _to_rate(value, field_name: str) -> float:
    try:
        rate = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field_name} must be numeric, got {value!r}") from exc
    if not rate > 0 or math.isinf(rate):
        raise ValidationError(f"{field_name} must be a positive finite number, got {value!r}")
    return rate


def validate_rates(arrival_rate: float, service_rate: float) -> tuple[float, float]:
    """Return (λ, μ) as floats. Numeric strings are accepted."""
    return _to_rate(arrival_rate, "Arrival rate"), _to_rate(service_rate, "Service rate")


def position_multiplier(position: int, batch_size: int = 5) -> int:
    """⌈p / batch⌉ — positions 1-5 wait one base interval, 6-10 two, ..."""
    if position < 1:
        raise ValidationError(f"Queue position must be >= 1, got {position}")
    return -(-position // batch_size)


def _round_minutes(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class WaitTimeEstimator:
    """Stateless M/M/1 wait estimator. Safe to share across threads."""

    def __init__(self, thresholds: WaitTimeThresholds | None = None):
        self.thresholds = thresholds or WaitTimeThresholds.from_settings()

    def _history_sufficient(self, snapshot: QueueSnapshot) -> bool:
        if snapshot.history_sample_count is not None:
            return snapshot.history_sample_count >= self.thresholds.min_history_samples
        return snapshot.history_sufficient

    def _confidence(self, utilization: float, history_ok: bool) -> Confidence:
        if utilization >= 1.0 or not history_ok:
            return Confidence.LOW
        if utilization < self.thresholds.high_confidence_utilization:
            return Confidence.HIGH
        return Confidence.MEDIUM

    def estimate(self, snapshot: QueueSnapshot) -> WaitTimeEstimate:
        lam = snapshot.arrival_rate
        mu = snapshot.service_rate
        utilization = lam / mu
        multiplier = position_multiplier(snapshot.position, self.thresholds.position_batch_size)
        history_ok = self._history_sufficient(snapshot)
        confidence = self._confidence(utilization, history_ok)

        if utilization >= 1.0:
            logger.warning(
                "wait_time.unstable_queue",
                appointment_id=str(snapshot.appointment_id) if snapshot.appointment_id else None,
                utilization=round(utilization, 4),
                arrival_rate=lam,
                service_rate=mu,
            )
            return WaitTimeEstimate(
                appointment_id=snapshot.appointment_id,
                estimated_wait_minutes=self.thresholds.unstable_fallback_minutes * multiplier,
                confidence=confidence,
                is_unstable=True,
                utilization=utilization,
                arrival_rate=lam,
                service_rate=mu,
                base_wait_minutes=None,
                position_multiplier=multiplier,
            )

        base_wait_minutes = 60.0 / (mu - lam)
        adjusted = _round_minutes(base_wait_minutes * multiplier)

        return WaitTimeEstimate(
            appointment_id=snapshot.appointment_id,
            estimated_wait_minutes=max(0, adjusted),
            confidence=confidence,
            is_unstable=False,
            utilization=utilization,
            arrival_rate=lam,
            service_rate=mu,
            base_wait_minutes=base_wait_minutes,
            position_multiplier=multiplier,
        )


def estimate_wait_time(
    snapshot: QueueSnapshot,
    thresholds: WaitTimeThresholds | None = None,
) -> WaitTimeEstimate:
    """Module-level convenience wrapper around WaitTimeEstimator.estimate."""
    return WaitTimeEstimator(thresholds).estimate(snapshot)
