"""Daily queue analytics: M/M/1 steady-state metrics, rate estimation, positions."""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime, timedelta

import pandas as pd
import structlog

from core.clock import Clock, utcnow
from core.enums import ParseableEnum
from core.errors import ValidationError
from patient_flow.wait_time import validate_rates

logger = structlog.get_logger()

MIN_SERVICE_RATE = 0.1  # at least one patient per 10 hours
SERVICE_RATE_LOOKBACK_DAYS = 7
WORKING_HOURS_PER_DAY = 8.0


class AppointmentStatus(ParseableEnum):
    SCHEDULED = "SCHEDULED"
    CONFIRMED = "CONFIRMED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"


INACTIVE_STATUSES = frozenset({AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW})
WAITING_STATUSES = frozenset({AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED})


@dataclass(frozen=True)
class AppointmentSlot:
    appointment_id: uuid.UUID
    scheduled_at: datetime
    status: AppointmentStatus
    token_number: int | None = None
    completed_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status not in INACTIVE_STATUSES


@dataclass(frozen=True)
class QueueMetrics:
    """Steady-state M/M/1 metrics. Time values in minutes; None when ρ ≥ 1."""

    arrival_rate: float
    service_rate: float
    utilization: float
    avg_wait_time: float | None
    avg_wait_in_queue: float | None
    avg_system_length: float | None
    avg_queue_length: float | None

    @property
    def is_stable(self) -> bool:
        return self.utilization < 1.0


@dataclass(frozen=True)
class QueuePosition:
    appointment_id: uuid.UUID
    position: int
    queue_length: int
    ahead_count: int


@dataclass(frozen=True)
class QueueStatus:
    current_token: int | None
    next_token: int | None
    patients_waiting: int
    avg_wait_minutes: int | None
    utilization: float
    is_stable: bool
    timestamp: datetime


def calculate_queue_metrics(arrival_rate: float, service_rate: float) -> QueueMetrics:
    """
    Compute M/M/1 steady-state metrics.

      W  = 1 / (μ − λ)        Wq = ρ / (μ − λ)
      L  = ρ / (1 − ρ)        Lq = ρ² / (1 − ρ)

    Little's Law holds by construction: L = λW and Lq = λWq.
    """
    arrival_rate, service_rate = validate_rates(arrival_rate, service_rate)
    utilization = arrival_rate / service_rate
    if utilization >= 1.0:
        return QueueMetrics(arrival_rate, service_rate, utilization, None, None, None, None)

    spread = service_rate - arrival_rate
    return QueueMetrics(
        arrival_rate=arrival_rate,
        service_rate=service_rate,
        utilization=utilization,
        avg_wait_time=60.0 / spread,
        avg_wait_in_queue=utilization / spread * 60.0,
        avg_system_length=utilization / (1 - utilization),
        avg_queue_length=utilization**2 / (1 - utilization),
    )


def estimate_service_rate(
    completed_at: Iterable[datetime | None],
    as_of: date,
    lookback_days: int = SERVICE_RATE_LOOKBACK_DAYS,
    working_hours_per_day: float = WORKING_HOURS_PER_DAY,
    min_service_rate: float = MIN_SERVICE_RATE,
) -> float:
    """
    μ = completed appointments in the lookback window / (hours/day × days).

    Window is [as_of − lookback_days, as_of] inclusive of whole days.
    Floored at ``min_service_rate`` so ρ stays finite for idle doctors.
    """
    if lookback_days < 1:
        raise ValidationError("lookback_days must be >= 1")
    if working_hours_per_day <= 0:
        raise ValidationError("working_hours_per_day must be > 0")

    stamps = pd.to_datetime(pd.Series(list(completed_at), dtype="object"), errors="coerce").dropna()
    if stamps.empty:
        return min_service_rate

    start = pd.Timestamp(as_of - timedelta(days=lookback_days))
    end = pd.Timestamp(as_of + timedelta(days=1))
    in_window = int(((stamps >= start) & (stamps < end)).sum())

    rate = in_window / (working_hours_per_day * lookback_days)
    return max(rate, min_service_rate)


def estimate_arrival_rate(
    appointments: Sequence[AppointmentSlot],
    working_hours: float = WORKING_HOURS_PER_DAY,
) -> float:
    """λ = active (not cancelled / no-show) appointments for the day / working hours."""
    if working_hours <= 0:
        raise ValidationError("working_hours must be > 0")
    active = sum(1 for apt in appointments if apt.is_active)
    return active / working_hours


def queue_position(appointment_id: uuid.UUID, appointments: Sequence[AppointmentSlot]) -> QueuePosition:
    """1-based position among active appointments booked earlier the same day."""
    target = next((apt for apt in appointments if apt.appointment_id == appointment_id), None)
    if target is None:
        raise ValidationError(f"Appointment not in queue: {appointment_id}")
    if not target.is_active:
        raise ValidationError(f"Appointment {appointment_id} is {target.status.value} and no longer queued")

    active = [apt for apt in appointments if apt.is_active]
    ahead = sum(1 for apt in active if apt.scheduled_at < target.scheduled_at)
    return QueuePosition(
        appointment_id=appointment_id,
        position=ahead + 1,
        queue_length=len(active),
        ahead_count=ahead,
    )


def next_token_number(appointments: Sequence[AppointmentSlot], at: datetime) -> int:
    """Token for a booking at ``at``: active bookings at or before it, plus one.

    Strictly increasing with appointment time for a given doctor and day.
    """
    return sum(1 for apt in appointments if apt.is_active and apt.scheduled_at <= at) + 1


def queue_status(
    appointments: Sequence[AppointmentSlot],
    arrival_rate: float,
    service_rate: float,
    clock: Clock = utcnow,
) -> QueueStatus:
    """Display-board snapshot: token being served, next token, waiting count."""
    arrival_rate, service_rate = validate_rates(arrival_rate, service_rate)

    in_progress = next((apt for apt in appointments if apt.status == AppointmentStatus.IN_PROGRESS), None)
    waiting = sorted(
        (apt for apt in appointments if apt.status in WAITING_STATUSES),
        key=lambda apt: apt.scheduled_at,
    )
    metrics = calculate_queue_metrics(arrival_rate, service_rate)
    avg_wait = round(metrics.avg_wait_time) if metrics.avg_wait_time is not None else None

    if not metrics.is_stable:
        logger.warning("queue.status_unstable", utilization=round(metrics.utilization, 4))

    return QueueStatus(
        current_token=in_progress.token_number if in_progress else None,
        next_token=waiting[0].token_number if waiting else None,
        patients_waiting=len(waiting),
        avg_wait_minutes=avg_wait,
        utilization=metrics.utilization,
        is_stable=metrics.is_stable,
        timestamp=clock(),
    )
