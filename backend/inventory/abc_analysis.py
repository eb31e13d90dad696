"""
ABC Analysis — Pareto classification of inventory by annual value.

Algorithm:
  1. annual_value[i] = annual_demand[i] × unit_price[i]
  2. Stable sort by annual_value, descending (ties keep input order)
  3. cumulative_pct[i] = Σ annual_value[..i] / total_value × 100
  4. A: cumulative_pct ≤ 70   B: 70 < cumulative_pct ≤ 90   C: > 90

Typical outcome: A ≈ 20% of items / 70% of value, B ≈ 30% / 20%,
C ≈ 50% / 10%. Boundaries belong to the lower class, so an item landing
exactly on 70.0% is an A item.

Money is handled as Decimal end to end. Classification is decided on the
exact percentage; the reported percentage is rounded for display.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

import structlog

from core.config import Settings, get_settings
from core.enums import ParseableEnum
from core.errors import ValidationError

logger = structlog.get_logger()

CENTS = Decimal("0.01")
PCT_PLACES = Decimal("0.0001")
HUNDRED = Decimal(100)


class ABCClass(ParseableEnum):
    A = "A"
    B = "B"
    C = "C"


@dataclass(frozen=True)
class ClassGuidance:
    control_strategy: str
    review_frequency: str
    service_level: float
    service_level_range: tuple[float, float]


# Representative service level is the lower bound of each class range.
CLASS_GUIDANCE: dict[ABCClass, ClassGuidance] = {
    ABCClass.A: ClassGuidance("TIGHT", "DAILY", 0.95, (0.95, 0.99)),
    ABCClass.B: ClassGuidance("MODERATE", "WEEKLY", 0.90, (0.90, 0.90)),
    ABCClass.C: ClassGuidance("LOOSE", "MONTHLY", 0.75, (0.75, 0.80)),
}


@dataclass(frozen=True)
class ABCThresholds:
    a_threshold_pct: Decimal = Decimal(70)
    b_threshold_pct: Decimal = Decimal(90)

    def __post_init__(self):
        if not Decimal(0) < self.a_threshold_pct < self.b_threshold_pct <= HUNDRED:
            raise ValidationError("ABC thresholds must satisfy 0 < A < B <= 100")

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "ABCThresholds":
        settings = settings or get_settings()
        return cls(
            a_threshold_pct=Decimal(str(settings.abc_a_threshold_pct)),
            b_threshold_pct=Decimal(str(settings.abc_b_threshold_pct)),
        )


@dataclass(frozen=True)
class InventoryItem:
    """
    Catalog row supplied by the inventory service.

    Only item_id, item_name, annual_demand and unit_price feed the ABC run;
    the remaining fields are optional inputs to EOQ / reorder checks.
    """

    item_id: uuid.UUID
    item_name: str
    annual_demand: Decimal
    unit_price: Decimal
    ordering_cost: Decimal | None = None
    holding_cost: Decimal | None = None
    lead_time_days: int | None = None
    demand_std_dev: float | None = None
    service_level: float | None = None
    current_stock: int | None = None
    reorder_point: int | None = None
    economic_order_qty: float | None = None

    def __post_init__(self):
        object.__setattr__(self, "annual_demand", _to_decimal(self.annual_demand, "annual_demand"))
        object.__setattr__(self, "unit_price", _to_decimal(self.unit_price, "unit_price"))
        if self.annual_demand < 0:
            raise ValidationError(f"annual_demand must be >= 0 for item {self.item_id}")
        if self.unit_price < 0:
            raise ValidationError(f"unit_price must be >= 0 for item {self.item_id}")

    @property
    def annual_value(self) -> Decimal:
        return self.annual_demand * self.unit_price


@dataclass(frozen=True)
class ABCRanking:
    item_id: uuid.UUID
    item_name: str
    annual_demand: Decimal
    unit_price: Decimal
    annual_value: Decimal
    rank: int
    cumulative_value: Decimal
    cumulative_percentage: Decimal
    classification: ABCClass
    previous_classification: ABCClass | None
    classification_changed: bool
    recommended_control_strategy: str
    recommended_review_frequency: str
    recommended_service_level: float
    recommended_service_level_range: tuple[float, float]


@dataclass(frozen=True)
class ABCAnalysis:
    status: str
    reason_code: str
    total_value: Decimal
    rankings: tuple[ABCRanking, ...]

    @property
    def analyzable(self) -> bool:
        return self.status == "analyzed"

    def count(self, classification: ABCClass) -> int:
        return sum(1 for r in self.rankings if r.classification == classification)

    def changed(self) -> list[ABCRanking]:
        return [r for r in self.rankings if r.classification_changed]


def _to_decimal(value, field_name: str) -> Decimal:
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, TypeError, ValueError) as exc:
            raise ValidationError(f"{field_name} must be numeric, got {value!r}") from exc
    if not result.is_finite():
        raise ValidationError(f"{field_name} must be finite, got {value!r}")
    return result


class ABCClassifier:
    """Stateless Pareto classifier. Each call works on its own snapshot."""

    def __init__(self, thresholds: ABCThresholds | None = None):
        self.thresholds = thresholds or ABCThresholds.from_settings()

    def classify_percentage(self, cumulative_pct: Decimal) -> ABCClass:
        if cumulative_pct <= self.thresholds.a_threshold_pct:
            return ABCClass.A
        if cumulative_pct <= self.thresholds.b_threshold_pct:
            return ABCClass.B
        return ABCClass.C

    def classify(
        self,
        items: Sequence[InventoryItem],
        previous: Mapping[uuid.UUID, ABCClass | str | None] | None = None,
    ) -> ABCAnalysis:
        """Rank and classify the full item set. Never partially updates."""
        previous = previous or {}
        ordered = sorted(items, key=lambda item: item.annual_value, reverse=True)
        total_value = sum((item.annual_value for item in ordered), Decimal(0))

        if total_value == 0:
            logger.warning("abc.not_analyzable", item_count=len(ordered))
            return ABCAnalysis(
                status="not_analyzable",
                reason_code="no_analyzable_value",
                total_value=total_value,
                rankings=(),
            )

        rankings: list[ABCRanking] = []
        cumulative = Decimal(0)
        for rank, item in enumerate(ordered, start=1):
            cumulative += item.annual_value
            pct = cumulative / total_value * HUNDRED
            classification = self.classify_percentage(pct)
            prior = ABCClass.parse_optional(previous.get(item.item_id))
            guidance = CLASS_GUIDANCE[classification]

            rankings.append(
                ABCRanking(
                    item_id=item.item_id,
                    item_name=item.item_name,
                    annual_demand=item.annual_demand,
                    unit_price=item.unit_price,
                    annual_value=item.annual_value.quantize(CENTS, rounding=ROUND_HALF_UP),
                    rank=rank,
                    cumulative_value=cumulative.quantize(CENTS, rounding=ROUND_HALF_UP),
                    cumulative_percentage=pct.quantize(PCT_PLACES, rounding=ROUND_HALF_UP),
                    classification=classification,
                    previous_classification=prior,
                    classification_changed=prior is not None and prior != classification,
                    recommended_control_strategy=guidance.control_strategy,
                    recommended_review_frequency=guidance.review_frequency,
                    recommended_service_level=guidance.service_level,
                    recommended_service_level_range=guidance.service_level_range,
                )
            )

        analysis = ABCAnalysis(
            status="analyzed",
            reason_code="ok",
            total_value=total_value.quantize(CENTS, rounding=ROUND_HALF_UP),
            rankings=tuple(rankings),
        )
        logger.info(
            "abc.analysis_completed",
            item_count=len(rankings),
            a_items=analysis.count(ABCClass.A),
            b_items=analysis.count(ABCClass.B),
            c_items=analysis.count(ABCClass.C),
            changed=len(analysis.changed()),
        )
        return analysis


def items_by_classification(analysis: ABCAnalysis, classification: ABCClass | str) -> list[ABCRanking]:
    """Rankings in one class, highest annual value first."""
    wanted = ABCClass.parse(classification)
    return [r for r in analysis.rankings if r.classification == wanted]
