"""
Inventory Optimizer — EOQ and Reorder Point with Safety Stock.

Companion calculations to the ABC run, used by the pharmacy/supplies
screens to decide how much to order and when.

Algorithm:
  EOQ = √((2 × D × S) / H)
  ROP = ⌈d × L⌉ + ⌈z × σ × √L⌉

Where: D = annual demand, S = ordering cost per order, H = annual holding
cost per unit, d = D / 365, L = lead time (days), σ = daily demand std dev,
z = service-level z-score.

At the EOQ optimum, annual ordering cost equals annual holding cost.
"""

import math
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import structlog

from core.errors import ValidationError
from inventory.abc_analysis import InventoryItem

logger = structlog.get_logger()

# Service level → Z-score (standard normal), checked from the top down.
Z_SCORES = (
    (0.999, 3.090),
    (0.990, 2.326),
    (0.950, 1.645),
    (0.900, 1.282),
    (0.750, 0.674),
)
DEFAULT_Z_SCORE = 1.645  # 95%


@dataclass(frozen=True)
class EOQCalculation:
    """Result of an Economic Order Quantity calculation with cost breakdown."""

    eoq: float
    orders_per_year: float
    average_inventory: float
    annual_ordering_cost: float
    annual_holding_cost: float
    total_inventory_cost: float


@dataclass(frozen=True)
class ReorderPointCalculation:
    reorder_point: int
    lead_time_demand: int
    safety_stock: int
    z_score: float
    daily_demand: float
    lead_time_days: int
    demand_std_dev: float


@dataclass(frozen=True)
class ReorderSuggestion:
    item_id: Any
    item_name: str
    current_stock: int
    reorder_point: int
    suggested_order_qty: int


def get_z_score(service_level: float) -> float:
    """Get Z-score for a given service level target (falls back to 95%)."""
    for floor, z_score in Z_SCORES:
        if service_level >= floor:
            return z_score
    return DEFAULT_Z_SCORE


def calculate_eoq(annual_demand: float, ordering_cost: float, holding_cost: float) -> EOQCalculation:
    """
    Economic Order Quantity (Wilson formula) with annual cost breakdown.

    Raises ValidationError when D ≤ 0 or H ≤ 0 (the optimum is undefined),
    or when S < 0.
    """
    d = float(annual_demand)
    s = float(ordering_cost)
    h = float(holding_cost)
    if d <= 0 or h <= 0:
        raise ValidationError(f"EOQ requires positive demand and holding cost. D={d}, H={h}")
    if s < 0:
        raise ValidationError(f"Ordering cost cannot be negative. S={s}")

    eoq = math.sqrt((2 * d * s) / h)
    if eoq <= 0:
        raise ValidationError(f"EOQ requires a positive ordering cost. S={s}")

    orders_per_year = d / eoq
    average_inventory = eoq / 2.0
    annual_ordering_cost = s * orders_per_year
    annual_holding_cost = h * average_inventory

    return EOQCalculation(
        eoq=eoq,
        orders_per_year=orders_per_year,
        average_inventory=average_inventory,
        annual_ordering_cost=annual_ordering_cost,
        annual_holding_cost=annual_holding_cost,
        total_inventory_cost=annual_ordering_cost + annual_holding_cost,
    )


def calculate_reorder_point(
    annual_demand: float,
    lead_time_days: int,
    demand_std_dev: float,
    service_level: float,
) -> ReorderPointCalculation:
    """
    Reorder point for a target no-stockout probability.

    Lead-time demand ~ Normal(d·L, σ²·L), so ROP = d·L + z·σ·√L, with
    both components rounded up to whole units.
    """
    if annual_demand < 0:
        raise ValidationError(f"annual_demand must be >= 0, got {annual_demand}")
    if lead_time_days < 0:
        raise ValidationError(f"lead_time_days must be >= 0, got {lead_time_days}")
    if demand_std_dev < 0:
        raise ValidationError(f"demand_std_dev must be >= 0, got {demand_std_dev}")
    if not 0 < service_level < 1:
        raise ValidationError(f"service_level must be in (0, 1), got {service_level}")

    daily_demand = float(annual_demand) / 365.0
    z_score = get_z_score(service_level)
    lead_time_demand = math.ceil(daily_demand * lead_time_days)
    safety_stock = math.ceil(z_score * demand_std_dev * math.sqrt(lead_time_days))

    return ReorderPointCalculation(
        reorder_point=lead_time_demand + safety_stock,
        lead_time_demand=lead_time_demand,
        safety_stock=safety_stock,
        z_score=z_score,
        daily_demand=daily_demand,
        lead_time_days=lead_time_days,
        demand_std_dev=demand_std_dev,
    )


def items_needing_reorder(items: Sequence[InventoryItem]) -> list[ReorderSuggestion]:
    """
    Items at or below their reorder point, highest ROP first.

    Suggested quantity is the item's EOQ, or one month of demand when no
    EOQ has been computed yet.
    """
    suggestions: list[ReorderSuggestion] = []
    for item in items:
        if item.reorder_point is None or item.current_stock is None:
            continue
        if item.current_stock > item.reorder_point:
            continue

        if item.economic_order_qty is not None:
            order_qty = int(item.economic_order_qty)
        else:
            order_qty = math.ceil(item.annual_demand / Decimal(12))

        suggestions.append(
            ReorderSuggestion(
                item_id=item.item_id,
                item_name=item.item_name,
                current_stock=item.current_stock,
                reorder_point=item.reorder_point,
                suggested_order_qty=order_qty,
            )
        )
        logger.info(
            "inventory.reorder_needed",
            item_name=item.item_name,
            current_stock=item.current_stock,
            reorder_point=item.reorder_point,
            suggested_order_qty=order_qty,
        )

    suggestions.sort(key=lambda s: s.reorder_point, reverse=True)
    return suggestions
