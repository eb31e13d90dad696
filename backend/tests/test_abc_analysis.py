"""
Tests for ABC Analysis — Pareto classification of inventory value.

Covers:
  - Ranking and cumulative percentages
  - Class boundaries (70% / 90%, boundaries inclusive)
  - Reclassification against previous classes
  - Not-analyzable inventories
  - Item validation
"""

import uuid
from decimal import Decimal

import pytest

from core.errors import UnknownValueError, ValidationError
from inventory.abc_analysis import (
    CLASS_GUIDANCE,
    ABCClass,
    ABCClassifier,
    ABCThresholds,
    InventoryItem,
    items_by_classification,
)


def _item(name: str, demand, price) -> InventoryItem:
    return InventoryItem(item_id=uuid.uuid4(), item_name=name, annual_demand=demand, unit_price=price)


@pytest.fixture
def classifier():
    return ABCClassifier(ABCThresholds())


@pytest.fixture
def pharmacy_items():
    return [
        _item("Gauze", 500, "2.00"),  # 1,000
        _item("Insulin", 100, "70.00"),  # 7,000
        _item("Syringes", 1000, "1.00"),  # 1,000
        _item("Saline", 200, "5.00"),  # 1,000
    ]


# ── Ranking ────────────────────────────────────────────────────────────


class TestRanking:
    def test_cumulative_percentage_non_decreasing_to_100(self, classifier, pharmacy_items):
        analysis = classifier.classify(pharmacy_items)
        pcts = [r.cumulative_percentage for r in analysis.rankings]
        assert pcts == sorted(pcts)
        assert pcts[-1] == Decimal("100.0000")

    def test_rank_is_permutation(self, classifier, pharmacy_items):
        analysis = classifier.classify(pharmacy_items)
        assert sorted(r.rank for r in analysis.rankings) == [1, 2, 3, 4]

    def test_highest_value_first_and_ties_keep_input_order(self, classifier, pharmacy_items):
        analysis = classifier.classify(pharmacy_items)
        assert [r.item_name for r in analysis.rankings] == ["Insulin", "Gauze", "Syringes", "Saline"]

    def test_totals(self, classifier, pharmacy_items):
        analysis = classifier.classify(pharmacy_items)
        assert analysis.analyzable
        assert analysis.total_value == Decimal("10000.00")
        assert analysis.rankings[0].annual_value == Decimal("7000.00")

    def test_idempotent(self, classifier, pharmacy_items):
        assert classifier.classify(pharmacy_items) == classifier.classify(pharmacy_items)


# ── Class Boundaries ───────────────────────────────────────────────────


class TestBoundaries:
    def test_exactly_seventy_percent_is_a(self, classifier, pharmacy_items):
        analysis = classifier.classify(pharmacy_items)
        top = analysis.rankings[0]
        assert top.cumulative_percentage == Decimal("70.0000")
        assert top.classification == ABCClass.A

    def test_exactly_ninety_percent_is_b(self, classifier):
        analysis = classifier.classify([_item("a", 1, 70), _item("b", 1, 20), _item("c", 1, 10)])
        assert [r.classification for r in analysis.rankings] == [ABCClass.A, ABCClass.B, ABCClass.C]

    def test_just_over_seventy_is_b(self, classifier):
        analysis = classifier.classify([_item("a", 1, "70.01"), _item("b", 1, "29.99")])
        assert analysis.rankings[0].classification == ABCClass.B

    def test_guidance_attached(self, classifier, pharmacy_items):
        top = classifier.classify(pharmacy_items).rankings[0]
        assert top.recommended_control_strategy == "TIGHT"
        assert top.recommended_review_frequency == "DAILY"
        assert top.recommended_service_level == 0.95
        assert top.recommended_service_level_range == (0.95, 0.99)

    def test_guidance_table(self):
        assert CLASS_GUIDANCE[ABCClass.B].service_level == 0.90
        assert CLASS_GUIDANCE[ABCClass.C].review_frequency == "MONTHLY"

    def test_custom_thresholds(self):
        classifier = ABCClassifier(ABCThresholds(Decimal(50), Decimal(80)))
        analysis = classifier.classify([_item("a", 1, 60), _item("b", 1, 40)])
        assert analysis.rankings[0].classification == ABCClass.B

    def test_invalid_thresholds_rejected(self):
        with pytest.raises(ValidationError):
            ABCThresholds(Decimal(90), Decimal(70))


# ── Reclassification ───────────────────────────────────────────────────


class TestReclassification:
    def test_change_flag_follows_previous_only(self, classifier, pharmacy_items):
        insulin, gauze = pharmacy_items[1], pharmacy_items[0]
        previous = {insulin.item_id: "B", gauze.item_id: ABCClass.B}
        analysis = classifier.classify(pharmacy_items, previous=previous)

        by_name = {r.item_name: r for r in analysis.rankings}
        assert by_name["Insulin"].previous_classification == ABCClass.B
        assert by_name["Insulin"].classification_changed is True
        assert by_name["Gauze"].classification_changed is False
        assert by_name["Syringes"].previous_classification is None
        assert by_name["Syringes"].classification_changed is False
        assert [r.item_name for r in analysis.changed()] == ["Insulin"]

    def test_unknown_previous_class_rejected(self, classifier, pharmacy_items):
        with pytest.raises(UnknownValueError):
            classifier.classify(pharmacy_items, previous={pharmacy_items[0].item_id: "D"})


# ── Degraded Results ───────────────────────────────────────────────────


class TestNotAnalyzable:
    def test_empty_inventory(self, classifier):
        analysis = classifier.classify([])
        assert analysis.status == "not_analyzable"
        assert analysis.reason_code == "no_analyzable_value"
        assert analysis.rankings == ()

    def test_zero_value_inventory(self, classifier):
        analysis = classifier.classify([_item("free", 10, 0), _item("unused", 0, 5)])
        assert not analysis.analyzable
        assert analysis.reason_code == "no_analyzable_value"


# ── Items ──────────────────────────────────────────────────────────────


class TestInventoryItem:
    def test_values_coerced_to_decimal(self):
        item = _item("Gloves", 3, 1.1)
        assert item.unit_price == Decimal("1.1")
        assert item.annual_value == Decimal("3.3")

    def test_negative_demand_rejected(self):
        with pytest.raises(ValidationError):
            _item("bad", -1, 5)

    def test_non_numeric_price_rejected(self):
        with pytest.raises(ValidationError):
            _item("bad", 1, "cheap")

    def test_items_by_classification(self, classifier, pharmacy_items):
        analysis = classifier.classify(pharmacy_items)
        assert [r.item_name for r in items_by_classification(analysis, "a")] == ["Insulin"]
        assert len(items_by_classification(analysis, ABCClass.B)) == 2
        assert [r.item_name for r in items_by_classification(analysis, ABCClass.C)] == ["Saline"]
