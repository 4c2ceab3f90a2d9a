"""Tests for weight validation and recalculation.

Tests cover:
1. Category and criterion sums with tolerance
2. The mismatch error carries the actual total and a readable message
3. Manual versus auto-redistribute recalculation
4. Malformed weights are rejected
"""

from __future__ import annotations

import math
import random

import pytest

from vendoreval.config import WeightPolicy
from vendoreval.errors import ValidationError, WeightMismatchError
from vendoreval.models.evaluation import Category, Criterion
from vendoreval.weights.validator import (
    check_weight_value,
    distribute_evenly,
    recalc_after_change,
    validate_all,
    validate_category_weights,
    validate_criterion_weights,
)


def _categories(*weights: float) -> list[Category]:
    return [
        Category(category_id=f"cat-{i}", evaluation_id="ev", name=f"Cat {i}", weight=w)
        for i, w in enumerate(weights)
    ]


class TestCategoryWeights:
    def test_weights_summing_to_100_pass(self) -> None:
        check = validate_category_weights(_categories(60, 40))

        assert check.ok
        assert check.total == pytest.approx(100.0)
        assert check.mismatch is None

    def test_weights_over_100_report_actual_total(self) -> None:
        check = validate_category_weights(_categories(50, 50, 10))

        assert not check.ok
        assert isinstance(check.mismatch, WeightMismatchError)
        assert check.mismatch.total == pytest.approx(110.0)
        assert check.mismatch.message == "Category weights total 110% — must equal 100%"

    def test_raise_for_mismatch_raises_carried_error(self) -> None:
        check = validate_category_weights(_categories(50, 50, 10))

        with pytest.raises(WeightMismatchError) as exc_info:
            check.raise_for_mismatch()

        assert exc_info.value.details["total"] == pytest.approx(110.0)

    def test_difference_within_tolerance_passes(self) -> None:
        check = validate_category_weights(_categories(50, 49.995))

        assert check.ok

    def test_custom_tolerance_is_respected(self) -> None:
        check = validate_category_weights(_categories(50, 49.5), tolerance=1.0)

        assert check.ok

    def test_empty_set_is_a_mismatch(self) -> None:
        check = validate_category_weights([])

        assert not check.ok
        assert check.total == 0.0


class TestCriterionWeights:
    def test_only_criteria_of_the_category_count(self) -> None:
        category = _categories(100)[0]
        criteria = [
            Criterion(criterion_id="a", category_id="cat-0", name="A", weight=70),
            Criterion(criterion_id="b", category_id="cat-0", name="B", weight=30),
            Criterion(criterion_id="x", category_id="other", name="X", weight=90),
        ]

        check = validate_criterion_weights(category, criteria)

        assert check.ok
        assert check.parent_id == "cat-0"

    def test_mismatch_message_names_the_category(self) -> None:
        category = _categories(100)[0]
        criteria = [Criterion(criterion_id="a", category_id="cat-0", name="A", weight=80)]

        check = validate_criterion_weights(category, criteria)

        assert check.mismatch is not None
        assert "cat-0" in check.mismatch.message
        assert check.mismatch.scope == "Criterion"

    def test_validate_all_checks_categories_then_each_category(self) -> None:
        categories = _categories(60, 40)
        criteria = [
            Criterion(criterion_id="a", category_id="cat-0", name="A", weight=100),
            Criterion(criterion_id="b", category_id="cat-1", name="B", weight=90),
        ]

        checks = validate_all(categories, criteria)

        assert [c.scope for c in checks] == ["Category", "Criterion", "Criterion"]
        assert [c.ok for c in checks] == [True, True, False]


class TestRecalculation:
    def test_manual_policy_reports_mismatch_without_touching_siblings(self) -> None:
        result = recalc_after_change({"a": 70, "b": 30}, "a", 50, WeightPolicy.MANUAL)

        assert result.weights == {"a": 50.0, "b": 30}
        assert not result.check.ok
        assert result.check.total == pytest.approx(80.0)
        assert result.adjusted_ids == ()

    def test_auto_redistribute_scales_siblings_proportionally(self) -> None:
        result = recalc_after_change(
            {"a": 50, "b": 30, "c": 20}, "a", 60, WeightPolicy.AUTO_REDISTRIBUTE
        )

        assert result.weights["a"] == 60.0
        assert result.weights["b"] == pytest.approx(24.0)
        assert result.weights["c"] == pytest.approx(16.0)
        assert result.check.ok
        assert result.adjusted_ids == ("b", "c")

    def test_auto_redistribute_splits_evenly_when_siblings_are_zero(self) -> None:
        result = recalc_after_change(
            {"a": 100, "b": 0, "c": 0}, "a", 40, WeightPolicy.AUTO_REDISTRIBUTE
        )

        assert result.weights["b"] == pytest.approx(30.0)
        assert result.weights["c"] == pytest.approx(30.0)

    def test_unknown_item_is_rejected(self) -> None:
        with pytest.raises(ValidationError):
            recalc_after_change({"a": 100}, "zzz", 10)

    def test_auto_redistribute_always_totals_100(self) -> None:
        rng = random.Random(20260302)
        for _ in range(200):
            count = rng.randint(2, 6)
            weights = {f"c{i}": rng.uniform(0, 40) for i in range(count)}
            changed = rng.choice(list(weights))
            result = recalc_after_change(
                weights, changed, rng.uniform(0, 100), WeightPolicy.AUTO_REDISTRIBUTE
            )
            assert math.fsum(result.weights.values()) == pytest.approx(100.0)
            assert result.check.ok


class TestWeightValues:
    @pytest.mark.parametrize("bad", [-1, 100.5, float("nan"), float("inf"), "50", True, None])
    def test_malformed_weights_are_rejected(self, bad: object) -> None:
        with pytest.raises(ValidationError):
            check_weight_value(bad)

    def test_bounds_are_inclusive(self) -> None:
        assert check_weight_value(0) == 0.0
        assert check_weight_value(100) == 100.0

    def test_distribute_evenly_gives_remainder_to_first(self) -> None:
        weights = distribute_evenly(["a", "b", "c"])

        assert weights == {"a": 33.34, "b": 33.33, "c": 33.33}

    def test_distribute_evenly_of_nothing_is_empty(self) -> None:
        assert distribute_evenly([]) == {}
