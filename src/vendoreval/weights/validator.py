"""Weight validator.

Pure, stateless checks that category weights (percent of the evaluation
total) and criterion weights (percent of their category) sum to 100 within
tolerance. Mismatches are returned on the WeightCheck, never raised, so
draft edits can proceed while phase transitions call raise_for_mismatch().
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from decimal import ROUND_DOWN, Decimal

from vendoreval.config import WeightPolicy
from vendoreval.errors import ValidationError, WeightMismatchError
from vendoreval.models.evaluation import Category, Criterion

logger = logging.getLogger(__name__)

WEIGHT_TOTAL = 100.0
DEFAULT_TOLERANCE = 0.01


@dataclass(frozen=True)
class WeightCheck:
    """Result of a weight sum check.

    Attributes:
        scope: "Category" or "Criterion".
        total: Actual sum of the weights.
        parent_id: Category id for criterion checks, None for categories.
        mismatch: The WeightMismatchError when the sum is off, else None.
    """

    scope: str
    total: float
    parent_id: str | None = None
    mismatch: WeightMismatchError | None = None

    @property
    def ok(self) -> bool:
        return self.mismatch is None

    def raise_for_mismatch(self) -> None:
        """Raise the carried WeightMismatchError, if any."""
        if self.mismatch is not None:
            raise self.mismatch


@dataclass(frozen=True)
class WeightRecalculation:
    """Outcome of applying one weight change to a sibling set."""

    weights: dict[str, float]
    check: WeightCheck
    policy: WeightPolicy
    changed_id: str
    adjusted_ids: tuple[str, ...] = field(default_factory=tuple)


def check_weight_value(weight: object, *, label: str = "weight") -> float:
    """Reject malformed weights: non-numeric, NaN, infinite, negative or above 100."""
    if isinstance(weight, bool) or not isinstance(weight, (int, float)):
        raise ValidationError(f"{label} must be a number (got {weight!r})")
    value = float(weight)
    if math.isnan(value) or math.isinf(value):
        raise ValidationError(f"{label} must be a finite number")
    if value < 0:
        raise ValidationError(f"{label} must not be negative (got {value:g})")
    if value > WEIGHT_TOTAL:
        raise ValidationError(f"{label} must not exceed 100 (got {value:g})")
    return value


def _check_total(
    weights: Iterable[float],
    *,
    scope: str,
    parent_id: str | None,
    tolerance: float,
) -> WeightCheck:
    values = [check_weight_value(w, label=f"{scope} weight") for w in weights]
    total = math.fsum(values)
    mismatch = None
    if abs(total - WEIGHT_TOTAL) > tolerance:
        mismatch = WeightMismatchError(round(total, 6), scope=scope, parent_id=parent_id)
    return WeightCheck(scope=scope, total=total, parent_id=parent_id, mismatch=mismatch)


def validate_category_weights(
    categories: Sequence[Category],
    *,
    tolerance: float = DEFAULT_TOLERANCE,
) -> WeightCheck:
    """Check that category weights sum to 100 within tolerance.

    Args:
        categories: All categories of one evaluation.
        tolerance: Allowed absolute difference from 100.

    Returns:
        WeightCheck carrying a WeightMismatchError when the sum is off.

    Raises:
        ValidationError: If any weight is malformed.
    """
    return _check_total(
        (c.weight for c in categories), scope="Category", parent_id=None, tolerance=tolerance
    )


def validate_criterion_weights(
    category: Category,
    criteria: Sequence[Criterion],
    *,
    tolerance: float = DEFAULT_TOLERANCE,
) -> WeightCheck:
    """Check that the criteria of one category sum to 100 within tolerance."""
    own = [c for c in criteria if c.category_id == category.category_id]
    return _check_total(
        (c.weight for c in own),
        scope="Criterion",
        parent_id=category.category_id,
        tolerance=tolerance,
    )


def validate_all(
    categories: Sequence[Category],
    criteria: Sequence[Criterion],
    *,
    tolerance: float = DEFAULT_TOLERANCE,
) -> list[WeightCheck]:
    """Run the category check followed by one criterion check per category."""
    checks = [validate_category_weights(categories, tolerance=tolerance)]
    for category in sorted(categories, key=lambda c: (c.sort_order, c.category_id)):
        checks.append(validate_criterion_weights(category, criteria, tolerance=tolerance))
    return checks


def recalc_after_change(
    items: Mapping[str, float],
    changed_id: str,
    new_weight: float,
    policy: WeightPolicy = WeightPolicy.MANUAL,
    *,
    scope: str = "Criterion",
    parent_id: str | None = None,
    tolerance: float = DEFAULT_TOLERANCE,
) -> WeightRecalculation:
    """Apply one weight change to a sibling set.

    MANUAL applies only the change and reports any mismatch explicitly.
    AUTO_REDISTRIBUTE rescales the other siblings proportionally to their
    current weights (evenly when they are all zero) so the set totals 100.

    Args:
        items: Sibling id -> current weight, in display order.
        changed_id: The sibling being edited.
        new_weight: Its new weight.
        policy: Redistribution policy.

    Returns:
        WeightRecalculation with the new weights and their check.

    Raises:
        ValidationError: If changed_id is unknown or a weight is malformed.
    """
    if changed_id not in items:
        raise ValidationError(f"{scope} {changed_id} is not part of this weight set")
    new_value = check_weight_value(new_weight, label=f"{scope} weight")
    for item_id, weight in items.items():
        check_weight_value(weight, label=f"{scope} weight for {item_id}")

    weights = dict(items)
    weights[changed_id] = new_value
    adjusted: list[str] = []

    if policy == WeightPolicy.AUTO_REDISTRIBUTE:
        siblings = [i for i in weights if i != changed_id]
        remaining = WEIGHT_TOTAL - new_value
        current = math.fsum(weights[i] for i in siblings)
        if siblings:
            for sibling_id in siblings:
                if current > 0:
                    weights[sibling_id] = weights[sibling_id] / current * remaining
                else:
                    weights[sibling_id] = remaining / len(siblings)
            adjusted = siblings

    check = _check_total(weights.values(), scope=scope, parent_id=parent_id, tolerance=tolerance)
    if not check.ok:
        logger.info(
            "Weight change on %s left %s weights at %.4f (policy=%s)",
            changed_id,
            scope,
            check.total,
            policy.value,
        )
    return WeightRecalculation(
        weights=weights,
        check=check,
        policy=policy,
        changed_id=changed_id,
        adjusted_ids=tuple(adjusted),
    )


def distribute_evenly(item_ids: Sequence[str]) -> dict[str, float]:
    """Split 100 evenly with two-decimal shares, the rounding remainder going to the first item."""
    if not item_ids:
        return {}
    count = len(item_ids)
    share = (Decimal(100) / count).quantize(Decimal("0.01"), rounding=ROUND_DOWN)
    first = Decimal(100) - share * (count - 1)
    weights = {item_id: float(share) for item_id in item_ids}
    weights[item_ids[0]] = float(first)
    return weights
