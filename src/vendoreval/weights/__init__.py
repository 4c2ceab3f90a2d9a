"""Category and criterion weight validation."""

from vendoreval.weights.validator import (
    WeightCheck,
    WeightRecalculation,
    check_weight_value,
    distribute_evenly,
    recalc_after_change,
    validate_all,
    validate_category_weights,
    validate_criterion_weights,
)

__all__ = [
    "WeightCheck",
    "WeightRecalculation",
    "check_weight_value",
    "distribute_evenly",
    "recalc_after_change",
    "validate_all",
    "validate_category_weights",
    "validate_criterion_weights",
]
