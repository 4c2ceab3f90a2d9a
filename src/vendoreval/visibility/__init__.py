"""Blind-scoring visibility."""

from vendoreval.visibility.policy import (
    PhaseTracker,
    VisibilityDecision,
    VisibilityPolicy,
    VisibilityReason,
)

__all__ = ["PhaseTracker", "VisibilityDecision", "VisibilityPolicy", "VisibilityReason"]
