"""Aggregation result models.

Values are kept at full float precision. Display rounding happens only in
AggregationEngine.round_for_display and in the display_* fields.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class CriterionStatus(StrEnum):
    """Where a criterion value came from."""

    CONSENSUS = "consensus"
    SCORED = "scored"
    UNSCORED = "unscored"
    UNRESOLVED = "unresolved"


class CriterionResult(BaseModel):
    """Resolved value of one criterion for one vendor.

    Unscored and unresolved criteria contribute 0 but keep their weight in
    the denominator and are flagged through status.
    """

    model_config = ConfigDict(frozen=True)

    vendor_id: str
    criterion_id: str
    category_id: str
    weight: float
    value: float
    status: CriterionStatus
    submitted_count: int = 0
    consensus_id: str | None = None
    fallback_applied: bool = False

    @property
    def weighted_value(self) -> float:
        return self.value * self.weight / 100.0

    @property
    def contributes(self) -> bool:
        return self.status in (CriterionStatus.CONSENSUS, CriterionStatus.SCORED)


class CategoryResult(BaseModel):
    """Weighted score of one category for one vendor."""

    model_config = ConfigDict(frozen=True)

    vendor_id: str
    category_id: str
    name: str
    weight: float
    score: float = Field(..., description="Sum of criterion value x weight / 100")
    criteria: tuple[CriterionResult, ...] = ()

    @property
    def weighted_score(self) -> float:
        return self.score * self.weight / 100.0

    @property
    def unscored_criteria(self) -> tuple[str, ...]:
        return tuple(
            c.criterion_id for c in self.criteria if c.status == CriterionStatus.UNSCORED
        )

    @property
    def unresolved_criteria(self) -> tuple[str, ...]:
        return tuple(
            c.criterion_id for c in self.criteria if c.status == CriterionStatus.UNRESOLVED
        )


class VendorTotal(BaseModel):
    """Total weighted score of one vendor with its category breakdown."""

    model_config = ConfigDict(frozen=True)

    evaluation_id: str
    vendor_id: str
    vendor_name: str
    total: float
    categories: tuple[CategoryResult, ...] = ()

    @property
    def unscored_criteria(self) -> tuple[str, ...]:
        return tuple(cid for c in self.categories for cid in c.unscored_criteria)

    @property
    def unresolved_criteria(self) -> tuple[str, ...]:
        return tuple(cid for c in self.categories for cid in c.unresolved_criteria)

    @property
    def complete(self) -> bool:
        return not self.unscored_criteria and not self.unresolved_criteria

    def category(self, category_id: str) -> CategoryResult | None:
        for c in self.categories:
            if c.category_id == category_id:
                return c
        return None


class TieBreak(StrEnum):
    """Rule that ordered a vendor after an equal-total predecessor."""

    TOP_CATEGORY = "top_category"
    CREATED_AT = "created_at"
    VENDOR_ID = "vendor_id"


class RankedVendor(BaseModel):
    """One row of a ranking."""

    model_config = ConfigDict(frozen=True)

    rank: int = Field(..., ge=1)
    vendor_id: str
    vendor_name: str
    total: float
    display_total: float
    top_category_score: float | None = None
    tie_break: TieBreak | None = None
    complete: bool = True


class Ranking(BaseModel):
    """Ranked active vendors of an evaluation."""

    model_config = ConfigDict(frozen=True)

    evaluation_id: str
    version: int
    top_category_id: str | None = None
    vendors: tuple[RankedVendor, ...] = ()
