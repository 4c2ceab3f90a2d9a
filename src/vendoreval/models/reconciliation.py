"""Reconciliation models.

A ReconciliationItem tracks one (vendor, criterion) whose submitted scores
disagree by at least the variance threshold, from flagging through to a
locked consensus or an explicit unresolved outcome.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from vendoreval.models.evaluation import utc_now


class ReconciliationStatus(StrEnum):
    """Reconciliation workflow states."""

    OPEN = "open"
    DISCUSSING = "discussing"
    CONSENSUS_PROPOSED = "consensus_proposed"
    CONSENSUS_LOCKED = "consensus_locked"
    UNRESOLVED = "unresolved"
    ESCALATED = "escalated"


ACTIVE_RECONCILIATION_STATUSES: frozenset[ReconciliationStatus] = frozenset(
    {
        ReconciliationStatus.OPEN,
        ReconciliationStatus.DISCUSSING,
        ReconciliationStatus.CONSENSUS_PROPOSED,
    }
)

# Escalated items stay unresolved for aggregation until a lead overrides.
UNRESOLVED_STATUSES: frozenset[ReconciliationStatus] = frozenset(
    {ReconciliationStatus.UNRESOLVED, ReconciliationStatus.ESCALATED}
)


class VarianceResult(BaseModel):
    """Spread of submitted scores for one (vendor, criterion)."""

    model_config = ConfigDict(frozen=True)

    vendor_id: str
    criterion_id: str
    count: int = 0
    minimum: float | None = None
    maximum: float | None = None
    mean: float | None = None
    variance: float = Field(default=0.0, description="max - min of submitted scores")
    population_variance: float = 0.0
    score_ids: tuple[str, ...] = ()
    evaluator_ids: tuple[str, ...] = ()
    exceeds_threshold: bool = False


class DiscussionNote(BaseModel):
    """Free-text note added during reconciliation."""

    model_config = ConfigDict(frozen=True)

    author: str = Field(..., min_length=1)
    text: str = Field(..., min_length=1)
    created_at: datetime = Field(default_factory=utc_now)


class ConsensusProposal(BaseModel):
    """A proposed consensus value with the set of evaluators who accepted it."""

    model_config = ConfigDict(frozen=True)

    value: float
    rationale: str = Field(..., min_length=1)
    proposed_by: str = Field(..., min_length=1)
    proposed_at: datetime = Field(default_factory=utc_now)
    accepted_by: frozenset[str] = frozenset()


class ReconciliationItem(BaseModel):
    """One flagged (vendor, criterion) under reconciliation."""

    model_config = ConfigDict(frozen=True)

    item_id: str = Field(..., min_length=1)
    evaluation_id: str = Field(..., min_length=1)
    vendor_id: str = Field(..., min_length=1)
    criterion_id: str = Field(..., min_length=1)
    status: ReconciliationStatus = ReconciliationStatus.OPEN
    variance: float
    contributing_score_ids: tuple[str, ...]
    contributing_evaluator_ids: tuple[str, ...]
    deadline: datetime
    proposal: ConsensusProposal | None = None
    notes: tuple[DiscussionNote, ...] = ()
    consensus_id: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    closed_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_RECONCILIATION_STATUSES

    @property
    def is_unresolved(self) -> bool:
        return self.status in UNRESOLVED_STATUSES

    @property
    def pending_acceptances(self) -> frozenset[str]:
        """Contributing evaluators who have not accepted the current proposal."""
        accepted = self.proposal.accepted_by if self.proposal else frozenset()
        return frozenset(self.contributing_evaluator_ids) - accepted
