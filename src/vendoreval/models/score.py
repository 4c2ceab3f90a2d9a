"""Score, consensus score and lock record models.

Lock state is an append-only log of LockRecord entries. The current state
of a scope is the most recent record for that scope and is never stored as
a flag.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import NamedTuple

from pydantic import BaseModel, ConfigDict, Field

from vendoreval.models.evaluation import utc_now


class ScoreStatus(StrEnum):
    """Lifecycle status of an evaluator's score."""

    DRAFT = "draft"
    SUBMITTED = "submitted"


class LockScopeType(StrEnum):
    """Granularity at which score mutation can be frozen."""

    EVALUATION = "evaluation"
    VENDOR = "vendor"
    CATEGORY = "category"


class LockAction(StrEnum):
    """Lock log actions."""

    LOCK = "lock"
    UNLOCK = "unlock"


class ScopeRef(NamedTuple):
    """A lockable scope inside one evaluation."""

    evaluation_id: str
    scope_type: LockScopeType
    scope_id: str


class ScoreKey(NamedTuple):
    """Identity of a score: one per (vendor, criterion, evaluator)."""

    evaluation_id: str
    vendor_id: str
    criterion_id: str
    evaluator_id: str


class Score(BaseModel):
    """One evaluator's score for a vendor on a criterion.

    version is the optimistic concurrency counter: 1 after the first write,
    incremented on every successful write.
    """

    model_config = ConfigDict(frozen=True)

    score_id: str = Field(..., min_length=1)
    evaluation_id: str = Field(..., min_length=1)
    vendor_id: str = Field(..., min_length=1)
    criterion_id: str = Field(..., min_length=1)
    evaluator_id: str = Field(..., min_length=1)
    value: float
    rationale: str = ""
    status: ScoreStatus = ScoreStatus.DRAFT
    submitted_at: datetime | None = None
    version: int = Field(default=1, ge=1)
    evidence_ids: tuple[str, ...] = ()
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime | None = None

    @property
    def key(self) -> ScoreKey:
        return ScoreKey(self.evaluation_id, self.vendor_id, self.criterion_id, self.evaluator_id)

    @property
    def is_submitted(self) -> bool:
        return self.status == ScoreStatus.SUBMITTED


class ConsensusScore(BaseModel):
    """Agreed value per (vendor, criterion) that supersedes evaluator scores."""

    model_config = ConfigDict(frozen=True)

    consensus_id: str = Field(..., min_length=1)
    evaluation_id: str = Field(..., min_length=1)
    vendor_id: str = Field(..., min_length=1)
    criterion_id: str = Field(..., min_length=1)
    value: float
    rationale: str = Field(..., min_length=1)
    source_score_ids: tuple[str, ...] = ()
    locked: bool = False
    determined_by: str | None = None
    determined_at: datetime = Field(default_factory=utc_now)
    override_reason: str | None = None
    fallback_applied: bool = False


class LockRecord(BaseModel):
    """Append-only lock/unlock audit entry.

    seq is assigned by the repository and is strictly increasing per
    evaluation.
    """

    model_config = ConfigDict(frozen=True)

    seq: int = Field(default=0, ge=0)
    evaluation_id: str = Field(..., min_length=1)
    scope_type: LockScopeType
    scope_id: str = Field(..., min_length=1)
    action: LockAction
    actor: str = Field(..., min_length=1)
    reason: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)

    @property
    def scope(self) -> ScopeRef:
        return ScopeRef(self.evaluation_id, self.scope_type, self.scope_id)


class LockState(BaseModel):
    """Derived current lock state of a scope."""

    model_config = ConfigDict(frozen=True)

    scope_type: LockScopeType
    scope_id: str
    locked: bool
    head_seq: int = 0
    last_record: LockRecord | None = None
