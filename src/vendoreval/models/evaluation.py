"""Evaluation catalog models.

Evaluations, weighted categories and criteria, vendors, evaluators and the
external entities consumed for traceability (requirements, evidence,
questions, vendor responses).

Evidence owns its (criterion, vendor) link. Scores carry only a weak list
of evidence ids and nothing points back from Evidence to a Score.
"""

from __future__ import annotations

import math
from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    """Return the current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class EvaluationPhase(StrEnum):
    """One-way evaluation phases."""

    SETUP = "setup"
    SCORING = "scoring"
    SUBMITTED = "submitted"
    RECONCILIATION = "reconciliation"
    COMPLETE = "complete"


PHASE_ORDER: tuple[EvaluationPhase, ...] = (
    EvaluationPhase.SETUP,
    EvaluationPhase.SCORING,
    EvaluationPhase.SUBMITTED,
    EvaluationPhase.RECONCILIATION,
    EvaluationPhase.COMPLETE,
)


def phase_index(phase: EvaluationPhase) -> int:
    """Position of a phase in the one-way order."""
    return PHASE_ORDER.index(phase)


class Role(StrEnum):
    """Evaluator directory roles."""

    EVALUATOR = "evaluator"
    LEAD = "lead"
    ADMIN = "admin"
    OBSERVER = "observer"


PRIVILEGED_ROLES: frozenset[Role] = frozenset({Role.LEAD, Role.ADMIN})


class VendorStatus(StrEnum):
    """Vendor pipeline status (owned outside the engine)."""

    ACTIVE = "active"
    SHORTLISTED = "shortlisted"
    WITHDRAWN = "withdrawn"
    REJECTED = "rejected"


ACTIVE_VENDOR_STATUSES: frozenset[VendorStatus] = frozenset(
    {VendorStatus.ACTIVE, VendorStatus.SHORTLISTED}
)


class RequirementPriority(StrEnum):
    """MoSCoW priority of a requirement."""

    MUST = "must"
    SHOULD = "should"
    COULD = "could"
    WONT = "wont"


class EvidenceType(StrEnum):
    """Closed set of evidence kinds."""

    DOCUMENT = "document"
    DEMO = "demo"
    REFERENCE_CHECK = "reference_check"
    WORKSHOP = "workshop"
    VENDOR_RESPONSE = "vendor_response"
    SITE_VISIT = "site_visit"
    OTHER = "other"


class EvidenceSentiment(StrEnum):
    """How a piece of evidence reflects on the vendor."""

    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


def _check_weight(v: float) -> float:
    if isinstance(v, float) and math.isnan(v):
        raise ValueError("weight must be a number")
    if v < 0 or v > 100:
        raise ValueError(f"weight must be between 0 and 100 (got {v})")
    return v


class Evaluation(BaseModel):
    """A procurement evaluation exercise."""

    evaluation_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    phase: EvaluationPhase = EvaluationPhase.SETUP
    blind_mode: bool = True
    created_at: datetime = Field(default_factory=utc_now)


class Category(BaseModel):
    """Top-level weighted grouping of criteria (weight is percent of total)."""

    model_config = ConfigDict(frozen=True)

    category_id: str = Field(..., min_length=1)
    evaluation_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    weight: float
    sort_order: int = 0

    @field_validator("weight")
    @classmethod
    def validate_weight(cls, v: float) -> float:
        """Weights are percentages in [0, 100]."""
        return _check_weight(v)


class Criterion(BaseModel):
    """Individually scored dimension (weight is percent within its category)."""

    model_config = ConfigDict(frozen=True)

    criterion_id: str = Field(..., min_length=1)
    category_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    weight: float
    sort_order: int = 0
    requirement_ids: tuple[str, ...] = ()

    @field_validator("weight")
    @classmethod
    def validate_weight(cls, v: float) -> float:
        """Weights are percentages in [0, 100]."""
        return _check_weight(v)


class Vendor(BaseModel):
    """A vendor participating in one evaluation."""

    model_config = ConfigDict(frozen=True)

    vendor_id: str = Field(..., min_length=1)
    evaluation_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    status: VendorStatus = VendorStatus.ACTIVE
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_VENDOR_STATUSES


class Evaluator(BaseModel):
    """A user entitled to score, with directory roles."""

    model_config = ConfigDict(frozen=True)

    evaluator_id: str = Field(..., min_length=1)
    name: str = ""
    roles: frozenset[Role] = frozenset({Role.EVALUATOR})

    @property
    def is_privileged(self) -> bool:
        """Lead or admin: full visibility and consensus override."""
        return bool(self.roles & PRIVILEGED_ROLES)

    @property
    def can_score(self) -> bool:
        return Role.EVALUATOR in self.roles or self.is_privileged


class Requirement(BaseModel):
    """External requirement consumed for traceability."""

    model_config = ConfigDict(frozen=True)

    requirement_id: str = Field(..., min_length=1)
    title: str = ""
    priority: RequirementPriority = RequirementPriority.SHOULD
    category_id: str | None = None
    criterion_ids: tuple[str, ...] = ()


class Evidence(BaseModel):
    """Supporting material linked to a (criterion, vendor) pair."""

    model_config = ConfigDict(frozen=True)

    evidence_id: str = Field(..., min_length=1)
    vendor_id: str = Field(..., min_length=1)
    criterion_id: str = Field(..., min_length=1)
    requirement_id: str | None = None
    evidence_type: EvidenceType = EvidenceType.OTHER
    sentiment: EvidenceSentiment = EvidenceSentiment.NEUTRAL
    title: str = ""


class Question(BaseModel):
    """A question put to vendors about a requirement or criterion."""

    model_config = ConfigDict(frozen=True)

    question_id: str = Field(..., min_length=1)
    text: str = ""
    requirement_id: str | None = None
    criterion_id: str | None = None


class VendorResponse(BaseModel):
    """A vendor's answer to a question."""

    model_config = ConfigDict(frozen=True)

    response_id: str = Field(..., min_length=1)
    question_id: str = Field(..., min_length=1)
    vendor_id: str = Field(..., min_length=1)
    text: str = ""
