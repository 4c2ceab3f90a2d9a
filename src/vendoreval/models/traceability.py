"""Traceability matrix models.

Requirements are rows, active vendors are columns. A cell resolves to the
locked consensus of the requirement's linked criteria, else the mean of
submitted evaluator scores, else unscored. A cell whose reconciliation ended
without consensus is unresolved and carries no value.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from vendoreval.models.evaluation import (
    Criterion,
    Evidence,
    Question,
    Requirement,
    RequirementPriority,
    VendorResponse,
)
from vendoreval.models.score import ConsensusScore, Score


class RagStatus(StrEnum):
    """Red/Amber/Green classification of a score."""

    GREEN = "green"
    AMBER = "amber"
    RED = "red"
    NONE = "none"


RAG_LABELS: dict[RagStatus, str] = {
    RagStatus.GREEN: "Strong Fit",
    RagStatus.AMBER: "Moderate Fit",
    RagStatus.RED: "Weak Fit",
    RagStatus.NONE: "Not Scored",
}


class CellType(StrEnum):
    CONSENSUS = "consensus"
    SCORED = "scored"
    UNSCORED = "unscored"
    UNRESOLVED = "unresolved"


class MatrixCell(BaseModel):
    """One requirement x vendor cell."""

    model_config = ConfigDict(frozen=True)

    requirement_id: str
    vendor_id: str
    criterion_ids: tuple[str, ...] = ()
    cell_type: CellType
    value: float | None = None
    rag: RagStatus = RagStatus.NONE
    score_count: int = 0
    evidence_ids: tuple[str, ...] = ()

    @property
    def has_value(self) -> bool:
        return self.value is not None

    @property
    def evidence_count(self) -> int:
        return len(self.evidence_ids)


class MatrixRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    requirement_id: str
    title: str = ""
    priority: RequirementPriority
    category_id: str | None = None
    cells: tuple[MatrixCell, ...] = ()

    def cell(self, vendor_id: str) -> MatrixCell | None:
        for c in self.cells:
            if c.vendor_id == vendor_id:
                return c
        return None


class VendorSummary(BaseModel):
    """Per-vendor roll-up of the matrix.

    weighted_score weights each scored cell by the mean weight of the
    requirement's linked criteria.
    """

    model_config = ConfigDict(frozen=True)

    vendor_id: str
    vendor_name: str
    average_score: float | None = None
    weighted_score: float | None = None
    scored_cells: int = 0
    progress: float = Field(default=0.0, description="Percent of rows with a value")
    rag: RagStatus = RagStatus.NONE


class MatrixFilters(BaseModel):
    """Optional row and column filters for build_matrix."""

    model_config = ConfigDict(frozen=True)

    category_ids: frozenset[str] | None = None
    vendor_ids: frozenset[str] | None = None
    priorities: frozenset[RequirementPriority] | None = None
    rag: frozenset[RagStatus] | None = Field(
        default=None, description="Keep rows with at least one cell in these RAG classes"
    )
    gaps_only: bool = Field(
        default=False, description="Keep rows with at least one unscored or unresolved cell"
    )


class TraceabilityMatrix(BaseModel):
    model_config = ConfigDict(frozen=True)

    evaluation_id: str
    version: int
    vendor_ids: tuple[str, ...] = ()
    rows: tuple[MatrixRow, ...] = ()
    vendor_summaries: tuple[VendorSummary, ...] = ()
    overall_progress: float = 0.0

    def row(self, requirement_id: str) -> MatrixRow | None:
        for r in self.rows:
            if r.requirement_id == requirement_id:
                return r
        return None


class CoverageGap(BaseModel):
    model_config = ConfigDict(frozen=True)

    requirement_id: str
    vendor_id: str
    cell_type: CellType


class VendorCoverage(BaseModel):
    model_config = ConfigDict(frozen=True)

    vendor_id: str
    total: int = 0
    scored: int = 0
    with_evidence: int = 0
    missing: tuple[str, ...] = ()


class CoverageReport(BaseModel):
    """How much of the requirement set has a value for every active vendor."""

    model_config = ConfigDict(frozen=True)

    evaluation_id: str
    total_requirements: int = 0
    covered_requirements: int = 0
    coverage_pct: float = 0.0
    scored_cell_pct: float = 0.0
    evidence_cell_pct: float = 0.0
    by_vendor: tuple[VendorCoverage, ...] = ()
    gaps: tuple[CoverageGap, ...] = ()


class Drilldown(BaseModel):
    """Full chain behind one cell, from requirement to consensus."""

    model_config = ConfigDict(frozen=True)

    requirement: Requirement
    vendor_id: str
    cell: MatrixCell
    criteria: tuple[Criterion, ...] = ()
    questions: tuple[Question, ...] = ()
    responses: tuple[VendorResponse, ...] = ()
    evidence: tuple[Evidence, ...] = ()
    scores: tuple[Score, ...] = ()
    consensus: tuple[ConsensusScore, ...] = ()
