"""Traceability routes.

Provides:
- GET /v1/evaluations/{evaluation_id}/traceability (Traceability Matrix)
- GET /v1/evaluations/{evaluation_id}/coverage (Coverage Report)
- GET /v1/evaluations/{evaluation_id}/traceability/{requirement_id}/vendors/{vendor_id}
  (Cell Drilldown)
"""

from __future__ import annotations

from fastapi import APIRouter, Query

from vendoreval.api.deps import EngineDep
from vendoreval.models.evaluation import RequirementPriority
from vendoreval.models.traceability import (
    CoverageReport,
    Drilldown,
    MatrixFilters,
    RagStatus,
    TraceabilityMatrix,
)

router = APIRouter(prefix="/v1", tags=["Traceability"])


@router.get("/evaluations/{evaluation_id}/traceability", response_model=TraceabilityMatrix)
def get_traceability_matrix(
    evaluation_id: str,
    engine: EngineDep,
    category_id: list[str] | None = Query(None),
    vendor_id: list[str] | None = Query(None),
    priority: list[RequirementPriority] | None = Query(None),
    rag: list[RagStatus] | None = Query(None),
    gaps_only: bool = False,
) -> TraceabilityMatrix:
    """Requirement x vendor matrix. Repeat a query parameter to filter on several values."""
    filters = MatrixFilters(
        category_ids=frozenset(category_id) if category_id else None,
        vendor_ids=frozenset(vendor_id) if vendor_id else None,
        priorities=frozenset(priority) if priority else None,
        rag=frozenset(rag) if rag else None,
        gaps_only=gaps_only,
    )
    return engine.get_traceability_matrix(evaluation_id, filters)


@router.get("/evaluations/{evaluation_id}/coverage", response_model=CoverageReport)
def get_coverage(evaluation_id: str, engine: EngineDep) -> CoverageReport:
    return engine.get_coverage(evaluation_id)


@router.get(
    "/evaluations/{evaluation_id}/traceability/{requirement_id}/vendors/{vendor_id}",
    response_model=Drilldown,
)
def get_drilldown(
    evaluation_id: str,
    requirement_id: str,
    vendor_id: str,
    engine: EngineDep,
    viewer_id: str | None = None,
) -> Drilldown:
    """Chain behind one cell; per-evaluator scores are filtered for viewer_id when given."""
    return engine.get_drilldown(evaluation_id, requirement_id, vendor_id, viewer_id=viewer_id)
