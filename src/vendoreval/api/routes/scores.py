"""Score and lock routes.

Provides:
- POST /v1/evaluations/{evaluation_id}/scores (Submit Score)
- GET /v1/evaluations/{evaluation_id}/scores (List Visible Scores)
- POST /v1/evaluations/{evaluation_id}/scores/evidence (Link Evidence)
- POST /v1/evaluations/{evaluation_id}/vendors/{vendor_id}/submit-all (Submit All Drafts)
- GET /v1/evaluations/{evaluation_id}/vendors/{vendor_id}/progress (Scoring Progress)
- POST /v1/evaluations/{evaluation_id}/locks (Lock Scope)
- POST /v1/evaluations/{evaluation_id}/locks/unlock (Unlock Scope)
- GET /v1/evaluations/{evaluation_id}/locks (Lock History)
"""

from __future__ import annotations

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from vendoreval.api.deps import EngineDep
from vendoreval.models.score import LockRecord, LockScopeType, Score, ScoreStatus

router = APIRouter(prefix="/v1", tags=["Scores"])


class SubmitScoreRequest(BaseModel):
    vendor_id: str = Field(..., min_length=1)
    criterion_id: str = Field(..., min_length=1)
    evaluator_id: str = Field(..., min_length=1)
    value: float
    rationale: str = ""
    status: ScoreStatus = ScoreStatus.SUBMITTED
    expected_version: int | None = Field(default=None, ge=0)
    evidence_ids: list[str] | None = None


class LinkEvidenceRequest(BaseModel):
    vendor_id: str = Field(..., min_length=1)
    criterion_id: str = Field(..., min_length=1)
    evaluator_id: str = Field(..., min_length=1)
    evidence_ids: list[str] = Field(..., min_length=1)


class SubmitAllRequest(BaseModel):
    evaluator_id: str = Field(..., min_length=1)


class LockRequest(BaseModel):
    actor: str = Field(..., min_length=1)
    scope_type: LockScopeType
    scope_id: str = Field(..., min_length=1)
    reason: str | None = None


class ProgressResponse(BaseModel):
    vendor_id: str
    evaluator_id: str | None = None
    total_criteria: int
    scored: int
    submitted: int
    draft: int
    percent_complete: float


@router.post("/evaluations/{evaluation_id}/scores", response_model=Score)
def submit_score(evaluation_id: str, body: SubmitScoreRequest, engine: EngineDep) -> Score:
    """Create or update a score.

    423 LOCKED when an enclosing scope is locked, 409 CONCURRENCY_CONFLICT
    when expected_version is stale, 422 for out-of-scale values or a missing
    rationale on submit.
    """
    return engine.submit_score(
        evaluation_id,
        body.vendor_id,
        body.criterion_id,
        body.evaluator_id,
        body.value,
        body.rationale,
        status=body.status,
        expected_version=body.expected_version,
        evidence_ids=body.evidence_ids,
    )


@router.get("/evaluations/{evaluation_id}/scores", response_model=list[Score])
def list_scores(
    evaluation_id: str,
    engine: EngineDep,
    viewer_id: str = Query(..., min_length=1),
    vendor_id: str | None = None,
    criterion_id: str | None = None,
) -> list[Score]:
    """Scores visible to viewer_id under the blind-scoring rules."""
    return engine.get_scores(
        evaluation_id, viewer_id, vendor_id=vendor_id, criterion_id=criterion_id
    )


@router.post("/evaluations/{evaluation_id}/scores/evidence", response_model=Score)
def link_evidence(evaluation_id: str, body: LinkEvidenceRequest, engine: EngineDep) -> Score:
    """Add evidence references to an existing score. Bumps its version."""
    return engine.link_evidence(
        evaluation_id, body.vendor_id, body.criterion_id, body.evaluator_id, body.evidence_ids
    )


@router.post(
    "/evaluations/{evaluation_id}/vendors/{vendor_id}/submit-all", response_model=list[Score]
)
def submit_all(
    evaluation_id: str, vendor_id: str, body: SubmitAllRequest, engine: EngineDep
) -> list[Score]:
    """Submit every draft of one evaluator for a vendor.

    422 VALIDATION_ERROR listing criterion_ids when any draft lacks a
    rationale; nothing is submitted in that case.
    """
    return engine.submit_all(evaluation_id, vendor_id, body.evaluator_id)


@router.get(
    "/evaluations/{evaluation_id}/vendors/{vendor_id}/progress", response_model=ProgressResponse
)
def get_scoring_progress(
    evaluation_id: str, vendor_id: str, engine: EngineDep, evaluator_id: str | None = None
) -> ProgressResponse:
    progress = engine.scoring_progress(evaluation_id, vendor_id, evaluator_id)
    return ProgressResponse(
        vendor_id=progress.vendor_id,
        evaluator_id=progress.evaluator_id,
        total_criteria=progress.total_criteria,
        scored=progress.scored,
        submitted=progress.submitted,
        draft=progress.draft,
        percent_complete=progress.percent_complete,
    )


@router.post("/evaluations/{evaluation_id}/locks", response_model=LockRecord, status_code=201)
def lock_scope(evaluation_id: str, body: LockRequest, engine: EngineDep) -> LockRecord:
    return engine.lock_scope(
        evaluation_id, body.scope_type, body.scope_id, body.actor, body.reason
    )


@router.post(
    "/evaluations/{evaluation_id}/locks/unlock", response_model=LockRecord, status_code=201
)
def unlock_scope(evaluation_id: str, body: LockRequest, engine: EngineDep) -> LockRecord:
    """Unlock a scope. 422 "reason required" without a non-empty reason."""
    return engine.unlock_scope(
        evaluation_id, body.scope_type, body.scope_id, body.actor, body.reason
    )


@router.get("/evaluations/{evaluation_id}/locks", response_model=list[LockRecord])
def get_lock_history(evaluation_id: str, engine: EngineDep) -> list[LockRecord]:
    return engine.get_lock_history(evaluation_id)
