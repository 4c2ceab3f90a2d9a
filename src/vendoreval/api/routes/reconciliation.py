"""Variance and reconciliation routes.

Provides:
- GET /v1/evaluations/{evaluation_id}/criteria/{criterion_id}/variance (Get Variance)
- GET /v1/evaluations/{evaluation_id}/reconciliation (List Reconciliation Items)
- POST /v1/reconciliation/{item_id}/notes (Add Note)
- POST /v1/reconciliation/{item_id}/proposal (Propose Consensus)
- POST /v1/reconciliation/{item_id}/accept (Accept Consensus)
- POST /v1/reconciliation/{item_id}/override (Override Consensus)
- POST /v1/reconciliation/deadlines/check (Check Deadlines)
"""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter
from pydantic import BaseModel, Field

from vendoreval.api.deps import EngineDep
from vendoreval.models.reconciliation import ReconciliationItem, VarianceResult

router = APIRouter(prefix="/v1", tags=["Reconciliation"])


class NoteRequest(BaseModel):
    author: str = Field(..., min_length=1)
    text: str = Field(..., min_length=1)


class ProposeConsensusRequest(BaseModel):
    proposer_id: str = Field(..., min_length=1)
    value: float
    rationale: str = Field(..., min_length=1)


class AcceptConsensusRequest(BaseModel):
    evaluator_id: str = Field(..., min_length=1)


class OverrideConsensusRequest(BaseModel):
    actor: str = Field(..., min_length=1)
    value: float
    rationale: str = Field(..., min_length=1)
    reason: str = ""


class CheckDeadlinesRequest(BaseModel):
    now: datetime | None = None


@router.get(
    "/evaluations/{evaluation_id}/criteria/{criterion_id}/variance",
    response_model=list[VarianceResult],
)
def get_variance(evaluation_id: str, criterion_id: str, engine: EngineDep) -> list[VarianceResult]:
    """Spread of submitted scores for one criterion across every vendor."""
    return engine.get_variance(evaluation_id, criterion_id)


@router.get(
    "/evaluations/{evaluation_id}/reconciliation", response_model=list[ReconciliationItem]
)
def list_reconciliation_items(evaluation_id: str, engine: EngineDep) -> list[ReconciliationItem]:
    return engine.list_reconciliation_items(evaluation_id)


@router.post("/reconciliation/{item_id}/notes", response_model=ReconciliationItem)
def add_note(item_id: str, body: NoteRequest, engine: EngineDep) -> ReconciliationItem:
    return engine.add_reconciliation_note(item_id, body.author, body.text)


@router.post("/reconciliation/{item_id}/proposal", response_model=ReconciliationItem)
def propose_consensus(
    item_id: str, body: ProposeConsensusRequest, engine: EngineDep
) -> ReconciliationItem:
    return engine.propose_consensus(item_id, body.proposer_id, body.value, body.rationale)


@router.post("/reconciliation/{item_id}/accept", response_model=ReconciliationItem)
def accept_consensus(
    item_id: str, body: AcceptConsensusRequest, engine: EngineDep
) -> ReconciliationItem:
    return engine.accept_consensus(item_id, body.evaluator_id)


@router.post("/reconciliation/{item_id}/override", response_model=ReconciliationItem)
def override_consensus(
    item_id: str, body: OverrideConsensusRequest, engine: EngineDep
) -> ReconciliationItem:
    """Lead/admin override. 422 "reason required" without a non-empty reason."""
    return engine.override_consensus(
        item_id, body.actor, body.value, body.rationale, body.reason
    )


@router.post("/reconciliation/deadlines/check", response_model=list[ReconciliationItem])
def check_deadlines(body: CheckDeadlinesRequest, engine: EngineDep) -> list[ReconciliationItem]:
    return engine.check_reconciliation_deadlines(body.now)
