"""Evaluation setup, phase, weight and ranking routes.

Provides:
- POST /v1/evaluations (Create Evaluation)
- GET /v1/evaluations/{evaluation_id} (Get Evaluation)
- POST /v1/evaluations/{evaluation_id}/categories | criteria | vendors | requirements | evidence
- POST /v1/evaluators (Register Evaluator)
- POST /v1/evaluations/{evaluation_id}/ready (Mark Ready For Scoring)
- POST /v1/evaluations/{evaluation_id}/phase (Advance Phase)
- POST /v1/evaluations/{evaluation_id}/weights (Recalculate Weights)
- GET /v1/evaluations/{evaluation_id}/ranking (Vendor Ranking)
- GET /v1/vendors/{vendor_id}/breakdown (Category Breakdown)
"""

from __future__ import annotations

from typing import Literal

from fastapi import APIRouter
from pydantic import BaseModel, Field

from vendoreval.api.deps import EngineDep
from vendoreval.config import WeightPolicy
from vendoreval.errors import ValidationError
from vendoreval.models.aggregation import Ranking, VendorTotal
from vendoreval.models.evaluation import (
    Category,
    Criterion,
    Evaluation,
    EvaluationPhase,
    Evaluator,
    Evidence,
    EvidenceSentiment,
    EvidenceType,
    Requirement,
    RequirementPriority,
    Role,
    Vendor,
    VendorStatus,
)

router = APIRouter(prefix="/v1", tags=["Evaluations"])


class CreateEvaluationRequest(BaseModel):
    evaluation_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    blind_mode: bool = True


class CreateCategoryRequest(BaseModel):
    category_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    weight: float
    sort_order: int = 0


class CreateCriterionRequest(BaseModel):
    criterion_id: str = Field(..., min_length=1)
    category_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    weight: float
    sort_order: int = 0
    requirement_ids: list[str] = Field(default_factory=list)


class CreateVendorRequest(BaseModel):
    vendor_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    status: VendorStatus = VendorStatus.ACTIVE


class CreateEvaluatorRequest(BaseModel):
    evaluator_id: str = Field(..., min_length=1)
    name: str = ""
    roles: list[Role] = Field(default_factory=lambda: [Role.EVALUATOR])


class CreateRequirementRequest(BaseModel):
    requirement_id: str = Field(..., min_length=1)
    title: str = ""
    priority: RequirementPriority = RequirementPriority.SHOULD
    category_id: str | None = None
    criterion_ids: list[str] = Field(default_factory=list)


class CreateEvidenceRequest(BaseModel):
    evidence_id: str = Field(..., min_length=1)
    vendor_id: str = Field(..., min_length=1)
    criterion_id: str = Field(..., min_length=1)
    requirement_id: str | None = None
    evidence_type: EvidenceType = EvidenceType.OTHER
    sentiment: EvidenceSentiment = EvidenceSentiment.NEUTRAL
    title: str = ""


class ActorRequest(BaseModel):
    actor: str = Field(..., min_length=1)


class AdvancePhaseRequest(BaseModel):
    actor: str = Field(..., min_length=1)
    phase: EvaluationPhase


class RecalculateWeightsRequest(BaseModel):
    actor: str = Field(..., min_length=1)
    scope: Literal["category", "criterion"] = "criterion"
    changed_id: str = Field(..., min_length=1)
    new_weight: float
    policy: WeightPolicy | None = None


class WeightRecalculationResponse(BaseModel):
    """Weights after a change plus the resulting sum check."""

    weights: dict[str, float]
    total: float
    ok: bool
    message: str | None = None
    policy: WeightPolicy
    changed_id: str
    adjusted_ids: list[str]


@router.post("/evaluations", response_model=Evaluation, status_code=201)
def create_evaluation(body: CreateEvaluationRequest, engine: EngineDep) -> Evaluation:
    return engine.create_evaluation(
        Evaluation(evaluation_id=body.evaluation_id, name=body.name, blind_mode=body.blind_mode)
    )


@router.get("/evaluations/{evaluation_id}", response_model=Evaluation)
def get_evaluation(evaluation_id: str, engine: EngineDep) -> Evaluation:
    return engine.catalog.get_evaluation(evaluation_id)


@router.post("/evaluations/{evaluation_id}/categories", response_model=Category, status_code=201)
def add_category(evaluation_id: str, body: CreateCategoryRequest, engine: EngineDep) -> Category:
    return engine.add_category(Category(evaluation_id=evaluation_id, **body.model_dump()))


@router.post("/evaluations/{evaluation_id}/criteria", response_model=Criterion, status_code=201)
def add_criterion(
    evaluation_id: str, body: CreateCriterionRequest, engine: EngineDep
) -> Criterion:
    category = engine.catalog.get_category(body.category_id)
    if category.evaluation_id != evaluation_id:
        raise ValidationError(
            f"Category {body.category_id} is not part of evaluation {evaluation_id}"
        )
    data = body.model_dump()
    data["requirement_ids"] = tuple(body.requirement_ids)
    return engine.add_criterion(Criterion(**data))


@router.post("/evaluations/{evaluation_id}/vendors", response_model=Vendor, status_code=201)
def add_vendor(evaluation_id: str, body: CreateVendorRequest, engine: EngineDep) -> Vendor:
    return engine.add_vendor(Vendor(evaluation_id=evaluation_id, **body.model_dump()))


@router.post("/evaluators", response_model=Evaluator, status_code=201)
def add_evaluator(body: CreateEvaluatorRequest, engine: EngineDep) -> Evaluator:
    return engine.add_evaluator(
        Evaluator(evaluator_id=body.evaluator_id, name=body.name, roles=frozenset(body.roles))
    )


@router.post(
    "/evaluations/{evaluation_id}/requirements", response_model=Requirement, status_code=201
)
def add_requirement(
    evaluation_id: str, body: CreateRequirementRequest, engine: EngineDep
) -> Requirement:
    data = body.model_dump()
    data["criterion_ids"] = tuple(body.criterion_ids)
    return engine.add_requirement(evaluation_id, Requirement(**data))


@router.post("/evaluations/{evaluation_id}/evidence", response_model=Evidence, status_code=201)
def add_evidence(evaluation_id: str, body: CreateEvidenceRequest, engine: EngineDep) -> Evidence:
    engine.catalog.get_evaluation(evaluation_id)
    return engine.add_evidence(Evidence(**body.model_dump()))


@router.post("/evaluations/{evaluation_id}/ready", response_model=Evaluation)
def mark_ready_for_scoring(
    evaluation_id: str, body: ActorRequest, engine: EngineDep
) -> Evaluation:
    """Move setup -> scoring. 409 WEIGHT_MISMATCH with the actual total when weights are off."""
    return engine.mark_ready_for_scoring(evaluation_id, body.actor)


@router.post("/evaluations/{evaluation_id}/phase", response_model=Evaluation)
def advance_phase(evaluation_id: str, body: AdvancePhaseRequest, engine: EngineDep) -> Evaluation:
    return engine.advance_phase(evaluation_id, body.phase, body.actor)


@router.post("/evaluations/{evaluation_id}/weights", response_model=WeightRecalculationResponse)
def recalculate_weights(
    evaluation_id: str, body: RecalculateWeightsRequest, engine: EngineDep
) -> WeightRecalculationResponse:
    result = engine.recalculate_weights(
        evaluation_id,
        body.changed_id,
        body.new_weight,
        body.actor,
        scope=body.scope,
        policy=body.policy,
    )
    return WeightRecalculationResponse(
        weights=result.weights,
        total=result.check.total,
        ok=result.check.ok,
        message=result.check.mismatch.message if result.check.mismatch else None,
        policy=result.policy,
        changed_id=result.changed_id,
        adjusted_ids=list(result.adjusted_ids),
    )


@router.get("/evaluations/{evaluation_id}/ranking", response_model=Ranking)
def get_vendor_ranking(evaluation_id: str, engine: EngineDep) -> Ranking:
    return engine.get_vendor_ranking(evaluation_id)


@router.get("/vendors/{vendor_id}/breakdown", response_model=VendorTotal)
def get_category_breakdown(vendor_id: str, engine: EngineDep) -> VendorTotal:
    return engine.get_category_breakdown(vendor_id)
