"""Anomaly routes.

Provides:
- POST /v1/evaluations/{evaluation_id}/vendor-data (Record Vendor Data)
- POST /v1/evaluations/{evaluation_id}/anomalies/detect (Detect Anomalies)
- GET /v1/evaluations/{evaluation_id}/anomalies (List Anomalies)
- GET /v1/evaluations/{evaluation_id}/anomalies/stats (Anomaly Statistics)
- POST /v1/anomalies/{anomaly_id}/status (Update Anomaly Status)
"""

from __future__ import annotations

from fastapi import APIRouter
from pydantic import BaseModel, Field

from vendoreval.api.deps import EngineDep
from vendoreval.models.anomaly import (
    Anomaly,
    AnomalyDimension,
    AnomalyReport,
    AnomalySeverity,
    AnomalyStats,
    AnomalyStatus,
    DataPoint,
)

router = APIRouter(prefix="/v1", tags=["Anomalies"])


class VendorDataRequest(BaseModel):
    points: list[DataPoint] = Field(..., min_length=1)


class VendorDataResponse(BaseModel):
    recorded: int


class DetectAnomaliesRequest(BaseModel):
    include_scores: bool = True
    strict: bool = False


class UpdateAnomalyStatusRequest(BaseModel):
    actor: str = Field(..., min_length=1)
    status: AnomalyStatus
    note: str | None = None


@router.post("/evaluations/{evaluation_id}/vendor-data", response_model=VendorDataResponse)
def record_vendor_data(
    evaluation_id: str, body: VendorDataRequest, engine: EngineDep
) -> VendorDataResponse:
    return VendorDataResponse(recorded=engine.record_vendor_data(evaluation_id, body.points))


@router.post("/evaluations/{evaluation_id}/anomalies/detect", response_model=AnomalyReport)
def detect_anomalies(
    evaluation_id: str, body: DetectAnomaliesRequest, engine: EngineDep
) -> AnomalyReport:
    """Run detection. Groups with too few vendors are listed under abstentions."""
    return engine.detect_anomalies(
        evaluation_id, include_scores=body.include_scores, strict=body.strict
    )


@router.get("/evaluations/{evaluation_id}/anomalies", response_model=list[Anomaly])
def get_anomalies(
    evaluation_id: str,
    engine: EngineDep,
    status: AnomalyStatus | None = None,
    severity: AnomalySeverity | None = None,
    vendor_id: str | None = None,
    dimension: AnomalyDimension | None = None,
) -> list[Anomaly]:
    return engine.get_anomalies(
        evaluation_id,
        status=status,
        severity=severity,
        vendor_id=vendor_id,
        dimension=dimension,
    )


@router.get("/evaluations/{evaluation_id}/anomalies/stats", response_model=AnomalyStats)
def get_anomaly_stats(evaluation_id: str, engine: EngineDep) -> AnomalyStats:
    return engine.get_anomaly_stats(evaluation_id)


@router.post("/anomalies/{anomaly_id}/status", response_model=Anomaly)
def update_anomaly_status(
    anomaly_id: str, body: UpdateAnomalyStatusRequest, engine: EngineDep
) -> Anomaly:
    return engine.update_anomaly_status(anomaly_id, body.status, body.actor, body.note)
