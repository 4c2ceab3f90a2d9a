"""Health check endpoint."""

from datetime import UTC, datetime

from fastapi import APIRouter
from pydantic import BaseModel

router = APIRouter(tags=["Health"])

VENDOREVAL_VERSION = "0.1.0"


class HealthResponse(BaseModel):
    status: str
    time: str
    version: str


@router.get("/health", response_model=HealthResponse)
def get_health() -> HealthResponse:
    """Liveness probe: status "ok", current UTC time (ISO-8601) and package version."""
    return HealthResponse(
        status="ok", time=datetime.now(UTC).isoformat(), version=VENDOREVAL_VERSION
    )
