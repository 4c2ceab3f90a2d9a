"""Anomaly models.

An Anomaly is a vendor value that deviates from the cross-vendor median by
more than k times the median absolute deviation. Detection abstains with an
InsufficientData result when fewer than the minimum number of vendors have
values for a dimension.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from vendoreval.models.evaluation import utc_now


class AnomalyDimension(StrEnum):
    """Dimensions compared across vendors."""

    PRICE = "price"
    SCHEDULE = "schedule"
    SCORE = "score"


class AnomalySeverity(StrEnum):
    """Severity levels, from least to most severe."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


SEVERITY_RANK: dict[AnomalySeverity, int] = {
    AnomalySeverity.INFO: 0,
    AnomalySeverity.WARNING: 1,
    AnomalySeverity.CRITICAL: 2,
}


class AnomalyDirection(StrEnum):
    """Which side of the median the value lies on."""

    LOW = "low"
    HIGH = "high"


class AnomalyStatus(StrEnum):
    """Review workflow status."""

    OPEN = "open"
    UNDER_REVIEW = "under_review"
    RESOLVED = "resolved"
    ACCEPTED_RISK = "accepted_risk"
    DISMISSED = "dismissed"


TERMINAL_ANOMALY_STATUSES: frozenset[AnomalyStatus] = frozenset(
    {AnomalyStatus.RESOLVED, AnomalyStatus.ACCEPTED_RISK, AnomalyStatus.DISMISSED}
)

ANOMALY_TRANSITIONS: dict[AnomalyStatus, frozenset[AnomalyStatus]] = {
    AnomalyStatus.OPEN: frozenset({AnomalyStatus.UNDER_REVIEW}) | TERMINAL_ANOMALY_STATUSES,
    AnomalyStatus.UNDER_REVIEW: TERMINAL_ANOMALY_STATUSES,
    AnomalyStatus.RESOLVED: frozenset({AnomalyStatus.OPEN}),
    AnomalyStatus.ACCEPTED_RISK: frozenset({AnomalyStatus.OPEN}),
    AnomalyStatus.DISMISSED: frozenset({AnomalyStatus.OPEN}),
}


class DataPoint(BaseModel):
    """One vendor's value on a dimension, the detector's input."""

    model_config = ConfigDict(frozen=True)

    vendor_id: str = Field(..., min_length=1)
    dimension: AnomalyDimension
    value: float
    sub_type: str = "total"


class Anomaly(BaseModel):
    """A detected outlier plus its review state."""

    model_config = ConfigDict(frozen=True)

    anomaly_id: str = Field(..., min_length=1)
    evaluation_id: str = Field(..., min_length=1)
    vendor_id: str = Field(..., min_length=1)
    dimension: AnomalyDimension
    sub_type: str = "total"
    value: float
    median: float
    mad: float
    scale: float = Field(..., description="MAD, or mean absolute deviation when MAD is 0")
    deviation: float = Field(..., description="value - median")
    deviation_pct: float | None = Field(
        default=None, description="Deviation as a percentage of the median, None if median is 0"
    )
    threshold: float = Field(..., description="k * scale")
    severity: AnomalySeverity
    direction: AnomalyDirection
    confidence: float = Field(..., ge=0.0, le=1.0)
    recommended_action: str = ""
    status: AnomalyStatus = AnomalyStatus.OPEN
    detected_at: datetime = Field(default_factory=utc_now)
    resolved_by: str | None = None
    resolution_note: str | None = None
    resolved_at: datetime | None = None

    @property
    def signature(self) -> tuple[str, str, str, str]:
        """Identity used to de-duplicate repeat detections."""
        return (self.evaluation_id, self.vendor_id, self.dimension.value, self.sub_type)


class InsufficientData(BaseModel):
    """Typed abstain result: too few vendors had values for a group."""

    model_config = ConfigDict(frozen=True)

    dimension: AnomalyDimension
    sub_type: str = "total"
    vendor_count: int
    required: int


class AnomalyReport(BaseModel):
    """Outcome of one detection run."""

    model_config = ConfigDict(frozen=True)

    evaluation_id: str
    anomalies: tuple[Anomaly, ...] = ()
    abstentions: tuple[InsufficientData, ...] = ()
    analysed_groups: tuple[tuple[AnomalyDimension, str], ...] = Field(
        default=(), description="(dimension, sub_type) groups with enough vendors to compare"
    )

    @property
    def has_abstentions(self) -> bool:
        return bool(self.abstentions)


class AnomalyStats(BaseModel):
    """Counts of stored anomalies for dashboards."""

    model_config = ConfigDict(frozen=True)

    total: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    by_severity: dict[str, int] = Field(default_factory=dict)
    by_vendor: dict[str, int] = Field(default_factory=dict)
    open_critical: int = 0
