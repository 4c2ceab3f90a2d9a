"""Domain models for the scoring engine."""

from vendoreval.models.anomaly import (
    Anomaly,
    AnomalyDimension,
    AnomalyDirection,
    AnomalyReport,
    AnomalySeverity,
    AnomalyStats,
    AnomalyStatus,
    DataPoint,
    InsufficientData,
)
from vendoreval.models.evaluation import (
    Category,
    Criterion,
    Evaluation,
    EvaluationPhase,
    Evaluator,
    Evidence,
    EvidenceSentiment,
    EvidenceType,
    Question,
    Requirement,
    RequirementPriority,
    Role,
    Vendor,
    VendorResponse,
    VendorStatus,
)
from vendoreval.models.reconciliation import (
    ConsensusProposal,
    DiscussionNote,
    ReconciliationItem,
    ReconciliationStatus,
    VarianceResult,
)
from vendoreval.models.score import (
    ConsensusScore,
    LockAction,
    LockRecord,
    LockScopeType,
    LockState,
    ScopeRef,
    Score,
    ScoreKey,
    ScoreStatus,
)

__all__ = [
    "Anomaly",
    "AnomalyDimension",
    "AnomalyDirection",
    "AnomalyReport",
    "AnomalySeverity",
    "AnomalyStats",
    "AnomalyStatus",
    "Category",
    "ConsensusProposal",
    "ConsensusScore",
    "Criterion",
    "DataPoint",
    "DiscussionNote",
    "Evaluation",
    "EvaluationPhase",
    "Evaluator",
    "Evidence",
    "EvidenceSentiment",
    "EvidenceType",
    "InsufficientData",
    "LockAction",
    "LockRecord",
    "LockScopeType",
    "LockState",
    "Question",
    "ReconciliationItem",
    "ReconciliationStatus",
    "Requirement",
    "RequirementPriority",
    "Role",
    "ScopeRef",
    "Score",
    "ScoreKey",
    "ScoreStatus",
    "VarianceResult",
    "Vendor",
    "VendorResponse",
    "VendorStatus",
]
