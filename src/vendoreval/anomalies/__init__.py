"""Cross-vendor anomaly detection and review."""

from vendoreval.anomalies.detector import (
    anomaly_id_for,
    classify_severity,
    detect_anomalies,
    detection_confidence,
)
from vendoreval.anomalies.service import AnomalyService

__all__ = [
    "AnomalyService",
    "anomaly_id_for",
    "classify_severity",
    "detect_anomalies",
    "detection_confidence",
]
