"""Cross-vendor outlier detection.

Values are grouped by (dimension, sub_type), e.g. price/total_contract or
schedule/go_live. Within a group of at least ``anomaly_min_vendors`` values:

    median = median(values)
    scale  = MAD, or mean absolute deviation when MAD is 0
    flag   = |value - median| > k * scale

A scale of 0 means every value equals the median and nothing is flagged.
Groups below the vendor minimum produce an InsufficientData abstention
instead of silently passing. So does every expected dimension that has no
values at all.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Sequence
from datetime import datetime

from vendoreval.cancellation import CancellationToken, check_cancelled
from vendoreval.config import EngineConfig
from vendoreval.models.anomaly import (
    Anomaly,
    AnomalyDimension,
    AnomalyDirection,
    AnomalyReport,
    AnomalySeverity,
    DataPoint,
    InsufficientData,
)
from vendoreval.models.evaluation import utc_now
from vendoreval.numeric import (
    is_finite_number,
    mean_absolute_deviation,
    median,
    median_absolute_deviation,
    round_half_up,
)

logger = logging.getLogger(__name__)

ANOMALY_NAMESPACE = uuid.UUID("6f1c4f4e-8f55-4c1e-9d7a-3a0d1c2b9e10")

# vendor count and |deviation %| at which confidence saturates
CONFIDENCE_VENDOR_SATURATION = 5
CONFIDENCE_DEVIATION_SATURATION = 50.0

_RECOMMENDED_ACTIONS: dict[tuple[AnomalyDimension, AnomalyDirection], str] = {
    (AnomalyDimension.PRICE, AnomalyDirection.LOW): (
        "Request detailed breakdown and verify scope inclusion"
    ),
    (AnomalyDimension.PRICE, AnomalyDirection.HIGH): (
        "Review pricing structure and compare deliverables"
    ),
    (AnomalyDimension.SCHEDULE, AnomalyDirection.LOW): (
        "Review implementation plan and verify all phases included"
    ),
    (AnomalyDimension.SCHEDULE, AnomalyDirection.HIGH): (
        "Understand timeline drivers and resource allocation"
    ),
    (AnomalyDimension.SCORE, AnomalyDirection.LOW): (
        "Verify low scores against submitted evidence"
    ),
    (AnomalyDimension.SCORE, AnomalyDirection.HIGH): (
        "Verify high scores against submitted evidence"
    ),
}


def anomaly_id_for(evaluation_id: str, vendor_id: str, dimension: str, sub_type: str) -> str:
    """Stable id so repeated runs over the same inputs yield the same anomaly."""
    name = "|".join((evaluation_id, vendor_id, dimension, sub_type))
    return str(uuid.uuid5(ANOMALY_NAMESPACE, name))


def deviation_percentage(value: float, center: float) -> float | None:
    if center == 0:
        return None
    return (value - center) / abs(center) * 100.0


def detection_confidence(vendor_count: int, deviation_pct: float | None) -> float:
    """Blend of sample size (40%) and relative deviation (60%), two decimals."""
    size_part = min(vendor_count / CONFIDENCE_VENDOR_SATURATION, 1.0)
    if deviation_pct is None:
        deviation_part = 1.0
    else:
        deviation_part = min(abs(deviation_pct) / CONFIDENCE_DEVIATION_SATURATION, 1.0)
    return round_half_up(size_part * 0.4 + deviation_part * 0.6, 2)


def classify_severity(ratio: float, config: EngineConfig) -> AnomalySeverity:
    if ratio >= config.severity_ratios.critical:
        return AnomalySeverity.CRITICAL
    if ratio >= config.severity_ratios.warning:
        return AnomalySeverity.WARNING
    return AnomalySeverity.INFO


def _group(points: Sequence[DataPoint]) -> dict[tuple[AnomalyDimension, str], list[DataPoint]]:
    groups: dict[tuple[AnomalyDimension, str], list[DataPoint]] = {}
    for point in points:
        if not is_finite_number(point.value):
            logger.warning(
                "Skipping non-finite %s value for vendor %s", point.dimension, point.vendor_id
            )
            continue
        groups.setdefault((point.dimension, point.sub_type), []).append(point)
    return groups


def _detect_group(
    evaluation_id: str,
    dimension: AnomalyDimension,
    sub_type: str,
    points: list[DataPoint],
    config: EngineConfig,
    detected_at: datetime,
) -> list[Anomaly]:
    values = [p.value for p in points]
    center = median(values)
    mad = median_absolute_deviation(values, center)
    scale = mad if mad > 0 else mean_absolute_deviation(values, center)
    if scale == 0:
        return []

    threshold = config.k_for(dimension.value) * scale
    found: list[Anomaly] = []
    for point in points:
        deviation = point.value - center
        if abs(deviation) <= threshold:
            continue
        direction = AnomalyDirection.LOW if deviation < 0 else AnomalyDirection.HIGH
        pct = deviation_percentage(point.value, center)
        found.append(
            Anomaly(
                anomaly_id=anomaly_id_for(evaluation_id, point.vendor_id, dimension, sub_type),
                evaluation_id=evaluation_id,
                vendor_id=point.vendor_id,
                dimension=dimension,
                sub_type=sub_type,
                value=point.value,
                median=center,
                mad=mad,
                scale=scale,
                deviation=deviation,
                deviation_pct=pct,
                threshold=threshold,
                severity=classify_severity(abs(deviation) / threshold, config),
                direction=direction,
                confidence=detection_confidence(len(points), pct),
                recommended_action=_RECOMMENDED_ACTIONS[(dimension, direction)],
                detected_at=detected_at,
            )
        )
    return found


def detect_anomalies(
    evaluation_id: str,
    points: Sequence[DataPoint],
    config: EngineConfig,
    *,
    detected_at: datetime | None = None,
    expected: Iterable[AnomalyDimension] = (),
    token: CancellationToken | None = None,
) -> AnomalyReport:
    """Flag cross-vendor outliers in each (dimension, sub_type) group.

    Args:
        evaluation_id: Evaluation the data points belong to.
        points: One value per vendor per group. Later duplicates of the same
            (vendor, dimension, sub_type) replace earlier ones.
        config: Supplies k per dimension, minimum vendors and severity ratios.
        detected_at: Timestamp stamped on every anomaly; defaults to now.
        expected: Dimensions that must be covered. One with no values at all
            abstains with a vendor_count of 0.
        token: Optional cancellation token checked between groups.

    Returns:
        AnomalyReport with anomalies ordered by (dimension, sub_type,
        vendor_id) and one InsufficientData entry per skipped group or
        uncovered expected dimension.
    """
    stamp = detected_at or utc_now()
    deduped: dict[tuple[str, AnomalyDimension, str], DataPoint] = {}
    for point in points:
        deduped[(point.vendor_id, point.dimension, point.sub_type)] = point

    anomalies: list[Anomaly] = []
    abstentions: list[InsufficientData] = []
    analysed: list[tuple[AnomalyDimension, str]] = []
    groups = _group(list(deduped.values()))
    for (dimension, sub_type) in sorted(groups):
        check_cancelled(token)
        group = sorted(groups[(dimension, sub_type)], key=lambda p: p.vendor_id)
        if len(group) < config.anomaly_min_vendors:
            abstentions.append(
                InsufficientData(
                    dimension=dimension,
                    sub_type=sub_type,
                    vendor_count=len(group),
                    required=config.anomaly_min_vendors,
                )
            )
            continue
        analysed.append((dimension, sub_type))
        anomalies.extend(_detect_group(evaluation_id, dimension, sub_type, group, config, stamp))

    covered = {dimension for dimension, _ in groups}
    for dimension in sorted(set(expected) - covered):
        abstentions.append(
            InsufficientData(
                dimension=dimension, vendor_count=0, required=config.anomaly_min_vendors
            )
        )

    logger.info(
        "Anomaly detection for %s: %d flagged, %d group(s) with insufficient data",
        evaluation_id,
        len(anomalies),
        len(abstentions),
    )
    return AnomalyReport(
        evaluation_id=evaluation_id,
        anomalies=tuple(anomalies),
        abstentions=tuple(abstentions),
        analysed_groups=tuple(analysed),
    )
