"""Anomaly store and review workflow.

Detection itself is pure (see detector.py). This service keeps the raw
per-vendor data points, stores detected anomalies de-duplicated by
(evaluation, vendor, dimension, sub_type) and drives the review workflow:

    open -> under_review -> resolved | accepted_risk | dismissed
    open -> resolved | accepted_risk | dismissed
    resolved | accepted_risk | dismissed -> open   (reopen)
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime

from vendoreval.anomalies.detector import detect_anomalies
from vendoreval.audit.sink import AuditSink, emit_audit
from vendoreval.cancellation import CancellationToken
from vendoreval.config import EngineConfig
from vendoreval.errors import InvalidStateTransitionError, NotFoundError
from vendoreval.models.anomaly import (
    ANOMALY_TRANSITIONS,
    TERMINAL_ANOMALY_STATUSES,
    Anomaly,
    AnomalyDimension,
    AnomalyReport,
    AnomalySeverity,
    AnomalyStats,
    AnomalyStatus,
    DataPoint,
)
from vendoreval.models.evaluation import utc_now
from vendoreval.notifications.publisher import (
    NotificationEvent,
    NotificationPublisher,
    NotificationType,
)

logger = logging.getLogger(__name__)

CLEARED_ON_REDETECTION = "No longer an outlier on re-detection"

_MEASUREMENT_FIELDS = (
    "value",
    "median",
    "mad",
    "scale",
    "deviation",
    "deviation_pct",
    "threshold",
    "severity",
    "direction",
    "confidence",
    "recommended_action",
)


class AnomalyService:
    """Holds vendor data points and the anomalies detected from them."""

    def __init__(
        self,
        audit_sink: AuditSink,
        publisher: NotificationPublisher,
        config: EngineConfig,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._audit = audit_sink
        self._publisher = publisher
        self._config = config
        self._clock = clock
        self._lock = threading.RLock()
        self._points: dict[str, dict[tuple[str, AnomalyDimension, str], DataPoint]] = {}
        self._anomalies: dict[str, Anomaly] = {}

    # -- data points ---------------------------------------------------------

    def record_data_points(self, evaluation_id: str, points: Iterable[DataPoint]) -> int:
        """Store vendor values; a later value for the same vendor and group replaces the earlier."""
        count = 0
        with self._lock:
            stored = self._points.setdefault(evaluation_id, {})
            for point in points:
                stored[(point.vendor_id, point.dimension, point.sub_type)] = point
                count += 1
        return count

    def data_points(self, evaluation_id: str) -> list[DataPoint]:
        with self._lock:
            points = list(self._points.get(evaluation_id, {}).values())
        return sorted(points, key=lambda p: (p.dimension, p.sub_type, p.vendor_id))

    # -- detection -----------------------------------------------------------

    def detect(
        self,
        evaluation_id: str,
        extra_points: Sequence[DataPoint] = (),
        *,
        expected: Iterable[AnomalyDimension] = (),
        token: CancellationToken | None = None,
    ) -> AnomalyReport:
        """Run detection over stored plus extra points and store the results.

        A repeat detection of an open or under-review anomaly refreshes its
        measurements and keeps its status. One whose group was compared again
        without flagging it is resolved automatically. Anomalies already
        closed by a reviewer are left untouched. Only newly stored anomalies
        are announced.
        """
        points = self.data_points(evaluation_id) + list(extra_points)
        now = self._clock()
        report = detect_anomalies(
            evaluation_id,
            points,
            self._config,
            detected_at=now,
            expected=expected,
            token=token,
        )

        created: list[Anomaly] = []
        cleared: list[Anomaly] = []
        flagged = {a.anomaly_id for a in report.anomalies}
        analysed = set(report.analysed_groups)
        with self._lock:
            for anomaly in report.anomalies:
                existing = self._anomalies.get(anomaly.anomaly_id)
                if existing is None:
                    self._anomalies[anomaly.anomaly_id] = anomaly
                    created.append(anomaly)
                elif existing.status not in TERMINAL_ANOMALY_STATUSES:
                    refreshed = {f: getattr(anomaly, f) for f in _MEASUREMENT_FIELDS}
                    self._anomalies[anomaly.anomaly_id] = existing.model_copy(update=refreshed)
            for existing in list(self._anomalies.values()):
                if (
                    existing.evaluation_id != evaluation_id
                    or existing.anomaly_id in flagged
                    or existing.status in TERMINAL_ANOMALY_STATUSES
                    or (existing.dimension, existing.sub_type) not in analysed
                ):
                    continue
                self._anomalies[existing.anomaly_id] = existing.model_copy(
                    update={
                        "status": AnomalyStatus.RESOLVED,
                        "resolved_by": None,
                        "resolution_note": CLEARED_ON_REDETECTION,
                        "resolved_at": now,
                    }
                )
                cleared.append(existing)

        for anomaly in cleared:
            logger.info(
                "Anomaly %s for vendor %s no longer flagged; resolved",
                anomaly.anomaly_id,
                anomaly.vendor_id,
            )
            emit_audit(
                self._audit,
                "anomaly.status_changed",
                evaluation_id=evaluation_id,
                actor=None,
                data={
                    "anomaly_id": anomaly.anomaly_id,
                    "from": anomaly.status.value,
                    "to": AnomalyStatus.RESOLVED.value,
                    "note": CLEARED_ON_REDETECTION,
                },
            )

        for anomaly in created:
            logger.info(
                "Anomaly %s: vendor %s %s/%s %s (%s)",
                anomaly.anomaly_id,
                anomaly.vendor_id,
                anomaly.dimension,
                anomaly.sub_type,
                anomaly.direction,
                anomaly.severity,
            )
            self._publisher.publish(
                NotificationEvent(
                    event_type=NotificationType.ANOMALY_DETECTED,
                    evaluation_id=evaluation_id,
                    payload={
                        "anomaly_id": anomaly.anomaly_id,
                        "vendor_id": anomaly.vendor_id,
                        "dimension": anomaly.dimension.value,
                        "sub_type": anomaly.sub_type,
                        "severity": anomaly.severity.value,
                        "deviation_pct": anomaly.deviation_pct,
                    },
                )
            )
        return report

    # -- queries -------------------------------------------------------------

    def get_anomaly(self, anomaly_id: str) -> Anomaly:
        with self._lock:
            anomaly = self._anomalies.get(anomaly_id)
        if anomaly is None:
            raise NotFoundError("Anomaly", anomaly_id)
        return anomaly

    def list_anomalies(
        self,
        evaluation_id: str,
        *,
        status: AnomalyStatus | None = None,
        severity: AnomalySeverity | None = None,
        vendor_id: str | None = None,
        dimension: AnomalyDimension | None = None,
    ) -> list[Anomaly]:
        with self._lock:
            found = [
                a
                for a in self._anomalies.values()
                if a.evaluation_id == evaluation_id
                and (status is None or a.status == status)
                and (severity is None or a.severity == severity)
                and (vendor_id is None or a.vendor_id == vendor_id)
                and (dimension is None or a.dimension == dimension)
            ]
        return sorted(found, key=lambda a: (a.dimension, a.sub_type, a.vendor_id))

    def stats(self, evaluation_id: str) -> AnomalyStats:
        anomalies = self.list_anomalies(evaluation_id)
        return AnomalyStats(
            total=len(anomalies),
            by_status=dict(Counter(a.status.value for a in anomalies)),
            by_severity=dict(Counter(a.severity.value for a in anomalies)),
            by_vendor=dict(Counter(a.vendor_id for a in anomalies)),
            open_critical=sum(
                1
                for a in anomalies
                if a.status == AnomalyStatus.OPEN and a.severity == AnomalySeverity.CRITICAL
            ),
        )

    # -- workflow ------------------------------------------------------------

    def update_status(
        self,
        anomaly_id: str,
        status: AnomalyStatus,
        actor: str,
        note: str | None = None,
    ) -> Anomaly:
        """Move an anomaly through the review workflow.

        Raises:
            NotFoundError: Unknown anomaly.
            InvalidStateTransitionError: Transition not allowed from the current status.
        """
        status = AnomalyStatus(status)
        with self._lock:
            current = self.get_anomaly(anomaly_id)
            if status not in ANOMALY_TRANSITIONS[current.status]:
                raise InvalidStateTransitionError("Anomaly", current.status.value, status.value)
            if status in TERMINAL_ANOMALY_STATUSES:
                changes = {
                    "status": status,
                    "resolved_by": actor,
                    "resolution_note": note,
                    "resolved_at": self._clock(),
                }
            else:
                changes = {
                    "status": status,
                    "resolved_by": None,
                    "resolution_note": note,
                    "resolved_at": None,
                }
            updated = current.model_copy(update=changes)
            self._anomalies[anomaly_id] = updated

        logger.info("Anomaly %s %s -> %s by %s", anomaly_id, current.status, status, actor)
        emit_audit(
            self._audit,
            "anomaly.status_changed",
            evaluation_id=updated.evaluation_id,
            actor=actor,
            data={
                "anomaly_id": anomaly_id,
                "from": current.status.value,
                "to": status.value,
                "note": note,
            },
        )
        return updated

    def reopen(self, anomaly_id: str, actor: str, note: str | None = None) -> Anomaly:
        return self.update_status(anomaly_id, AnomalyStatus.OPEN, actor, note)
