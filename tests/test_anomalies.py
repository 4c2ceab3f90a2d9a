"""Tests for cross-vendor anomaly detection and the review workflow.

Tests cover:
1. MAD-based outlier detection with severity, direction and confidence
2. Abstention when too few vendors have values
3. Stable anomaly ids, de-duplicated re-detection and auto-resolution of cleared outliers
4. Review status transitions
"""

from __future__ import annotations

import pytest

from tests.fixtures.evaluation import EVALUATION_ID, setup_evaluation, submit
from vendoreval.anomalies.detector import anomaly_id_for, detect_anomalies, detection_confidence
from vendoreval.anomalies.service import CLEARED_ON_REDETECTION, AnomalyService
from vendoreval.audit.sink import InMemoryAuditSink
from vendoreval.config import EngineConfig
from vendoreval.engine import EvaluationEngine
from vendoreval.errors import (
    InsufficientDataError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from vendoreval.models.anomaly import (
    AnomalyDimension,
    AnomalyDirection,
    AnomalySeverity,
    AnomalyStatus,
    DataPoint,
)
from vendoreval.notifications.publisher import InMemoryNotificationPublisher, NotificationType

VENDORS = ("v1", "v2", "v3", "v4")
PRICES = {"v1": 100_000, "v2": 105_000, "v3": 98_000, "v4": 40_000}


def _prices(values: dict[str, float], sub_type: str = "total") -> list[DataPoint]:
    return [
        DataPoint(vendor_id=v, dimension=AnomalyDimension.PRICE, value=x, sub_type=sub_type)
        for v, x in values.items()
    ]


@pytest.fixture
def priced_engine(engine: EvaluationEngine) -> EvaluationEngine:
    setup_evaluation(engine, vendors=VENDORS)
    engine.record_vendor_data(EVALUATION_ID, _prices(PRICES))
    return engine


class TestDetector:
    def test_low_price_outlier_is_critical(self) -> None:
        report = detect_anomalies(EVALUATION_ID, _prices(PRICES), EngineConfig())

        (anomaly,) = report.anomalies
        assert anomaly.vendor_id == "v4"
        assert anomaly.median == 99_000
        assert anomaly.mad == 3_500
        assert anomaly.threshold == pytest.approx(8_750)
        assert anomaly.direction == AnomalyDirection.LOW
        assert anomaly.severity == AnomalySeverity.CRITICAL
        assert anomaly.deviation_pct == pytest.approx(-59.596, abs=1e-3)
        assert anomaly.confidence == 0.92
        assert "breakdown" in anomaly.recommended_action

    def test_moderate_deviation_is_not_flagged(self) -> None:
        report = detect_anomalies(EVALUATION_ID, _prices(PRICES), EngineConfig())

        assert "v2" not in {a.vendor_id for a in report.anomalies}

    def test_zero_mad_falls_back_to_mean_deviation(self) -> None:
        values = {"a": 10, "b": 10, "c": 10, "d": 10, "e": 50}

        (anomaly,) = detect_anomalies(EVALUATION_ID, _prices(values), EngineConfig()).anomalies

        assert anomaly.vendor_id == "e"
        assert anomaly.mad == 0
        assert anomaly.scale == pytest.approx(8.0)
        assert anomaly.direction == AnomalyDirection.HIGH

    def test_identical_values_flag_nothing(self) -> None:
        report = detect_anomalies(
            EVALUATION_ID, _prices({"a": 5, "b": 5, "c": 5}), EngineConfig()
        )

        assert report.anomalies == ()
        assert report.abstentions == ()

    def test_small_group_abstains(self) -> None:
        report = detect_anomalies(
            EVALUATION_ID, _prices({"a": 1, "b": 1_000_000}), EngineConfig()
        )

        assert report.anomalies == ()
        (abstention,) = report.abstentions
        assert abstention.vendor_count == 2
        assert abstention.required == 3

    def test_groups_are_independent(self) -> None:
        points = _prices(PRICES) + _prices({"v1": 1, "v2": 2}, sub_type="annual_support")

        report = detect_anomalies(EVALUATION_ID, points, EngineConfig())

        assert [a.sub_type for a in report.anomalies] == ["total"]
        assert [a.sub_type for a in report.abstentions] == ["annual_support"]

    def test_expected_dimension_without_values_abstains(self) -> None:
        report = detect_anomalies(
            EVALUATION_ID,
            _prices(PRICES),
            EngineConfig(),
            expected=(AnomalyDimension.PRICE, AnomalyDimension.SCHEDULE),
        )

        assert [a.vendor_id for a in report.anomalies] == ["v4"]
        (abstention,) = report.abstentions
        assert abstention.dimension == AnomalyDimension.SCHEDULE
        assert abstention.vendor_count == 0
        assert abstention.required == 3
        assert report.analysed_groups == ((AnomalyDimension.PRICE, "total"),)

    def test_higher_k_tolerates_more_spread(self) -> None:
        config = EngineConfig(anomaly_k={"price": 20.0})

        report = detect_anomalies(EVALUATION_ID, _prices(PRICES), config)

        assert report.anomalies == ()

    def test_ids_are_stable(self) -> None:
        first = detect_anomalies(EVALUATION_ID, _prices(PRICES), EngineConfig())
        second = detect_anomalies(EVALUATION_ID, _prices(PRICES), EngineConfig())

        assert first.anomalies[0].anomaly_id == second.anomalies[0].anomaly_id
        assert first.anomalies[0].anomaly_id == anomaly_id_for(
            EVALUATION_ID, "v4", "price", "total"
        )

    def test_confidence_saturates(self) -> None:
        assert detection_confidence(10, 200.0) == 1.0
        assert detection_confidence(3, 25.0) == 0.54


class TestEngineDetection:
    def test_detection_stores_and_announces_once(
        self, priced_engine: EvaluationEngine, publisher: InMemoryNotificationPublisher
    ) -> None:
        priced_engine.detect_anomalies(EVALUATION_ID, include_scores=False)
        priced_engine.detect_anomalies(EVALUATION_ID, include_scores=False)

        stored = priced_engine.get_anomalies(EVALUATION_ID)
        assert [a.vendor_id for a in stored] == ["v4"]
        assert len(publisher.of_type(NotificationType.ANOMALY_DETECTED)) == 1

    def test_strict_mode_raises_on_abstention(self, engine: EvaluationEngine) -> None:
        setup_evaluation(engine, vendors=("v1", "v2"))
        engine.record_vendor_data(EVALUATION_ID, _prices({"v1": 10, "v2": 20}))

        with pytest.raises(InsufficientDataError):
            engine.detect_anomalies(EVALUATION_ID, include_scores=False, strict=True)

    def test_dimension_without_any_values_is_not_a_silent_pass(
        self, engine: EvaluationEngine
    ) -> None:
        setup_evaluation(engine, vendors=("v1", "v2", "v3"))
        engine.record_vendor_data(
            EVALUATION_ID,
            [
                DataPoint(vendor_id=v, dimension=AnomalyDimension.SCHEDULE, value=weeks)
                for v, weeks in (("v1", 12), ("v2", 14), ("v3", 13))
            ],
        )

        report = engine.detect_anomalies(EVALUATION_ID)

        assert report.anomalies == ()
        assert {(a.dimension, a.vendor_count) for a in report.abstentions} == {
            (AnomalyDimension.PRICE, 0),
            (AnomalyDimension.SCORE, 0),
        }
        with pytest.raises(InsufficientDataError) as exc_info:
            engine.detect_anomalies(EVALUATION_ID, strict=True)
        assert len(exc_info.value.details["abstentions"]) == 2

    def test_abstention_is_a_result_by_default(self, engine: EvaluationEngine) -> None:
        setup_evaluation(engine, vendors=("v1", "v2"))
        engine.record_vendor_data(EVALUATION_ID, _prices({"v1": 10, "v2": 20}))

        report = engine.detect_anomalies(EVALUATION_ID, include_scores=False)

        assert report.has_abstentions
        assert report.anomalies == ()

    def test_vendor_totals_join_the_score_dimension(self, engine: EvaluationEngine) -> None:
        setup_evaluation(engine, vendors=VENDORS)
        for vendor_id, value in (("v1", 4), ("v2", 4), ("v3", 3.5), ("v4", 0.5)):
            for criterion_id in ("A", "B", "C"):
                submit(engine, vendor_id, criterion_id, "e1", value)

        report = engine.detect_anomalies(EVALUATION_ID)

        (anomaly,) = report.anomalies
        assert anomaly.dimension == AnomalyDimension.SCORE
        assert anomaly.vendor_id == "v4"

    def test_unscored_vendors_are_left_out_of_score_dimension(
        self, engine: EvaluationEngine
    ) -> None:
        setup_evaluation(engine, vendors=VENDORS)
        submit(engine, "v1", "A", "e1", 3)

        report = engine.detect_anomalies(EVALUATION_ID)

        (abstention,) = [a for a in report.abstentions if a.dimension == AnomalyDimension.SCORE]
        assert abstention.vendor_count == 1

    def test_data_for_foreign_vendor_is_rejected(
        self, priced_engine: EvaluationEngine
    ) -> None:
        with pytest.raises(NotFoundError):
            priced_engine.record_vendor_data(EVALUATION_ID, _prices({"elsewhere": 1}))

    def test_stats_count_by_status_and_severity(self, priced_engine: EvaluationEngine) -> None:
        priced_engine.detect_anomalies(EVALUATION_ID, include_scores=False)

        stats = priced_engine.get_anomaly_stats(EVALUATION_ID)

        assert stats.total == 1
        assert stats.by_severity == {"critical": 1}
        assert stats.open_critical == 1

    def test_filters(self, priced_engine: EvaluationEngine) -> None:
        priced_engine.detect_anomalies(EVALUATION_ID, include_scores=False)

        assert priced_engine.get_anomalies(EVALUATION_ID, vendor_id="v1") == []
        assert len(priced_engine.get_anomalies(EVALUATION_ID, severity="critical")) == 1


class TestReviewWorkflow:
    def _detected(self, engine: EvaluationEngine) -> str:
        engine.detect_anomalies(EVALUATION_ID, include_scores=False)
        (anomaly,) = engine.get_anomalies(EVALUATION_ID)
        return anomaly.anomaly_id

    def test_review_then_resolve(self, priced_engine: EvaluationEngine) -> None:
        anomaly_id = self._detected(priced_engine)

        priced_engine.update_anomaly_status(anomaly_id, "under_review", "lead")
        resolved = priced_engine.update_anomaly_status(
            anomaly_id, AnomalyStatus.RESOLVED, "lead", "Scope excluded data migration"
        )

        assert resolved.status == AnomalyStatus.RESOLVED
        assert resolved.resolved_by == "lead"
        assert resolved.resolution_note == "Scope excluded data migration"
        assert resolved.resolved_at is not None

    def test_closed_anomaly_can_be_reopened(self, priced_engine: EvaluationEngine) -> None:
        anomaly_id = self._detected(priced_engine)
        priced_engine.update_anomaly_status(anomaly_id, "dismissed", "admin")

        reopened = priced_engine.update_anomaly_status(anomaly_id, "open", "admin")

        assert reopened.status == AnomalyStatus.OPEN
        assert reopened.resolved_by is None

    def test_under_review_cannot_return_to_open(self, priced_engine: EvaluationEngine) -> None:
        anomaly_id = self._detected(priced_engine)
        priced_engine.update_anomaly_status(anomaly_id, "under_review", "lead")

        with pytest.raises(InvalidStateTransitionError):
            priced_engine.update_anomaly_status(anomaly_id, "open", "lead")

    def test_redetection_leaves_closed_anomaly_alone(
        self, priced_engine: EvaluationEngine
    ) -> None:
        anomaly_id = self._detected(priced_engine)
        priced_engine.update_anomaly_status(anomaly_id, "accepted_risk", "lead", "Known discount")

        priced_engine.detect_anomalies(EVALUATION_ID, include_scores=False)

        (anomaly,) = priced_engine.get_anomalies(EVALUATION_ID)
        assert anomaly.status == AnomalyStatus.ACCEPTED_RISK

    def test_redetection_refreshes_open_measurements(
        self, priced_engine: EvaluationEngine
    ) -> None:
        self._detected(priced_engine)
        priced_engine.record_vendor_data(EVALUATION_ID, _prices({"v4": 10_000}))

        priced_engine.detect_anomalies(EVALUATION_ID, include_scores=False)

        (anomaly,) = priced_engine.get_anomalies(EVALUATION_ID)
        assert anomaly.value == 10_000

    def test_unknown_status_is_rejected(self, priced_engine: EvaluationEngine) -> None:
        anomaly_id = self._detected(priced_engine)

        with pytest.raises(ValidationError):
            priced_engine.update_anomaly_status(anomaly_id, "ignored", "lead")

    def test_unknown_anomaly_is_not_found(self, priced_engine: EvaluationEngine) -> None:
        with pytest.raises(NotFoundError):
            priced_engine.update_anomaly_status("missing", "dismissed", "lead")


class TestRedetection:
    def test_cleared_outlier_is_resolved(
        self, priced_engine: EvaluationEngine, audit_sink: InMemoryAuditSink
    ) -> None:
        priced_engine.detect_anomalies(EVALUATION_ID, include_scores=False)
        priced_engine.record_vendor_data(EVALUATION_ID, _prices({"v4": 102_000}))

        report = priced_engine.detect_anomalies(EVALUATION_ID, include_scores=False)

        assert report.anomalies == ()
        (anomaly,) = priced_engine.get_anomalies(EVALUATION_ID)
        assert anomaly.status == AnomalyStatus.RESOLVED
        assert anomaly.resolved_by is None
        assert anomaly.resolution_note == CLEARED_ON_REDETECTION
        (event,) = audit_sink.events_of_type("anomaly.status_changed")
        assert event["actor"] is None
        assert event["data"]["from"] == "open"
        assert event["data"]["to"] == "resolved"

    def test_group_without_enough_vendors_keeps_anomaly_open(
        self, audit_sink: InMemoryAuditSink, publisher: InMemoryNotificationPublisher
    ) -> None:
        service = AnomalyService(audit_sink, publisher, EngineConfig())
        service.detect(EVALUATION_ID, _prices(PRICES))

        report = service.detect(EVALUATION_ID, _prices({"v1": 100_000, "v4": 101_000}))

        assert report.analysed_groups == ()
        (anomaly,) = service.list_anomalies(EVALUATION_ID)
        assert anomaly.status == AnomalyStatus.OPEN
        assert anomaly.value == 40_000
