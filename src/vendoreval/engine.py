"""EvaluationEngine: the single entry point over every engine component.

The facade owns one instance of each component, wired to a shared score
repository, catalog, audit sink, notification publisher and result cache.
Catalog changes made through the facade bump the evaluation version so
cached aggregation and traceability results are never served stale.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime

from vendoreval.aggregation.cache import ResultCache
from vendoreval.aggregation.engine import AggregationEngine
from vendoreval.anomalies.service import AnomalyService
from vendoreval.audit.sink import (
    AUDIT_LOG_PATH_ENV,
    AuditSink,
    InMemoryAuditSink,
    JsonlFileAuditSink,
    emit_audit,
)
from vendoreval.cancellation import CancellationToken
from vendoreval.config import EngineConfig, WeightPolicy, load_config
from vendoreval.errors import (
    InsufficientDataError,
    LockedError,
    PermissionDeniedError,
    ValidationError,
)
from vendoreval.locks.manager import LockManager
from vendoreval.models.aggregation import Ranking, VendorTotal
from vendoreval.models.anomaly import (
    Anomaly,
    AnomalyDimension,
    AnomalyReport,
    AnomalySeverity,
    AnomalyStats,
    AnomalyStatus,
    DataPoint,
)
from vendoreval.models.evaluation import (
    Category,
    Criterion,
    Evaluation,
    EvaluationPhase,
    Evaluator,
    Evidence,
    Question,
    Requirement,
    Vendor,
    VendorResponse,
    utc_now,
)
from vendoreval.models.reconciliation import ReconciliationItem, VarianceResult
from vendoreval.models.score import LockRecord, LockScopeType, LockState, Score, ScoreStatus
from vendoreval.models.traceability import (
    CoverageReport,
    Drilldown,
    MatrixFilters,
    TraceabilityMatrix,
)
from vendoreval.notifications.publisher import (
    InMemoryNotificationPublisher,
    NotificationPublisher,
    WebhookNotificationPublisher,
)
from vendoreval.persistence.catalog import EvaluationCatalog
from vendoreval.persistence.db import get_engine, is_database_configured
from vendoreval.persistence.repository import InMemoryScoreRepository, ScoreRepository
from vendoreval.persistence.sql_repository import SqlScoreRepository
from vendoreval.reconciliation.coordinator import ReconciliationCoordinator
from vendoreval.scores.service import ScoreService, ScoringProgress
from vendoreval.traceability.linker import TraceabilityLinker
from vendoreval.visibility.policy import VisibilityPolicy
from vendoreval.weights.validator import (
    WeightRecalculation,
    recalc_after_change,
    validate_all,
)

logger = logging.getLogger(__name__)

WEBHOOK_URL_ENV = "VENDOREVAL_WEBHOOK_URL"
WEBHOOK_SECRET_ENV = "VENDOREVAL_WEBHOOK_SECRET"


class EvaluationEngine:
    """Scoring, aggregation, reconciliation, anomaly and traceability operations."""

    def __init__(
        self,
        *,
        config: EngineConfig | None = None,
        repository: ScoreRepository | None = None,
        catalog: EvaluationCatalog | None = None,
        audit_sink: AuditSink | None = None,
        publisher: NotificationPublisher | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config or EngineConfig()
        self.repository = repository if repository is not None else InMemoryScoreRepository()
        self.catalog = catalog if catalog is not None else EvaluationCatalog()
        self.audit_sink = audit_sink if audit_sink is not None else InMemoryAuditSink()
        self.publisher = publisher if publisher is not None else InMemoryNotificationPublisher()
        self.cache = ResultCache(self.config.cache_enabled)

        self.locks = LockManager(self.repository, self.catalog, self.audit_sink, self.publisher)
        self.scores = ScoreService(
            self.repository, self.catalog, self.locks, self.audit_sink, self.config
        )
        self.visibility = VisibilityPolicy()
        self.reconciliation = ReconciliationCoordinator(
            self.repository,
            self.catalog,
            self.audit_sink,
            self.publisher,
            self.config,
            clock=clock,
        )
        self.aggregation = AggregationEngine(
            self.repository,
            self.catalog,
            self.config,
            unresolved_lookup=self.reconciliation.unresolved_pairs,
            cache=self.cache,
        )
        self.anomalies = AnomalyService(self.audit_sink, self.publisher, self.config, clock=clock)
        self.traceability = TraceabilityLinker(
            self.repository,
            self.catalog,
            self.config,
            unresolved_lookup=self.reconciliation.unresolved_pairs,
            cache=self.cache,
        )

    # -- catalog -------------------------------------------------------------

    def create_evaluation(self, evaluation: Evaluation) -> Evaluation:
        created = self.catalog.add_evaluation(evaluation)
        self.visibility.tracker.observe(created.evaluation_id, created.phase)
        return created

    def add_category(self, category: Category) -> Category:
        added = self.catalog.add_category(category)
        self.repository.bump_version(category.evaluation_id)
        return added

    def add_criterion(self, criterion: Criterion) -> Criterion:
        added = self.catalog.add_criterion(criterion)
        self.repository.bump_version(self.catalog.evaluation_of_criterion(criterion.criterion_id))
        return added

    def add_vendor(self, vendor: Vendor) -> Vendor:
        added = self.catalog.add_vendor(vendor)
        self.repository.bump_version(vendor.evaluation_id)
        return added

    def add_evaluator(self, evaluator: Evaluator) -> Evaluator:
        return self.catalog.add_evaluator(evaluator)

    def add_requirement(self, evaluation_id: str, requirement: Requirement) -> Requirement:
        added = self.catalog.add_requirement(evaluation_id, requirement)
        self.repository.bump_version(evaluation_id)
        return added

    def add_evidence(self, evidence: Evidence) -> Evidence:
        vendor = self.catalog.get_vendor(evidence.vendor_id)
        if self.catalog.evaluation_of_criterion(evidence.criterion_id) != vendor.evaluation_id:
            raise ValidationError(
                f"Criterion {evidence.criterion_id} and vendor {evidence.vendor_id} "
                "belong to different evaluations"
            )
        added = self.catalog.add_evidence(evidence)
        self.repository.bump_version(vendor.evaluation_id)
        return added

    def add_question(self, evaluation_id: str, question: Question) -> Question:
        self.catalog.get_evaluation(evaluation_id)
        added = self.catalog.add_question(question)
        self.repository.bump_version(evaluation_id)
        return added

    def add_response(self, evaluation_id: str, response: VendorResponse) -> VendorResponse:
        if self.catalog.get_vendor(response.vendor_id).evaluation_id != evaluation_id:
            raise ValidationError(
                f"Vendor {response.vendor_id} is not part of evaluation {evaluation_id}"
            )
        added = self.catalog.add_response(response)
        self.repository.bump_version(evaluation_id)
        return added

    # -- phases and weights --------------------------------------------------

    def mark_ready_for_scoring(self, evaluation_id: str, actor: str) -> Evaluation:
        """Move setup -> scoring once every weight set totals 100.

        Raises:
            WeightMismatchError: The first weight set that does not total 100.
        """
        return self.advance_phase(evaluation_id, EvaluationPhase.SCORING, actor)

    def advance_phase(
        self, evaluation_id: str, target: EvaluationPhase | str, actor: str
    ) -> Evaluation:
        """Move an evaluation forward. Phases never move backwards.

        Entering scoring re-validates all weights. Entering reconciliation
        flags every (vendor, criterion) whose scores disagree.

        Raises:
            PermissionDeniedError: actor is not a lead or admin.
            InvalidStateTransitionError: target is not after the current phase.
            WeightMismatchError: Weights do not total 100 when entering scoring.
        """
        try:
            phase = EvaluationPhase(target)
        except ValueError as e:
            raise ValidationError(f"Unknown evaluation phase: {target}") from e
        self._require_privileged(actor, "change the evaluation phase")
        evaluation = self.catalog.get_evaluation(evaluation_id)
        tracker = self.visibility.tracker
        tracker.observe(evaluation_id, evaluation.phase)

        if phase == EvaluationPhase.SCORING:
            for check in validate_all(
                self.catalog.list_categories(evaluation_id),
                self.catalog.list_criteria(evaluation_id),
                tolerance=self.config.weight_tolerance,
            ):
                check.raise_for_mismatch()

        previous = tracker.current(evaluation_id)
        tracker.advance(evaluation_id, phase)
        updated = self.catalog.set_phase(evaluation_id, phase)
        self.repository.bump_version(evaluation_id)
        emit_audit(
            self.audit_sink,
            "phase.advanced",
            evaluation_id=evaluation_id,
            actor=actor,
            data={"from": previous.value, "to": phase.value},
        )
        if phase == EvaluationPhase.RECONCILIATION:
            self.reconciliation.scan(evaluation_id)
        return updated

    def recalculate_weights(
        self,
        evaluation_id: str,
        changed_id: str,
        new_weight: float,
        actor: str,
        *,
        scope: str = "criterion",
        policy: WeightPolicy | str | None = None,
    ) -> WeightRecalculation:
        """Change one category or criterion weight and apply the weight policy.

        Under the manual policy a resulting mismatch is reported on the
        returned check and must be corrected by further edits; it blocks
        the move to scoring, not the edit itself.

        Raises:
            PermissionDeniedError: actor is not a lead or admin.
            LockedError: The evaluation, or the affected category, is locked.
            ValidationError: Unknown scope or malformed weight.
        """
        self._require_privileged(actor, "change weights")
        active_policy = WeightPolicy(policy) if policy is not None else self.config.weight_policy
        self.catalog.get_evaluation(evaluation_id)

        if scope == "category":
            category = self.catalog.get_category(changed_id)
            if category.evaluation_id != evaluation_id:
                raise ValidationError(
                    f"Category {changed_id} is not part of evaluation {evaluation_id}"
                )
            self._require_unlocked(evaluation_id, category_id=None)
            categories = self.catalog.list_categories(evaluation_id)
            siblings = {c.category_id: c.weight for c in categories}
            parent_id = None
            label = "Category"
        elif scope == "criterion":
            criterion = self.catalog.get_criterion(changed_id)
            if self.catalog.evaluation_of_criterion(changed_id) != evaluation_id:
                raise ValidationError(
                    f"Criterion {changed_id} is not part of evaluation {evaluation_id}"
                )
            self._require_unlocked(evaluation_id, category_id=criterion.category_id)
            siblings = {
                c.criterion_id: c.weight
                for c in self.catalog.list_criteria(
                    evaluation_id, category_id=criterion.category_id
                )
            }
            parent_id = criterion.category_id
            label = "Criterion"
        else:
            raise ValidationError(f"Unknown weight scope: {scope}")

        result = recalc_after_change(
            siblings,
            changed_id,
            new_weight,
            active_policy,
            scope=label,
            parent_id=parent_id,
            tolerance=self.config.weight_tolerance,
        )
        for item_id, weight in result.weights.items():
            if weight == siblings[item_id]:
                continue
            if scope == "category":
                self.catalog.set_category_weight(item_id, weight)
            else:
                self.catalog.set_criterion_weight(item_id, weight)

        version = self.repository.bump_version(evaluation_id)
        emit_audit(
            self.audit_sink,
            "weights.changed",
            evaluation_id=evaluation_id,
            actor=actor,
            data={
                "scope": scope,
                "changed_id": changed_id,
                "policy": active_policy.value,
                "weights": result.weights,
                "total": result.check.total,
                "mismatch": not result.check.ok,
                "version": version,
            },
        )
        if not result.check.ok:
            phase = self.catalog.get_evaluation(evaluation_id).phase
            if phase != EvaluationPhase.SETUP:
                logger.warning(
                    "Weights of %s no longer total 100 during %s (%s)",
                    evaluation_id,
                    phase.value,
                    result.check.mismatch,
                )
        return result

    # -- scores --------------------------------------------------------------

    def submit_score(
        self,
        evaluation_id: str,
        vendor_id: str,
        criterion_id: str,
        evaluator_id: str,
        value: float,
        rationale: str = "",
        *,
        status: ScoreStatus | str = ScoreStatus.SUBMITTED,
        expected_version: int | None = None,
        evidence_ids: Sequence[str] | None = None,
    ) -> Score:
        """Store a score; a submission re-checks the pair for reconciliation."""
        score = self.scores.submit_score(
            evaluation_id,
            vendor_id,
            criterion_id,
            evaluator_id,
            value,
            rationale,
            status=status,
            expected_version=expected_version,
            evidence_ids=evidence_ids,
        )
        if score.is_submitted:
            self.reconciliation.flag_for_reconciliation(evaluation_id, vendor_id, criterion_id)
        return score

    def get_scores(
        self,
        evaluation_id: str,
        viewer_id: str,
        *,
        vendor_id: str | None = None,
        criterion_id: str | None = None,
    ) -> list[Score]:
        """Scores the viewer may see under the blind-scoring rules."""
        viewer = self.catalog.get_evaluator(viewer_id)
        evaluation = self.catalog.get_evaluation(evaluation_id)
        scores = self.repository.list_scores(
            evaluation_id, vendor_id=vendor_id, criterion_id=criterion_id
        )
        return self.visibility.visible_scores(
            viewer, scores, evaluation.phase, evaluation.blind_mode
        )

    def scoring_progress(
        self, evaluation_id: str, vendor_id: str, evaluator_id: str | None = None
    ) -> ScoringProgress:
        return self.scores.scoring_progress(evaluation_id, vendor_id, evaluator_id)

    def submit_all(self, evaluation_id: str, vendor_id: str, evaluator_id: str) -> list[Score]:
        """Submit every draft the evaluator holds for a vendor, all or nothing."""
        submitted = self.scores.submit_all(evaluation_id, vendor_id, evaluator_id)
        for score in submitted:
            self.reconciliation.flag_for_reconciliation(
                evaluation_id, vendor_id, score.criterion_id
            )
        return submitted

    def link_evidence(
        self,
        evaluation_id: str,
        vendor_id: str,
        criterion_id: str,
        evaluator_id: str,
        evidence_ids: Sequence[str],
    ) -> Score:
        return self.scores.link_evidence(
            evaluation_id, vendor_id, criterion_id, evaluator_id, evidence_ids
        )

    # -- locks ---------------------------------------------------------------

    def lock_scope(
        self,
        evaluation_id: str,
        scope_type: LockScopeType | str,
        scope_id: str,
        actor: str,
        reason: str | None = None,
    ) -> LockRecord:
        return self.locks.lock_scope(evaluation_id, scope_type, scope_id, actor, reason)

    def unlock_scope(
        self,
        evaluation_id: str,
        scope_type: LockScopeType | str,
        scope_id: str,
        actor: str,
        reason: str | None = None,
    ) -> LockRecord:
        return self.locks.unlock_scope(evaluation_id, scope_type, scope_id, actor, reason)

    def get_lock_state(
        self, evaluation_id: str, scope_type: LockScopeType | str, scope_id: str
    ) -> LockState:
        return self.locks.state(self.locks.scope_ref(evaluation_id, scope_type, scope_id))

    def get_lock_history(self, evaluation_id: str) -> list[LockRecord]:
        return self.locks.lock_history(evaluation_id)

    # -- reconciliation ------------------------------------------------------

    def get_variance(self, evaluation_id: str, criterion_id: str) -> list[VarianceResult]:
        return self.reconciliation.variance_report(evaluation_id, criterion_id)

    def list_reconciliation_items(self, evaluation_id: str) -> list[ReconciliationItem]:
        return self.reconciliation.list_items(evaluation_id)

    def add_reconciliation_note(self, item_id: str, author: str, text: str) -> ReconciliationItem:
        return self.reconciliation.add_note(item_id, author, text)

    def propose_consensus(
        self, item_id: str, proposer_id: str, value: float, rationale: str
    ) -> ReconciliationItem:
        return self.reconciliation.propose_consensus(item_id, proposer_id, value, rationale)

    def accept_consensus(self, item_id: str, evaluator_id: str) -> ReconciliationItem:
        return self.reconciliation.accept_consensus(item_id, evaluator_id)

    def override_consensus(
        self, item_id: str, actor: str, value: float, rationale: str, reason: str
    ) -> ReconciliationItem:
        return self.reconciliation.override_consensus(item_id, actor, value, rationale, reason)

    def check_reconciliation_deadlines(
        self, now: datetime | None = None
    ) -> list[ReconciliationItem]:
        return self.reconciliation.check_deadlines(now)

    # -- aggregation ---------------------------------------------------------

    def get_vendor_ranking(
        self, evaluation_id: str, *, token: CancellationToken | None = None
    ) -> Ranking:
        return self.aggregation.rank_vendors(evaluation_id, token=token)

    def get_category_breakdown(
        self, vendor_id: str, *, token: CancellationToken | None = None
    ) -> VendorTotal:
        """Vendor total with per-category and per-criterion detail."""
        vendor = self.catalog.get_vendor(vendor_id)
        return self.aggregation.vendor_total(vendor.evaluation_id, vendor_id, token=token)

    # -- anomalies -----------------------------------------------------------

    def record_vendor_data(self, evaluation_id: str, points: Iterable[DataPoint]) -> int:
        """Store price and schedule values for anomaly detection."""
        points = list(points)
        for point in points:
            if self.catalog.get_vendor(point.vendor_id).evaluation_id != evaluation_id:
                raise ValidationError(
                    f"Vendor {point.vendor_id} is not part of evaluation {evaluation_id}"
                )
        return self.anomalies.record_data_points(evaluation_id, points)

    def detect_anomalies(
        self,
        evaluation_id: str,
        *,
        include_scores: bool = True,
        strict: bool = False,
        token: CancellationToken | None = None,
    ) -> AnomalyReport:
        """Detect outliers over stored vendor data and, optionally, vendor totals.

        Price and schedule, plus score when included, abstain explicitly when
        no vendor has a value for them.

        Raises:
            InsufficientDataError: strict is set and a group abstained.
        """
        self.catalog.get_evaluation(evaluation_id)
        extra: list[DataPoint] = []
        if include_scores:
            ranking = self.aggregation.rank_vendors(evaluation_id, token=token)
            for row in ranking.vendors:
                breakdown = self.aggregation.vendor_total(evaluation_id, row.vendor_id, token=token)
                if any(c.contributes for cat in breakdown.categories for c in cat.criteria):
                    extra.append(
                        DataPoint(
                            vendor_id=row.vendor_id,
                            dimension=AnomalyDimension.SCORE,
                            value=row.total,
                        )
                    )
        expected = [AnomalyDimension.PRICE, AnomalyDimension.SCHEDULE]
        if include_scores:
            expected.append(AnomalyDimension.SCORE)
        report = self.anomalies.detect(evaluation_id, extra, expected=expected, token=token)
        if strict and report.has_abstentions:
            first = report.abstentions[0]
            raise InsufficientDataError(
                f"{first.dimension.value}/{first.sub_type} has {first.vendor_count} vendor "
                f"value(s); at least {first.required} are required",
                {"abstentions": [a.model_dump(mode="json") for a in report.abstentions]},
            )
        return report

    def get_anomalies(
        self,
        evaluation_id: str,
        *,
        status: AnomalyStatus | None = None,
        severity: AnomalySeverity | None = None,
        vendor_id: str | None = None,
        dimension: AnomalyDimension | None = None,
    ) -> list[Anomaly]:
        return self.anomalies.list_anomalies(
            evaluation_id,
            status=status,
            severity=severity,
            vendor_id=vendor_id,
            dimension=dimension,
        )

    def get_anomaly_stats(self, evaluation_id: str) -> AnomalyStats:
        return self.anomalies.stats(evaluation_id)

    def update_anomaly_status(
        self,
        anomaly_id: str,
        status: AnomalyStatus | str,
        actor: str,
        note: str | None = None,
    ) -> Anomaly:
        try:
            target = AnomalyStatus(status)
        except ValueError as e:
            raise ValidationError(f"Unknown anomaly status: {status}") from e
        return self.anomalies.update_status(anomaly_id, target, actor, note)

    # -- traceability --------------------------------------------------------

    def get_traceability_matrix(
        self,
        evaluation_id: str,
        filters: MatrixFilters | None = None,
        *,
        token: CancellationToken | None = None,
    ) -> TraceabilityMatrix:
        return self.traceability.build_matrix(evaluation_id, filters, token=token)

    def get_coverage(
        self, evaluation_id: str, *, token: CancellationToken | None = None
    ) -> CoverageReport:
        return self.traceability.coverage(evaluation_id, token=token)

    def get_drilldown(
        self,
        evaluation_id: str,
        requirement_id: str,
        vendor_id: str,
        *,
        viewer_id: str | None = None,
    ) -> Drilldown:
        """Full chain behind one matrix cell.

        With viewer_id the per-evaluator scores are filtered by the
        blind-scoring rules.
        """
        drilldown = self.traceability.drilldown(evaluation_id, requirement_id, vendor_id)
        if viewer_id is None:
            return drilldown
        viewer = self.catalog.get_evaluator(viewer_id)
        evaluation = self.catalog.get_evaluation(evaluation_id)
        pair_scores = [
            s
            for c in drilldown.criteria
            for s in self.repository.list_scores(
                evaluation_id, vendor_id=vendor_id, criterion_id=c.criterion_id
            )
        ]
        visible = {
            s.score_id
            for s in self.visibility.visible_scores(
                viewer, pair_scores, evaluation.phase, evaluation.blind_mode
            )
        }
        return drilldown.model_copy(
            update={"scores": tuple(s for s in drilldown.scores if s.score_id in visible)}
        )

    # -- internals -----------------------------------------------------------

    def _require_privileged(self, actor: str, action: str) -> None:
        if not self.catalog.get_evaluator(actor).is_privileged:
            raise PermissionDeniedError(f"{actor} must be a lead or admin to {action}")

    def _require_unlocked(self, evaluation_id: str, *, category_id: str | None) -> None:
        scopes = [self.locks.scope_ref(evaluation_id, LockScopeType.EVALUATION, evaluation_id)]
        if category_id is not None:
            scopes.append(self.locks.scope_ref(evaluation_id, LockScopeType.CATEGORY, category_id))
        for scope in scopes:
            if self.locks.is_locked(scope):
                raise LockedError(
                    f"Weights cannot change while {scope.scope_type.value} "
                    f"{scope.scope_id} is locked",
                    scope_type=scope.scope_type.value,
                    scope_id=scope.scope_id,
                )


def build_engine_from_env(config: EngineConfig | None = None) -> EvaluationEngine:
    """Engine wired from environment configuration.

    VENDOREVAL_DATABASE_URL selects the SQL score repository,
    VENDOREVAL_AUDIT_LOG_PATH the JSONL audit sink, and
    VENDOREVAL_WEBHOOK_URL with VENDOREVAL_WEBHOOK_SECRET the webhook
    publisher. Anything unset falls back to the in-memory implementation.
    """
    repository: ScoreRepository | None = None
    if is_database_configured():
        repository = SqlScoreRepository(get_engine())
    audit_sink: AuditSink | None = None
    if os.environ.get(AUDIT_LOG_PATH_ENV):
        audit_sink = JsonlFileAuditSink()
    publisher: NotificationPublisher | None = None
    webhook_url = os.environ.get(WEBHOOK_URL_ENV)
    if webhook_url:
        secret = os.environ.get(WEBHOOK_SECRET_ENV)
        if not secret:
            raise ValidationError(
                f"{WEBHOOK_SECRET_ENV} is required when {WEBHOOK_URL_ENV} is set"
            )
        publisher = WebhookNotificationPublisher(webhook_url, secret)
    return EvaluationEngine(
        config=config or load_config(),
        repository=repository,
        audit_sink=audit_sink,
        publisher=publisher,
    )
