"""Reconciliation coordinator.

Workflow per flagged (vendor, criterion):

    open -> discussing -> consensus_proposed -> consensus_locked
    open | discussing | consensus_proposed -> unresolved | escalated  (deadline)

A (vendor, criterion) is flagged when the spread (max - min) of its
submitted scores reaches the variance threshold. Any contributing
evaluator, or a lead/admin, may propose a value; proposing counts as the
proposer's acceptance. The consensus locks once every contributing
evaluator has accepted, or when a lead/admin overrides with a reason.

Deadlines are stored timestamps checked by check_deadlines(); nothing
blocks while waiting. The deadline fallback is explicit configuration:
mark_unresolved (default), escalate, or average (opt-in, marked
fallback_applied on the resulting consensus).
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta

from vendoreval.audit.sink import AuditSink, emit_audit
from vendoreval.config import DeadlineFallback, EngineConfig
from vendoreval.errors import (
    InvalidStateTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from vendoreval.models.evaluation import utc_now
from vendoreval.models.reconciliation import (
    ConsensusProposal,
    DiscussionNote,
    ReconciliationItem,
    ReconciliationStatus,
    VarianceResult,
)
from vendoreval.models.score import ConsensusScore, ScoreStatus
from vendoreval.notifications.publisher import (
    NotificationEvent,
    NotificationPublisher,
    NotificationType,
)
from vendoreval.numeric import is_finite_number, mean, population_variance
from vendoreval.persistence.catalog import EvaluationCatalog
from vendoreval.persistence.repository import ScoreRepository

logger = logging.getLogger(__name__)

AVERAGE_FALLBACK_RATIONALE = "Deadline passed without consensus; mean of submitted scores applied"

_PROPOSABLE: frozenset[ReconciliationStatus] = frozenset(
    {
        ReconciliationStatus.OPEN,
        ReconciliationStatus.DISCUSSING,
        ReconciliationStatus.CONSENSUS_PROPOSED,
    }
)


class ReconciliationCoordinator:
    """Flags evaluator disagreement and drives it to a consensus or an explicit outcome."""

    def __init__(
        self,
        repository: ScoreRepository,
        catalog: EvaluationCatalog,
        audit_sink: AuditSink,
        publisher: NotificationPublisher,
        config: EngineConfig,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repo = repository
        self._catalog = catalog
        self._audit = audit_sink
        self._publisher = publisher
        self._config = config
        self._clock = clock
        self._lock = threading.RLock()
        self._items: dict[str, ReconciliationItem] = {}
        self._by_pair: dict[tuple[str, str, str], str] = {}

    # -- variance ------------------------------------------------------------

    def variance(self, evaluation_id: str, vendor_id: str, criterion_id: str) -> VarianceResult:
        """Spread of the submitted scores of one (vendor, criterion)."""
        scores = self._repo.list_scores(
            evaluation_id,
            vendor_id=vendor_id,
            criterion_id=criterion_id,
            status=ScoreStatus.SUBMITTED,
        )
        values = [s.value for s in scores]
        if not values:
            return VarianceResult(vendor_id=vendor_id, criterion_id=criterion_id)
        spread = max(values) - min(values)
        return VarianceResult(
            vendor_id=vendor_id,
            criterion_id=criterion_id,
            count=len(values),
            minimum=min(values),
            maximum=max(values),
            mean=mean(values),
            variance=spread,
            population_variance=population_variance(values),
            score_ids=tuple(s.score_id for s in scores),
            evaluator_ids=tuple(s.evaluator_id for s in scores),
            exceeds_threshold=len(values) > 1 and spread >= self._config.variance_threshold,
        )

    def variance_report(self, evaluation_id: str, criterion_id: str) -> list[VarianceResult]:
        """Variance of one criterion for every vendor of the evaluation."""
        if self._catalog.evaluation_of_criterion(criterion_id) != evaluation_id:
            raise ValidationError(
                f"Criterion {criterion_id} is not part of evaluation {evaluation_id}"
            )
        return [
            self.variance(evaluation_id, v.vendor_id, criterion_id)
            for v in self._catalog.list_vendors(evaluation_id)
        ]

    # -- flagging ------------------------------------------------------------

    def flag_for_reconciliation(
        self,
        evaluation_id: str,
        vendor_id: str,
        criterion_id: str,
        *,
        window_hours: float | None = None,
    ) -> ReconciliationItem | None:
        """Open a reconciliation item when submitted scores disagree enough.

        Returns:
            The open item for the pair (new or existing), or None when the
            spread is below threshold or a consensus is already locked.
        """
        if self._has_locked_consensus(evaluation_id, vendor_id, criterion_id):
            return None
        result = self.variance(evaluation_id, vendor_id, criterion_id)
        pair = (evaluation_id, vendor_id, criterion_id)
        with self._lock:
            existing_id = self._by_pair.get(pair)
            existing = self._items.get(existing_id) if existing_id else None
            if existing is not None and (existing.is_active or existing.is_unresolved):
                if existing.is_active and result.exceeds_threshold:
                    # later submissions join the discussion
                    existing = self._refresh_contributors(existing, result)
                return existing
            if not result.exceeds_threshold:
                return None
            now = self._clock()
            hours = window_hours or self._config.reconciliation_window_hours
            item = ReconciliationItem(
                item_id=str(uuid.uuid4()),
                evaluation_id=evaluation_id,
                vendor_id=vendor_id,
                criterion_id=criterion_id,
                variance=result.variance,
                contributing_score_ids=result.score_ids,
                contributing_evaluator_ids=result.evaluator_ids,
                deadline=now + timedelta(hours=hours),
                created_at=now,
            )
            self._items[item.item_id] = item
            self._by_pair[pair] = item.item_id

        logger.info(
            "Flagged %s/%s for reconciliation (variance=%.3f, threshold=%.3f)",
            vendor_id,
            criterion_id,
            result.variance,
            self._config.variance_threshold,
        )
        emit_audit(
            self._audit,
            "reconciliation.flagged",
            evaluation_id=evaluation_id,
            actor=None,
            data={
                "item_id": item.item_id,
                "vendor_id": vendor_id,
                "criterion_id": criterion_id,
                "variance": result.variance,
            },
        )
        self._publisher.publish(
            NotificationEvent(
                event_type=NotificationType.RECONCILIATION_NEEDED,
                evaluation_id=evaluation_id,
                payload={
                    "item_id": item.item_id,
                    "vendor_id": vendor_id,
                    "criterion_id": criterion_id,
                    "variance": result.variance,
                    "evaluator_ids": list(item.contributing_evaluator_ids),
                    "deadline": item.deadline.isoformat(),
                },
            )
        )
        return item

    def scan(self, evaluation_id: str) -> list[ReconciliationItem]:
        """Flag every (vendor, criterion) of the evaluation that needs reconciliation."""
        flagged = []
        for vendor in self._catalog.list_vendors(evaluation_id):
            for criterion in self._catalog.list_criteria(evaluation_id):
                item = self.flag_for_reconciliation(
                    evaluation_id, vendor.vendor_id, criterion.criterion_id
                )
                if item is not None and item.is_active:
                    flagged.append(item)
        return flagged

    # -- queries -------------------------------------------------------------

    def get_item(self, item_id: str) -> ReconciliationItem:
        with self._lock:
            item = self._items.get(item_id)
        if item is None:
            raise NotFoundError("ReconciliationItem", item_id)
        return item

    def list_items(
        self, evaluation_id: str, *, status: ReconciliationStatus | None = None
    ) -> list[ReconciliationItem]:
        with self._lock:
            items = [
                i
                for i in self._items.values()
                if i.evaluation_id == evaluation_id and (status is None or i.status == status)
            ]
        return sorted(items, key=lambda i: (i.vendor_id, i.criterion_id, i.created_at))

    def item_for(
        self, evaluation_id: str, vendor_id: str, criterion_id: str
    ) -> ReconciliationItem | None:
        with self._lock:
            item_id = self._by_pair.get((evaluation_id, vendor_id, criterion_id))
            return self._items.get(item_id) if item_id else None

    def unresolved_pairs(self, evaluation_id: str) -> set[tuple[str, str]]:
        """(vendor, criterion) pairs whose reconciliation ended without consensus."""
        with self._lock:
            return {
                (i.vendor_id, i.criterion_id)
                for i in self._items.values()
                if i.evaluation_id == evaluation_id and i.is_unresolved
            }

    # -- workflow ------------------------------------------------------------

    def add_note(self, item_id: str, author: str, text: str) -> ReconciliationItem:
        """Record a discussion note; an open item moves to discussing."""
        if not text or not text.strip():
            raise ValidationError("Note text is required", {"field": "text"})
        with self._lock:
            item = self.get_item(item_id)
            self._require_active(item, ReconciliationStatus.DISCUSSING)
            self._require_participant(item, author)
            status = (
                ReconciliationStatus.DISCUSSING
                if item.status == ReconciliationStatus.OPEN
                else item.status
            )
            note = DiscussionNote(author=author, text=text.strip())
            update = {"notes": (*item.notes, note), "status": status}
            return self._store(item.model_copy(update=update))

    def propose_consensus(
        self, item_id: str, proposer_id: str, value: float, rationale: str
    ) -> ReconciliationItem:
        """Propose a consensus value. Replaces any earlier proposal.

        Raises:
            ValidationError: Value out of scale or rationale missing.
            PermissionDeniedError: Proposer neither contributed nor is lead/admin.
            InvalidStateTransitionError: The item is no longer active.
        """
        self._check_value(value)
        if not rationale or not rationale.strip():
            raise ValidationError("Rationale is required for a consensus proposal")
        with self._lock:
            item = self.get_item(item_id)
            self._require_active(item, ReconciliationStatus.CONSENSUS_PROPOSED)
            self._require_participant(item, proposer_id)
            accepted = (
                frozenset({proposer_id})
                if proposer_id in item.contributing_evaluator_ids
                else frozenset()
            )
            proposal = ConsensusProposal(
                value=float(value),
                rationale=rationale.strip(),
                proposed_by=proposer_id,
                proposed_at=self._clock(),
                accepted_by=accepted,
            )
            item = self._store(
                item.model_copy(
                    update={"proposal": proposal, "status": ReconciliationStatus.CONSENSUS_PROPOSED}
                )
            )
        logger.info(
            "Consensus %.3f proposed for %s/%s by %s",
            value,
            item.vendor_id,
            item.criterion_id,
            proposer_id,
        )
        return self._lock_if_agreed(item)

    def accept_consensus(self, item_id: str, evaluator_id: str) -> ReconciliationItem:
        """Accept the current proposal; locks once every contributor has accepted."""
        with self._lock:
            item = self.get_item(item_id)
            if item.status != ReconciliationStatus.CONSENSUS_PROPOSED or item.proposal is None:
                raise InvalidStateTransitionError(
                    "ReconciliationItem", item.status.value, "accepted"
                )
            if evaluator_id not in item.contributing_evaluator_ids:
                raise PermissionDeniedError(
                    f"{evaluator_id} did not contribute a score to this reconciliation"
                )
            proposal = item.proposal.model_copy(
                update={"accepted_by": item.proposal.accepted_by | {evaluator_id}}
            )
            item = self._store(item.model_copy(update={"proposal": proposal}))
        return self._lock_if_agreed(item)

    def override_consensus(
        self,
        item_id: str,
        actor: str,
        value: float,
        rationale: str,
        reason: str,
    ) -> ReconciliationItem:
        """Lead/admin sets and locks the consensus without full agreement.

        Also resolves items left unresolved or escalated by a deadline.
        """
        if not reason or not reason.strip():
            raise ValidationError("reason required", {"field": "reason"})
        if not rationale or not rationale.strip():
            raise ValidationError("Rationale is required for a consensus override")
        self._check_value(value)
        if not self._catalog.get_evaluator(actor).is_privileged:
            raise PermissionDeniedError(f"{actor} must be a lead or admin to override consensus")
        with self._lock:
            item = self.get_item(item_id)
            if item.status == ReconciliationStatus.CONSENSUS_LOCKED:
                raise InvalidStateTransitionError(
                    "ReconciliationItem", item.status.value, ReconciliationStatus.CONSENSUS_LOCKED
                )
            consensus = ConsensusScore(
                consensus_id=str(uuid.uuid4()),
                evaluation_id=item.evaluation_id,
                vendor_id=item.vendor_id,
                criterion_id=item.criterion_id,
                value=float(value),
                rationale=rationale.strip(),
                source_score_ids=item.contributing_score_ids,
                locked=True,
                determined_by=actor,
                determined_at=self._clock(),
                override_reason=reason.strip(),
            )
            return self._finalize(item, consensus, actor)

    def check_deadlines(self, now: datetime | None = None) -> list[ReconciliationItem]:
        """Apply the configured fallback to every active item past its deadline.

        Items that reach consensus after the sweep starts are left as they are.
        """
        moment = now or self._clock()
        with self._lock:
            due = [i for i in self._items.values() if i.is_active and i.deadline <= moment]
        changed = []
        for item in sorted(due, key=lambda i: (i.evaluation_id, i.vendor_id, i.criterion_id)):
            updated = self._apply_fallback(item, moment)
            if updated is not None:
                changed.append(updated)
        return changed

    # -- internals -----------------------------------------------------------

    def _apply_fallback(
        self, item: ReconciliationItem, moment: datetime
    ) -> ReconciliationItem | None:
        with self._lock:
            current = self.get_item(item.item_id)
            if not current.is_active or current.deadline > moment:
                return None
            if self._config.deadline_fallback == DeadlineFallback.AVERAGE:
                return self._average_fallback(current, moment)
            return self._close_unresolved(current, moment)

    def _average_fallback(
        self, item: ReconciliationItem, moment: datetime
    ) -> ReconciliationItem | None:
        if self._has_locked_consensus(item.evaluation_id, item.vendor_id, item.criterion_id):
            return None
        scores = [
            s
            for s in self._repo.list_scores(
                item.evaluation_id,
                vendor_id=item.vendor_id,
                criterion_id=item.criterion_id,
                status=ScoreStatus.SUBMITTED,
            )
            if s.score_id in item.contributing_score_ids
        ]
        consensus = ConsensusScore(
            consensus_id=str(uuid.uuid4()),
            evaluation_id=item.evaluation_id,
            vendor_id=item.vendor_id,
            criterion_id=item.criterion_id,
            value=mean([s.value for s in scores]),
            rationale=AVERAGE_FALLBACK_RATIONALE,
            source_score_ids=item.contributing_score_ids,
            locked=True,
            determined_by=None,
            determined_at=moment,
            fallback_applied=True,
        )
        return self._finalize(item, consensus, None)

    def _close_unresolved(self, item: ReconciliationItem, moment: datetime) -> ReconciliationItem:
        status = (
            ReconciliationStatus.ESCALATED
            if self._config.deadline_fallback == DeadlineFallback.ESCALATE
            else ReconciliationStatus.UNRESOLVED
        )
        updated = self._store(item.model_copy(update={"status": status, "closed_at": moment}))
        self._repo.bump_version(item.evaluation_id)
        logger.warning(
            "Reconciliation %s for %s/%s passed its deadline -> %s",
            item.item_id,
            item.vendor_id,
            item.criterion_id,
            status.value,
        )
        emit_audit(
            self._audit,
            "reconciliation.deadline_passed",
            evaluation_id=item.evaluation_id,
            actor=None,
            data={"item_id": item.item_id, "outcome": status.value},
        )
        if status == ReconciliationStatus.ESCALATED:
            self._publisher.publish(
                NotificationEvent(
                    event_type=NotificationType.RECONCILIATION_NEEDED,
                    evaluation_id=item.evaluation_id,
                    payload={
                        "item_id": item.item_id,
                        "vendor_id": item.vendor_id,
                        "criterion_id": item.criterion_id,
                        "escalated": True,
                    },
                )
            )
        return updated

    def _lock_if_agreed(self, item: ReconciliationItem) -> ReconciliationItem:
        if item.proposal is None or item.pending_acceptances:
            return item
        with self._lock:
            current = self.get_item(item.item_id)
            proposal = current.proposal
            if not current.is_active or proposal is None or current.pending_acceptances:
                return current
            consensus = ConsensusScore(
                consensus_id=str(uuid.uuid4()),
                evaluation_id=current.evaluation_id,
                vendor_id=current.vendor_id,
                criterion_id=current.criterion_id,
                value=proposal.value,
                rationale=proposal.rationale,
                source_score_ids=current.contributing_score_ids,
                locked=True,
                determined_by=proposal.proposed_by,
                determined_at=self._clock(),
            )
            return self._finalize(current, consensus, proposal.proposed_by)

    def _finalize(
        self, item: ReconciliationItem, consensus: ConsensusScore, actor: str | None
    ) -> ReconciliationItem:
        stored = self._repo.save_consensus(consensus)
        updated = self._store(
            item.model_copy(
                update={
                    "status": ReconciliationStatus.CONSENSUS_LOCKED,
                    "consensus_id": stored.consensus_id,
                    "closed_at": stored.determined_at,
                }
            )
        )
        logger.info(
            "Consensus %.3f locked for %s/%s (override=%s, fallback=%s)",
            stored.value,
            item.vendor_id,
            item.criterion_id,
            stored.override_reason is not None,
            stored.fallback_applied,
        )
        emit_audit(
            self._audit,
            "consensus.locked",
            evaluation_id=item.evaluation_id,
            actor=actor,
            data={
                "item_id": item.item_id,
                "consensus_id": stored.consensus_id,
                "vendor_id": item.vendor_id,
                "criterion_id": item.criterion_id,
                "value": stored.value,
                "override_reason": stored.override_reason,
                "fallback_applied": stored.fallback_applied,
                "source_score_ids": list(stored.source_score_ids),
            },
        )
        return updated

    def _refresh_contributors(
        self, item: ReconciliationItem, result: VarianceResult
    ) -> ReconciliationItem:
        if set(result.score_ids) <= set(item.contributing_score_ids):
            return item
        return self._store(
            item.model_copy(
                update={
                    "variance": result.variance,
                    "contributing_score_ids": tuple(
                        dict.fromkeys([*item.contributing_score_ids, *result.score_ids])
                    ),
                    "contributing_evaluator_ids": tuple(
                        dict.fromkeys([*item.contributing_evaluator_ids, *result.evaluator_ids])
                    ),
                }
            )
        )

    def _store(self, item: ReconciliationItem) -> ReconciliationItem:
        self._items[item.item_id] = item
        self._by_pair[(item.evaluation_id, item.vendor_id, item.criterion_id)] = item.item_id
        return item

    def _has_locked_consensus(self, evaluation_id: str, vendor_id: str, criterion_id: str) -> bool:
        consensus = self._repo.get_consensus(evaluation_id, vendor_id, criterion_id)
        return consensus is not None and consensus.locked

    def _check_value(self, value: object) -> None:
        if not is_finite_number(value):
            raise ValidationError(f"Consensus value must be a number (got {value!r})")
        low, high = self._config.scale_min, self._config.scale_max
        if not low <= float(value) <= high:
            raise ValidationError(f"Consensus {value:g} is outside the scale {low:g}-{high:g}")

    def _require_active(self, item: ReconciliationItem, target: ReconciliationStatus) -> None:
        if item.status not in _PROPOSABLE:
            raise InvalidStateTransitionError("ReconciliationItem", item.status.value, target.value)

    def _require_participant(self, item: ReconciliationItem, evaluator_id: str) -> None:
        if evaluator_id in item.contributing_evaluator_ids:
            return
        if self._catalog.get_evaluator(evaluator_id).is_privileged:
            return
        raise PermissionDeniedError(
            f"{evaluator_id} did not contribute a score to this reconciliation"
        )
