"""Score submission and scoring progress.

Every write goes through ScoreRepository.commit_score, which checks the
caller's version and the lock state of every enclosing scope atomically.
A version conflict gets one automatic retry: the current score is
re-read and the change re-applied. A caller that supplied an explicit
version it can no longer match still gets ConcurrencyConflictError,
unless the stored score already carries exactly the requested content.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass

from vendoreval.audit.sink import AuditSink, emit_audit
from vendoreval.config import EngineConfig
from vendoreval.errors import (
    ConcurrencyConflictError,
    InvalidStateTransitionError,
    LockedError,
    PermissionDeniedError,
    ValidationError,
)
from vendoreval.locks.manager import LockManager
from vendoreval.models.evaluation import EvaluationPhase, utc_now
from vendoreval.models.score import Score, ScoreKey, ScoreStatus
from vendoreval.numeric import is_finite_number, round_half_up
from vendoreval.persistence.catalog import EvaluationCatalog
from vendoreval.persistence.repository import ScoreRepository

logger = logging.getLogger(__name__)

SCORING_PHASES: frozenset[EvaluationPhase] = frozenset(
    {EvaluationPhase.SCORING, EvaluationPhase.SUBMITTED, EvaluationPhase.RECONCILIATION}
)

@dataclass(frozen=True)
class ScoringProgress:
    """How far scoring has got for one vendor (optionally one evaluator)."""

    vendor_id: str
    evaluator_id: str | None
    total_criteria: int
    scored: int
    submitted: int
    draft: int
    percent_complete: float


class ScoreService:
    """Validates and persists evaluator scores."""

    def __init__(
        self,
        repository: ScoreRepository,
        catalog: EvaluationCatalog,
        locks: LockManager,
        audit_sink: AuditSink,
        config: EngineConfig,
    ) -> None:
        self._repo = repository
        self._catalog = catalog
        self._locks = locks
        self._audit = audit_sink
        self._config = config

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
        """Create or update one evaluator's score.

        Args:
            evaluation_id: Evaluation the score belongs to.
            vendor_id: Vendor being scored.
            criterion_id: Criterion being scored.
            evaluator_id: Scoring evaluator.
            value: Score value within the configured scale.
            rationale: Justification, required on submit.
            status: draft or submitted.
            expected_version: Last version the caller saw (0 for a new score).
                None lets the engine read the current version itself.
            evidence_ids: Evidence linked to the score; None keeps existing links.

        Returns:
            The stored score with its new version.

        Raises:
            ValidationError: Out-of-range value, missing rationale, draft after submit.
            LockedError: An enclosing scope is locked or a locked consensus supersedes it.
            ConcurrencyConflictError: expected_version is stale.
            PermissionDeniedError: The evaluator cannot score.
        """
        try:
            target_status = ScoreStatus(status)
        except ValueError as e:
            raise ValidationError(f"Unknown score status: {status}") from e
        self._check_context(evaluation_id, vendor_id, criterion_id, evaluator_id)
        self._check_value(value)
        rationale = (rationale or "").strip()
        if target_status == ScoreStatus.SUBMITTED and not rationale:
            raise ValidationError(
                "Rationale is required to submit a score", {"field": "rationale"}
            )
        if evidence_ids is not None:
            self._check_evidence(vendor_id, criterion_id, evidence_ids)

        key = ScoreKey(evaluation_id, vendor_id, criterion_id, evaluator_id)
        scopes = self._locks.enclosing_scopes(evaluation_id, vendor_id, criterion_id)
        locked = self._locks.locked_scope_for(evaluation_id, vendor_id, criterion_id)
        if locked is not None:
            raise LockedError(
                f"{locked.scope_type.value.capitalize()} {locked.scope_id} is locked",
                scope_type=locked.scope_type.value,
                scope_id=locked.scope_id,
            )
        attempts = self._config.concurrency_retries + 1

        for attempt in range(attempts):
            current = self._repo.get_score(key)
            if current is not None and current.is_submitted and target_status == ScoreStatus.DRAFT:
                raise ValidationError(
                    "A submitted score cannot revert to draft",
                    {"score_id": current.score_id},
                )
            base_version = current.version if current is not None else 0
            if expected_version is not None and expected_version != base_version:
                if current is not None and self._same_content(
                    current, value, rationale, target_status, evidence_ids
                ):
                    return current
                if attempt == attempts - 1:
                    raise ConcurrencyConflictError(
                        f"Score for {vendor_id}/{criterion_id}/{evaluator_id} is at version "
                        f"{base_version}, not {expected_version}",
                        expected=expected_version,
                        actual=base_version,
                    )
                logger.warning(
                    "Stale version %s for score %s/%s/%s, re-reading",
                    expected_version,
                    vendor_id,
                    criterion_id,
                    evaluator_id,
                )
                continue
            score = self._build_score(
                key, current, value, rationale, target_status, evidence_ids
            )
            try:
                stored = self._repo.commit_score(
                    score,
                    expected_version=base_version,
                    lock_scopes=scopes,
                )
            except ConcurrencyConflictError:
                if attempt == attempts - 1:
                    raise
                logger.warning(
                    "Version conflict on score %s/%s/%s, retrying",
                    vendor_id,
                    criterion_id,
                    evaluator_id,
                )
                continue
            self._audit_write(stored, current)
            return stored
        raise ConcurrencyConflictError(
            "Score write did not converge", expected=expected_version, actual=None
        )

    def submit_all(self, evaluation_id: str, vendor_id: str, evaluator_id: str) -> list[Score]:
        """Submit every draft an evaluator holds for one vendor.

        All drafts are checked before any is submitted.

        Raises:
            ValidationError: If any draft lacks a rationale.
        """
        drafts = self._repo.list_scores(
            evaluation_id,
            vendor_id=vendor_id,
            evaluator_id=evaluator_id,
            status=ScoreStatus.DRAFT,
        )
        missing = sorted(s.criterion_id for s in drafts if not s.rationale.strip())
        if missing:
            raise ValidationError(
                "Rationale is required to submit a score",
                {"criterion_ids": missing},
            )
        return [
            self.submit_score(
                evaluation_id,
                vendor_id,
                s.criterion_id,
                evaluator_id,
                s.value,
                s.rationale,
                status=ScoreStatus.SUBMITTED,
                expected_version=s.version,
            )
            for s in drafts
        ]

    def link_evidence(
        self,
        evaluation_id: str,
        vendor_id: str,
        criterion_id: str,
        evaluator_id: str,
        evidence_ids: Sequence[str],
    ) -> Score:
        """Add evidence references to an existing score."""
        key = ScoreKey(evaluation_id, vendor_id, criterion_id, evaluator_id)
        current = self._repo.get_score(key)
        if current is None:
            raise ValidationError(
                "Evidence can only be linked to an existing score",
                {"vendor_id": vendor_id, "criterion_id": criterion_id},
            )
        merged = list(dict.fromkeys([*current.evidence_ids, *evidence_ids]))
        return self.submit_score(
            evaluation_id,
            vendor_id,
            criterion_id,
            evaluator_id,
            current.value,
            current.rationale,
            status=current.status,
            expected_version=current.version,
            evidence_ids=merged,
        )

    def scoring_progress(
        self, evaluation_id: str, vendor_id: str, evaluator_id: str | None = None
    ) -> ScoringProgress:
        """Progress counters for a vendor, optionally restricted to one evaluator."""
        total = len(self._catalog.list_criteria(evaluation_id))
        scores = self._repo.list_scores(
            evaluation_id, vendor_id=vendor_id, evaluator_id=evaluator_id
        )
        scored = len({s.criterion_id for s in scores})
        submitted = sum(1 for s in scores if s.is_submitted)
        percent = round_half_up(scored / total * 100, 0) if total else 0.0
        return ScoringProgress(
            vendor_id=vendor_id,
            evaluator_id=evaluator_id,
            total_criteria=total,
            scored=scored,
            submitted=submitted,
            draft=len(scores) - submitted,
            percent_complete=percent,
        )

    def _check_context(
        self, evaluation_id: str, vendor_id: str, criterion_id: str, evaluator_id: str
    ) -> None:
        evaluation = self._catalog.get_evaluation(evaluation_id)
        if evaluation.phase not in SCORING_PHASES:
            raise InvalidStateTransitionError(
                "Score", evaluation.phase.value, ScoreStatus.SUBMITTED.value
            )
        if self._catalog.get_vendor(vendor_id).evaluation_id != evaluation_id:
            raise ValidationError(f"Vendor {vendor_id} is not part of evaluation {evaluation_id}")
        if self._catalog.evaluation_of_criterion(criterion_id) != evaluation_id:
            raise ValidationError(
                f"Criterion {criterion_id} is not part of evaluation {evaluation_id}"
            )
        if not self._catalog.get_evaluator(evaluator_id).can_score:
            raise PermissionDeniedError(f"{evaluator_id} is not allowed to score")

    def _check_value(self, value: object) -> None:
        if not is_finite_number(value):
            raise ValidationError(f"Score value must be a number (got {value!r})")
        low, high = self._config.scale_min, self._config.scale_max
        if not low <= float(value) <= high:
            raise ValidationError(
                f"Score {value:g} is outside the scale {low:g}-{high:g}",
                {"value": value, "scale_min": low, "scale_max": high},
            )

    def _check_evidence(
        self, vendor_id: str, criterion_id: str, evidence_ids: Sequence[str]
    ) -> None:
        for evidence_id in evidence_ids:
            evidence = self._catalog.get_evidence(evidence_id)
            if evidence.vendor_id != vendor_id or evidence.criterion_id != criterion_id:
                raise ValidationError(
                    f"Evidence {evidence_id} is not linked to {vendor_id}/{criterion_id}"
                )

    def _build_score(
        self,
        key: ScoreKey,
        current: Score | None,
        value: float,
        rationale: str,
        status: ScoreStatus,
        evidence_ids: Sequence[str] | None,
    ) -> Score:
        now = utc_now()
        if current is None:
            return Score(
                score_id=str(uuid.uuid4()),
                evaluation_id=key.evaluation_id,
                vendor_id=key.vendor_id,
                criterion_id=key.criterion_id,
                evaluator_id=key.evaluator_id,
                value=float(value),
                rationale=rationale,
                status=status,
                submitted_at=now if status == ScoreStatus.SUBMITTED else None,
                evidence_ids=tuple(evidence_ids or ()),
                created_at=now,
            )
        submitted_at = current.submitted_at
        if status == ScoreStatus.SUBMITTED and submitted_at is None:
            submitted_at = now
        return current.model_copy(
            update={
                "value": float(value),
                "rationale": rationale,
                "status": status,
                "submitted_at": submitted_at,
                "evidence_ids": (
                    tuple(evidence_ids) if evidence_ids is not None else current.evidence_ids
                ),
                "updated_at": now,
            }
        )

    @staticmethod
    def _same_content(
        current: Score,
        value: float,
        rationale: str,
        status: ScoreStatus,
        evidence_ids: Sequence[str] | None,
    ) -> bool:
        return (
            current.value == float(value)
            and current.rationale == rationale
            and current.status == status
            and (evidence_ids is None or tuple(evidence_ids) == current.evidence_ids)
        )

    def _audit_write(self, stored: Score, previous: Score | None) -> None:
        event_type = "score.submitted" if stored.is_submitted else "score.saved"
        emit_audit(
            self._audit,
            event_type,
            evaluation_id=stored.evaluation_id,
            actor=stored.evaluator_id,
            data={
                "score_id": stored.score_id,
                "vendor_id": stored.vendor_id,
                "criterion_id": stored.criterion_id,
                "value": stored.value,
                "version": stored.version,
                "previous_value": previous.value if previous is not None else None,
            },
        )
        logger.info(
            "Stored %s score %s/%s by %s (v%d)",
            stored.status.value,
            stored.vendor_id,
            stored.criterion_id,
            stored.evaluator_id,
            stored.version,
        )
