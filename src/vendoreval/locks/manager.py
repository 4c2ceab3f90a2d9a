"""Scope lock manager.

Locks freeze score mutation for a whole evaluation, one vendor or one
category. State lives only in the append-only lock log of the score
repository; the current state of a scope is its most recent record.
Transitions are compare-and-swap on the scope's head sequence, so two
concurrent lock calls cannot both succeed.
"""

from __future__ import annotations

import logging

from vendoreval.audit.sink import AuditSink, emit_audit
from vendoreval.errors import (
    ConcurrencyConflictError,
    LockedError,
    PermissionDeniedError,
    ValidationError,
)
from vendoreval.models.score import LockAction, LockRecord, LockScopeType, LockState, ScopeRef
from vendoreval.notifications.publisher import (
    NotificationEvent,
    NotificationPublisher,
    NotificationType,
)
from vendoreval.persistence.catalog import EvaluationCatalog
from vendoreval.persistence.repository import ScoreRepository

logger = logging.getLogger(__name__)


class LockManager:
    """Lock and unlock evaluation, vendor and category scopes."""

    def __init__(
        self,
        repository: ScoreRepository,
        catalog: EvaluationCatalog,
        audit_sink: AuditSink,
        publisher: NotificationPublisher,
    ) -> None:
        self._repo = repository
        self._catalog = catalog
        self._audit = audit_sink
        self._publisher = publisher

    def scope_ref(
        self, evaluation_id: str, scope_type: LockScopeType | str, scope_id: str
    ) -> ScopeRef:
        """Validate that a scope belongs to the evaluation and return its reference.

        Raises:
            ValidationError: If the scope type is unknown or the scope is foreign.
            NotFoundError: If the scope entity does not exist.
        """
        try:
            kind = LockScopeType(scope_type)
        except ValueError as e:
            raise ValidationError(f"Unknown lock scope type: {scope_type}") from e
        self._catalog.get_evaluation(evaluation_id)
        if kind == LockScopeType.EVALUATION:
            if scope_id != evaluation_id:
                raise ValidationError("Evaluation scope id must be the evaluation id")
        elif kind == LockScopeType.VENDOR:
            if self._catalog.get_vendor(scope_id).evaluation_id != evaluation_id:
                raise ValidationError(
                    f"Vendor {scope_id} is not part of evaluation {evaluation_id}"
                )
        elif self._catalog.get_category(scope_id).evaluation_id != evaluation_id:
            raise ValidationError(f"Category {scope_id} is not part of evaluation {evaluation_id}")
        return ScopeRef(evaluation_id, kind, scope_id)

    def enclosing_scopes(
        self, evaluation_id: str, vendor_id: str, criterion_id: str
    ) -> list[ScopeRef]:
        """Scopes whose lock freezes the score for (vendor, criterion)."""
        category_id = self._catalog.get_criterion(criterion_id).category_id
        return [
            ScopeRef(evaluation_id, LockScopeType.EVALUATION, evaluation_id),
            ScopeRef(evaluation_id, LockScopeType.VENDOR, vendor_id),
            ScopeRef(evaluation_id, LockScopeType.CATEGORY, category_id),
        ]

    def state(self, scope: ScopeRef) -> LockState:
        return self._repo.lock_state(scope)

    def is_locked(self, scope: ScopeRef) -> bool:
        return self._repo.lock_state(scope).locked

    def locked_scope_for(
        self, evaluation_id: str, vendor_id: str, criterion_id: str
    ) -> ScopeRef | None:
        """First locked scope enclosing (vendor, criterion), or None."""
        for scope in self.enclosing_scopes(evaluation_id, vendor_id, criterion_id):
            if self.is_locked(scope):
                return scope
        return None

    def lock_scope(
        self,
        evaluation_id: str,
        scope_type: LockScopeType | str,
        scope_id: str,
        actor: str,
        reason: str | None = None,
    ) -> LockRecord:
        """Lock a scope.

        Raises:
            LockedError: If the scope is already locked.
            PermissionDeniedError: If actor is not a lead or admin.
        """
        self._require_privileged(actor)
        scope = self.scope_ref(evaluation_id, scope_type, scope_id)
        record = self._transition(scope, LockAction.LOCK, actor, reason)
        logger.info(
            "Locked %s %s in evaluation %s (actor=%s)",
            scope.scope_type.value,
            scope.scope_id,
            evaluation_id,
            actor,
        )
        self._publisher.publish(
            NotificationEvent(
                event_type=NotificationType.SCORE_LOCKED,
                evaluation_id=evaluation_id,
                payload={
                    "scope_type": scope.scope_type.value,
                    "scope_id": scope.scope_id,
                    "actor": actor,
                    "seq": record.seq,
                },
            )
        )
        return record

    def unlock_scope(
        self,
        evaluation_id: str,
        scope_type: LockScopeType | str,
        scope_id: str,
        actor: str,
        reason: str | None,
    ) -> LockRecord:
        """Unlock a scope. A non-empty reason is mandatory.

        Raises:
            ValidationError: If reason is missing or the scope is not locked.
            PermissionDeniedError: If actor is not a lead or admin.
        """
        if reason is None or not reason.strip():
            raise ValidationError("reason required", {"field": "reason"})
        self._require_privileged(actor)
        scope = self.scope_ref(evaluation_id, scope_type, scope_id)
        record = self._transition(scope, LockAction.UNLOCK, actor, reason.strip())
        logger.info(
            "Unlocked %s %s in evaluation %s (actor=%s)",
            scope.scope_type.value,
            scope.scope_id,
            evaluation_id,
            actor,
        )
        return record

    def lock_history(self, evaluation_id: str, scope: ScopeRef | None = None) -> list[LockRecord]:
        """Full lock log of an evaluation, optionally for one scope, in seq order."""
        return self._repo.lock_records(evaluation_id, scope)

    def _transition(
        self, scope: ScopeRef, action: LockAction, actor: str, reason: str | None
    ) -> LockRecord:
        # one re-read if another transition lands between our read and the append
        for attempt in range(2):
            current = self._repo.lock_state(scope)
            if action == LockAction.LOCK and current.locked:
                raise LockedError(
                    f"{scope.scope_type.value.capitalize()} {scope.scope_id} is already locked",
                    scope_type=scope.scope_type.value,
                    scope_id=scope.scope_id,
                )
            if action == LockAction.UNLOCK and not current.locked:
                raise ValidationError(
                    f"{scope.scope_type.value.capitalize()} {scope.scope_id} is not locked",
                    {"scope_type": scope.scope_type.value, "scope_id": scope.scope_id},
                )
            record = LockRecord(
                evaluation_id=scope.evaluation_id,
                scope_type=scope.scope_type,
                scope_id=scope.scope_id,
                action=action,
                actor=actor,
                reason=reason,
            )
            try:
                stored = self._repo.append_lock_record(record, expected_head_seq=current.head_seq)
            except ConcurrencyConflictError:
                if attempt == 1:
                    raise
                logger.warning(
                    "Lock transition on %s %s raced, re-reading state",
                    scope.scope_type.value,
                    scope.scope_id,
                )
                continue
            emit_audit(
                self._audit,
                "scope.locked" if action == LockAction.LOCK else "scope.unlocked",
                evaluation_id=scope.evaluation_id,
                actor=actor,
                data={
                    "scope_type": scope.scope_type.value,
                    "scope_id": scope.scope_id,
                    "seq": stored.seq,
                    "reason": reason,
                },
            )
            return stored
        raise AssertionError("unreachable")

    def _require_privileged(self, actor: str) -> None:
        if not actor or not actor.strip():
            raise ValidationError("actor required", {"field": "actor"})
        if not self._catalog.get_evaluator(actor).is_privileged:
            raise PermissionDeniedError(f"{actor} must be a lead or admin to change locks")
