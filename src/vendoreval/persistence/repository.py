"""Score repository protocol and in-memory implementation.

The score repository is the only mutable shared resource of the engine. It
holds evaluator scores, consensus scores, the append-only lock log and a
per-evaluation version counter. Writes are serialised and checked atomically:

- commit_score compares the caller's expected version against the stored
  one and re-reads the lock state of every enclosing scope inside the same
  critical section, so a lock applied mid-write makes the write fail.
- append_lock_record is a compare-and-swap on the scope's head sequence.

Every successful mutation bumps the evaluation version counter, which the
aggregation cache uses as its invalidation key.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from typing import Protocol

from vendoreval.errors import ConcurrencyConflictError, LockedError
from vendoreval.models.score import (
    ConsensusScore,
    LockAction,
    LockRecord,
    LockState,
    ScopeRef,
    Score,
    ScoreKey,
    ScoreStatus,
)

logger = logging.getLogger(__name__)


class ScoreRepository(Protocol):
    """Storage contract for scores, consensus scores and the lock log."""

    def get_score(self, key: ScoreKey) -> Score | None:
        """Return the score for (evaluation, vendor, criterion, evaluator), if any."""
        ...

    def list_scores(
        self,
        evaluation_id: str,
        *,
        vendor_id: str | None = None,
        criterion_id: str | None = None,
        evaluator_id: str | None = None,
        status: ScoreStatus | None = None,
    ) -> list[Score]:
        """List scores of an evaluation ordered by (vendor, criterion, evaluator)."""
        ...

    def commit_score(
        self,
        score: Score,
        *,
        expected_version: int,
        lock_scopes: Sequence[ScopeRef],
    ) -> Score:
        """Atomically check version and locks, then store score at expected_version + 1.

        Raises:
            ConcurrencyConflictError: If the stored version differs from expected_version.
            LockedError: If any scope is locked or a locked consensus supersedes the score.
        """
        ...

    def save_consensus(self, consensus: ConsensusScore) -> ConsensusScore:
        """Store a consensus score, replacing any unlocked one for the same pair.

        Raises:
            LockedError: If a locked consensus already exists for the pair.
        """
        ...

    def get_consensus(
        self, evaluation_id: str, vendor_id: str, criterion_id: str
    ) -> ConsensusScore | None:
        """Return the consensus score for (vendor, criterion), if any."""
        ...

    def list_consensus(self, evaluation_id: str) -> list[ConsensusScore]:
        """List consensus scores of an evaluation."""
        ...

    def append_lock_record(self, record: LockRecord, *, expected_head_seq: int) -> LockRecord:
        """Append to the lock log if the scope's head seq still equals expected_head_seq.

        Raises:
            ConcurrencyConflictError: If another transition won the race.
        """
        ...

    def lock_state(self, scope: ScopeRef) -> LockState:
        """Derive the current state of a scope from its most recent record."""
        ...

    def lock_records(self, evaluation_id: str, scope: ScopeRef | None = None) -> list[LockRecord]:
        """Return lock records in seq order, optionally for one scope."""
        ...

    def get_version(self, evaluation_id: str) -> int:
        """Current evaluation version counter (0 before any mutation)."""
        ...

    def bump_version(self, evaluation_id: str) -> int:
        """Increment and return the evaluation version counter."""
        ...


def state_from_record(scope: ScopeRef, record: LockRecord | None) -> LockState:
    """Build a LockState from the head record of a scope."""
    if record is None:
        return LockState(scope_type=scope.scope_type, scope_id=scope.scope_id, locked=False)
    return LockState(
        scope_type=scope.scope_type,
        scope_id=scope.scope_id,
        locked=record.action == LockAction.LOCK,
        head_seq=record.seq,
        last_record=record,
    )


class InMemoryScoreRepository:
    """Thread-safe in-memory score repository."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._scores: dict[ScoreKey, Score] = {}
        self._consensus: dict[tuple[str, str, str], ConsensusScore] = {}
        self._lock_log: dict[str, list[LockRecord]] = {}
        self._lock_heads: dict[ScopeRef, LockRecord] = {}
        self._versions: dict[str, int] = {}

    def get_score(self, key: ScoreKey) -> Score | None:
        with self._lock:
            return self._scores.get(key)

    def list_scores(
        self,
        evaluation_id: str,
        *,
        vendor_id: str | None = None,
        criterion_id: str | None = None,
        evaluator_id: str | None = None,
        status: ScoreStatus | None = None,
    ) -> list[Score]:
        with self._lock:
            scores = [
                s
                for k, s in self._scores.items()
                if k.evaluation_id == evaluation_id
                and (vendor_id is None or k.vendor_id == vendor_id)
                and (criterion_id is None or k.criterion_id == criterion_id)
                and (evaluator_id is None or k.evaluator_id == evaluator_id)
                and (status is None or s.status == status)
            ]
        return sorted(scores, key=lambda s: (s.vendor_id, s.criterion_id, s.evaluator_id))

    def commit_score(
        self,
        score: Score,
        *,
        expected_version: int,
        lock_scopes: Sequence[ScopeRef],
    ) -> Score:
        with self._lock:
            current = self._scores.get(score.key)
            actual = current.version if current is not None else 0
            if actual != expected_version:
                raise ConcurrencyConflictError(
                    f"Score for {score.vendor_id}/{score.criterion_id}/{score.evaluator_id} "
                    f"is at version {actual}, not {expected_version}",
                    expected=expected_version,
                    actual=actual,
                )
            for scope in lock_scopes:
                head = self._lock_heads.get(scope)
                if head is not None and head.action == LockAction.LOCK:
                    raise LockedError(
                        f"{scope.scope_type.value.capitalize()} {scope.scope_id} is locked",
                        scope_type=scope.scope_type.value,
                        scope_id=scope.scope_id,
                    )
            pair = (score.evaluation_id, score.vendor_id, score.criterion_id)
            consensus = self._consensus.get(pair)
            if consensus is not None and consensus.locked:
                raise LockedError(
                    f"Criterion {score.criterion_id} for vendor {score.vendor_id} "
                    "is superseded by a locked consensus score",
                    scope_type="consensus",
                    scope_id=consensus.consensus_id,
                )
            stored = score.model_copy(update={"version": expected_version + 1})
            self._scores[score.key] = stored
            self._bump(score.evaluation_id)
            return stored

    def save_consensus(self, consensus: ConsensusScore) -> ConsensusScore:
        pair = (consensus.evaluation_id, consensus.vendor_id, consensus.criterion_id)
        with self._lock:
            existing = self._consensus.get(pair)
            if existing is not None and existing.locked:
                raise LockedError(
                    f"Consensus for {consensus.vendor_id}/{consensus.criterion_id} "
                    "is already locked",
                    scope_type="consensus",
                    scope_id=existing.consensus_id,
                )
            self._consensus[pair] = consensus
            self._bump(consensus.evaluation_id)
            return consensus

    def get_consensus(
        self, evaluation_id: str, vendor_id: str, criterion_id: str
    ) -> ConsensusScore | None:
        with self._lock:
            return self._consensus.get((evaluation_id, vendor_id, criterion_id))

    def list_consensus(self, evaluation_id: str) -> list[ConsensusScore]:
        with self._lock:
            items = [c for (e, _, _), c in self._consensus.items() if e == evaluation_id]
        return sorted(items, key=lambda c: (c.vendor_id, c.criterion_id))

    def append_lock_record(self, record: LockRecord, *, expected_head_seq: int) -> LockRecord:
        with self._lock:
            head = self._lock_heads.get(record.scope)
            head_seq = head.seq if head is not None else 0
            if head_seq != expected_head_seq:
                raise ConcurrencyConflictError(
                    f"Lock state of {record.scope_type.value} {record.scope_id} "
                    "changed concurrently",
                    expected=expected_head_seq,
                    actual=head_seq,
                )
            log = self._lock_log.setdefault(record.evaluation_id, [])
            next_seq = log[-1].seq + 1 if log else 1
            stored = record.model_copy(update={"seq": next_seq})
            log.append(stored)
            self._lock_heads[record.scope] = stored
            self._bump(record.evaluation_id)
            return stored

    def lock_state(self, scope: ScopeRef) -> LockState:
        with self._lock:
            return state_from_record(scope, self._lock_heads.get(scope))

    def lock_records(self, evaluation_id: str, scope: ScopeRef | None = None) -> list[LockRecord]:
        with self._lock:
            log = list(self._lock_log.get(evaluation_id, []))
        if scope is None:
            return log
        return [r for r in log if r.scope == scope]

    def get_version(self, evaluation_id: str) -> int:
        with self._lock:
            return self._versions.get(evaluation_id, 0)

    def bump_version(self, evaluation_id: str) -> int:
        with self._lock:
            return self._bump(evaluation_id)

    def _bump(self, evaluation_id: str) -> int:
        version = self._versions.get(evaluation_id, 0) + 1
        self._versions[evaluation_id] = version
        return version
