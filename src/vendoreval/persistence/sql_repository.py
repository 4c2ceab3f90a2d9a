"""SQL score repository on SQLAlchemy Core.

Works with any SQLAlchemy URL (PostgreSQL in production, SQLite in tests).
Each write runs in one transaction: version and lock checks are re-read
inside it and the final UPDATE is guarded by the expected version, so a
concurrent writer surfaces as ConcurrencyConflictError instead of a lost
update. Lock log appends rely on the (evaluation_id, seq) primary key to
reject a second writer that raced past the head check.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Sequence
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from vendoreval.errors import ConcurrencyConflictError, LockedError
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
from vendoreval.persistence.db import begin_conn
from vendoreval.persistence.repository import state_from_record

if TYPE_CHECKING:
    from sqlalchemy import Connection, Engine

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS scores (
        score_id VARCHAR(64) NOT NULL,
        evaluation_id VARCHAR(64) NOT NULL,
        vendor_id VARCHAR(64) NOT NULL,
        criterion_id VARCHAR(64) NOT NULL,
        evaluator_id VARCHAR(64) NOT NULL,
        value DOUBLE PRECISION NOT NULL,
        rationale TEXT NOT NULL,
        status VARCHAR(16) NOT NULL,
        submitted_at VARCHAR(40),
        version INTEGER NOT NULL,
        evidence_ids TEXT NOT NULL,
        created_at VARCHAR(40) NOT NULL,
        updated_at VARCHAR(40),
        PRIMARY KEY (evaluation_id, vendor_id, criterion_id, evaluator_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS consensus_scores (
        consensus_id VARCHAR(64) NOT NULL,
        evaluation_id VARCHAR(64) NOT NULL,
        vendor_id VARCHAR(64) NOT NULL,
        criterion_id VARCHAR(64) NOT NULL,
        value DOUBLE PRECISION NOT NULL,
        rationale TEXT NOT NULL,
        source_score_ids TEXT NOT NULL,
        locked BOOLEAN NOT NULL,
        determined_by VARCHAR(64),
        determined_at VARCHAR(40) NOT NULL,
        override_reason TEXT,
        fallback_applied BOOLEAN NOT NULL,
        PRIMARY KEY (evaluation_id, vendor_id, criterion_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS lock_records (
        evaluation_id VARCHAR(64) NOT NULL,
        seq INTEGER NOT NULL,
        scope_type VARCHAR(16) NOT NULL,
        scope_id VARCHAR(64) NOT NULL,
        action VARCHAR(16) NOT NULL,
        actor VARCHAR(64) NOT NULL,
        reason TEXT,
        recorded_at VARCHAR(40) NOT NULL,
        PRIMARY KEY (evaluation_id, seq)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS evaluation_versions (
        evaluation_id VARCHAR(64) NOT NULL PRIMARY KEY,
        version INTEGER NOT NULL
    )
    """,
)

_SCORE_COLUMNS = (
    "score_id, evaluation_id, vendor_id, criterion_id, evaluator_id, value, rationale, "
    "status, submitted_at, version, evidence_ids, created_at, updated_at"
)


def create_schema(engine: Engine) -> None:
    """Create the score store tables if they do not exist."""
    with begin_conn(engine) as conn:
        for statement in SCHEMA_STATEMENTS:
            conn.execute(text(statement))
    logger.info("Score store schema ready")


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _row_to_score(row: Any) -> Score:
    return Score(
        score_id=row["score_id"],
        evaluation_id=row["evaluation_id"],
        vendor_id=row["vendor_id"],
        criterion_id=row["criterion_id"],
        evaluator_id=row["evaluator_id"],
        value=float(row["value"]),
        rationale=row["rationale"],
        status=ScoreStatus(row["status"]),
        submitted_at=_parse_ts(row["submitted_at"]),
        version=int(row["version"]),
        evidence_ids=tuple(json.loads(row["evidence_ids"])),
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
    )


def _row_to_consensus(row: Any) -> ConsensusScore:
    return ConsensusScore(
        consensus_id=row["consensus_id"],
        evaluation_id=row["evaluation_id"],
        vendor_id=row["vendor_id"],
        criterion_id=row["criterion_id"],
        value=float(row["value"]),
        rationale=row["rationale"],
        source_score_ids=tuple(json.loads(row["source_score_ids"])),
        locked=bool(row["locked"]),
        determined_by=row["determined_by"],
        determined_at=_parse_ts(row["determined_at"]),
        override_reason=row["override_reason"],
        fallback_applied=bool(row["fallback_applied"]),
    )


def _row_to_lock_record(row: Any) -> LockRecord:
    return LockRecord(
        seq=int(row["seq"]),
        evaluation_id=row["evaluation_id"],
        scope_type=LockScopeType(row["scope_type"]),
        scope_id=row["scope_id"],
        action=LockAction(row["action"]),
        actor=row["actor"],
        reason=row["reason"],
        timestamp=_parse_ts(row["recorded_at"]),
    )


class SqlScoreRepository:
    """ScoreRepository backed by SQL tables."""

    def __init__(self, engine: Engine, *, create_tables: bool = True) -> None:
        """Initialize with an engine.

        Args:
            engine: SQLAlchemy engine for the score store.
            create_tables: Create the schema on startup (idempotent).
        """
        self._engine = engine
        self._write_lock = threading.Lock()
        if create_tables:
            create_schema(engine)

    def get_score(self, key: ScoreKey) -> Score | None:
        with begin_conn(self._engine) as conn:
            return self._select_score(conn, key)

    def list_scores(
        self,
        evaluation_id: str,
        *,
        vendor_id: str | None = None,
        criterion_id: str | None = None,
        evaluator_id: str | None = None,
        status: ScoreStatus | None = None,
    ) -> list[Score]:
        clauses = ["evaluation_id = :evaluation_id"]
        params: dict[str, Any] = {"evaluation_id": evaluation_id}
        for column, value in (
            ("vendor_id", vendor_id),
            ("criterion_id", criterion_id),
            ("evaluator_id", evaluator_id),
            ("status", status.value if status is not None else None),
        ):
            if value is not None:
                clauses.append(f"{column} = :{column}")
                params[column] = value
        sql = (
            f"SELECT {_SCORE_COLUMNS} FROM scores WHERE {' AND '.join(clauses)} "
            "ORDER BY vendor_id, criterion_id, evaluator_id"
        )
        with begin_conn(self._engine) as conn:
            rows = conn.execute(text(sql), params).mappings().all()
        return [_row_to_score(r) for r in rows]

    def commit_score(
        self,
        score: Score,
        *,
        expected_version: int,
        lock_scopes: Sequence[ScopeRef],
    ) -> Score:
        stored = score.model_copy(update={"version": expected_version + 1})
        params = {
            "score_id": stored.score_id,
            "evaluation_id": stored.evaluation_id,
            "vendor_id": stored.vendor_id,
            "criterion_id": stored.criterion_id,
            "evaluator_id": stored.evaluator_id,
            "value": stored.value,
            "rationale": stored.rationale,
            "status": stored.status.value,
            "submitted_at": _ts(stored.submitted_at),
            "version": stored.version,
            "expected_version": expected_version,
            "evidence_ids": json.dumps(list(stored.evidence_ids)),
            "created_at": _ts(stored.created_at),
            "updated_at": _ts(stored.updated_at),
        }
        try:
            with self._write_lock, begin_conn(self._engine) as conn:
                current = self._select_score(conn, score.key)
                actual = current.version if current is not None else 0
                if actual != expected_version:
                    raise ConcurrencyConflictError(
                        f"Score for {score.vendor_id}/{score.criterion_id}/{score.evaluator_id} "
                        f"is at version {actual}, not {expected_version}",
                        expected=expected_version,
                        actual=actual,
                    )
                for scope in lock_scopes:
                    head = self._head_record(conn, scope)
                    if head is not None and head.action == LockAction.LOCK:
                        raise LockedError(
                            f"{scope.scope_type.value.capitalize()} {scope.scope_id} is locked",
                            scope_type=scope.scope_type.value,
                            scope_id=scope.scope_id,
                        )
                consensus = self._select_consensus(
                    conn, score.evaluation_id, score.vendor_id, score.criterion_id
                )
                if consensus is not None and consensus.locked:
                    raise LockedError(
                        f"Criterion {score.criterion_id} for vendor {score.vendor_id} "
                        "is superseded by a locked consensus score",
                        scope_type="consensus",
                        scope_id=consensus.consensus_id,
                    )
                if current is None:
                    conn.execute(
                        text(
                            f"INSERT INTO scores ({_SCORE_COLUMNS}) VALUES ("
                            ":score_id, :evaluation_id, :vendor_id, :criterion_id, :evaluator_id, "
                            ":value, :rationale, :status, :submitted_at, :version, :evidence_ids, "
                            ":created_at, :updated_at)"
                        ),
                        params,
                    )
                else:
                    result = conn.execute(
                        text(
                            """
                            UPDATE scores SET value = :value, rationale = :rationale,
                                status = :status, submitted_at = :submitted_at,
                                version = :version, evidence_ids = :evidence_ids,
                                updated_at = :updated_at
                            WHERE evaluation_id = :evaluation_id AND vendor_id = :vendor_id
                                AND criterion_id = :criterion_id AND evaluator_id = :evaluator_id
                                AND version = :expected_version
                            """
                        ),
                        params,
                    )
                    if result.rowcount != 1:
                        raise ConcurrencyConflictError(
                            "Score changed concurrently",
                            expected=expected_version,
                            actual=None,
                        )
                self._bump(conn, score.evaluation_id)
        except IntegrityError as e:
            raise ConcurrencyConflictError(
                "Score was created concurrently", expected=expected_version, actual=None
            ) from e
        return stored

    def save_consensus(self, consensus: ConsensusScore) -> ConsensusScore:
        params = {
            "consensus_id": consensus.consensus_id,
            "evaluation_id": consensus.evaluation_id,
            "vendor_id": consensus.vendor_id,
            "criterion_id": consensus.criterion_id,
            "value": consensus.value,
            "rationale": consensus.rationale,
            "source_score_ids": json.dumps(list(consensus.source_score_ids)),
            "locked": consensus.locked,
            "determined_by": consensus.determined_by,
            "determined_at": _ts(consensus.determined_at),
            "override_reason": consensus.override_reason,
            "fallback_applied": consensus.fallback_applied,
        }
        with self._write_lock, begin_conn(self._engine) as conn:
            existing = self._select_consensus(
                conn, consensus.evaluation_id, consensus.vendor_id, consensus.criterion_id
            )
            if existing is not None and existing.locked:
                raise LockedError(
                    f"Consensus for {consensus.vendor_id}/{consensus.criterion_id} "
                    "is already locked",
                    scope_type="consensus",
                    scope_id=existing.consensus_id,
                )
            if existing is not None:
                conn.execute(
                    text(
                        """
                        DELETE FROM consensus_scores
                        WHERE evaluation_id = :evaluation_id AND vendor_id = :vendor_id
                            AND criterion_id = :criterion_id
                        """
                    ),
                    params,
                )
            conn.execute(
                text(
                    """
                    INSERT INTO consensus_scores (
                        consensus_id, evaluation_id, vendor_id, criterion_id, value,
                        rationale, source_score_ids, locked, determined_by, determined_at,
                        override_reason, fallback_applied
                    ) VALUES (
                        :consensus_id, :evaluation_id, :vendor_id, :criterion_id, :value,
                        :rationale, :source_score_ids, :locked, :determined_by, :determined_at,
                        :override_reason, :fallback_applied
                    )
                    """
                ),
                params,
            )
            self._bump(conn, consensus.evaluation_id)
        return consensus

    def get_consensus(
        self, evaluation_id: str, vendor_id: str, criterion_id: str
    ) -> ConsensusScore | None:
        with begin_conn(self._engine) as conn:
            return self._select_consensus(conn, evaluation_id, vendor_id, criterion_id)

    def list_consensus(self, evaluation_id: str) -> list[ConsensusScore]:
        with begin_conn(self._engine) as conn:
            rows = (
                conn.execute(
                    text(
                        "SELECT * FROM consensus_scores WHERE evaluation_id = :evaluation_id "
                        "ORDER BY vendor_id, criterion_id"
                    ),
                    {"evaluation_id": evaluation_id},
                )
                .mappings()
                .all()
            )
        return [_row_to_consensus(r) for r in rows]

    def append_lock_record(self, record: LockRecord, *, expected_head_seq: int) -> LockRecord:
        try:
            with self._write_lock, begin_conn(self._engine) as conn:
                head = self._head_record(conn, record.scope)
                head_seq = head.seq if head is not None else 0
                if head_seq != expected_head_seq:
                    raise ConcurrencyConflictError(
                        f"Lock state of {record.scope_type.value} {record.scope_id} "
                        "changed concurrently",
                        expected=expected_head_seq,
                        actual=head_seq,
                    )
                max_seq = conn.execute(
                    text("SELECT MAX(seq) FROM lock_records WHERE evaluation_id = :evaluation_id"),
                    {"evaluation_id": record.evaluation_id},
                ).scalar()
                stored = record.model_copy(update={"seq": (max_seq or 0) + 1})
                conn.execute(
                    text(
                        """
                        INSERT INTO lock_records (
                            evaluation_id, seq, scope_type, scope_id, action, actor,
                            reason, recorded_at
                        ) VALUES (
                            :evaluation_id, :seq, :scope_type, :scope_id, :action, :actor,
                            :reason, :recorded_at
                        )
                        """
                    ),
                    {
                        "evaluation_id": stored.evaluation_id,
                        "seq": stored.seq,
                        "scope_type": stored.scope_type.value,
                        "scope_id": stored.scope_id,
                        "action": stored.action.value,
                        "actor": stored.actor,
                        "reason": stored.reason,
                        "recorded_at": _ts(stored.timestamp),
                    },
                )
                self._bump(conn, stored.evaluation_id)
        except IntegrityError as e:
            raise ConcurrencyConflictError(
                "Lock log append lost a race", expected=expected_head_seq, actual=None
            ) from e
        return stored

    def lock_state(self, scope: ScopeRef) -> LockState:
        with begin_conn(self._engine) as conn:
            return state_from_record(scope, self._head_record(conn, scope))

    def lock_records(self, evaluation_id: str, scope: ScopeRef | None = None) -> list[LockRecord]:
        sql = "SELECT * FROM lock_records WHERE evaluation_id = :evaluation_id"
        params: dict[str, Any] = {"evaluation_id": evaluation_id}
        if scope is not None:
            sql += " AND scope_type = :scope_type AND scope_id = :scope_id"
            params["scope_type"] = scope.scope_type.value
            params["scope_id"] = scope.scope_id
        with begin_conn(self._engine) as conn:
            rows = conn.execute(text(sql + " ORDER BY seq"), params).mappings().all()
        return [_row_to_lock_record(r) for r in rows]

    def get_version(self, evaluation_id: str) -> int:
        with begin_conn(self._engine) as conn:
            version = conn.execute(
                text(
                    "SELECT version FROM evaluation_versions WHERE evaluation_id = :evaluation_id"
                ),
                {"evaluation_id": evaluation_id},
            ).scalar()
        return int(version or 0)

    def bump_version(self, evaluation_id: str) -> int:
        with self._write_lock, begin_conn(self._engine) as conn:
            return self._bump(conn, evaluation_id)

    def _select_score(self, conn: Connection, key: ScoreKey) -> Score | None:
        row = (
            conn.execute(
                text(
                    f"SELECT {_SCORE_COLUMNS} FROM scores WHERE evaluation_id = :evaluation_id "
                    "AND vendor_id = :vendor_id AND criterion_id = :criterion_id "
                    "AND evaluator_id = :evaluator_id"
                ),
                key._asdict(),
            )
            .mappings()
            .first()
        )
        return _row_to_score(row) if row is not None else None

    def _select_consensus(
        self, conn: Connection, evaluation_id: str, vendor_id: str, criterion_id: str
    ) -> ConsensusScore | None:
        row = (
            conn.execute(
                text(
                    "SELECT * FROM consensus_scores WHERE evaluation_id = :evaluation_id "
                    "AND vendor_id = :vendor_id AND criterion_id = :criterion_id"
                ),
                {
                    "evaluation_id": evaluation_id,
                    "vendor_id": vendor_id,
                    "criterion_id": criterion_id,
                },
            )
            .mappings()
            .first()
        )
        return _row_to_consensus(row) if row is not None else None

    def _head_record(self, conn: Connection, scope: ScopeRef) -> LockRecord | None:
        row = (
            conn.execute(
                text(
                    "SELECT * FROM lock_records WHERE evaluation_id = :evaluation_id "
                    "AND scope_type = :scope_type AND scope_id = :scope_id "
                    "ORDER BY seq DESC LIMIT 1"
                ),
                {
                    "evaluation_id": scope.evaluation_id,
                    "scope_type": scope.scope_type.value,
                    "scope_id": scope.scope_id,
                },
            )
            .mappings()
            .first()
        )
        return _row_to_lock_record(row) if row is not None else None

    def _bump(self, conn: Connection, evaluation_id: str) -> int:
        params = {"evaluation_id": evaluation_id}
        result = conn.execute(
            text(
                "UPDATE evaluation_versions SET version = version + 1 "
                "WHERE evaluation_id = :evaluation_id"
            ),
            params,
        )
        if result.rowcount == 0:
            conn.execute(
                text(
                    "INSERT INTO evaluation_versions (evaluation_id, version) "
                    "VALUES (:evaluation_id, 1)"
                ),
                params,
            )
            return 1
        return int(
            conn.execute(
                text(
                    "SELECT version FROM evaluation_versions WHERE evaluation_id = :evaluation_id"
                ),
                params,
            ).scalar()
        )
