"""Audit trail for engine mutations.

Every mutating operation (score submission, lock transitions, consensus
locks, weight changes, anomaly reviews, phase changes) emits one event
through an AuditSink. Sinks are append-only and fail closed: an emission
failure raises AuditSinkError and the caller surfaces it.

Events are serialised deterministically (sorted keys, compact separators).
"""

from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from vendoreval.models.evaluation import utc_now

logger = logging.getLogger(__name__)

AUDIT_LOG_PATH_ENV = "VENDOREVAL_AUDIT_LOG_PATH"
DEFAULT_AUDIT_LOG_PATH = "./var/audit/vendoreval_audit.jsonl"


class AuditSinkError(Exception):
    """Raised when an audit event cannot be recorded."""


@runtime_checkable
class AuditSink(Protocol):
    """Append-only destination for audit events."""

    def emit(self, event: dict[str, Any]) -> None:
        """Record one event.

        Raises:
            AuditSinkError: If the event cannot be recorded.
        """
        ...


def build_audit_event(
    event_type: str,
    *,
    evaluation_id: str,
    actor: str | None,
    data: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build a JSON-ready audit event envelope."""
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": utc_now().isoformat(),
        "evaluation_id": evaluation_id,
        "actor": actor,
        "data": data or {},
    }


def _serialize(event: dict[str, Any]) -> str:
    try:
        return json.dumps(event, sort_keys=True, separators=(",", ":"), default=str)
    except (TypeError, ValueError) as e:
        raise AuditSinkError(f"Failed to serialize audit event: {e}") from e


class JsonlFileAuditSink:
    """Append-only JSONL file sink.

    The path comes from the constructor, then VENDOREVAL_AUDIT_LOG_PATH,
    then DEFAULT_AUDIT_LOG_PATH. Parent directories are created on demand.
    """

    def __init__(self, file_path: str | None = None) -> None:
        env_path = os.environ.get(AUDIT_LOG_PATH_ENV)
        self._file_path = Path(file_path or env_path or DEFAULT_AUDIT_LOG_PATH)
        self._write_lock = threading.Lock()

    @property
    def file_path(self) -> Path:
        return self._file_path

    def emit(self, event: dict[str, Any]) -> None:
        line = _serialize(event) + "\n"
        parent = self._file_path.parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise AuditSinkError(f"Failed to create audit log directory {parent}: {e}") from e
        try:
            with self._write_lock, open(self._file_path, mode="a", encoding="utf-8") as f:
                f.write(line)
        except OSError as e:
            raise AuditSinkError(f"Failed to write audit event to {self._file_path}: {e}") from e


class InMemoryAuditSink:
    """Audit sink that keeps events in a list (tests and embedded use)."""

    def __init__(self) -> None:
        self._events: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def emit(self, event: dict[str, Any]) -> None:
        # round-trip through JSON so stored events match what a file sink writes
        stored = json.loads(_serialize(event))
        with self._lock:
            self._events.append(stored)

    @property
    def events(self) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._events)

    def events_of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [e for e in self.events if e["event_type"] == event_type]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


def get_audit_sink() -> AuditSink:
    """Return the configured file sink."""
    return JsonlFileAuditSink()


def emit_audit(
    sink: AuditSink,
    event_type: str,
    *,
    evaluation_id: str,
    actor: str | None,
    data: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build and emit an audit event. Fail closed on sink failure.

    Raises:
        AuditSinkError: If the sink cannot record the event.
    """
    event = build_audit_event(event_type, evaluation_id=evaluation_id, actor=actor, data=data)
    try:
        sink.emit(event)
    except AuditSinkError:
        raise
    except (OSError, TypeError, ValueError) as exc:
        raise AuditSinkError(f"Audit sink failure for event '{event_type}': {exc}") from exc
    logger.debug("Audit %s for evaluation %s", event_type, evaluation_id)
    return event
