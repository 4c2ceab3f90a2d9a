"""Tests for the audit trail.

Tests cover:
1. Event envelope shape and deterministic JSONL serialisation
2. Fail-closed emission when the sink cannot record an event
3. Engine mutations surface sink failures to the caller
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from tests.fixtures.evaluation import EVALUATION_ID, ManualClock, setup_evaluation, submit
from vendoreval.audit.sink import (
    AUDIT_LOG_PATH_ENV,
    AuditSinkError,
    InMemoryAuditSink,
    JsonlFileAuditSink,
    build_audit_event,
    emit_audit,
)
from vendoreval.engine import EvaluationEngine


class _BrokenSink:
    def emit(self, event: dict[str, Any]) -> None:
        raise OSError("disk full")


class _SwitchableSink(InMemoryAuditSink):
    def __init__(self) -> None:
        super().__init__()
        self.broken = False

    def emit(self, event: dict[str, Any]) -> None:
        if self.broken:
            raise OSError("audit volume unavailable")
        super().emit(event)


class TestEventEnvelope:
    def test_envelope_fields(self) -> None:
        event = build_audit_event(
            "score.submitted", evaluation_id=EVALUATION_ID, actor="e1", data={"value": 4}
        )

        assert set(event) == {
            "event_id",
            "event_type",
            "occurred_at",
            "evaluation_id",
            "actor",
            "data",
        }
        assert event["data"] == {"value": 4}

    def test_event_ids_are_unique(self) -> None:
        first = build_audit_event("x", evaluation_id=EVALUATION_ID, actor=None)
        second = build_audit_event("x", evaluation_id=EVALUATION_ID, actor=None)

        assert first["event_id"] != second["event_id"]
        assert first["data"] == {}


class TestJsonlFileAuditSink:
    def test_appends_one_sorted_line_per_event(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "audit.jsonl"
        sink = JsonlFileAuditSink(str(path))

        emit_audit(sink, "scope.locked", evaluation_id=EVALUATION_ID, actor="lead")
        emit_audit(
            sink,
            "scope.unlocked",
            evaluation_id=EVALUATION_ID,
            actor="lead",
            data={"reason": "Pricing reopened"},
        )

        lines = path.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 2
        first = json.loads(lines[0])
        assert first["event_type"] == "scope.locked"
        assert list(first) == sorted(first)
        assert json.loads(lines[1])["data"] == {"reason": "Pricing reopened"}

    def test_path_from_environment(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        monkeypatch.setenv(AUDIT_LOG_PATH_ENV, str(tmp_path / "env.jsonl"))

        assert JsonlFileAuditSink().file_path == tmp_path / "env.jsonl"

    def test_unwritable_location_fails_closed(self, tmp_path: Path) -> None:
        blocker = tmp_path / "not-a-directory"
        blocker.write_text("", encoding="utf-8")
        sink = JsonlFileAuditSink(str(blocker / "audit.jsonl"))

        with pytest.raises(AuditSinkError):
            emit_audit(sink, "scope.locked", evaluation_id=EVALUATION_ID, actor="lead")


class TestFailClosed:
    def test_sink_os_error_is_wrapped(self) -> None:
        with pytest.raises(AuditSinkError, match="score.submitted"):
            emit_audit(_BrokenSink(), "score.submitted", evaluation_id=EVALUATION_ID, actor="e1")

    def test_unserialisable_event_is_rejected(self) -> None:
        data: dict[str, Any] = {}
        data["self"] = data

        with pytest.raises(AuditSinkError):
            emit_audit(
                InMemoryAuditSink(),
                "weights.changed",
                evaluation_id=EVALUATION_ID,
                actor="lead",
                data=data,
            )

    def test_engine_surfaces_sink_failure(self, clock: ManualClock) -> None:
        sink = _SwitchableSink()
        engine = EvaluationEngine(audit_sink=sink, clock=clock)
        setup_evaluation(engine)
        sink.broken = True

        with pytest.raises(AuditSinkError):
            submit(engine, "v1", "A", "e1", 4)

    def test_in_memory_sink_stores_json_round_trip(self) -> None:
        sink = InMemoryAuditSink()

        emit_audit(
            sink,
            "phase.advanced",
            evaluation_id=EVALUATION_ID,
            actor="lead",
            data={"to": ("scoring",)},
        )

        (event,) = sink.events
        assert event["data"] == {"to": ["scoring"]}
        sink.clear()
        assert sink.events == []
