"""Tests for the vendoreval CLI."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest
import yaml

from vendoreval.cli import build_engine, load_snapshot, main


def _snapshot(**overrides: Any) -> dict[str, Any]:
    snapshot: dict[str, Any] = {
        "evaluation": {"evaluation_id": "eval-cli", "name": "CRM replacement"},
        "categories": [
            {"category_id": "functional", "name": "Functional", "weight": 60, "sort_order": 1},
            {"category_id": "commercial", "name": "Commercial", "weight": 40, "sort_order": 2},
        ],
        "criteria": [
            {"criterion_id": "A", "category_id": "functional", "name": "Workflow", "weight": 70},
            {"criterion_id": "B", "category_id": "functional", "name": "Reporting", "weight": 30},
            {"criterion_id": "C", "category_id": "commercial", "name": "Pricing", "weight": 100},
        ],
        "vendors": [{"vendor_id": "v1", "name": "Vendor One"}],
        "evaluators": [{"evaluator_id": "e1"}, {"evaluator_id": "e2"}],
        "scores": [
            {"vendor_id": "v1", "criterion_id": c, "evaluator_id": e, "value": v, "rationale": "ok"}
            for c, e, v in (
                ("A", "e1", 4),
                ("A", "e2", 2),
                ("B", "e1", 3),
                ("B", "e2", 3),
                ("C", "e1", 5),
                ("C", "e2", 5),
            )
        ],
    }
    snapshot.update(overrides)
    return snapshot


def _write_json(tmp_path: Path, data: Any, name: str = "snapshot.json") -> str:
    path = tmp_path / name
    path.write_text(json.dumps(data), encoding="utf-8")
    return str(path)


def _run(argv: list[str], capsys: pytest.CaptureFixture[str]) -> tuple[int, dict[str, Any]]:
    code = main(argv)
    return code, json.loads(capsys.readouterr().out)


class TestRank:
    def test_rank_from_json(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        code, output = _run(["rank", "--input", _write_json(tmp_path, _snapshot())], capsys)

        assert code == 0
        (row,) = output["vendors"]
        assert row["vendor_id"] == "v1"
        assert row["display_total"] == 3.8
        assert output["top_category_id"] == "functional"

    def test_rank_from_yaml(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        path = tmp_path / "snapshot.yaml"
        path.write_text(yaml.safe_dump(_snapshot()), encoding="utf-8")

        code, output = _run(["rank", "--input", str(path)], capsys)

        assert code == 0
        assert output["vendors"][0]["display_total"] == 3.8

    def test_replay_flags_disagreements(self, tmp_path: Path) -> None:
        engine = build_engine(load_snapshot(_write_json(tmp_path, _snapshot())))

        (item,) = engine.list_reconciliation_items("eval-cli")
        assert (item.vendor_id, item.criterion_id) == ("v1", "A")

    def test_config_file_is_applied(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        config = tmp_path / "engine.yaml"
        config.write_text("display_decimals: 0\n", encoding="utf-8")
        snapshot = _write_json(tmp_path, _snapshot())

        code, output = _run(["rank", "--input", snapshot, "--config", str(config)], capsys)

        assert code == 0
        assert output["vendors"][0]["display_total"] == 4.0


class TestValidateWeights:
    def test_valid_weights(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        code, output = _run(
            ["validate-weights", "--input", _write_json(tmp_path, _snapshot())], capsys
        )

        assert code == 0
        assert output["pass"] is True

    def test_mismatch_exits_2_with_total(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        snapshot = _snapshot()
        snapshot["categories"][1]["weight"] = 50

        code, output = _run(
            ["validate-weights", "--input", _write_json(tmp_path, snapshot)], capsys
        )

        assert code == 2
        assert output["pass"] is False
        failed = [c for c in output["checks"] if not c["ok"]]
        assert failed == [
            {
                "scope": "Category",
                "parent_id": None,
                "total": 110.0,
                "ok": False,
                "message": "Category weights total 110% — must equal 100%",
            }
        ]


class TestAnomalies:
    def test_price_outlier(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        vendors = ("v1", "v2", "v3", "v4")
        prices = (100_000, 105_000, 98_000, 40_000)
        snapshot = _snapshot(
            vendors=[{"vendor_id": v, "name": v} for v in vendors],
            scores=[],
            vendor_data=[
                {"vendor_id": v, "dimension": "price", "value": p}
                for v, p in zip(vendors, prices, strict=True)
            ],
        )

        code, output = _run(
            ["anomalies", "--input", _write_json(tmp_path, snapshot), "--no-scores"], capsys
        )

        assert code == 0
        (anomaly,) = output["anomalies"]
        assert anomaly["vendor_id"] == "v4"
        assert anomaly["severity"] == "critical"
        assert "detected_at" not in anomaly


class TestErrors:
    def test_missing_file(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        code, output = _run(["rank", "--input", str(tmp_path / "absent.json")], capsys)

        assert code == 2
        assert output["error"]["code"] == "INVALID_SNAPSHOT"

    def test_snapshot_without_evaluation(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        code, output = _run(["rank", "--input", _write_json(tmp_path, [1, 2])], capsys)

        assert code == 2
        assert "evaluation" in output["error"]["message"]

    def test_engine_error_is_reported(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        snapshot = _snapshot()
        snapshot["scores"][0]["value"] = 9

        code, output = _run(["rank", "--input", _write_json(tmp_path, snapshot)], capsys)

        assert code == 2
        assert output["error"]["code"] == "VALIDATION_ERROR"

    def test_invalid_config(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        config = tmp_path / "engine.yaml"
        config.write_text("scale_min: 9\n", encoding="utf-8")
        snapshot = _write_json(tmp_path, _snapshot())

        code, output = _run(["rank", "--input", snapshot, "--config", str(config)], capsys)

        assert code == 2
        assert output["error"]["code"] == "INVALID_CONFIG"

    def test_no_command_prints_help(self, capsys: pytest.CaptureFixture[str]) -> None:
        assert main([]) == 0
        assert "vendoreval" in capsys.readouterr().out
