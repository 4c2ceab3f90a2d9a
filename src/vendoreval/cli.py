"""vendoreval CLI - deterministic commands over an evaluation snapshot.

Usage:
    vendoreval validate-weights --input PATH
    vendoreval rank --input PATH [--config PATH]
    vendoreval anomalies --input PATH [--config PATH] [--no-scores]

The snapshot is a JSON or YAML document:

    evaluation: {evaluation_id, name, blind_mode}
    categories: [{category_id, name, weight, sort_order}]
    criteria: [{criterion_id, category_id, name, weight, sort_order}]
    vendors: [{vendor_id, name, status}]
    evaluators: [{evaluator_id, name, roles}]
    scores: [{vendor_id, criterion_id, evaluator_id, value, rationale}]
    vendor_data: [{vendor_id, dimension, sub_type, value}]

Exit codes:
    0: Success / weights valid
    1: Internal error
    2: Invalid input / weights invalid / engine error
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from vendoreval.config import ConfigError, load_config
from vendoreval.engine import EvaluationEngine
from vendoreval.errors import EngineError
from vendoreval.models.anomaly import DataPoint
from vendoreval.models.evaluation import (
    Category,
    Criterion,
    Evaluation,
    EvaluationPhase,
    Evaluator,
    Vendor,
)
from vendoreval.weights.validator import validate_all


class SnapshotError(Exception):
    """Raised when a snapshot cannot be read or does not describe an evaluation."""


def _output_json(data: dict[str, Any]) -> None:
    """Output JSON to stdout with deterministic ordering."""
    print(json.dumps(data, sort_keys=True, indent=2))


def _error_result(code: str, message: str, details: dict[str, Any] | None = None) -> dict:
    return {"error": {"code": code, "message": message, "details": details or {}}}


def load_snapshot(path: str) -> dict[str, Any]:
    """Read a JSON or YAML snapshot file.

    Raises:
        SnapshotError: Missing file, unparseable content, or not a mapping.
    """
    snapshot_path = Path(path)
    try:
        content = snapshot_path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise SnapshotError(f"File not found: {path}") from e
    except OSError as e:
        raise SnapshotError(f"Cannot read input: {e}") from e

    try:
        if snapshot_path.suffix.lower() in (".yaml", ".yml"):
            data = yaml.safe_load(content)
        else:
            data = json.loads(content)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise SnapshotError(f"Invalid snapshot: {e}") from e

    if not isinstance(data, dict) or not isinstance(data.get("evaluation"), dict):
        raise SnapshotError("Snapshot must be a mapping with an 'evaluation' section")
    return data


def _catalog_models(data: dict[str, Any]) -> tuple[Evaluation, list[Category], list[Criterion]]:
    evaluation_id = data["evaluation"].get("evaluation_id")
    try:
        evaluation = Evaluation.model_validate(
            {**data["evaluation"], "phase": EvaluationPhase.SCORING}
        )
        categories = [
            Category.model_validate({**c, "evaluation_id": evaluation_id})
            for c in data.get("categories") or []
        ]
        criteria = [Criterion.model_validate(c) for c in data.get("criteria") or []]
    except PydanticValidationError as e:
        raise SnapshotError(f"Invalid snapshot: {e}") from e
    return evaluation, categories, criteria


def build_engine(data: dict[str, Any], config_path: str | None = None) -> EvaluationEngine:
    """Replay a snapshot into a fresh in-memory engine in the scoring phase.

    Scores are submitted in order, so disagreements are flagged for
    reconciliation exactly as they would be through the API.
    """
    evaluation, categories, criteria = _catalog_models(data)
    evaluation_id = evaluation.evaluation_id
    engine = EvaluationEngine(config=load_config(config_path))
    try:
        vendors = [
            Vendor.model_validate({**v, "evaluation_id": evaluation_id})
            for v in data.get("vendors") or []
        ]
        evaluators = [Evaluator.model_validate(e) for e in data.get("evaluators") or []]
        points = [DataPoint.model_validate(p) for p in data.get("vendor_data") or []]
    except PydanticValidationError as e:
        raise SnapshotError(f"Invalid snapshot: {e}") from e

    engine.create_evaluation(evaluation)
    for category in categories:
        engine.add_category(category)
    for criterion in criteria:
        engine.add_criterion(criterion)
    for vendor in vendors:
        engine.add_vendor(vendor)
    for evaluator in evaluators:
        engine.add_evaluator(evaluator)
    for score in data.get("scores") or []:
        engine.submit_score(
            evaluation_id,
            score["vendor_id"],
            score["criterion_id"],
            score["evaluator_id"],
            score["value"],
            score.get("rationale", ""),
            status=score.get("status", "submitted"),
        )
    if points:
        engine.record_vendor_data(evaluation_id, points)
    return engine


def cmd_validate_weights(args: argparse.Namespace) -> int:
    """Check every weight set of the snapshot.

    Exit codes:
        0: all weight sets total 100
        2: at least one mismatch
    """
    data = load_snapshot(args.input)
    config = load_config(args.config)
    _, categories, criteria = _catalog_models(data)
    checks = validate_all(categories, criteria, tolerance=config.weight_tolerance)
    _output_json(
        {
            "checks": [
                {
                    "scope": check.scope,
                    "parent_id": check.parent_id,
                    "total": check.total,
                    "ok": check.ok,
                    "message": check.mismatch.message if check.mismatch else None,
                }
                for check in checks
            ],
            "pass": all(check.ok for check in checks),
        }
    )
    return 0 if all(check.ok for check in checks) else 2


def cmd_rank(args: argparse.Namespace) -> int:
    data = load_snapshot(args.input)
    engine = build_engine(data, args.config)
    ranking = engine.get_vendor_ranking(data["evaluation"]["evaluation_id"])
    _output_json(ranking.model_dump(mode="json"))
    return 0


def cmd_anomalies(args: argparse.Namespace) -> int:
    data = load_snapshot(args.input)
    engine = build_engine(data, args.config)
    report = engine.detect_anomalies(
        data["evaluation"]["evaluation_id"], include_scores=args.include_scores
    )
    _output_json(
        report.model_dump(mode="json", exclude={"anomalies": {"__all__": {"detected_at"}}})
    )
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="vendoreval",
        description="vendoreval - weighted multi-evaluator scoring CLI",
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    for name, help_text in [
        ("validate-weights", "Check that every weight set totals 100"),
        ("rank", "Rank the snapshot's vendors by weighted total"),
        ("anomalies", "Detect price, schedule and score outliers"),
    ]:
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument(
            "--input",
            required=True,
            metavar="PATH",
            help="Path to a JSON or YAML evaluation snapshot",
        )
        sub.add_argument(
            "--config",
            default=None,
            metavar="PATH",
            help="Engine config YAML (defaults to VENDOREVAL_CONFIG_PATH)",
        )
        if name == "anomalies":
            sub.add_argument(
                "--no-scores",
                dest="include_scores",
                action="store_false",
                help="Only analyse vendor_data, not vendor totals",
            )

    return parser


COMMANDS = {
    "validate-weights": cmd_validate_weights,
    "rank": cmd_rank,
    "anomalies": cmd_anomalies,
}


def main(argv: list[str] | None = None) -> int:
    """Main entry point.

    Exit codes:
        0: Success
        1: Internal error (unexpected)
        2: Invalid snapshot, invalid config, weight mismatch or engine error
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    try:
        return COMMANDS[args.command](args)
    except SnapshotError as e:
        _output_json(_error_result("INVALID_SNAPSHOT", str(e)))
        return 2
    except ConfigError as e:
        _output_json(_error_result("INVALID_CONFIG", str(e)))
        return 2
    except EngineError as e:
        _output_json(_error_result(e.code, e.message, e.details))
        return 2
    except Exception as e:
        _output_json(_error_result("INTERNAL_ERROR", str(e)))
        return 1


if __name__ == "__main__":
    sys.exit(main())
