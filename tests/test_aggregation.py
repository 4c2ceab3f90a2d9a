"""Tests for aggregation and ranking.

Tests cover:
1. Weighted roll-up with locked consensus superseding evaluator scores
2. Unscored and unresolved criteria contribute zero but keep their weight
3. Mean versus median combination
4. Deterministic tie-breaking
5. Version-keyed caching and cooperative cancellation
6. Randomised submissions, consensus and deadlines keep values on the scale
"""

from __future__ import annotations

import random
from datetime import timedelta

import pytest

from tests.fixtures.evaluation import EVALUATION_ID, START, ManualClock, setup_evaluation, submit
from vendoreval.cancellation import CancellationToken
from vendoreval.config import EngineConfig
from vendoreval.engine import EvaluationEngine
from vendoreval.errors import OperationCancelledError
from vendoreval.models.aggregation import CriterionStatus, TieBreak
from vendoreval.models.evaluation import Vendor, VendorStatus


def _score_all(engine: EvaluationEngine, vendor_id: str, a: float, b: float, c: float) -> None:
    submit(engine, vendor_id, "A", "e1", a)
    submit(engine, vendor_id, "B", "e1", b)
    submit(engine, vendor_id, "C", "e1", c)


def _locked_consensus_engine(engine: EvaluationEngine) -> EvaluationEngine:
    """e1 and e2 disagree on A and agree on 3 through reconciliation."""
    submit(engine, "v1", "A", "e1", 4)
    submit(engine, "v1", "A", "e2", 2)
    for evaluator_id in ("e1", "e2"):
        submit(engine, "v1", "B", evaluator_id, 3)
        submit(engine, "v1", "C", evaluator_id, 5)
    (item,) = engine.list_reconciliation_items(EVALUATION_ID)
    engine.propose_consensus(item.item_id, "e1", 3, "Agreed after the workflow demo")
    engine.accept_consensus(item.item_id, "e2")
    return engine


class TestWeightedTotals:
    def test_locked_consensus_drives_vendor_total(self, scoring_engine: EvaluationEngine) -> None:
        engine = _locked_consensus_engine(scoring_engine)

        breakdown = engine.get_category_breakdown("v1")

        assert breakdown.total == pytest.approx(3.8)
        functional = breakdown.category("functional")
        assert functional is not None
        assert functional.score == pytest.approx(3.0)
        a_result = functional.criteria[0]
        assert a_result.criterion_id == "A"
        assert a_result.status == CriterionStatus.CONSENSUS
        assert a_result.value == 3.0
        assert a_result.submitted_count == 2

    def test_ranking_reports_display_total(self, scoring_engine: EvaluationEngine) -> None:
        engine = _locked_consensus_engine(scoring_engine)

        ranking = engine.get_vendor_ranking(EVALUATION_ID)

        (row,) = ranking.vendors
        assert row.rank == 1
        assert row.display_total == 3.8
        assert row.complete
        assert ranking.top_category_id == "functional"

    def test_mean_of_submitted_scores_without_consensus(
        self, scoring_engine: EvaluationEngine
    ) -> None:
        submit(scoring_engine, "v1", "C", "e1", 4)
        submit(scoring_engine, "v1", "C", "e2", 4.5)

        result = scoring_engine.aggregation.criterion_score(EVALUATION_ID, "v1", "C")

        assert result.status == CriterionStatus.SCORED
        assert result.value == pytest.approx(4.25)

    def test_drafts_do_not_count(self, scoring_engine: EvaluationEngine) -> None:
        scoring_engine.submit_score(EVALUATION_ID, "v1", "C", "e1", 5, "", status="draft")

        result = scoring_engine.aggregation.criterion_score(EVALUATION_ID, "v1", "C")

        assert result.status == CriterionStatus.UNSCORED

    def test_unscored_criteria_keep_their_weight(self, scoring_engine: EvaluationEngine) -> None:
        submit(scoring_engine, "v1", "A", "e1", 5)

        breakdown = scoring_engine.get_category_breakdown("v1")

        # 5 x 70% x 60%
        assert breakdown.total == pytest.approx(2.1)
        assert breakdown.unscored_criteria == ("B", "C")
        assert not breakdown.complete

    def test_unresolved_criterion_contributes_zero(
        self, scoring_engine: EvaluationEngine, clock: ManualClock
    ) -> None:
        submit(scoring_engine, "v1", "A", "e1", 5)
        submit(scoring_engine, "v1", "A", "e2", 1)
        clock.advance(hours=73)
        scoring_engine.check_reconciliation_deadlines()

        result = scoring_engine.aggregation.criterion_score(EVALUATION_ID, "v1", "A")
        breakdown = scoring_engine.get_category_breakdown("v1")

        assert result.status == CriterionStatus.UNRESOLVED
        assert result.value == 0.0
        assert breakdown.unresolved_criteria == ("A",)

    def test_median_combination(self, clock: ManualClock) -> None:
        engine = EvaluationEngine(
            config=EngineConfig(combination="median", variance_threshold=5), clock=clock
        )
        setup_evaluation(engine)
        for evaluator_id, value in (("e1", 1), ("e2", 4), ("e3", 5)):
            submit(engine, "v1", "C", evaluator_id, value)

        result = engine.aggregation.criterion_score(EVALUATION_ID, "v1", "C")

        assert result.value == 4.0

    def test_round_for_display_is_half_up(self, scoring_engine: EvaluationEngine) -> None:
        assert scoring_engine.aggregation.round_for_display(2.675) == 2.68
        assert scoring_engine.aggregation.round_for_display(2.665, 1) == 2.7


class TestRanking:
    def test_higher_total_ranks_first(self, engine: EvaluationEngine) -> None:
        setup_evaluation(engine, vendors=("v1", "v2"))
        _score_all(engine, "v1", 3, 3, 3)
        _score_all(engine, "v2", 4, 4, 4)

        ranking = engine.get_vendor_ranking(EVALUATION_ID)

        assert [r.vendor_id for r in ranking.vendors] == ["v2", "v1"]
        assert [r.rank for r in ranking.vendors] == [1, 2]
        assert ranking.vendors[1].tie_break is None

    def test_tie_broken_by_top_weighted_category(self, engine: EvaluationEngine) -> None:
        setup_evaluation(engine, vendors=("v1", "v2"))
        _score_all(engine, "v1", 2.5, 2.5, 3.75)
        _score_all(engine, "v2", 5, 5, 0)

        ranking = engine.get_vendor_ranking(EVALUATION_ID)

        assert [r.vendor_id for r in ranking.vendors] == ["v2", "v1"]
        assert ranking.vendors[0].total == pytest.approx(ranking.vendors[1].total)
        assert ranking.vendors[1].tie_break == TieBreak.TOP_CATEGORY

    def test_tie_broken_by_creation_time(self, engine: EvaluationEngine) -> None:
        setup_evaluation(engine, vendors=("v2", "v1"))
        _score_all(engine, "v1", 4, 4, 4)
        _score_all(engine, "v2", 4, 4, 4)

        ranking = engine.get_vendor_ranking(EVALUATION_ID)

        # v2 was created first
        assert [r.vendor_id for r in ranking.vendors] == ["v2", "v1"]
        assert ranking.vendors[1].tie_break == TieBreak.CREATED_AT

    def test_tie_broken_by_vendor_id(self, engine: EvaluationEngine) -> None:
        setup_evaluation(engine, vendors=())
        for vendor_id in ("vb", "va"):
            engine.add_vendor(
                Vendor(
                    vendor_id=vendor_id,
                    evaluation_id=EVALUATION_ID,
                    name=vendor_id,
                    created_at=START + timedelta(days=3),
                )
            )

        ranking = engine.get_vendor_ranking(EVALUATION_ID)

        assert [r.vendor_id for r in ranking.vendors] == ["va", "vb"]
        assert ranking.vendors[1].tie_break == TieBreak.VENDOR_ID

    def test_inactive_vendors_are_not_ranked(self, engine: EvaluationEngine) -> None:
        setup_evaluation(engine)
        engine.add_vendor(
            Vendor(
                vendor_id="gone",
                evaluation_id=EVALUATION_ID,
                name="Withdrawn",
                status=VendorStatus.WITHDRAWN,
            )
        )

        ranking = engine.get_vendor_ranking(EVALUATION_ID)

        assert [r.vendor_id for r in ranking.vendors] == ["v1"]

    def test_ranking_is_repeatable(self, engine: EvaluationEngine) -> None:
        setup_evaluation(engine, vendors=("v1", "v2", "v3"))
        for vendor_id in ("v1", "v2", "v3"):
            _score_all(engine, vendor_id, 3, 3, 3)

        first = engine.get_vendor_ranking(EVALUATION_ID)
        engine.cache.clear()
        second = engine.get_vendor_ranking(EVALUATION_ID)

        assert first == second


class TestCachingAndCancellation:
    def test_repeat_read_is_served_from_cache(self, scoring_engine: EvaluationEngine) -> None:
        submit(scoring_engine, "v1", "A", "e1", 3)

        first = scoring_engine.get_vendor_ranking(EVALUATION_ID)
        hits = scoring_engine.cache.hits
        second = scoring_engine.get_vendor_ranking(EVALUATION_ID)

        assert second is first
        assert scoring_engine.cache.hits == hits + 1

    def test_score_write_invalidates_cached_ranking(
        self, scoring_engine: EvaluationEngine
    ) -> None:
        submit(scoring_engine, "v1", "A", "e1", 3)
        before = scoring_engine.get_vendor_ranking(EVALUATION_ID)

        submit(scoring_engine, "v1", "C", "e1", 5)
        after = scoring_engine.get_vendor_ranking(EVALUATION_ID)

        assert after.version > before.version
        assert after.vendors[0].total > before.vendors[0].total

    def test_weight_change_invalidates_cached_ranking(
        self, scoring_engine: EvaluationEngine
    ) -> None:
        _score_all(scoring_engine, "v1", 5, 0, 0)
        before = scoring_engine.get_vendor_ranking(EVALUATION_ID).vendors[0].total

        scoring_engine.recalculate_weights(
            EVALUATION_ID, "A", 100, "lead", policy="auto_redistribute"
        )
        after = scoring_engine.get_vendor_ranking(EVALUATION_ID).vendors[0].total

        assert before == pytest.approx(2.1)
        assert after == pytest.approx(3.0)

    def test_cancelled_token_stops_ranking(self, scoring_engine: EvaluationEngine) -> None:
        token = CancellationToken()
        token.cancel("user navigated away")

        with pytest.raises(OperationCancelledError) as exc_info:
            scoring_engine.get_vendor_ranking(EVALUATION_ID, token=token)

        assert exc_info.value.message == "user navigated away"


def _random_reconciliation(
    engine: EvaluationEngine, rng: random.Random, low: float, high: float
) -> None:
    for item in engine.list_reconciliation_items(EVALUATION_ID):
        outcome = rng.choice(["agree", "override", "leave"])
        value = round(rng.uniform(low, high), 1)
        if outcome == "agree":
            proposer, *others = item.contributing_evaluator_ids
            engine.propose_consensus(item.item_id, proposer, value, "Agreed in workshop")
            for evaluator_id in others:
                engine.accept_consensus(item.item_id, evaluator_id)
        elif outcome == "override":
            engine.override_consensus(
                item.item_id, "lead", value, "Set at steering committee", "No agreement"
            )


class TestAggregationProperties:
    def test_criterion_values_stay_on_scale_and_totals_are_stable(self) -> None:
        rng = random.Random(20260302)
        vendors = ("v1", "v2", "v3")
        for _ in range(25):
            low, high = rng.choice([(0.0, 5.0), (1.0, 10.0)])
            config = EngineConfig(
                scale_min=low, scale_max=high, combination=rng.choice(["mean", "median"])
            )
            clock = ManualClock()
            engine = EvaluationEngine(config=config, clock=clock)
            setup_evaluation(engine, vendors=vendors)
            for vendor_id in vendors:
                for criterion_id in ("A", "B", "C"):
                    for evaluator_id in rng.sample(["e1", "e2", "e3"], rng.randint(0, 3)):
                        submit(
                            engine,
                            vendor_id,
                            criterion_id,
                            evaluator_id,
                            round(rng.uniform(low, high), 1),
                        )
            _random_reconciliation(engine, rng, low, high)
            if rng.random() < 0.5:
                clock.advance(hours=config.reconciliation_window_hours)
                engine.check_reconciliation_deadlines()

            for vendor_id in vendors:
                for criterion_id in ("A", "B", "C"):
                    result = engine.aggregation.criterion_score(
                        EVALUATION_ID, vendor_id, criterion_id
                    )
                    if result.status in (CriterionStatus.SCORED, CriterionStatus.CONSENSUS):
                        assert low <= result.value <= high
                    else:
                        assert result.value == 0
                first = engine.aggregation.vendor_total(EVALUATION_ID, vendor_id)
                engine.aggregation.cache.clear()
                second = engine.aggregation.vendor_total(EVALUATION_ID, vendor_id)
                assert first == second
                assert 0 <= first.total <= high
