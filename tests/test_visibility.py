"""Tests for blind-scoring visibility."""

from __future__ import annotations

import pytest

from tests.fixtures.evaluation import EVALUATION_ID, setup_evaluation, submit
from vendoreval.engine import EvaluationEngine
from vendoreval.errors import InvalidStateTransitionError
from vendoreval.models.evaluation import EvaluationPhase, Evaluator, Role
from vendoreval.models.score import Score, ScoreStatus
from vendoreval.visibility.policy import PhaseTracker, VisibilityPolicy, VisibilityReason


def _score(evaluator_id: str, status: ScoreStatus = ScoreStatus.SUBMITTED) -> Score:
    return Score(
        score_id=f"s-{evaluator_id}",
        evaluation_id="ev",
        vendor_id="v1",
        criterion_id="A",
        evaluator_id=evaluator_id,
        value=3,
        rationale="r",
        status=status,
    )


def _viewers(engine: EvaluationEngine, viewer_id: str) -> set[str]:
    return {s.evaluator_id for s in engine.get_scores(EVALUATION_ID, viewer_id)}


class TestBlindScoring:
    def test_evaluator_sees_only_own_score_before_submitting(
        self, scoring_engine: EvaluationEngine
    ) -> None:
        submit(scoring_engine, "v1", "A", "e1", 4)
        scoring_engine.submit_score(
            EVALUATION_ID, "v1", "A", "e2", 2, "draft", status=ScoreStatus.DRAFT
        )

        assert _viewers(scoring_engine, "e2") == {"e2"}
        assert _viewers(scoring_engine, "e3") == set()

    def test_peer_scores_revealed_after_own_submission(
        self, scoring_engine: EvaluationEngine
    ) -> None:
        submit(scoring_engine, "v1", "A", "e1", 4)
        submit(scoring_engine, "v1", "A", "e2", 2)

        assert _viewers(scoring_engine, "e2") == {"e1", "e2"}

    def test_reveal_is_per_vendor_and_criterion(self, scoring_engine: EvaluationEngine) -> None:
        submit(scoring_engine, "v1", "A", "e1", 4)
        submit(scoring_engine, "v1", "B", "e1", 4)
        submit(scoring_engine, "v1", "A", "e2", 2)

        visible = {
            (s.evaluator_id, s.criterion_id)
            for s in scoring_engine.get_scores(EVALUATION_ID, "e2")
        }

        assert visible == {("e1", "A"), ("e2", "A")}

    def test_drafts_stay_private_even_to_leads(self, scoring_engine: EvaluationEngine) -> None:
        scoring_engine.submit_score(
            EVALUATION_ID, "v1", "A", "e1", 4, "", status=ScoreStatus.DRAFT
        )

        assert _viewers(scoring_engine, "lead") == set()

    def test_leads_and_admins_see_all_submissions(
        self, scoring_engine: EvaluationEngine
    ) -> None:
        submit(scoring_engine, "v1", "A", "e1", 4)
        submit(scoring_engine, "v1", "C", "e2", 1)

        assert _viewers(scoring_engine, "lead") == {"e1", "e2"}
        assert _viewers(scoring_engine, "admin") == {"e1", "e2"}

    def test_observer_sees_nothing_until_reveal(self, scoring_engine: EvaluationEngine) -> None:
        submit(scoring_engine, "v1", "A", "e1", 4)

        assert _viewers(scoring_engine, "obs") == set()

        scoring_engine.advance_phase(EVALUATION_ID, EvaluationPhase.RECONCILIATION, "lead")

        assert _viewers(scoring_engine, "obs") == {"e1"}

    def test_blind_mode_off_shows_submissions(self, engine: EvaluationEngine) -> None:
        setup_evaluation(engine, blind_mode=False)
        submit(engine, "v1", "A", "e1", 4)

        assert _viewers(engine, "e3") == {"e1"}


class TestMonotonicity:
    def test_shown_score_stays_visible(self) -> None:
        policy = VisibilityPolicy()
        viewer = Evaluator(evaluator_id="e2")
        score = _score("e1")

        first = policy.decide(viewer, score, EvaluationPhase.SCORING, blind_mode=False)
        again = policy.decide(viewer, score, EvaluationPhase.SCORING, blind_mode=True)

        assert first.reason == VisibilityReason.BLIND_MODE_OFF
        assert again.allow
        assert again.reason == VisibilityReason.PREVIOUSLY_SHOWN

    def test_stale_phase_does_not_hide_revealed_scores(self) -> None:
        policy = VisibilityPolicy()
        viewer = Evaluator(evaluator_id="obs", roles=frozenset({Role.OBSERVER}))
        other = _score("e3")

        policy.decide(viewer, _score("e1"), EvaluationPhase.RECONCILIATION, blind_mode=True)
        decision = policy.decide(viewer, other, EvaluationPhase.SCORING, blind_mode=True)

        assert decision.allow
        assert decision.reason == VisibilityReason.REVEALED

    def test_owner_always_sees_own_draft(self) -> None:
        policy = VisibilityPolicy()
        viewer = Evaluator(evaluator_id="e1")

        decision = policy.decide(
            viewer, _score("e1", ScoreStatus.DRAFT), EvaluationPhase.SCORING, blind_mode=True
        )

        assert decision.reason == VisibilityReason.OWNER


class TestPhaseTracker:
    def test_phases_only_move_forward(self) -> None:
        tracker = PhaseTracker()
        tracker.advance("ev", EvaluationPhase.SCORING)
        tracker.advance("ev", EvaluationPhase.RECONCILIATION)

        with pytest.raises(InvalidStateTransitionError):
            tracker.advance("ev", EvaluationPhase.SCORING)

    def test_observe_keeps_furthest_phase(self) -> None:
        tracker = PhaseTracker()
        tracker.observe("ev", EvaluationPhase.SUBMITTED)

        assert tracker.observe("ev", EvaluationPhase.SCORING) == EvaluationPhase.SUBMITTED
        assert tracker.current("ev") == EvaluationPhase.SUBMITTED
