"""Blind-scoring visibility policy.

Deny by default. Rules, first match wins:

- drafts are visible only to their owner
- owners always see their own scores
- a score once shown to a viewer stays visible to that viewer
- lead and admin see every submitted score
- from reconciliation onwards every submitted score is revealed
- with blind mode off, evaluators see every submitted score
- with blind mode on, an evaluator sees the submitted scores of a
  (vendor, criterion) once they have submitted their own score for it

Decisions are monotonic. Phases only move forward (PhaseTracker keeps the
furthest phase seen per evaluation) and every positive decision is
remembered, so adding criteria or evaluators, or switching blind mode
back on, never hides a score a viewer has already been shown.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import StrEnum

from vendoreval.errors import InvalidStateTransitionError
from vendoreval.models.evaluation import EvaluationPhase, Evaluator, Role, phase_index
from vendoreval.models.score import Score

logger = logging.getLogger(__name__)

REVEAL_PHASE = EvaluationPhase.RECONCILIATION


class VisibilityReason(StrEnum):
    """Why a score was shown or hidden."""

    OWNER = "owner"
    PREVIOUSLY_SHOWN = "previously_shown"
    PRIVILEGED = "privileged"
    REVEALED = "revealed"
    BLIND_MODE_OFF = "blind_mode_off"
    PEER_AFTER_OWN_SUBMISSION = "peer_after_own_submission"
    DRAFT_PRIVATE = "draft_private"
    BLIND_HIDDEN = "blind_hidden"


@dataclass(frozen=True, slots=True)
class VisibilityDecision:
    """Result of a visibility check."""

    allow: bool
    reason: VisibilityReason


class PhaseTracker:
    """Furthest phase reached per evaluation. Never moves backwards."""

    def __init__(self) -> None:
        self._phases: dict[str, EvaluationPhase] = {}
        self._lock = threading.Lock()

    def current(self, evaluation_id: str) -> EvaluationPhase:
        with self._lock:
            return self._phases.get(evaluation_id, EvaluationPhase.SETUP)

    def observe(self, evaluation_id: str, phase: EvaluationPhase) -> EvaluationPhase:
        """Record phase if it is further along and return the furthest phase seen."""
        with self._lock:
            known = self._phases.get(evaluation_id, EvaluationPhase.SETUP)
            if phase_index(phase) > phase_index(known):
                self._phases[evaluation_id] = phase
                return phase
            return known

    def advance(self, evaluation_id: str, target: EvaluationPhase) -> EvaluationPhase:
        """Move to target.

        Raises:
            InvalidStateTransitionError: If target is not after the current phase.
        """
        with self._lock:
            known = self._phases.get(evaluation_id, EvaluationPhase.SETUP)
            if phase_index(target) <= phase_index(known):
                raise InvalidStateTransitionError("Evaluation", known.value, target.value)
            self._phases[evaluation_id] = target
        logger.info("Evaluation %s moved %s -> %s", evaluation_id, known.value, target.value)
        return target


class VisibilityPolicy:
    """Decides which evaluator scores a viewer may see."""

    def __init__(self, tracker: PhaseTracker | None = None) -> None:
        self._tracker = tracker or PhaseTracker()
        self._shown: set[tuple[str, str]] = set()
        self._lock = threading.Lock()

    @property
    def tracker(self) -> PhaseTracker:
        return self._tracker

    def decide(
        self,
        viewer: Evaluator,
        score: Score,
        phase: EvaluationPhase,
        blind_mode: bool,
        *,
        viewer_submitted_pairs: Iterable[tuple[str, str]] = (),
    ) -> VisibilityDecision:
        """Decide whether viewer may see score.

        Args:
            viewer: The evaluator asking.
            score: The score in question.
            phase: Current evaluation phase as the caller knows it.
            blind_mode: Whether blind scoring is enabled.
            viewer_submitted_pairs: (vendor_id, criterion_id) pairs the viewer
                has submitted their own score for.
        """
        if score.evaluator_id == viewer.evaluator_id:
            return VisibilityDecision(True, VisibilityReason.OWNER)
        if not score.is_submitted:
            return VisibilityDecision(False, VisibilityReason.DRAFT_PRIVATE)

        grant = (viewer.evaluator_id, score.score_id)
        with self._lock:
            if grant in self._shown:
                return VisibilityDecision(True, VisibilityReason.PREVIOUSLY_SHOWN)

        effective = self._tracker.observe(score.evaluation_id, phase)
        decision = self._evaluate(viewer, score, effective, blind_mode, viewer_submitted_pairs)
        if decision.allow:
            with self._lock:
                self._shown.add(grant)
        return decision

    def can_view(
        self,
        viewer: Evaluator,
        score: Score,
        phase: EvaluationPhase,
        blind_mode: bool,
        *,
        viewer_submitted_pairs: Iterable[tuple[str, str]] = (),
    ) -> bool:
        return self.decide(
            viewer, score, phase, blind_mode, viewer_submitted_pairs=viewer_submitted_pairs
        ).allow

    def visible_scores(
        self,
        viewer: Evaluator,
        scores: Sequence[Score],
        phase: EvaluationPhase,
        blind_mode: bool,
    ) -> list[Score]:
        """Filter scores down to what viewer may see.

        The viewer's own submissions are read from the same list, so pass
        every score of the (vendor, criterion) pairs being shown.
        """
        own_pairs = {
            (s.vendor_id, s.criterion_id)
            for s in scores
            if s.evaluator_id == viewer.evaluator_id and s.is_submitted
        }
        return [
            s
            for s in scores
            if self.can_view(viewer, s, phase, blind_mode, viewer_submitted_pairs=own_pairs)
        ]

    def _evaluate(
        self,
        viewer: Evaluator,
        score: Score,
        phase: EvaluationPhase,
        blind_mode: bool,
        viewer_submitted_pairs: Iterable[tuple[str, str]],
    ) -> VisibilityDecision:
        if viewer.is_privileged:
            return VisibilityDecision(True, VisibilityReason.PRIVILEGED)
        if phase_index(phase) >= phase_index(REVEAL_PHASE):
            return VisibilityDecision(True, VisibilityReason.REVEALED)
        if Role.EVALUATOR not in viewer.roles:
            return VisibilityDecision(False, VisibilityReason.BLIND_HIDDEN)
        if not blind_mode:
            return VisibilityDecision(True, VisibilityReason.BLIND_MODE_OFF)
        if (score.vendor_id, score.criterion_id) in set(viewer_submitted_pairs):
            return VisibilityDecision(True, VisibilityReason.PEER_AFTER_OWN_SUBMISSION)
        return VisibilityDecision(False, VisibilityReason.BLIND_HIDDEN)
