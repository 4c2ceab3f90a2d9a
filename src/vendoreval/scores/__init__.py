"""Evaluator score submission with optimistic versioning."""

from vendoreval.scores.service import ScoreService, ScoringProgress

__all__ = ["ScoreService", "ScoringProgress"]
