"""Persistence layer: score repositories and the evaluation catalog."""

from vendoreval.persistence.catalog import EvaluationCatalog
from vendoreval.persistence.repository import InMemoryScoreRepository, ScoreRepository
from vendoreval.persistence.sql_repository import SqlScoreRepository, create_schema

__all__ = [
    "EvaluationCatalog",
    "InMemoryScoreRepository",
    "ScoreRepository",
    "SqlScoreRepository",
    "create_schema",
]
