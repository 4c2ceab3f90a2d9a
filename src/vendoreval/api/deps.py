"""Shared FastAPI dependencies."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request

from vendoreval.engine import EvaluationEngine


def get_evaluation_engine(request: Request) -> EvaluationEngine:
    """Return the engine the app was created with."""
    engine: EvaluationEngine = request.app.state.engine
    return engine


EngineDep = Annotated[EvaluationEngine, Depends(get_evaluation_engine)]
