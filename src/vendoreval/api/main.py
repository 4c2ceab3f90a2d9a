"""vendoreval API application factory."""

from __future__ import annotations

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError

from vendoreval.api.errors import (
    engine_error_handler,
    generic_exception_handler,
    http_exception_handler,
    request_validation_error_handler,
)
from vendoreval.api.middleware import RequestIdMiddleware
from vendoreval.api.routes.anomalies import router as anomalies_router
from vendoreval.api.routes.evaluations import router as evaluations_router
from vendoreval.api.routes.health import VENDOREVAL_VERSION
from vendoreval.api.routes.health import router as health_router
from vendoreval.api.routes.reconciliation import router as reconciliation_router
from vendoreval.api.routes.scores import router as scores_router
from vendoreval.api.routes.traceability import router as traceability_router
from vendoreval.engine import EvaluationEngine, build_engine_from_env
from vendoreval.errors import EngineError


def create_app(engine: EvaluationEngine | None = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        engine: Engine to serve. If None, one is built from environment
            configuration (see build_engine_from_env).

    Returns:
        Configured FastAPI application with /health and the /v1 routers.
    """
    app = FastAPI(
        title="vendoreval API",
        description="Weighted multi-evaluator scoring and aggregation",
        version=VENDOREVAL_VERSION,
    )
    app.state.engine = engine if engine is not None else build_engine_from_env()

    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(EngineError, engine_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    app.include_router(health_router)
    app.include_router(evaluations_router)
    app.include_router(scores_router)
    app.include_router(reconciliation_router)
    app.include_router(anomalies_router)
    app.include_router(traceability_router)

    return app
