"""Pytest configuration and fixtures for vendoreval tests.

This module provides common fixtures and configuration for all tests.
"""

from __future__ import annotations

import pytest

from tests.fixtures.evaluation import ManualClock, setup_evaluation
from vendoreval.audit.sink import AUDIT_LOG_PATH_ENV, InMemoryAuditSink
from vendoreval.config import CONFIG_PATH_ENV, EngineConfig
from vendoreval.engine import WEBHOOK_SECRET_ENV, WEBHOOK_URL_ENV, EvaluationEngine
from vendoreval.notifications.publisher import InMemoryNotificationPublisher
from vendoreval.persistence.db import VENDOREVAL_DATABASE_URL_ENV


@pytest.fixture(autouse=True)
def clear_engine_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep environment-driven wiring out of tests unless a test sets it."""
    for name in (
        VENDOREVAL_DATABASE_URL_ENV,
        AUDIT_LOG_PATH_ENV,
        WEBHOOK_URL_ENV,
        WEBHOOK_SECRET_ENV,
        CONFIG_PATH_ENV,
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def audit_sink() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def publisher() -> InMemoryNotificationPublisher:
    return InMemoryNotificationPublisher()


@pytest.fixture
def config() -> EngineConfig:
    return EngineConfig()


@pytest.fixture
def engine(
    config: EngineConfig,
    clock: ManualClock,
    audit_sink: InMemoryAuditSink,
    publisher: InMemoryNotificationPublisher,
) -> EvaluationEngine:
    return EvaluationEngine(
        config=config, audit_sink=audit_sink, publisher=publisher, clock=clock
    )


@pytest.fixture
def scoring_engine(engine: EvaluationEngine) -> EvaluationEngine:
    """Reference evaluation in the scoring phase with one vendor, v1."""
    setup_evaluation(engine)
    return engine
