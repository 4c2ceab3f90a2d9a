"""Evaluator-variance reconciliation."""

from vendoreval.reconciliation.coordinator import ReconciliationCoordinator

__all__ = ["ReconciliationCoordinator"]
