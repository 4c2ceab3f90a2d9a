"""Error taxonomy for the scoring engine.

Every rejected operation surfaces one of these with the specific rule that
was violated. Expected "no result" outcomes (anomaly abstention, unresolved
reconciliation) are typed results and never raised.

- ValidationError: out-of-range value, missing rationale, malformed weight
- LockedError: mutation against a locked scope
- WeightMismatchError: weights do not sum to 100 (carries the actual total)
- InsufficientDataError: strict callers asking for a result that abstained
- ConcurrencyConflictError: optimistic version mismatch, caller must refetch
"""

from __future__ import annotations

from typing import Any


class EngineError(Exception):
    """Base exception for all engine errors."""

    code = "ENGINE_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(EngineError):
    """Raised when input violates a user-correctable rule."""

    code = "VALIDATION_ERROR"


class LockedError(EngineError):
    """Raised when a mutation targets a locked scope or a superseded score."""

    code = "LOCKED"

    def __init__(
        self,
        message: str,
        *,
        scope_type: str | None = None,
        scope_id: str | None = None,
    ) -> None:
        super().__init__(message, {"scope_type": scope_type, "scope_id": scope_id})
        self.scope_type = scope_type
        self.scope_id = scope_id


class WeightMismatchError(EngineError):
    """Weights do not sum to 100 within tolerance.

    Returned by the weight validator and raised when a phase transition is
    attempted with a mismatched configuration.
    """

    code = "WEIGHT_MISMATCH"

    def __init__(self, total: float, *, scope: str = "Category", parent_id: str | None = None):
        self.total = total
        self.scope = scope
        self.parent_id = parent_id
        label = f"{scope} weights" if parent_id is None else f"{scope} weights in {parent_id}"
        super().__init__(
            f"{label} total {total:g}% — must equal 100%",
            {"total": total, "scope": scope, "parent_id": parent_id},
        )


class InsufficientDataError(EngineError):
    """Raised only when a caller converts an abstain result into a hard failure."""

    code = "INSUFFICIENT_DATA"


class ConcurrencyConflictError(EngineError):
    """Raised when the caller's last-seen version is stale."""

    code = "CONCURRENCY_CONFLICT"

    def __init__(self, message: str, *, expected: int | None, actual: int | None) -> None:
        super().__init__(message, {"expected_version": expected, "actual_version": actual})
        self.expected = expected
        self.actual = actual


class NotFoundError(EngineError):
    """Raised when a referenced entity does not exist."""

    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} {entity_id} not found", {"entity": entity, "id": entity_id})
        self.entity = entity
        self.entity_id = entity_id


class InvalidStateTransitionError(EngineError):
    """Raised when a workflow transition is not allowed from the current state."""

    code = "INVALID_STATE_TRANSITION"

    def __init__(self, entity: str, current: str, target: str) -> None:
        super().__init__(
            f"{entity} cannot transition from {current} to {target}",
            {"entity": entity, "current": current, "target": target},
        )
        self.current = current
        self.target = target


class PermissionDeniedError(EngineError):
    """Raised when an actor lacks the role required for an action."""

    code = "PERMISSION_DENIED"


class OperationCancelledError(EngineError):
    """Raised when a cooperative cancellation token is set mid-computation."""

    code = "CANCELLED"
