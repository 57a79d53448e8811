"""Unified error hierarchy for the deployment lifecycle core.

All domain errors inherit from LifecycleError. Business-rule rejections
(illegal transitions, terminal states, missing invariants) are returned as
structured results by the guard and the status service; the exceptions below
cover faults and the HTTP translation of those results.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence


class LifecycleError(Exception):
    """Base error for all deployment lifecycle exceptions."""

    def __init__(self, message: str, code: str = "LIFECYCLE_ERROR") -> None:
        self.code = code
        super().__init__(message)


# -- Port errors (raised by Port implementations) --


class StoreUnavailableError(LifecycleError):
    """The deployment record store is temporarily unavailable."""

    def __init__(self, store_name: str, message: str = "") -> None:
        self.store_name = store_name
        super().__init__(
            message or f"Store {store_name} is unavailable",
            code="STORE_UNAVAILABLE",
        )


# -- Domain errors --


class NotFoundError(LifecycleError):
    """Requested resource not found."""

    def __init__(self, resource_type: str, resource_id: str) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(
            f"{resource_type} not found: {resource_id}",
            code="NOT_FOUND",
        )


class ConflictError(LifecycleError):
    """Resource state conflict (duplicate id, rejected transition, etc.)."""

    def __init__(self, message: str, code: str = "CONFLICT") -> None:
        super().__init__(message, code=code)


class TransitionRejectedError(ConflictError):
    """A status transition was refused by the state transition guard.

    Raised only at the HTTP boundary to carry the guard's verdict to the
    client; the service itself returns the verdict as a result.
    """

    def __init__(
        self,
        reason_code: str,
        message: str,
        valid_alternatives: Sequence[str] = (),
        violated_invariants: Sequence[str] = (),
    ) -> None:
        self.reason_code = reason_code
        self.valid_alternatives = list(valid_alternatives)
        self.violated_invariants = list(violated_invariants)
        super().__init__(message, code=reason_code)


class ConcurrentModificationError(ConflictError):
    """The stored status changed between read and write (another writer won)."""

    def __init__(
        self,
        deployment_id: str,
        expected_status: str,
        actual_status: str,
    ) -> None:
        self.deployment_id = deployment_id
        self.expected_status = expected_status
        self.actual_status = actual_status
        super().__init__(
            f"Deployment {deployment_id} moved from {expected_status} to {actual_status}"
            " before this update was written",
            code="CONCURRENT_MODIFICATION",
        )


class ValidationError(LifecycleError):
    """Input validation failed."""

    def __init__(self, message: str, field: str = "") -> None:
        self.field = field
        super().__init__(message, code="VALIDATION")


__all__ = [
    "ConcurrentModificationError",
    "ConflictError",
    "LifecycleError",
    "NotFoundError",
    "StoreUnavailableError",
    "TransitionRejectedError",
    "ValidationError",
]
