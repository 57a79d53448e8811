"""Shared domain types used across layers.

These types flow through Port interfaces and the gateway, and must remain
stable. Records are frozen: every mutation produces a new snapshot via
dataclasses.replace, so callers can never alter stored state by accident.
"""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4


def utcnow() -> datetime:
    return datetime.now(UTC)


# -- Deployment lifecycle --


class DeploymentStatus(enum.Enum):
    """Lifecycle states of a token deployment.

    QUEUED -> SUBMITTED -> PENDING -> CONFIRMED -> INDEXED -> COMPLETED
    Any non-terminal state may fail; FAILED may be re-queued.
    QUEUED -> CANCELLED (user-initiated).
    """

    QUEUED = "queued"
    SUBMITTED = "submitted"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    INDEXED = "indexed"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class TokenDeployment:
    """One deployment attempt, tracked from queueing to a terminal outcome."""

    deployment_id: str
    token_standard: str
    network: str
    current_status: DeploymentStatus = DeploymentStatus.QUEUED
    asset_name: str | None = None
    asset_symbol: str | None = None
    deployed_by: str | None = None
    correlation_id: str | None = None
    transaction_hash: str | None = None
    asset_identifier: str | None = None
    confirmed_round: int | None = None
    error_message: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class DeploymentStatusEntry:
    """Append-only history entry, one per accepted status change."""

    deployment_id: str
    status: DeploymentStatus
    message: str | None = None
    reason_code: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    transaction_hash: str | None = None
    confirmed_round: int | None = None
    error_message: str | None = None
    duration_from_previous_ms: int | None = None
    timestamp: datetime = field(default_factory=utcnow)
    entry_id: str = field(default_factory=lambda: str(uuid4()))


@dataclass(frozen=True)
class TransitionValidationResult:
    """Verdict of the state transition guard (not persisted)."""

    is_allowed: bool
    reason_code: str
    explanation: str = ""
    violated_invariants: tuple[str, ...] = ()
    valid_alternatives: tuple[DeploymentStatus, ...] = ()


@dataclass(frozen=True)
class StatusUpdateResult:
    """Outcome of a status service mutation.

    Truthiness mirrors `accepted`, so call sites may use it as a boolean.
    """

    accepted: bool
    reason_code: str
    explanation: str = ""
    deployment: TokenDeployment | None = None
    validation: TransitionValidationResult | None = None
    not_found: bool = False
    idempotent: bool = False

    def __bool__(self) -> bool:
        return self.accepted


# -- Listing --


@dataclass(frozen=True)
class DeploymentFilter:
    """Filter and pagination parameters for listing deployments.

    page is 1-based; page_size is clamped to 1..100 by `normalized()`.
    """

    network: str | None = None
    status: DeploymentStatus | None = None
    token_standard: str | None = None
    deployed_by: str | None = None
    from_date: datetime | None = None
    to_date: datetime | None = None
    page: int = 1
    page_size: int = 50

    def normalized(self) -> DeploymentFilter:
        page = self.page if self.page >= 1 else 1
        page_size = self.page_size if self.page_size >= 1 else 50
        page_size = min(page_size, 100)
        if page == self.page and page_size == self.page_size:
            return self
        return DeploymentFilter(
            network=self.network,
            status=self.status,
            token_standard=self.token_standard,
            deployed_by=self.deployed_by,
            from_date=self.from_date,
            to_date=self.to_date,
            page=page,
            page_size=page_size,
        )

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    def matches(self, deployment: TokenDeployment) -> bool:
        """Return True if the deployment satisfies every set criterion.

        String criteria compare case-insensitively.
        """
        if self.network and deployment.network.lower() != self.network.lower():
            return False
        if self.token_standard and (
            deployment.token_standard.lower() != self.token_standard.lower()
        ):
            return False
        if self.deployed_by and (deployment.deployed_by or "").lower() != self.deployed_by.lower():
            return False
        if self.status is not None and deployment.current_status != self.status:
            return False
        if self.from_date is not None and deployment.created_at < self.from_date:
            return False
        return not (self.to_date is not None and deployment.created_at > self.to_date)


@dataclass(frozen=True)
class DeploymentPage:
    """One page of deployments plus totals."""

    items: list[TokenDeployment]
    total_count: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return math.ceil(self.total_count / self.page_size)


# -- Retry classification --


class RetryPolicy(enum.Enum):
    """Whether and how a failed operation may be retried."""

    NOT_RETRYABLE = "not_retryable"
    RETRYABLE_IMMEDIATE = "retryable_immediate"
    RETRYABLE_WITH_DELAY = "retryable_with_delay"
    RETRYABLE_WITH_COOLDOWN = "retryable_with_cooldown"
    RETRYABLE_AFTER_REMEDIATION = "retryable_after_remediation"
    RETRYABLE_AFTER_CONFIGURATION = "retryable_after_configuration"


class DeploymentErrorCategory(enum.Enum):
    UNKNOWN = "unknown"
    NETWORK_ERROR = "network_error"
    VALIDATION_ERROR = "validation_error"
    COMPLIANCE_ERROR = "compliance_error"
    USER_REJECTION = "user_rejection"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    TRANSACTION_FAILURE = "transaction_failure"
    CONFIGURATION_ERROR = "configuration_error"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    INTERNAL_ERROR = "internal_error"


@dataclass(frozen=True)
class RetryDecision:
    """Classifier output (not persisted).

    max_retry_attempts of None or 0 means "do not auto-retry".
    """

    policy: RetryPolicy
    reason_code: str
    explanation: str
    max_retry_attempts: int | None = 0
    suggested_delay_seconds: int | None = None
    use_exponential_backoff: bool = False
    remediation_guidance: str | None = None

    @property
    def is_auto_retryable(self) -> bool:
        return bool(self.max_retry_attempts)


@dataclass(frozen=True)
class DeploymentError:
    """Structured failure details reported by the submission layer."""

    category: DeploymentErrorCategory
    error_code: str
    technical_message: str
    user_message: str
    is_retryable: bool = False
    suggested_retry_delay_seconds: int | None = None
    context: dict[str, Any] = field(default_factory=dict)


__all__ = [
    "DeploymentError",
    "DeploymentErrorCategory",
    "DeploymentFilter",
    "DeploymentPage",
    "DeploymentStatus",
    "DeploymentStatusEntry",
    "RetryDecision",
    "RetryPolicy",
    "StatusUpdateResult",
    "TokenDeployment",
    "TransitionValidationResult",
    "utcnow",
]
