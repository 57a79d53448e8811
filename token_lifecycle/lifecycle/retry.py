"""Retry policy classification for failed deployments.

- Error code -> RetryDecision via a deterministic lookup table
- Unrecognised codes fall back to the error category, then to a cautious
  backed-off retry (never fails closed)
- should_retry(): per-policy attempt cap AND a 10-minute window measured
  from the first attempt
- calculate_retry_delay(): base * 2**attempt with backoff, capped at 300s

Retries are decided here and executed by the caller; nothing in this module
sleeps or schedules work.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from token_lifecycle.shared.types import (
    DeploymentErrorCategory,
    RetryDecision,
    RetryPolicy,
)

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

# Automatic retry caps per policy
MAX_IMMEDIATE_RETRIES = 3
MAX_DELAY_RETRIES = 5
MAX_COOLDOWN_RETRIES = 3

# Base delays (seconds) used when no backoff is applied
BASE_DELAY_SECONDS = 10
BASE_COOLDOWN_SECONDS = 60
MAX_BACKOFF_SECONDS = 300

# Retry window measured from the first attempt
MAX_RETRY_DURATION_SECONDS = 600

_POLICY_MAX_ATTEMPTS: dict[RetryPolicy, int] = {
    RetryPolicy.NOT_RETRYABLE: 0,
    RetryPolicy.RETRYABLE_IMMEDIATE: MAX_IMMEDIATE_RETRIES,
    RetryPolicy.RETRYABLE_WITH_DELAY: MAX_DELAY_RETRIES,
    RetryPolicy.RETRYABLE_WITH_COOLDOWN: MAX_COOLDOWN_RETRIES,
    RetryPolicy.RETRYABLE_AFTER_REMEDIATION: 0,
    RetryPolicy.RETRYABLE_AFTER_CONFIGURATION: 0,
}

_BASE_DELAYS: dict[RetryPolicy, int] = {
    RetryPolicy.RETRYABLE_WITH_DELAY: BASE_DELAY_SECONDS,
    RetryPolicy.RETRYABLE_WITH_COOLDOWN: BASE_COOLDOWN_SECONDS,
}

# Policies that need a human or operator action before any retry
_BLOCKED_POLICIES = frozenset(
    {
        RetryPolicy.NOT_RETRYABLE,
        RetryPolicy.RETRYABLE_AFTER_REMEDIATION,
        RetryPolicy.RETRYABLE_AFTER_CONFIGURATION,
    }
)


# -- Decision builders --


def _not_retryable(explanation: str) -> RetryDecision:
    return RetryDecision(
        policy=RetryPolicy.NOT_RETRYABLE,
        reason_code="NOT_RETRYABLE",
        explanation=explanation,
        max_retry_attempts=0,
    )


def _with_delay(
    explanation: str,
    delay_seconds: int,
    max_retries: int,
    remediation_guidance: str | None = None,
) -> RetryDecision:
    return RetryDecision(
        policy=RetryPolicy.RETRYABLE_WITH_DELAY,
        reason_code="RETRYABLE_WITH_DELAY",
        explanation=explanation,
        max_retry_attempts=max_retries,
        suggested_delay_seconds=delay_seconds,
        use_exponential_backoff=True,
        remediation_guidance=remediation_guidance,
    )


def _with_cooldown(
    explanation: str,
    cooldown_seconds: int,
    max_retries: int,
    remediation_guidance: str | None = None,
) -> RetryDecision:
    return RetryDecision(
        policy=RetryPolicy.RETRYABLE_WITH_COOLDOWN,
        reason_code="RETRYABLE_WITH_COOLDOWN",
        explanation=explanation,
        max_retry_attempts=max_retries,
        suggested_delay_seconds=cooldown_seconds,
        remediation_guidance=remediation_guidance,
    )


def _after_remediation(explanation: str, remediation_guidance: str) -> RetryDecision:
    return RetryDecision(
        policy=RetryPolicy.RETRYABLE_AFTER_REMEDIATION,
        reason_code="RETRYABLE_AFTER_REMEDIATION",
        explanation=explanation,
        max_retry_attempts=0,
        remediation_guidance=remediation_guidance,
    )


def _after_configuration(explanation: str) -> RetryDecision:
    return RetryDecision(
        policy=RetryPolicy.RETRYABLE_AFTER_CONFIGURATION,
        reason_code="RETRYABLE_AFTER_CONFIGURATION",
        explanation=explanation,
        max_retry_attempts=0,
        remediation_guidance="Contact system administrator or support for assistance",
    )


_UNKNOWN_ERROR = RetryDecision(
    policy=RetryPolicy.RETRYABLE_WITH_DELAY,
    reason_code="UNKNOWN_ERROR",
    explanation="Unknown error - attempting cautious retry",
    max_retry_attempts=2,
    suggested_delay_seconds=30,
    use_exponential_backoff=True,
    remediation_guidance="If error persists, contact support",
)


ERROR_CODE_DECISIONS: dict[str, RetryDecision] = {
    # Validation errors
    "INVALID_REQUEST": _not_retryable("Invalid request parameters - user must correct inputs"),
    "MISSING_REQUIRED_FIELD": _not_retryable("Required field missing - user must provide value"),
    "INVALID_NETWORK": _not_retryable("Invalid network - user must select valid network"),
    "INVALID_TOKEN_PARAMETERS": _not_retryable(
        "Invalid token parameters - user must correct values"
    ),
    "METADATA_VALIDATION_FAILED": _not_retryable(
        "Metadata validation failed - user must fix metadata"
    ),
    "INVALID_TOKEN_STANDARD": _not_retryable(
        "Invalid token standard - user must select valid standard"
    ),
    # Authorization errors
    "UNAUTHORIZED": _not_retryable("Unauthorized - user must authenticate"),
    "FORBIDDEN": _not_retryable("Forbidden - user lacks permissions"),
    "INVALID_AUTH_TOKEN": _not_retryable("Invalid auth token - user must re-authenticate"),
    # Resource conflicts
    "ALREADY_EXISTS": _not_retryable(
        "Resource already exists - user must use different identifier"
    ),
    "CONFLICT": _not_retryable("Conflict detected - user must resolve conflict"),
    # Transient infrastructure errors
    "BLOCKCHAIN_CONNECTION_ERROR": _with_delay("Blockchain network temporarily unavailable", 30, 5),
    "IPFS_SERVICE_ERROR": _with_delay("IPFS service temporarily unavailable", 20, 4),
    "EXTERNAL_SERVICE_ERROR": _with_delay("External service temporarily unavailable", 15, 3),
    "TIMEOUT": _with_delay("Request timeout - retrying with backoff", 10, 4),
    # Transaction failures (may be congestion)
    "TRANSACTION_FAILED": _with_delay(
        "Transaction failed - may be due to network congestion", 45, 3
    ),
    "GAS_ESTIMATION_FAILED": _with_delay("Gas estimation failed - retrying", 20, 2),
    "TRANSACTION_REJECTED": _with_delay("Transaction rejected by network - retrying", 30, 3),
    # Rate limits and circuit breakers
    "CIRCUIT_BREAKER_OPEN": _with_cooldown("Circuit breaker open - service recovering", 120, 3),
    "RATE_LIMIT_EXCEEDED": _with_cooldown(
        "Rate limit exceeded - wait before retry",
        60,
        2,
        remediation_guidance="Wait 60 seconds or upgrade subscription tier",
    ),
    "SUBSCRIPTION_LIMIT_REACHED": _with_cooldown(
        "Subscription limit reached",
        300,
        1,
        remediation_guidance="Upgrade subscription tier or wait for quota reset",
    ),
    # User remediation required
    "INSUFFICIENT_FUNDS": _after_remediation(
        "Add funds to account before retry",
        "Add sufficient funds to your account to cover transaction fees",
    ),
    "KYC_REQUIRED": _after_remediation(
        "Complete KYC verification before retry",
        "Complete KYC verification in your account settings",
    ),
    "KYC_NOT_VERIFIED": _after_remediation(
        "Complete KYC verification before retry",
        "Your KYC verification is pending or incomplete",
    ),
    "FEATURE_NOT_AVAILABLE": _after_remediation(
        "Upgrade subscription tier",
        "This feature requires a higher subscription tier",
    ),
    "ENTITLEMENT_LIMIT_EXCEEDED": _after_remediation(
        "Upgrade subscription or wait for quota reset",
        "Upgrade to a higher tier or wait for your monthly quota to reset",
    ),
    # Operator configuration required
    "CONFIGURATION_ERROR": _after_configuration("System configuration error - contact support"),
    "PRICE_NOT_CONFIGURED": _after_configuration("Price configuration missing - contact support"),
}

_CATEGORY_RULES: dict[DeploymentErrorCategory, Callable[[], RetryDecision]] = {
    DeploymentErrorCategory.NETWORK_ERROR: lambda: _with_delay(
        "Network error - retrying with backoff", 20, 4
    ),
    DeploymentErrorCategory.VALIDATION_ERROR: lambda: _not_retryable(
        "Validation error - user must correct inputs"
    ),
    DeploymentErrorCategory.COMPLIANCE_ERROR: lambda: _not_retryable(
        "Compliance check failed - user must meet requirements"
    ),
    DeploymentErrorCategory.USER_REJECTION: lambda: _not_retryable("User cancelled operation"),
    DeploymentErrorCategory.INSUFFICIENT_FUNDS: lambda: _after_remediation(
        "Insufficient funds - add funds to account", "Add funds to your account"
    ),
    DeploymentErrorCategory.TRANSACTION_FAILURE: lambda: _with_delay(
        "Transaction failed - retrying", 30, 3
    ),
    DeploymentErrorCategory.CONFIGURATION_ERROR: lambda: _after_configuration(
        "Configuration error - contact support"
    ),
    DeploymentErrorCategory.RATE_LIMIT_EXCEEDED: lambda: _with_cooldown(
        "Rate limit exceeded", 60, 2
    ),
    DeploymentErrorCategory.INTERNAL_ERROR: lambda: _with_delay(
        "Internal error - retrying", 30, 3
    ),
}


def classify_error(
    error_code: str,
    category: DeploymentErrorCategory | None = None,
) -> RetryDecision:
    """Classify an error code (optionally with its category) into a RetryDecision.

    Lookup order: exact code, then category, then the UNKNOWN_ERROR default.
    Codes are matched case-insensitively.
    """
    code = (error_code or "").strip().upper()
    decision = ERROR_CODE_DECISIONS.get(code)

    if decision is None and category is not None:
        rule = _CATEGORY_RULES.get(category)
        if rule is not None:
            decision = rule()

    if decision is None:
        logger.warning("Unknown error code encountered: %r", code[:64])
        decision = _UNKNOWN_ERROR

    logger.info(
        "Error classified: code=%s policy=%s max_retries=%s",
        code[:64],
        decision.policy.value,
        decision.max_retry_attempts,
    )
    return decision


def max_attempts_for(policy: RetryPolicy) -> int:
    return _POLICY_MAX_ATTEMPTS.get(policy, 0)


def should_retry(
    policy: RetryPolicy,
    attempt_count: int,
    first_attempt_time: datetime,
    *,
    now: datetime | None = None,
) -> bool:
    """Decide whether another automatic attempt is allowed.

    Both conditions must hold: attempt_count below the policy cap and less
    than MAX_RETRY_DURATION_SECONDS elapsed since first_attempt_time.
    Policies needing user or operator action always return False.
    """
    if policy in _BLOCKED_POLICIES:
        return False

    current = now or datetime.now(UTC)
    elapsed = (current - first_attempt_time).total_seconds()
    if elapsed >= MAX_RETRY_DURATION_SECONDS:
        logger.warning(
            "Max retry duration exceeded: elapsed=%.1fs max=%ds",
            elapsed,
            MAX_RETRY_DURATION_SECONDS,
        )
        return False

    allowed = attempt_count < max_attempts_for(policy)
    logger.debug(
        "Retry decision: policy=%s attempt=%d max=%d allowed=%s",
        policy.value,
        attempt_count,
        max_attempts_for(policy),
        allowed,
    )
    return allowed


def calculate_retry_delay(
    policy: RetryPolicy,
    attempt_count: int,
    use_exponential_backoff: bool,
) -> int:
    """Return the recommended delay in seconds before the next attempt.

    Immediate and non-auto-retry policies return 0. With backoff the delay is
    base * 2**attempt_count (attempt_count is 0-based), capped at 300s.
    """
    base = _BASE_DELAYS.get(policy, 0)
    if base == 0:
        return 0
    if not use_exponential_backoff:
        return base
    exponent = max(attempt_count, 0)
    # Past this exponent every delay is above the cap anyway
    if exponent > 16:
        return MAX_BACKOFF_SECONDS
    return min(base * (2**exponent), MAX_BACKOFF_SECONDS)


class RetryPolicyClassifier:
    """Object facade over the classification functions."""

    def classify_error(
        self,
        error_code: str,
        category: DeploymentErrorCategory | None = None,
    ) -> RetryDecision:
        return classify_error(error_code, category)

    def should_retry(
        self,
        policy: RetryPolicy,
        attempt_count: int,
        first_attempt_time: datetime,
        *,
        now: datetime | None = None,
    ) -> bool:
        return should_retry(policy, attempt_count, first_attempt_time, now=now)

    def calculate_retry_delay(
        self,
        policy: RetryPolicy,
        attempt_count: int,
        use_exponential_backoff: bool,
    ) -> int:
        return calculate_retry_delay(policy, attempt_count, use_exponential_backoff)
