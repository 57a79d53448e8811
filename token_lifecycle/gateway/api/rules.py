"""Lifecycle rules API -- stateless guard and retry-policy queries.

- POST /api/v1/token/rules/classify-error       -> RetryDecision for an error code
- POST /api/v1/token/rules/validate-transition  -> guard verdict for a status pair

Used by clients deciding whether to offer a "retry" action.
"""

from __future__ import annotations

from datetime import UTC, datetime

from fastapi import APIRouter
from pydantic import BaseModel

from token_lifecycle.gateway.api.deployments import parse_status
from token_lifecycle.lifecycle.guard import validate_transition
from token_lifecycle.lifecycle.retry import calculate_retry_delay, classify_error, should_retry
from token_lifecycle.shared.errors import ValidationError
from token_lifecycle.shared.types import DeploymentErrorCategory


class ClassifyErrorRequest(BaseModel):
    error_code: str
    category: str | None = None
    attempt_count: int = 0
    first_attempt_time: datetime | None = None


class RetryDecisionResponse(BaseModel):
    policy: str
    reason_code: str
    explanation: str
    max_retry_attempts: int | None = None
    suggested_delay_seconds: int | None = None
    use_exponential_backoff: bool = False
    remediation_guidance: str | None = None
    should_retry: bool | None = None
    next_delay_seconds: int


class ValidateTransitionRequest(BaseModel):
    from_status: str
    to_status: str


class TransitionValidationResponse(BaseModel):
    is_allowed: bool
    reason_code: str
    explanation: str
    violated_invariants: list[str]
    valid_alternatives: list[str]


def create_rules_router() -> APIRouter:
    """Create lifecycle rules router (no state)."""
    router = APIRouter(prefix="/api/v1/token/rules", tags=["rules"])

    @router.post("/classify-error", response_model=RetryDecisionResponse)
    async def classify(body: ClassifyErrorRequest) -> RetryDecisionResponse:
        """Classify an error; should_retry is set when first_attempt_time is given."""
        category = None
        if body.category:
            try:
                category = DeploymentErrorCategory(body.category.strip().lower())
            except ValueError:
                msg = f"Invalid error category: {body.category!r}"
                raise ValidationError(msg, field="category") from None

        decision = classify_error(body.error_code, category)
        retry = None
        first_attempt = body.first_attempt_time
        if first_attempt is not None:
            if first_attempt.tzinfo is None:
                first_attempt = first_attempt.replace(tzinfo=UTC)
            retry = should_retry(decision.policy, body.attempt_count, first_attempt)

        return RetryDecisionResponse(
            policy=decision.policy.value,
            reason_code=decision.reason_code,
            explanation=decision.explanation,
            max_retry_attempts=decision.max_retry_attempts,
            suggested_delay_seconds=decision.suggested_delay_seconds,
            use_exponential_backoff=decision.use_exponential_backoff,
            remediation_guidance=decision.remediation_guidance,
            should_retry=retry,
            next_delay_seconds=calculate_retry_delay(
                decision.policy,
                body.attempt_count,
                decision.use_exponential_backoff,
            ),
        )

    @router.post("/validate-transition", response_model=TransitionValidationResponse)
    async def validate(body: ValidateTransitionRequest) -> TransitionValidationResponse:
        """Topology-only verdict (no record, so invariants are not checked)."""
        result = validate_transition(
            parse_status(body.from_status, field="from_status"),
            parse_status(body.to_status, field="to_status"),
        )
        return TransitionValidationResponse(
            is_allowed=result.is_allowed,
            reason_code=result.reason_code,
            explanation=result.explanation,
            violated_invariants=list(result.violated_invariants),
            valid_alternatives=[s.value for s in result.valid_alternatives],
        )

    return router
