"""State transition guard for token deployments.

Pure decision component: given the current status, the requested status and
optionally the deployment record, decide whether the transition is legal.

Checks run in a fixed order and the order decides the reason code:
  1. terminal source          -> TERMINAL_STATE_VIOLATION
  2. same status              -> IDEMPOTENT_UPDATE (allowed)
  3. topology (table + FAILED edge) -> INVALID_TRANSITION
  4. record invariants        -> INVARIANT_VIOLATION
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from token_lifecycle.shared.types import DeploymentStatus, TransitionValidationResult

if TYPE_CHECKING:
    from token_lifecycle.shared.types import TokenDeployment

logger = logging.getLogger(__name__)

TERMINAL_STATES: frozenset[DeploymentStatus] = frozenset(
    {DeploymentStatus.COMPLETED, DeploymentStatus.CANCELLED}
)

# Forward edges of the lifecycle (current_status -> allowed next statuses).
# The universal failure edge is added by the guard, not listed here.
VALID_TRANSITIONS: dict[DeploymentStatus, tuple[DeploymentStatus, ...]] = {
    DeploymentStatus.QUEUED: (DeploymentStatus.SUBMITTED, DeploymentStatus.CANCELLED),
    DeploymentStatus.SUBMITTED: (DeploymentStatus.PENDING,),
    DeploymentStatus.PENDING: (DeploymentStatus.CONFIRMED,),
    DeploymentStatus.CONFIRMED: (DeploymentStatus.INDEXED, DeploymentStatus.COMPLETED),
    DeploymentStatus.INDEXED: (DeploymentStatus.COMPLETED,),
    DeploymentStatus.FAILED: (DeploymentStatus.QUEUED,),
    DeploymentStatus.COMPLETED: (),
    DeploymentStatus.CANCELLED: (),
}

TRANSITION_REASON_CODES: dict[tuple[DeploymentStatus, DeploymentStatus], str] = {
    (DeploymentStatus.QUEUED, DeploymentStatus.SUBMITTED): "DEPLOYMENT_SUBMITTED",
    (DeploymentStatus.QUEUED, DeploymentStatus.FAILED): "DEPLOYMENT_VALIDATION_FAILED",
    (DeploymentStatus.QUEUED, DeploymentStatus.CANCELLED): "USER_CANCELLED",
    (DeploymentStatus.SUBMITTED, DeploymentStatus.PENDING): "TRANSACTION_BROADCAST",
    (DeploymentStatus.SUBMITTED, DeploymentStatus.FAILED): "TRANSACTION_SUBMISSION_FAILED",
    (DeploymentStatus.PENDING, DeploymentStatus.CONFIRMED): "TRANSACTION_CONFIRMED",
    (DeploymentStatus.PENDING, DeploymentStatus.FAILED): "TRANSACTION_REVERTED",
    (DeploymentStatus.CONFIRMED, DeploymentStatus.INDEXED): "TRANSACTION_INDEXED",
    (DeploymentStatus.CONFIRMED, DeploymentStatus.COMPLETED): "DEPLOYMENT_COMPLETED",
    (DeploymentStatus.CONFIRMED, DeploymentStatus.FAILED): "POST_DEPLOYMENT_FAILED",
    (DeploymentStatus.INDEXED, DeploymentStatus.COMPLETED): "DEPLOYMENT_COMPLETED",
    (DeploymentStatus.INDEXED, DeploymentStatus.FAILED): "POST_DEPLOYMENT_FAILED",
    (DeploymentStatus.FAILED, DeploymentStatus.QUEUED): "DEPLOYMENT_RETRY_REQUESTED",
}


def is_terminal_state(status: DeploymentStatus) -> bool:
    return status in TERMINAL_STATES


def get_transition_reason_code(
    from_status: DeploymentStatus,
    to_status: DeploymentStatus,
) -> str:
    """Return the audit reason code for a transition.

    Unmapped pairs get a synthesized TRANSITION_<FROM>_<TO> code, so the
    result is never empty. Diagnostic only; never used for authorization.
    """
    code = TRANSITION_REASON_CODES.get((from_status, to_status))
    if code is not None:
        return code
    return f"TRANSITION_{from_status.name}_{to_status.name}"


def get_valid_next_states(status: DeploymentStatus) -> list[DeploymentStatus]:
    """Outbound edges of a status, including the failure edge.

    Terminal states have no successors. FAILED does not list itself.
    """
    if is_terminal_state(status):
        return []
    states = list(VALID_TRANSITIONS.get(status, ()))
    if status != DeploymentStatus.FAILED:
        states.append(DeploymentStatus.FAILED)
    return states


def _is_topologically_allowed(
    current: DeploymentStatus,
    requested: DeploymentStatus,
) -> bool:
    if requested == DeploymentStatus.FAILED:
        return True
    return requested in VALID_TRANSITIONS.get(current, ())


def _check_invariants(
    requested: DeploymentStatus,
    deployment: TokenDeployment,
) -> list[str]:
    violated: list[str] = []
    if requested == DeploymentStatus.SUBMITTED and not deployment.transaction_hash:
        violated.append("SUBMITTED status requires transaction_hash to be set")
    return violated


def validate_transition(
    current: DeploymentStatus,
    requested: DeploymentStatus,
    deployment: TokenDeployment | None = None,
) -> TransitionValidationResult:
    """Decide whether `current -> requested` is legal.

    Args:
        current: Status the deployment is in now.
        requested: Status the caller wants to move to.
        deployment: Optional record; enables context-aware invariant checks.

    Returns:
        TransitionValidationResult. Never raises for business-rule violations.
    """
    if is_terminal_state(current):
        return TransitionValidationResult(
            is_allowed=False,
            reason_code="TERMINAL_STATE_VIOLATION",
            explanation=(
                f"Status {current.name} is terminal and cannot transition to {requested.name}"
            ),
            violated_invariants=(f"Cannot transition from terminal state {current.name}",),
        )

    if current == requested:
        return TransitionValidationResult(
            is_allowed=True,
            reason_code="IDEMPOTENT_UPDATE",
            explanation="Status is already set to requested value",
        )

    if not _is_topologically_allowed(current, requested):
        return TransitionValidationResult(
            is_allowed=False,
            reason_code="INVALID_TRANSITION",
            explanation=f"Cannot transition from {current.name} to {requested.name}",
            valid_alternatives=tuple(get_valid_next_states(current)),
        )

    if deployment is not None:
        violated = _check_invariants(requested, deployment)
        if violated:
            return TransitionValidationResult(
                is_allowed=False,
                reason_code="INVARIANT_VIOLATION",
                explanation=(
                    f"Context-aware invariants violated for {current.name} -> {requested.name}"
                ),
                violated_invariants=tuple(violated),
            )

    return TransitionValidationResult(
        is_allowed=True,
        reason_code=get_transition_reason_code(current, requested),
        explanation=f"Valid transition: {current.name} -> {requested.name}",
    )


class StateTransitionGuard:
    """Object facade over the guard functions.

    Injected into DeploymentStatusService so a stricter guard can be swapped
    in without touching orchestration code.
    """

    def validate_transition(
        self,
        current: DeploymentStatus,
        requested: DeploymentStatus,
        deployment: TokenDeployment | None = None,
    ) -> TransitionValidationResult:
        result = validate_transition(current, requested, deployment)
        if not result.is_allowed:
            logger.debug(
                "Transition rejected: %s -> %s (%s)",
                current.name,
                requested.name,
                result.reason_code,
            )
        return result

    def get_valid_next_states(self, status: DeploymentStatus) -> list[DeploymentStatus]:
        return get_valid_next_states(status)

    def is_terminal_state(self, status: DeploymentStatus) -> bool:
        return is_terminal_state(status)

    def get_transition_reason_code(
        self,
        from_status: DeploymentStatus,
        to_status: DeploymentStatus,
    ) -> str:
        return get_transition_reason_code(from_status, to_status)
