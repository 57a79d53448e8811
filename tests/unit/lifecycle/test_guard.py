"""Tests for the state transition guard.

Covers topology, terminal states, idempotency, invariants and reason codes.
"""

from __future__ import annotations

import pytest

from token_lifecycle.lifecycle.guard import (
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    StateTransitionGuard,
    get_transition_reason_code,
    get_valid_next_states,
    is_terminal_state,
    validate_transition,
)
from token_lifecycle.shared.types import DeploymentStatus, TokenDeployment

S = DeploymentStatus

NON_TERMINAL = [s for s in DeploymentStatus if s not in TERMINAL_STATES]


def _deployment(**kwargs) -> TokenDeployment:
    defaults = {"deployment_id": "d-1", "token_standard": "ASA", "network": "testnet"}
    defaults.update(kwargs)
    return TokenDeployment(**defaults)


@pytest.mark.unit
class TestTopology:
    @pytest.mark.parametrize(
        ("current", "requested"),
        [
            (S.QUEUED, S.SUBMITTED),
            (S.QUEUED, S.CANCELLED),
            (S.SUBMITTED, S.PENDING),
            (S.PENDING, S.CONFIRMED),
            (S.CONFIRMED, S.INDEXED),
            (S.CONFIRMED, S.COMPLETED),
            (S.INDEXED, S.COMPLETED),
            (S.FAILED, S.QUEUED),
        ],
    )
    def test_table_edges_allowed(self, current, requested):
        result = validate_transition(current, requested)
        assert result.is_allowed is True
        assert result.violated_invariants == ()

    @pytest.mark.parametrize("current", [s for s in NON_TERMINAL if s != S.FAILED])
    def test_any_non_terminal_may_fail(self, current):
        result = validate_transition(current, S.FAILED)
        assert result.is_allowed is True

    def test_queued_to_completed_is_invalid(self):
        result = validate_transition(S.QUEUED, S.COMPLETED)
        assert result.is_allowed is False
        assert result.reason_code == "INVALID_TRANSITION"
        assert S.SUBMITTED in result.valid_alternatives
        assert S.CANCELLED in result.valid_alternatives

    def test_skipping_states_is_invalid(self):
        result = validate_transition(S.SUBMITTED, S.CONFIRMED)
        assert result.reason_code == "INVALID_TRANSITION"
        assert result.valid_alternatives == (S.PENDING, S.FAILED)

    def test_backwards_is_invalid(self):
        result = validate_transition(S.PENDING, S.SUBMITTED)
        assert result.is_allowed is False
        assert result.reason_code == "INVALID_TRANSITION"

    def test_cancel_after_queued_is_invalid_not_invariant(self):
        result = validate_transition(S.SUBMITTED, S.CANCELLED, _deployment())
        assert result.reason_code == "INVALID_TRANSITION"

    def test_alternatives_include_failure_edge(self):
        result = validate_transition(S.PENDING, S.CANCELLED)
        assert result.reason_code == "INVALID_TRANSITION"
        assert S.FAILED in result.valid_alternatives
        assert list(result.valid_alternatives) == get_valid_next_states(S.PENDING)

    def test_failed_only_requeues(self):
        result = validate_transition(S.FAILED, S.SUBMITTED)
        assert result.is_allowed is False
        assert result.valid_alternatives == (S.QUEUED,)


@pytest.mark.unit
class TestTerminalStates:
    @pytest.mark.parametrize("terminal", sorted(TERMINAL_STATES, key=lambda s: s.value))
    @pytest.mark.parametrize("requested", list(DeploymentStatus))
    def test_terminal_rejects_everything(self, terminal, requested):
        result = validate_transition(terminal, requested)
        assert result.is_allowed is False
        assert result.reason_code == "TERMINAL_STATE_VIOLATION"
        assert result.violated_invariants

    def test_is_terminal_state(self):
        assert is_terminal_state(S.COMPLETED)
        assert is_terminal_state(S.CANCELLED)
        assert not is_terminal_state(S.FAILED)
        assert not is_terminal_state(S.QUEUED)


@pytest.mark.unit
class TestIdempotency:
    @pytest.mark.parametrize("status", NON_TERMINAL)
    def test_same_status_is_idempotent(self, status):
        result = validate_transition(status, status)
        assert result.is_allowed is True
        assert result.reason_code == "IDEMPOTENT_UPDATE"

    def test_idempotent_submitted_skips_invariants(self):
        result = validate_transition(S.SUBMITTED, S.SUBMITTED, _deployment())
        assert result.reason_code == "IDEMPOTENT_UPDATE"


@pytest.mark.unit
class TestInvariants:
    def test_submitted_requires_transaction_hash(self):
        result = validate_transition(S.QUEUED, S.SUBMITTED, _deployment())
        assert result.is_allowed is False
        assert result.reason_code == "INVARIANT_VIOLATION"
        assert any("transaction_hash" in v for v in result.violated_invariants)

    def test_empty_hash_counts_as_missing(self):
        result = validate_transition(S.QUEUED, S.SUBMITTED, _deployment(transaction_hash=""))
        assert result.reason_code == "INVARIANT_VIOLATION"

    def test_submitted_with_hash_allowed(self):
        result = validate_transition(S.QUEUED, S.SUBMITTED, _deployment(transaction_hash="0xabc"))
        assert result.is_allowed is True
        assert result.reason_code == "DEPLOYMENT_SUBMITTED"

    def test_without_record_invariants_are_skipped(self):
        assert validate_transition(S.QUEUED, S.SUBMITTED).is_allowed is True


@pytest.mark.unit
class TestNextStates:
    def test_queued(self):
        assert set(get_valid_next_states(S.QUEUED)) == {S.SUBMITTED, S.FAILED, S.CANCELLED}

    @pytest.mark.parametrize("terminal", [S.COMPLETED, S.CANCELLED])
    def test_terminal_has_none(self, terminal):
        assert get_valid_next_states(terminal) == []

    def test_failed_does_not_list_itself(self):
        assert get_valid_next_states(S.FAILED) == [S.QUEUED]

    @pytest.mark.parametrize("status", NON_TERMINAL)
    def test_every_listed_state_validates(self, status):
        for nxt in get_valid_next_states(status):
            assert validate_transition(status, nxt).is_allowed

    def test_table_covers_every_status(self):
        assert set(VALID_TRANSITIONS) == set(DeploymentStatus)


@pytest.mark.unit
class TestReasonCodes:
    @pytest.mark.parametrize(
        ("current", "requested", "code"),
        [
            (S.QUEUED, S.SUBMITTED, "DEPLOYMENT_SUBMITTED"),
            (S.QUEUED, S.FAILED, "DEPLOYMENT_VALIDATION_FAILED"),
            (S.QUEUED, S.CANCELLED, "USER_CANCELLED"),
            (S.SUBMITTED, S.PENDING, "TRANSACTION_BROADCAST"),
            (S.SUBMITTED, S.FAILED, "TRANSACTION_SUBMISSION_FAILED"),
            (S.PENDING, S.CONFIRMED, "TRANSACTION_CONFIRMED"),
            (S.PENDING, S.FAILED, "TRANSACTION_REVERTED"),
            (S.CONFIRMED, S.INDEXED, "TRANSACTION_INDEXED"),
            (S.CONFIRMED, S.COMPLETED, "DEPLOYMENT_COMPLETED"),
            (S.INDEXED, S.COMPLETED, "DEPLOYMENT_COMPLETED"),
            (S.INDEXED, S.FAILED, "POST_DEPLOYMENT_FAILED"),
            (S.FAILED, S.QUEUED, "DEPLOYMENT_RETRY_REQUESTED"),
        ],
    )
    def test_mapped_codes(self, current, requested, code):
        assert get_transition_reason_code(current, requested) == code
        assert validate_transition(current, requested).reason_code == code

    def test_unmapped_pair_synthesizes_code(self):
        assert get_transition_reason_code(S.QUEUED, S.COMPLETED) == "TRANSITION_QUEUED_COMPLETED"

    @pytest.mark.parametrize("current", list(DeploymentStatus))
    @pytest.mark.parametrize("requested", list(DeploymentStatus))
    def test_reason_code_never_empty(self, current, requested):
        assert validate_transition(current, requested).reason_code


@pytest.mark.unit
class TestGuardFacade:
    def test_delegates(self):
        guard = StateTransitionGuard()
        assert guard.validate_transition(S.QUEUED, S.COMPLETED).reason_code == "INVALID_TRANSITION"
        assert guard.get_valid_next_states(S.COMPLETED) == []
        assert guard.is_terminal_state(S.CANCELLED)
        assert guard.get_transition_reason_code(S.PENDING, S.FAILED) == "TRANSACTION_REVERTED"
