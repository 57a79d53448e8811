"""Tests for the stateless lifecycle rules API."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from token_lifecycle.gateway.api.rules import create_rules_router
from token_lifecycle.gateway.app import create_app

_BASE = "/api/v1/token/rules"


@pytest.fixture()
def client() -> TestClient:
    return TestClient(create_app(routers=[create_rules_router()]))


class TestClassifyError:
    def test_transient_error(self, client: TestClient) -> None:
        resp = client.post(f"{_BASE}/classify-error", json={"error_code": "TIMEOUT"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["policy"] == "retryable_with_delay"
        assert data["use_exponential_backoff"] is True
        assert data["should_retry"] is None
        assert data["next_delay_seconds"] == 10

    def test_not_retryable(self, client: TestClient) -> None:
        data = client.post(f"{_BASE}/classify-error", json={"error_code": "INVALID_REQUEST"}).json()
        assert data["policy"] == "not_retryable"
        assert data["max_retry_attempts"] == 0
        assert data["next_delay_seconds"] == 0

    def test_category_fallback(self, client: TestClient) -> None:
        data = client.post(
            f"{_BASE}/classify-error",
            json={"error_code": "VENDOR_SPECIFIC", "category": "rate_limit_exceeded"},
        ).json()
        assert data["policy"] == "retryable_with_cooldown"

    def test_should_retry_inside_window(self, client: TestClient) -> None:
        first = datetime.now(UTC) - timedelta(seconds=30)
        data = client.post(
            f"{_BASE}/classify-error",
            json={
                "error_code": "BLOCKCHAIN_CONNECTION_ERROR",
                "attempt_count": 2,
                "first_attempt_time": first.isoformat(),
            },
        ).json()
        assert data["should_retry"] is True
        assert data["next_delay_seconds"] == 40

    def test_should_retry_after_window(self, client: TestClient) -> None:
        first = datetime.now(UTC) - timedelta(minutes=11)
        data = client.post(
            f"{_BASE}/classify-error",
            json={"error_code": "TIMEOUT", "first_attempt_time": first.isoformat()},
        ).json()
        assert data["should_retry"] is False

    def test_naive_first_attempt_treated_as_utc(self, client: TestClient) -> None:
        first = datetime.now(UTC).replace(tzinfo=None) - timedelta(seconds=5)
        data = client.post(
            f"{_BASE}/classify-error",
            json={"error_code": "TIMEOUT", "first_attempt_time": first.isoformat()},
        ).json()
        assert data["should_retry"] is True

    def test_bad_category_is_422(self, client: TestClient) -> None:
        resp = client.post(
            f"{_BASE}/classify-error", json={"error_code": "X", "category": "cosmic_rays"}
        )
        assert resp.status_code == 422
        assert resp.json()["field"] == "category"


class TestValidateTransition:
    def test_allowed(self, client: TestClient) -> None:
        data = client.post(
            f"{_BASE}/validate-transition",
            json={"from_status": "pending", "to_status": "confirmed"},
        ).json()
        assert data["is_allowed"] is True
        assert data["reason_code"] == "TRANSACTION_CONFIRMED"

    def test_rejected_lists_alternatives(self, client: TestClient) -> None:
        data = client.post(
            f"{_BASE}/validate-transition",
            json={"from_status": "queued", "to_status": "completed"},
        ).json()
        assert data["is_allowed"] is False
        assert data["reason_code"] == "INVALID_TRANSITION"
        assert "submitted" in data["valid_alternatives"]

    def test_terminal(self, client: TestClient) -> None:
        data = client.post(
            f"{_BASE}/validate-transition",
            json={"from_status": "completed", "to_status": "queued"},
        ).json()
        assert data["reason_code"] == "TERMINAL_STATE_VIOLATION"

    def test_unknown_status_is_422(self, client: TestClient) -> None:
        resp = client.post(
            f"{_BASE}/validate-transition",
            json={"from_status": "queued", "to_status": "launched"},
        )
        assert resp.status_code == 422
        assert resp.json()["field"] == "to_status"
