"""Tests for the FastAPI routes."""

from __future__ import annotations

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from vigil.api.server import create_app, error_status
from vigil.liveness.errors import (
    AdminRequired,
    ConcurrencyConflict,
    DeliveryError,
    InvalidTransition,
    ProfileNotFound,
    StoreUnavailable,
    ValidationError,
)
from vigil.liveness.models import Actor, Role

TOKEN = "gateway-secret"
USER = {"X-Gateway-Token": TOKEN, "X-User-Id": "u1", "X-User-Role": "user"}
ADMIN = {"X-Gateway-Token": TOKEN, "X-User-Id": "admin-1", "X-User-Role": "admin"}


@pytest.fixture
def client(service):
    app = create_app()
    app.state.service = service
    with patch("vigil.api.auth.settings") as mock_settings:
        mock_settings.gateway_token = TOKEN
        yield TestClient(app)


class TestGatewayAuth:
    def test_missing_token(self, client) -> None:
        resp = client.get("/api/wellbeing/profile", headers={"X-User-Id": "u1"})
        assert resp.status_code == 401

    def test_wrong_token(self, client) -> None:
        resp = client.get("/api/wellbeing/profile", headers={**USER, "X-Gateway-Token": "nope"})
        assert resp.status_code == 401

    def test_unconfigured_token_rejects_everything(self, service) -> None:
        app = create_app()
        app.state.service = service
        with patch("vigil.api.auth.settings") as mock_settings:
            mock_settings.gateway_token = ""
            c = TestClient(app)
            resp = c.get("/api/admin/stats", headers={**ADMIN, "X-Gateway-Token": ""})
        assert resp.status_code == 401

    def test_missing_user(self, client) -> None:
        resp = client.get("/api/wellbeing/profile", headers={"X-Gateway-Token": TOKEN})
        assert resp.status_code == 401


class TestWellbeingRoutes:
    def test_register_and_profile(self, client) -> None:
        resp = client.post("/api/wellbeing/register", json={"cadence": "weekly", "threshold": 4}, headers=USER)
        assert resp.status_code == 200
        assert resp.json()["cadence"] == "weekly"

        resp = client.get("/api/wellbeing/profile", headers=USER)
        data = resp.json()
        assert data["user_id"] == "u1"
        assert data["missed_count"] == 0
        assert data["alert"] is None
        assert data["review_pending"] is False
        assert data["next_due"]

    def test_profile_not_found(self, client) -> None:
        resp = client.get("/api/wellbeing/profile", headers=USER)
        assert resp.status_code == 404

    def test_confirm(self, client, service, clock) -> None:
        service.register_profile("u1", "daily", 3)
        clock.advance(days=1, hours=1)
        service.scanner.sweep()

        resp = client.post("/api/wellbeing/confirm", headers=USER)
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "confirmed"
        assert body["profile"]["missed_count"] == 0

        profile = client.get("/api/wellbeing/profile", headers=USER).json()
        assert profile["alert"]["status"] == "responded"

    def test_settings_validation(self, client, service) -> None:
        service.register_profile("u1", "daily", 3)
        resp = client.put("/api/wellbeing/settings", json={"threshold": 0}, headers=USER)
        assert resp.status_code == 400
        resp = client.put("/api/wellbeing/settings", json={"cadence": "custom:2", "threshold": 5}, headers=USER)
        assert resp.status_code == 200
        assert resp.json()["cadence"] == "custom:2"

    def test_settings_version_conflict(self, client, service) -> None:
        service.register_profile("u1", "daily", 3)
        service.update_settings("u1", threshold=4)
        resp = client.put("/api/wellbeing/settings", json={"threshold": 5, "expected_version": 1}, headers=USER)
        assert resp.status_code == 409


class TestAdminRoutes:
    def test_user_forbidden(self, client) -> None:
        for method, path in [
            ("get", "/api/admin/reviews"),
            ("get", "/api/admin/followups"),
            ("get", "/api/admin/audit"),
            ("get", "/api/admin/stats"),
            ("post", "/api/admin/sweep"),
        ]:
            resp = getattr(client, method)(path, headers=USER)
            assert resp.status_code == 403, path

    def test_unknown_role_is_not_admin(self, client) -> None:
        resp = client.get("/api/admin/stats", headers={**ADMIN, "X-User-Role": "superuser"})
        assert resp.status_code == 403

    def test_review_flow(self, client, directory, channel, escalate_user) -> None:
        directory.add("u1", "alice")
        review = escalate_user("u1")

        resp = client.get("/api/admin/reviews", headers=ADMIN)
        assert resp.json()["count"] == 1
        assert resp.json()["reviews"][0]["id"] == review.id

        resp = client.post(
            f"/api/admin/reviews/{review.id}/decision",
            json={"decision": "approved", "notes": "no answer by phone"},
            headers=ADMIN,
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["review"]["status"] == "approved"
        assert body["review"]["reviewer_id"] == "admin-1"
        assert body["dispatch_queued"] is True

        resp = client.post(f"/api/admin/reviews/{review.id}/decision", json={"decision": "rejected"}, headers=ADMIN)
        assert resp.status_code == 409

    def test_decision_validation(self, client, escalate_user) -> None:
        review = escalate_user("u1")
        resp = client.post(f"/api/admin/reviews/{review.id}/decision", json={"decision": "later"}, headers=ADMIN)
        assert resp.status_code == 400
        resp = client.post("/api/admin/reviews/missing/decision", json={"decision": "approved"}, headers=ADMIN)
        assert resp.status_code == 404

    def test_reopen(self, client, escalate_user) -> None:
        review = escalate_user("u1")
        client.post(f"/api/admin/reviews/{review.id}/decision", json={"decision": "rejected"}, headers=ADMIN)
        resp = client.post("/api/admin/users/u1/reopen", headers=ADMIN)
        assert resp.status_code == 200
        assert resp.json()["status"] == "pending"
        assert resp.json()["id"] != review.id

    def test_set_active(self, client, service) -> None:
        service.register_profile("u1")
        resp = client.put("/api/admin/users/u1/active", json={"active": False}, headers=ADMIN)
        assert resp.status_code == 200
        assert resp.json()["active"] is False

    def test_followups_and_attempts(self, client, service, directory, channel, escalate_user) -> None:
        directory.add("u1", "a")
        channel.always_fail["a"] = DeliveryError("rejected number", retryable=False)
        review = escalate_user("u1")
        result = service.decide_review(review.id, "approved", Actor("admin-1", Role.ADMIN))
        result.dispatch.result(timeout=10)

        resp = client.get("/api/admin/followups", headers=ADMIN)
        assert resp.json()["count"] == 1
        assert resp.json()["followups"][0]["nominee_id"] == "a"

        resp = client.get(f"/api/admin/reviews/{review.id}/attempts", headers=ADMIN)
        [attempt] = resp.json()["attempts"]
        assert attempt["status"] == "exhausted"

    def test_audit_and_stats(self, client, service) -> None:
        service.register_profile("u1")
        resp = client.get("/api/admin/audit", params={"entity_type": "profile", "entity_id": "u1"}, headers=ADMIN)
        assert resp.json()["count"] == 1
        assert resp.json()["entries"][0]["from_state"] is None

        resp = client.get("/api/admin/stats", headers=ADMIN)
        assert resp.json()["total_profiles"] == 1

    def test_manual_sweep(self, client, service, clock) -> None:
        service.register_profile("u1", "daily", 3)
        clock.advance(days=1, hours=1)
        resp = client.post("/api/admin/sweep", headers=ADMIN)
        assert resp.status_code == 200
        assert resp.json()["advanced"] == ["u1"]


class TestErrorStatus:
    @pytest.mark.parametrize("exc, status", [
        (ValidationError("x"), 400),
        (AdminRequired("x"), 403),
        (ProfileNotFound("u"), 404),
        (InvalidTransition("review", "approved", "rejected"), 409),
        (ConcurrencyConflict("u", 3), 409),
        (StoreUnavailable("locked"), 503),
    ])
    def test_mapping(self, exc, status) -> None:
        assert error_status(exc) == status
