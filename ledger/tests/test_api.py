"""
HTTP Tests for the Ledger API

Tests cover:
1. Request ids and health
2. Admin header guard and error mapping
3. Recharge / refund / status round trips over HTTP
4. Login throttling with Retry-After
"""

import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request

from access.admin import AdminAuthService
from access.rate_limit import LoginRateLimiter
from ledger.api import client_address, create_app

ADMIN_HEADERS = {"X-Admin-Id": "admin-1", "X-Admin-Username": "ops"}


@pytest.fixture
def auth(storage, clock):
    auth = AdminAuthService(storage, LoginRateLimiter(max_failures=2), clock=clock)
    auth.create_admin("ops", "correct horse battery")
    return auth


@pytest.fixture
def client(service, auth):
    app = create_app(service, auth_service=auth, start_scheduler=False)
    return TestClient(app)


def _create_user(client, **body):
    response = client.post("/admin/users", json={"username": "alice", **body}, headers=ADMIN_HEADERS)
    assert response.status_code == 201
    return response.json()


class TestSystem:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.headers["X-Request-ID"]

    def test_cf_ray_becomes_request_id(self, client):
        response = client.get("/health", headers={"cf-ray": "8a1b2c3d4e5f-SIN"})

        assert response.headers["X-Request-ID"] == "8a1b2c3d4e5f-SIN"

    def test_client_address_precedence(self):
        def request(headers):
            raw = [(k.encode("latin-1"), v.encode("latin-1")) for k, v in headers.items()]
            return Request({"type": "http", "headers": raw})

        assert client_address(request({"cf-connecting-ip": "198.51.100.7", "x-forwarded-for": "1.1.1.1"})) == "198.51.100.7"
        assert client_address(request({"x-forwarded-for": "203.0.113.5, 10.0.0.1"})) == "203.0.113.5"
        assert client_address(request({})) == "unknown"


class TestAdminGuard:
    def test_missing_admin_headers(self, client):
        response = client.get("/admin/users")

        assert response.status_code == 401
        assert response.json()["code"] == "UNAUTHORIZED"

    def test_unknown_user_is_404(self, client):
        response = client.get("/admin/users/missing", headers=ADMIN_HEADERS)

        assert response.status_code == 404
        assert response.json()["code"] == "USER_NOT_FOUND"


class TestRechargeOverHttp:
    def test_recharge_refund_and_status(self, client):
        created = _create_user(client)
        user_id, token = created["user"]["id"], created["token"]

        recharge = client.post(
            f"/admin/users/{user_id}/recharge",
            json={"days": 30, "reason": "wechat_pay", "payment_amount": "99.00"},
            headers=ADMIN_HEADERS,
        )
        assert recharge.status_code == 200
        record = recharge.json()["record"]
        assert record["payment_amount"] == "99.00"
        assert record["operator_admin_id"] == "admin-1"

        status = client.get(f"/status/{token}")
        assert status.status_code == 200
        assert status.json()["membership"] == "active"
        assert status.json()["remaining_days"] == 30

        refund = client.post(f"/admin/recharge-records/{record['id']}/refund", json={"note": "duplicate"}, headers=ADMIN_HEADERS)
        assert refund.status_code == 200
        assert refund.json()["rollback_record"]["change_days"] == -30

        again = client.post(f"/admin/recharge-records/{record['id']}/refund", json={}, headers=ADMIN_HEADERS)
        assert again.status_code == 409
        assert again.json()["code"] == "ALREADY_PROCESSED"

        records = client.get("/admin/recharge-records", params={"user_id": user_id}, headers=ADMIN_HEADERS)
        assert len(records.json()) == 2

    def test_bad_amount_precision(self, client):
        user_id = _create_user(client)["user"]["id"]

        response = client.post(
            f"/admin/users/{user_id}/recharge",
            json={"days": 30, "reason": "alipay", "payment_amount": "1.234"},
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_INPUT"

    def test_reset_token_over_http(self, client):
        created = _create_user(client)
        user_id, old_token = created["user"]["id"], created["token"]

        reset = client.post(f"/admin/users/{user_id}/reset-token", headers=ADMIN_HEADERS)
        new_token = reset.json()["token"]

        assert client.get(f"/status/{old_token}").status_code == 401
        assert client.get(f"/status/{new_token}").status_code == 200
        current = client.get(f"/admin/users/{user_id}/status-token", headers=ADMIN_HEADERS)
        assert current.json()["token"] == new_token

    def test_profile_patch_and_logs(self, client):
        user_id = _create_user(client, system_email="old@example.com")["user"]["id"]

        missing_note = client.patch(
            f"/admin/users/{user_id}",
            json={"profile": {"systemEmail": "new@example.com"}},
            headers=ADMIN_HEADERS,
        )
        assert missing_note.status_code == 400

        patched = client.patch(
            f"/admin/users/{user_id}",
            json={"profile": {"systemEmail": "new@example.com"}, "change_notes": {"systemEmail": "moved"}},
            headers=ADMIN_HEADERS,
        )
        assert patched.status_code == 200
        assert patched.json()["system_email"] == "new@example.com"

        logs = client.get("/admin/profile-change-logs", params={"user_id": user_id}, headers=ADMIN_HEADERS)
        assert [log["field_name"] for log in logs.json()] == ["systemEmail"]

    def test_dashboard(self, client):
        user_id = _create_user(client)["user"]["id"]
        client.post(
            f"/admin/users/{user_id}/recharge",
            json={"days": 30, "reason": "alipay", "payment_amount": "12.50"},
            headers=ADMIN_HEADERS,
        )

        response = client.get("/admin/dashboard/today", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        assert response.json()["payment_amount"] == "12.50"
        assert response.json()["active_users"] == 1


class TestReferralsOverHttp:
    def test_self_invite_error_code(self, client):
        user_id = _create_user(client)["user"]["id"]

        response = client.post(
            "/admin/referrals/bind",
            json={"inviter_user_id": user_id, "invitee_user_id": user_id},
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 400
        assert response.json()["code"] == "SELF_INVITE"

    def test_bind_and_list_rewards(self, client):
        inviter = _create_user(client, username="inviter")["user"]["id"]
        invitee = _create_user(client, username="invitee")["user"]["id"]

        bind = client.post(
            "/admin/referrals/bind",
            json={"inviter_user_id": inviter, "invitee_user_id": invitee},
            headers=ADMIN_HEADERS,
        )
        assert bind.status_code == 200
        assert bind.json()["already_bound"] is False

        client.post(
            f"/admin/users/{invitee}/recharge",
            json={"days": 30, "reason": "wechat_pay", "payment_amount": "99.00"},
            headers=ADMIN_HEADERS,
        )
        rewards = client.get(
            "/admin/referrals/rewards",
            params={"inviter_user_id": inviter, "status": "pending"},
            headers=ADMIN_HEADERS,
        )
        assert [r["reward_amount"] for r in rewards.json()] == ["9.90"]

        nothing = client.post("/admin/referrals/withdraw", json={"inviter_user_id": inviter}, headers=ADMIN_HEADERS)
        assert nothing.status_code == 400
        assert nothing.json()["code"] == "NOTHING_TO_WITHDRAW"


class TestLogin:
    def test_login_success(self, client):
        response = client.post("/admin/login", json={"username": "ops", "password": "correct horse battery"})

        assert response.status_code == 200
        assert response.json()["username"] == "ops"

    def test_lockout_sets_retry_after(self, client):
        headers = {"x-forwarded-for": "203.0.113.5, 10.0.0.1"}
        bad = {"username": "ops", "password": "wrong password"}

        first = client.post("/admin/login", json=bad, headers=headers)
        second = client.post("/admin/login", json=bad, headers=headers)
        blocked = client.post(
            "/admin/login", json={"username": "ops", "password": "correct horse battery"}, headers=headers
        )
        elsewhere = client.post(
            "/admin/login",
            json={"username": "ops", "password": "correct horse battery"},
            headers={"cf-connecting-ip": "198.51.100.7"},
        )

        assert first.status_code == 401
        assert second.status_code == 429
        assert second.headers["Retry-After"] == "600"
        assert blocked.status_code == 429
        assert elsewhere.status_code == 200


class TestServerlessEntry:
    def test_handler_wraps_app(self):
        from mangum import Mangum

        from api.index import app, handler

        assert isinstance(handler, Mangum)
        assert app.root_path == "/api"
