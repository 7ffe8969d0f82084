"""Integration tests for the HTTP auth and authorization endpoints.

Covers login, refresh, logout, registration with email verification,
password reset, permission queries and role changes, plus the error
envelope returned for each failure class.
"""

import pytest
from fastapi.testclient import TestClient

from fleetauth import app as app_module
from fleetauth.service.rbac import ROLE_PERMISSIONS, Role
from fleetauth.storage.errors import StoreUnavailableError
from fleetauth.storage.models import CodePurpose, Company, CompanyStatus, new_id

from conftest import GOOD_PASSWORD, current_code


@pytest.fixture
def client(runtime):
    """Test client bound to the fixture runtime."""
    return TestClient(app_module.app)


def _login(client, email, password=GOOD_PASSWORD):
    return client.post("/v1/auth/login", json={"email": email, "password": password})


def _bearer(session):
    return {"Authorization": f"Bearer {session['access_token']}"}


def _assert_error(response, status, code):
    assert response.status_code == status
    body = response.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == code
    assert body["request_id"]
    return body["error"]


class TestLogin:
    def test_owner_login_returns_tokens(self, client, owner):
        response = _login(client, "owner@acme.test")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["token_type"] == "Bearer"
        assert data["expires_in"] == 900
        assert data["user"]["role"] == "OWNER"
        assert data["user"]["role_display_name"] == "Company Owner"
        assert data["refresh_token"]

    def test_wrong_password(self, client, owner):
        error = _assert_error(_login(client, owner.email, "WrongPass1!"), 401, "unauthorized")
        assert error["message"] == "Invalid email or password"

    def test_empty_password(self, client, owner):
        _assert_error(_login(client, owner.email, ""), 400, "validation_error")

    def test_missing_field(self, client):
        _assert_error(client.post("/v1/auth/login", json={"email": "a@acme.test"}), 400, "validation_error")

    def test_lockout_sets_retry_after(self, client, owner):
        for _ in range(5):
            _login(client, owner.email, "WrongPass1!")
        response = _login(client, owner.email)
        error = _assert_error(response, 423, "account_locked")
        assert int(response.headers["Retry-After"]) > 0
        assert error["details"]["retry_after_seconds"] == int(response.headers["Retry-After"])

    def test_suspended_company(self, client, owner, company, memory_store):
        company.status = CompanyStatus.SUSPENDED
        memory_store.save_company(company)
        _assert_error(_login(client, owner.email), 403, "company_suspended")

    def test_store_outage_is_503(self, client, owner, memory_store, monkeypatch):
        def down(email):
            raise StoreUnavailableError("connection refused")

        monkeypatch.setattr(memory_store, "get_identity_by_email", down)
        error = _assert_error(_login(client, owner.email), 503, "service_unavailable")
        assert error["details"] == {"retryable": True}

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"


class TestTokenLifecycle:
    def test_refresh_and_logout(self, client, owner):
        session = _login(client, owner.email).json()["data"]

        refreshed = client.post("/v1/auth/refresh", json={"refresh_token": session["refresh_token"]})
        assert refreshed.status_code == 200
        assert refreshed.json()["data"]["refresh_token"] == session["refresh_token"]

        logout = client.post("/v1/auth/logout", headers=_bearer(session))
        assert logout.json()["data"] == {"revoked": 1}

        after = client.post("/v1/auth/refresh", json={"refresh_token": session["refresh_token"]})
        error = _assert_error(after, 401, "unauthorized")
        assert error["message"] == "Invalid or expired token"

    def test_validate(self, client, owner):
        session = _login(client, owner.email).json()["data"]
        valid = client.post("/v1/auth/validate", json={"token": session["access_token"]})
        assert valid.json()["data"] == {"valid": True}
        invalid = client.post("/v1/auth/validate", json={"token": "x.y.z"})
        assert invalid.json()["data"] == {"valid": False}

    def test_me_requires_bearer(self, client, owner):
        _assert_error(client.get("/v1/auth/me"), 401, "unauthorized")
        session = _login(client, owner.email).json()["data"]
        me = client.get("/v1/auth/me", headers=_bearer(session))
        assert me.json()["data"]["email"] == owner.email


class TestRegistrationFlow:
    def test_register_verify_login(self, client, runtime, memory_store, clock):
        company = memory_store.save_company(
            Company(id=new_id(), name="Initech", status=CompanyStatus.ACTIVE, created_at=clock())
        )
        response = client.post(
            "/v1/auth/register",
            json={
                "email": "first@initech.test",
                "password": GOOD_PASSWORD,
                "full_name": "First User",
                "company_id": company.id,
            },
        )
        assert response.status_code == 201
        assert response.json()["data"]["status"] == "INACTIVE"
        _assert_error(_login(client, "first@initech.test"), 403, "account_inactive")

        bad = client.post("/v1/auth/verify-email", json={"email": "first@initech.test", "code": "000000x"})
        error = _assert_error(bad, 400, "invalid_code")
        assert error["message"] == "Invalid or expired code"

        code = current_code(memory_store, CodePurpose.EMAIL_VERIFICATION, "first@initech.test")
        verified = client.post("/v1/auth/verify-email", json={"email": "first@initech.test", "code": code})
        assert verified.json()["data"]["status"] == "ACTIVE"
        assert _login(client, "first@initech.test").status_code == 200

    def test_weak_password_reports_violations(self, client, company):
        response = client.post(
            "/v1/auth/register",
            json={"email": "x@acme.test", "password": "short", "full_name": "X", "company_id": company.id},
        )
        error = _assert_error(response, 400, "validation_error")
        assert "Password must contain at least one digit" in error["details"]["violations"]

    def test_password_policy_description(self, client):
        data = client.get("/v1/auth/password-policy").json()["data"]
        assert "@$!%*?&" in data["description"]


class TestPasswordResetFlow:
    def test_reset_round(self, client, owner, memory_store):
        unknown = client.post("/v1/auth/password-reset/request", json={"email": "ghost@acme.test"})
        known = client.post("/v1/auth/password-reset/request", json={"email": owner.email})
        assert unknown.json()["data"] == known.json()["data"] == {"sent": True}

        code = current_code(memory_store, CodePurpose.PASSWORD_RESET, owner.email)
        check = client.post("/v1/auth/password-reset/validate", json={"email": owner.email, "code": code})
        assert check.json()["data"] == {"valid": True}

        confirm = client.post(
            "/v1/auth/password-reset/confirm",
            json={"email": owner.email, "code": code, "new_password": "FreshStart9?"},
        )
        assert confirm.json()["data"] == {"reset": True}
        assert _login(client, owner.email, "FreshStart9?").status_code == 200

        reused = client.post(
            "/v1/auth/password-reset/confirm",
            json={"email": owner.email, "code": code, "new_password": "Another9?pass"},
        )
        _assert_error(reused, 400, "invalid_code")


class TestAuthorizationEndpoints:
    def test_my_permissions(self, client, make_identity):
        driver = make_identity("driver@acme.test")
        session = _login(client, driver.email).json()["data"]
        data = client.get("/v1/authz/permissions", headers=_bearer(session)).json()["data"]
        assert data["role"] == "DRIVER"
        assert set(data["permissions"]) == {p.code for p in ROLE_PERMISSIONS[Role.DRIVER]}

    def test_check_permission(self, client, make_identity):
        driver = make_identity("driver@acme.test")
        session = _login(client, driver.email).json()["data"]
        data = client.get(
            "/v1/authz/check", params={"permission": "CREATE_VEHICLE"}, headers=_bearer(session)
        ).json()["data"]
        assert data["allowed"] is False
        unknown = client.get("/v1/authz/check", params={"permission": "FLY"}, headers=_bearer(session))
        _assert_error(unknown, 400, "validation_error")

    def test_role_permissions_requires_read_user(self, client, owner, make_identity):
        driver = make_identity("driver@acme.test")
        driver_session = _login(client, driver.email).json()["data"]
        _assert_error(
            client.get("/v1/authz/roles/ACCOUNTANT/permissions", headers=_bearer(driver_session)),
            403,
            "forbidden",
        )
        owner_session = _login(client, owner.email).json()["data"]
        data = client.get(
            "/v1/authz/roles/ROLE_ACCOUNTANT/permissions", headers=_bearer(owner_session)
        ).json()["data"]
        assert data["role"] == "ACCOUNTANT"
        assert "PROCESS_PAYROLL" in data["permissions"]

    def test_change_role_and_audit_log(self, client, owner, make_identity):
        driver = make_identity("driver@acme.test")
        session = _login(client, owner.email).json()["data"]
        response = client.put(
            f"/v1/users/{driver.id}/role",
            json={"role": "FLEET_MANAGER", "reason": "promotion"},
            headers=_bearer(session),
        )
        assert response.status_code == 200
        assert response.json()["data"]["role"] == "FLEET_MANAGER"

        events = client.get("/v1/audit/events", headers=_bearer(session)).json()["data"]
        assert events[0]["action"] == "ROLE_ASSIGNED"
        assert events[0]["detail"]["new_role"] == "FLEET_MANAGER"

        perms = client.get(f"/v1/users/{driver.id}/permissions", headers=_bearer(session)).json()["data"]
        assert "CREATE_VEHICLE" in perms["permissions"]

    def test_admin_cannot_grant_owner(self, client, make_identity):
        admin = make_identity("admin@acme.test", Role.ADMIN)
        driver = make_identity("driver@acme.test")
        session = _login(client, admin.email).json()["data"]
        response = client.put(
            f"/v1/users/{driver.id}/role", json={"role": "OWNER"}, headers=_bearer(session)
        )
        error = _assert_error(response, 403, "forbidden")
        assert error["details"] == {"actor_role": "ADMIN", "target_role": "DRIVER"}

    def test_cross_tenant_permissions_lookup(self, client, make_identity, memory_store, clock):
        other = memory_store.save_company(
            Company(id=new_id(), name="Globex", status=CompanyStatus.ACTIVE, created_at=clock())
        )
        admin = make_identity("admin@acme.test", Role.ADMIN)
        outsider = make_identity("x@globex.test", company_id=other.id)
        session = _login(client, admin.email).json()["data"]
        response = client.get(f"/v1/users/{outsider.id}/permissions", headers=_bearer(session))
        _assert_error(response, 403, "forbidden")
