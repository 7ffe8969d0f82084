"""Tests for login, refresh, logout and token validation."""

from datetime import timedelta

import pytest

from fleetauth.service.errors import (
    AccountLockedError,
    AccountNotActiveError,
    CompanySuspendedError,
    InfrastructureError,
    InvalidCredentialsError,
    TokenInvalidError,
    ValidationError,
)
from fleetauth.service.rbac import ROLE_PERMISSIONS, Role
from fleetauth.service.runtime import Runtime
from fleetauth.storage.errors import StoreUnavailableError
from fleetauth.storage.models import Company, CompanyStatus, IdentityStatus, new_id

from conftest import GOOD_PASSWORD


def _failed_reasons(store, email):
    return [a.failure_reason for a in store.login_attempts if a.email == email and not a.success]


class TestAuthenticate:
    def test_owner_login(self, runtime, owner, clock):
        session = runtime.sessions.authenticate("Owner@Acme.test", GOOD_PASSWORD, ip_addr="10.0.0.1")

        assert session.token_type == "Bearer"
        assert session.expires_in == 900
        assert session.expires_at == clock() + timedelta(minutes=15)
        assert session.identity.role == Role.OWNER
        assert session.identity.role_display_name == "Company Owner"

        claims = runtime.codec.verify(session.access_token, expected_type="access")
        assert claims["role"] == "OWNER"
        assert claims["sub"] == owner.id
        assert claims["company_id"] == owner.company_id
        assert set(claims["permissions"]) == {p.code for p in ROLE_PERMISSIONS[Role.OWNER]}
        assert runtime.refresh_tokens.is_valid(session.refresh_token)

    def test_success_is_recorded(self, runtime, owner, memory_store):
        runtime.sessions.authenticate(owner.email, GOOD_PASSWORD, user_agent="pytest")
        attempt = memory_store.login_attempts[-1]
        assert attempt.success and attempt.user_id == owner.id
        assert attempt.user_agent == "pytest"

    def test_blank_credentials(self, runtime):
        with pytest.raises(ValidationError):
            runtime.sessions.authenticate("", GOOD_PASSWORD)
        with pytest.raises(ValidationError):
            runtime.sessions.authenticate("a@acme.test", "")

    def test_unknown_email_and_wrong_password_look_alike(self, runtime, owner, memory_store):
        with pytest.raises(InvalidCredentialsError) as unknown:
            runtime.sessions.authenticate("ghost@acme.test", GOOD_PASSWORD)
        with pytest.raises(InvalidCredentialsError) as wrong:
            runtime.sessions.authenticate(owner.email, "WrongPass1!")
        assert str(unknown.value) == str(wrong.value) == "Invalid email or password"
        assert _failed_reasons(memory_store, "ghost@acme.test") == ["user_not_found"]
        assert _failed_reasons(memory_store, owner.email) == ["invalid_password"]

    def test_lockout_after_five_failures(self, runtime, owner, memory_store):
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                runtime.sessions.authenticate(owner.email, "WrongPass1!")

        with pytest.raises(AccountLockedError) as exc_info:
            runtime.sessions.authenticate(owner.email, GOOD_PASSWORD)
        assert exc_info.value.status_code == 423
        assert 0 < exc_info.value.retry_after_seconds <= 15 * 60
        assert _failed_reasons(memory_store, owner.email) == ["invalid_password"] * 5 + ["account_locked"]

    def test_lockout_expires_with_window(self, runtime, owner, clock):
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                runtime.sessions.authenticate(owner.email, "WrongPass1!")
        clock.advance(minutes=15, seconds=1)
        session = runtime.sessions.authenticate(owner.email, GOOD_PASSWORD)
        assert session.identity.id == owner.id

    def test_inactive_account(self, runtime, make_identity, memory_store):
        pending = make_identity("pending@acme.test", status=IdentityStatus.INACTIVE)
        with pytest.raises(AccountNotActiveError):
            runtime.sessions.authenticate(pending.email, GOOD_PASSWORD)
        assert _failed_reasons(memory_store, pending.email) == ["account_inactive"]

    def test_suspended_company(self, runtime, owner, company, memory_store):
        company.status = CompanyStatus.SUSPENDED
        memory_store.save_company(company)
        with pytest.raises(CompanySuspendedError):
            runtime.sessions.authenticate(owner.email, GOOD_PASSWORD)
        assert _failed_reasons(memory_store, owner.email) == ["company_inactive"]

    def test_attempt_logging_failure_does_not_block_login(self, runtime, owner, memory_store, monkeypatch):
        def broken(attempt):
            raise StoreUnavailableError("login_attempt table unavailable")

        monkeypatch.setattr(memory_store, "add_login_attempt", broken)
        session = runtime.sessions.authenticate(owner.email, GOOD_PASSWORD)
        assert session.identity.id == owner.id

    def test_unreachable_store_is_retryable(self, runtime, owner, memory_store, monkeypatch):
        def down(email):
            raise StoreUnavailableError("connection refused")

        monkeypatch.setattr(memory_store, "get_identity_by_email", down)
        with pytest.raises(InfrastructureError) as exc_info:
            runtime.sessions.authenticate(owner.email, GOOD_PASSWORD)
        assert exc_info.value.status_code == 503


class TestRefresh:
    def test_refresh_keeps_token_without_rotation(self, runtime, owner, clock):
        session = runtime.sessions.authenticate(owner.email, GOOD_PASSWORD)
        clock.advance(minutes=20)
        renewed = runtime.sessions.refresh(session.refresh_token)
        assert renewed.refresh_token == session.refresh_token
        assert renewed.access_token != session.access_token
        assert runtime.codec.verify(renewed.access_token, expected_type="access")["sub"] == owner.id

    def test_access_token_is_not_a_refresh_token(self, runtime, owner):
        session = runtime.sessions.authenticate(owner.email, GOOD_PASSWORD)
        with pytest.raises(TokenInvalidError) as exc_info:
            runtime.sessions.refresh(session.access_token)
        assert exc_info.value.reason == "wrong_type"

    def test_revoked_refresh_token(self, runtime, owner):
        session = runtime.sessions.authenticate(owner.email, GOOD_PASSWORD)
        runtime.refresh_tokens.revoke_all_for(owner.id)
        with pytest.raises(TokenInvalidError) as exc_info:
            runtime.sessions.refresh(session.refresh_token)
        assert exc_info.value.reason == "revoked"

    def test_deactivated_identity(self, runtime, owner, memory_store):
        session = runtime.sessions.authenticate(owner.email, GOOD_PASSWORD)
        owner.status = IdentityStatus.INACTIVE
        memory_store.save_identity(owner)
        with pytest.raises(AccountNotActiveError):
            runtime.sessions.refresh(session.refresh_token)

    def test_company_mismatch(self, runtime, owner, memory_store, clock):
        session = runtime.sessions.authenticate(owner.email, GOOD_PASSWORD)
        other = memory_store.save_company(
            Company(id=new_id(), name="Globex", status=CompanyStatus.ACTIVE, created_at=clock())
        )
        owner.company_id = other.id
        memory_store.save_identity(owner)
        with pytest.raises(TokenInvalidError) as exc_info:
            runtime.sessions.refresh(session.refresh_token)
        assert exc_info.value.reason == "company_mismatch"

    def test_suspended_company(self, runtime, owner, company, memory_store):
        session = runtime.sessions.authenticate(owner.email, GOOD_PASSWORD)
        company.status = CompanyStatus.SUSPENDED
        memory_store.save_company(company)
        with pytest.raises(CompanySuspendedError):
            runtime.sessions.refresh(session.refresh_token)

    def test_rotation(self, settings, memory_store, notifier, clock, owner):
        rotating = Runtime(
            settings.model_copy(update={"refresh_token_rotation": True}),
            store=memory_store,
            notifier=notifier,
            clock=clock,
        )
        session = rotating.sessions.authenticate(owner.email, GOOD_PASSWORD)
        renewed = rotating.sessions.refresh(session.refresh_token)
        assert renewed.refresh_token != session.refresh_token

        child = rotating.refresh_tokens.find(renewed.refresh_token)
        parent = rotating.refresh_tokens.find(session.refresh_token)
        assert child.parent_token_id == parent.id
        assert parent.rotated

        with pytest.raises(TokenInvalidError) as exc_info:
            rotating.sessions.refresh(session.refresh_token)
        assert exc_info.value.reason == "rotated"


class TestLogoutAndValidation:
    def test_logout_revokes_every_device(self, runtime, owner):
        phone = runtime.sessions.authenticate(owner.email, GOOD_PASSWORD, user_agent="phone")
        laptop = runtime.sessions.authenticate(owner.email, GOOD_PASSWORD, user_agent="laptop")

        assert runtime.sessions.logout(phone.access_token) == 2
        for session in (phone, laptop):
            with pytest.raises(TokenInvalidError):
                runtime.sessions.refresh(session.refresh_token)
        assert runtime.sessions.logout(laptop.refresh_token) == 0

    def test_logout_rejects_garbage(self, runtime):
        with pytest.raises(TokenInvalidError):
            runtime.sessions.logout("not.a.token")

    def test_validate_token(self, runtime, owner, clock):
        session = runtime.sessions.authenticate(owner.email, GOOD_PASSWORD)
        assert runtime.sessions.validate_token(session.access_token)
        assert runtime.sessions.validate_token(session.refresh_token)
        assert not runtime.sessions.validate_token("garbage")

        runtime.sessions.logout(session.access_token)
        assert not runtime.sessions.validate_token(session.refresh_token)
        clock.advance(minutes=16)
        assert not runtime.sessions.validate_token(session.access_token)

    def test_resolve_builds_auth_context(self, runtime, make_identity):
        manager = make_identity("fm@acme.test", Role.FLEET_MANAGER)
        session = runtime.sessions.authenticate(manager.email, GOOD_PASSWORD)
        ctx = runtime.sessions.resolve(session.access_token)
        assert ctx.id == manager.id
        assert ctx.role == Role.FLEET_MANAGER
        assert "CREATE_VEHICLE" in ctx.permissions

    def test_resolve_rejects_refresh_tokens(self, runtime, owner):
        session = runtime.sessions.authenticate(owner.email, GOOD_PASSWORD)
        with pytest.raises(TokenInvalidError):
            runtime.sessions.resolve(session.refresh_token)
