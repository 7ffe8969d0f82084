"""Tests for the login-attempt, refresh-token and one-time code ledgers."""

import itertools
from datetime import timedelta

import pytest

from fleetauth.service.errors import (
    CodeAlreadyUsedError,
    CodeError,
    CodeExpiredError,
    InfrastructureError,
    InvalidCodeError,
)
from fleetauth.service.ledgers import translate_store_errors
from fleetauth.storage.errors import StoreUnavailableError
from fleetauth.storage.models import CodePurpose, RefreshToken, new_id

from conftest import current_code


class TestLoginAttemptLedger:
    def test_record_keeps_history(self, runtime, clock):
        ledger = runtime.login_attempts
        ledger.record("a@acme.test", success=False, ip_addr="10.0.0.1", failure_reason="invalid_password")
        clock.advance(minutes=1)
        ledger.record("a@acme.test", success=True, ip_addr="10.0.0.1", user_id="u1")

        since = clock() - timedelta(hours=1)
        assert ledger.count_failed_since("a@acme.test", since) == 1
        assert ledger.count_from_ip_since("10.0.0.1", since) == 2
        last = ledger.last_successful("a@acme.test")
        assert last is not None and last.user_id == "u1"

    def test_success_does_not_clear_failures(self, runtime, clock):
        ledger = runtime.login_attempts
        for _ in range(3):
            ledger.record("a@acme.test", success=False)
        ledger.record("a@acme.test", success=True)
        assert ledger.count_failed_since("a@acme.test", clock() - timedelta(minutes=15)) == 3

    def test_lockout_below_threshold(self, runtime):
        ledger = runtime.login_attempts
        for _ in range(4):
            ledger.record("a@acme.test", success=False)
        assert ledger.lockout_remaining("a@acme.test", window=timedelta(minutes=15), threshold=5) is None

    def test_lockout_remaining_counts_down(self, runtime, clock):
        ledger = runtime.login_attempts
        window = timedelta(minutes=15)
        for _ in range(5):
            ledger.record("a@acme.test", success=False)
            clock.advance(minutes=1)
        # oldest failure is 5 minutes old
        assert ledger.lockout_remaining("a@acme.test", window=window, threshold=5) == 600
        clock.advance(minutes=10, seconds=1)
        assert ledger.lockout_remaining("a@acme.test", window=window, threshold=5) is None

    def test_purge_older_than(self, runtime, clock, memory_store):
        ledger = runtime.login_attempts
        ledger.record("old@acme.test", success=False)
        clock.advance(days=91)
        ledger.record("new@acme.test", success=False)
        assert ledger.purge_older_than(clock() - timedelta(days=90)) == 1
        assert [a.email for a in memory_store.login_attempts] == ["new@acme.test"]


class TestRefreshTokenState:
    """Validity is derived from the expiry, revoked and rotated flags."""

    def test_all_flag_combinations(self, clock):
        now = clock()
        for expired, revoked, rotated in itertools.product([False, True], repeat=3):
            row = RefreshToken(
                id=new_id(),
                user_id="u1",
                token="t",
                expires_at=now - timedelta(seconds=1) if expired else now + timedelta(days=1),
                revoked=revoked,
                rotated=rotated,
            )
            assert row.is_valid(now) == (not expired and not revoked and not rotated)

    def test_expiry_boundary_is_inclusive(self, clock):
        row = RefreshToken(id=new_id(), user_id="u1", token="t", expires_at=clock())
        assert row.is_expired(clock())
        assert row.state(clock()) == "EXPIRED"


class TestRefreshTokenLedger:
    def test_issue_persists_row(self, runtime, owner, clock):
        ledger = runtime.refresh_tokens
        row = ledger.issue(owner, user_agent="curl/8", ip_addr="10.0.0.9")
        assert row.user_id == owner.id
        assert row.expires_at == clock() + timedelta(days=7)
        assert row.device_fingerprint == ledger.device_fingerprint("curl/8", "10.0.0.9")
        assert ledger.is_valid(row.token)

        claims = runtime.codec.verify(row.token, expected_type="refresh")
        assert claims["sub"] == owner.id
        assert claims["company_id"] == owner.company_id

    def test_fingerprint_is_salted(self, runtime):
        fp = runtime.refresh_tokens.device_fingerprint("ua", "1.2.3.4")
        assert len(fp) == 64
        assert fp != runtime.refresh_tokens.device_fingerprint("ua", "1.2.3.5")

    def test_expired_row_is_invalid(self, runtime, owner, clock):
        row = runtime.refresh_tokens.issue(owner)
        clock.advance(days=7)
        assert not runtime.refresh_tokens.is_valid(row.token)
        assert runtime.refresh_tokens.purge_expired() == 1

    def test_rotate_links_child_and_only_once(self, runtime, owner):
        ledger = runtime.refresh_tokens
        parent = ledger.issue(owner, user_agent="ua", ip_addr="1.1.1.1")
        child = ledger.rotate(parent, owner)
        assert child is not None
        assert child.parent_token_id == parent.id
        assert child.user_agent == "ua"
        assert not ledger.is_valid(parent.token)
        assert ledger.is_valid(child.token)
        assert ledger.rotate(parent, owner) is None

    def test_revoke_all_and_by_device(self, runtime, owner):
        ledger = runtime.refresh_tokens
        ledger.issue(owner, user_agent="phone", ip_addr="1.1.1.1")
        ledger.issue(owner, user_agent="laptop", ip_addr="2.2.2.2")
        ledger.issue(owner, user_agent="laptop", ip_addr="2.2.2.2")
        assert ledger.count_valid(owner.id) == 3

        fp = ledger.device_fingerprint("laptop", "2.2.2.2")
        assert ledger.revoke_device(owner.id, fp) == 2
        assert [t.user_agent for t in ledger.list_valid(owner.id)] == ["phone"]
        assert ledger.revoke_all_for(owner.id) == 1
        assert ledger.count_valid(owner.id) == 0


class TestVerificationCodeLedger:
    def test_verification_codes_are_six_digits(self, runtime):
        row = runtime.verification_codes.create("a@acme.test")
        assert len(row.code) == 6 and row.code.isdigit()

    def test_reset_codes_are_opaque(self, runtime):
        row = runtime.reset_codes.create("a@acme.test")
        assert len(row.code) >= 40

    def test_create_replaces_prior_code(self, runtime, memory_store):
        ledger = runtime.verification_codes
        first = ledger.create("a@acme.test")
        second = ledger.create("a@acme.test")
        assert current_code(memory_store, CodePurpose.EMAIL_VERIFICATION, "a@acme.test") == second.code
        if first.code != second.code:
            with pytest.raises(InvalidCodeError):
                ledger.check("a@acme.test", first.code)
        assert ledger.check("a@acme.test", second.code).id == second.id

    def test_purposes_do_not_collide(self, runtime):
        verify = runtime.verification_codes.create("a@acme.test")
        reset = runtime.reset_codes.create("a@acme.test")
        assert runtime.verification_codes.is_valid("a@acme.test", verify.code)
        assert runtime.reset_codes.is_valid("a@acme.test", reset.code)

    def test_wrong_code(self, runtime):
        runtime.verification_codes.create("a@acme.test")
        with pytest.raises(InvalidCodeError):
            runtime.verification_codes.check("a@acme.test", "not-a-code")
        with pytest.raises(InvalidCodeError):
            runtime.verification_codes.check("nobody@acme.test", "123456")

    def test_expired_code(self, runtime, clock):
        row = runtime.verification_codes.create("a@acme.test")
        clock.advance(hours=24)
        with pytest.raises(CodeExpiredError):
            runtime.verification_codes.check("a@acme.test", row.code)
        assert not runtime.verification_codes.is_valid("a@acme.test", row.code)

    def test_redeem_is_single_use(self, runtime):
        ledger = runtime.verification_codes
        row = ledger.create("a@acme.test")
        assert ledger.redeem("a@acme.test", row.code, lambda code: "done") == "done"
        with pytest.raises(CodeAlreadyUsedError):
            ledger.redeem("a@acme.test", row.code, lambda code: "again")

    def test_redeem_releases_code_when_apply_fails(self, runtime):
        ledger = runtime.verification_codes
        row = ledger.create("a@acme.test")

        def boom(code):
            raise RuntimeError("write failed")

        with pytest.raises(RuntimeError):
            ledger.redeem("a@acme.test", row.code, boom)
        assert ledger.is_valid("a@acme.test", row.code)

    def test_code_errors_share_external_message(self):
        messages = {str(cls()) for cls in (InvalidCodeError, CodeExpiredError, CodeAlreadyUsedError)}
        assert messages == {"Invalid or expired code"}
        assert all(issubclass(cls, CodeError) for cls in (InvalidCodeError, CodeExpiredError))

    def test_invalidate(self, runtime):
        row = runtime.reset_codes.create("a@acme.test")
        runtime.reset_codes.invalidate("a@acme.test")
        assert not runtime.reset_codes.is_valid("a@acme.test", row.code)

    def test_purge_expired(self, runtime, clock):
        runtime.verification_codes.create("a@acme.test")
        runtime.reset_codes.create("b@acme.test")
        clock.advance(hours=25)
        assert runtime.verification_codes.purge_expired() == 2


class TestStoreErrorTranslation:
    def test_unavailable_store_becomes_infrastructure_error(self):
        @translate_store_errors
        def flaky():
            raise StoreUnavailableError("connection refused")

        with pytest.raises(InfrastructureError) as exc_info:
            flaky()
        assert exc_info.value.status_code == 503
        assert exc_info.value.detail == {"retryable": True}
