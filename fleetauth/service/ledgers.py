"""Append-only login history, refresh-token ledger and one-time code ledger."""

from __future__ import annotations

import functools
import hashlib
import hmac
import math
import secrets
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Protocol, TypeVar

from fleetauth.logging import get_logger, hash_email
from fleetauth.service.errors import (
    CodeAlreadyUsedError,
    CodeExpiredError,
    InfrastructureError,
    InvalidCodeError,
)
from fleetauth.service.rbac import Role
from fleetauth.service.tokens import REFRESH, TokenCodec
from fleetauth.storage.errors import StoreUnavailableError
from fleetauth.storage.models import (
    AuditEvent,
    CodePurpose,
    Company,
    Identity,
    LoginAttempt,
    RefreshToken,
    VerificationCode,
    new_id,
    utcnow,
)

logger = get_logger(__name__)

T = TypeVar("T")


class AuthStore(Protocol):
    def get_company(self, company_id: str) -> Optional[Company]: ...

    def get_company_by_name(self, name: str) -> Optional[Company]: ...

    def save_company(self, company: Company) -> Company: ...

    def get_identity(self, identity_id: str) -> Optional[Identity]: ...

    def get_identity_by_email(self, email: str) -> Optional[Identity]: ...

    def save_identity(self, identity: Identity) -> Identity: ...

    def count_identities_by_company(self, company_id: str) -> int: ...

    def count_identities_by_role(self, role: Role) -> int: ...

    def add_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def list_valid_refresh_tokens(self, user_id: str, now: datetime) -> List[RefreshToken]: ...

    def count_valid_refresh_tokens(self, user_id: str, now: datetime) -> int: ...

    def mark_refresh_token_rotated(self, token: str) -> bool: ...

    def revoke_refresh_tokens_for_user(self, user_id: str) -> int: ...

    def revoke_refresh_tokens_for_device(self, user_id: str, device_fingerprint: str) -> int: ...

    def delete_expired_refresh_tokens(self, now: datetime) -> int: ...

    def add_login_attempt(self, attempt: LoginAttempt) -> LoginAttempt: ...

    def list_failed_login_times(self, email: str, since: datetime) -> List[datetime]: ...

    def count_failed_login_attempts(self, email: str, since: datetime) -> int: ...

    def count_login_attempts_from_ip(self, ip_addr: str, since: datetime) -> int: ...

    def last_successful_login(self, email: str) -> Optional[LoginAttempt]: ...

    def delete_login_attempts_before(self, cutoff: datetime) -> int: ...

    def replace_verification_code(self, code: VerificationCode) -> VerificationCode: ...

    def get_verification_code(self, purpose: CodePurpose, email: str) -> Optional[VerificationCode]: ...

    def claim_verification_code(self, code_id: str) -> bool: ...

    def release_verification_code(self, code_id: str) -> None: ...

    def delete_verification_code(self, purpose: CodePurpose, email: str) -> None: ...

    def delete_expired_verification_codes(self, now: datetime) -> int: ...

    def add_audit_event(self, event: AuditEvent) -> AuditEvent: ...

    def list_audit_events(
        self, company_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]: ...


def translate_store_errors(func: Callable[..., T]) -> Callable[..., T]:
    """Surface an unreachable store as a retryable InfrastructureError."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> T:
        try:
            return func(*args, **kwargs)
        except StoreUnavailableError as exc:
            logger.error("store_unavailable", operation=func.__qualname__, error=str(exc))
            raise InfrastructureError() from exc

    return wrapper


class LoginAttemptLedger:
    """Append-only record of authentication attempts."""

    def __init__(self, store: AuthStore, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self._clock = clock

    def append(self, attempt: LoginAttempt) -> LoginAttempt:
        return self.store.add_login_attempt(attempt)

    def record(
        self,
        email: str,
        *,
        success: bool,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        failure_reason: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> LoginAttempt:
        return self.append(
            LoginAttempt(
                id=new_id(),
                email=email,
                success=success,
                attempted_at=self._clock(),
                ip_addr=ip_addr,
                user_agent=user_agent,
                failure_reason=failure_reason,
                user_id=user_id,
            )
        )

    def count_failed_since(self, email: str, since: datetime) -> int:
        return self.store.count_failed_login_attempts(email, since)

    def count_from_ip_since(self, ip_addr: str, since: datetime) -> int:
        return self.store.count_login_attempts_from_ip(ip_addr, since)

    def last_successful(self, email: str) -> Optional[LoginAttempt]:
        return self.store.last_successful_login(email)

    def lockout_remaining(
        self, email: str, *, window: timedelta, threshold: int
    ) -> Optional[int]:
        """Seconds until ``email`` drops below ``threshold`` failures, or None if not locked."""
        now = self._clock()
        times = self.store.list_failed_login_times(email, now - window)
        if len(times) < threshold:
            return None
        # once this attempt leaves the window the count falls to threshold - 1
        pivot = sorted(times)[len(times) - threshold]
        remaining = (pivot + window - now).total_seconds()
        return max(1, math.ceil(remaining))

    def purge_older_than(self, cutoff: datetime) -> int:
        return self.store.delete_login_attempts_before(cutoff)


class RefreshTokenLedger:
    """Persisted refresh tokens; the row, not the signature, decides validity."""

    def __init__(
        self,
        store: AuthStore,
        codec: TokenCodec,
        *,
        ttl: timedelta,
        fingerprint_salt: str,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.codec = codec
        self.ttl = ttl
        self._salt = fingerprint_salt.encode()
        self._clock = clock

    def device_fingerprint(self, user_agent: Optional[str], ip_addr: Optional[str]) -> str:
        """Audit-only device handle; never used for access decisions."""
        material = f"{user_agent or ''}{ip_addr or ''}".encode()
        return hmac.new(self._salt, material, hashlib.sha256).hexdigest()

    def issue(
        self,
        identity: Identity,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
        parent_token_id: Optional[str] = None,
    ) -> RefreshToken:
        now = self._clock()
        value = self.codec.issue(
            {"sub": identity.id, "company_id": identity.company_id},
            self.ttl,
            token_type=REFRESH,
        )
        row = RefreshToken(
            id=new_id(),
            user_id=identity.id,
            token=value,
            expires_at=now + self.ttl,
            device_fingerprint=self.device_fingerprint(user_agent, ip_addr),
            user_agent=user_agent,
            ip_addr=ip_addr,
            parent_token_id=parent_token_id,
            created_at=now,
        )
        return self.store.add_refresh_token(row)

    def find(self, token: str) -> Optional[RefreshToken]:
        return self.store.get_refresh_token(token)

    def is_valid(self, token: str) -> bool:
        row = self.find(token)
        return bool(row and row.is_valid(self._clock()))

    def rotate(
        self,
        current: RefreshToken,
        identity: Identity,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Optional[RefreshToken]:
        """Mark ``current`` rotated and issue its child; None if another caller won the race."""
        if not self.store.mark_refresh_token_rotated(current.token):
            return None
        return self.issue(
            identity,
            user_agent=user_agent if user_agent is not None else current.user_agent,
            ip_addr=ip_addr if ip_addr is not None else current.ip_addr,
            parent_token_id=current.id,
        )

    def revoke_all_for(self, user_id: str) -> int:
        return self.store.revoke_refresh_tokens_for_user(user_id)

    def revoke_device(self, user_id: str, device_fingerprint: str) -> int:
        return self.store.revoke_refresh_tokens_for_device(user_id, device_fingerprint)

    def list_valid(self, user_id: str) -> List[RefreshToken]:
        return self.store.list_valid_refresh_tokens(user_id, self._clock())

    def count_valid(self, user_id: str) -> int:
        return self.store.count_valid_refresh_tokens(user_id, self._clock())

    def purge_expired(self) -> int:
        return self.store.delete_expired_refresh_tokens(self._clock())


class VerificationCodeLedger:
    """Time-bound single-use codes, one live code per email for a given purpose."""

    def __init__(
        self,
        store: AuthStore,
        purpose: CodePurpose,
        *,
        ttl: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.purpose = purpose
        self.ttl = ttl
        self._clock = clock

    def _generate(self) -> str:
        if self.purpose == CodePurpose.EMAIL_VERIFICATION:
            return f"{secrets.randbelow(1_000_000):06d}"
        return secrets.token_urlsafe(32)

    def create(self, email: str) -> VerificationCode:
        """Replace any prior code for ``email`` with a fresh one."""
        now = self._clock()
        code = VerificationCode(
            id=new_id(),
            purpose=self.purpose,
            email=email,
            code=self._generate(),
            expires_at=now + self.ttl,
            created_at=now,
        )
        return self.store.replace_verification_code(code)

    def check(self, email: str, code: str) -> VerificationCode:
        row = self.store.get_verification_code(self.purpose, email)
        if not row or not code or not hmac.compare_digest(row.code, code):
            self._reject(email, "not_found")
            raise InvalidCodeError()
        if row.is_expired(self._clock()):
            self._reject(email, "expired")
            raise CodeExpiredError()
        if row.used:
            self._reject(email, "used")
            raise CodeAlreadyUsedError()
        return row

    def is_valid(self, email: str, code: str) -> bool:
        row = self.store.get_verification_code(self.purpose, email)
        return bool(
            row
            and code
            and hmac.compare_digest(row.code, code)
            and not row.used
            and not row.is_expired(self._clock())
        )

    def redeem(self, email: str, code: str, apply: Callable[[VerificationCode], T]) -> T:
        """Consume ``code`` and run ``apply``; the code stays unused if ``apply`` raises."""
        row = self.check(email, code)
        if not self.store.claim_verification_code(row.id):
            # lost a race with a concurrent redeem or a resend
            self._reject(email, "used")
            raise CodeAlreadyUsedError()
        try:
            return apply(row)
        except Exception:
            self.store.release_verification_code(row.id)
            raise

    def invalidate(self, email: str) -> None:
        self.store.delete_verification_code(self.purpose, email)

    def purge_expired(self) -> int:
        return self.store.delete_expired_verification_codes(self._clock())

    def _reject(self, email: str, reason: str) -> None:
        logger.info(
            "verification_code_rejected",
            code_purpose=self.purpose.value,
            reason=reason,
            email_hash=hash_email(email),
        )
