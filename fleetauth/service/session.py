"""Credential verification and the access/refresh token lifecycle."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from fleetauth.config import Settings
from fleetauth.logging import get_logger, hash_email, log_security_event
from fleetauth.service.errors import (
    AccountLockedError,
    AccountNotActiveError,
    CompanySuspendedError,
    InvalidCredentialsError,
    TokenInvalidError,
    ValidationError,
)
from fleetauth.service.ledgers import (
    AuthStore,
    LoginAttemptLedger,
    RefreshTokenLedger,
    translate_store_errors,
)
from fleetauth.service.passwords import PasswordHashing
from fleetauth.service.rbac import AuthContext, AuthorizationEngine, Role, parse_role
from fleetauth.service.tokens import ACCESS, REFRESH, TokenCodec, TokenError
from fleetauth.storage.models import Identity, utcnow

logger = get_logger(__name__)


@dataclass
class IdentitySummary:
    id: str
    email: str
    full_name: str
    role: Role
    company_id: str

    @property
    def role_display_name(self) -> str:
        return self.role.display_name

    @classmethod
    def of(cls, identity: Identity) -> "IdentitySummary":
        return cls(
            id=identity.id,
            email=identity.email,
            full_name=identity.full_name,
            role=identity.role,
            company_id=identity.company_id,
        )


@dataclass
class IssuedSession:
    access_token: str
    refresh_token: str
    expires_at: datetime
    expires_in: int
    identity: IdentitySummary
    token_type: str = "Bearer"


class SessionManager:
    """authenticate / refresh / logout over the token codec and ledgers."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        codec: TokenCodec,
        engine: AuthorizationEngine,
        attempts: LoginAttemptLedger,
        refresh_tokens: RefreshTokenLedger,
        passwords: PasswordHashing,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.codec = codec
        self.engine = engine
        self.attempts = attempts
        self.refresh_tokens = refresh_tokens
        self.passwords = passwords
        self._clock = clock
        self._access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self._attempt_window = timedelta(minutes=settings.login_attempt_window_minutes)

    def _record_attempt(self, email: str, success: bool, **fields) -> None:
        # the audit row must never decide the outcome of a login
        try:
            self.attempts.record(email, success=success, **fields)
        except Exception as exc:
            logger.error(
                "login_attempt_record_failed",
                email_hash=hash_email(email),
                success=success,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def _issue_access_token(self, identity: Identity) -> tuple[str, datetime]:
        claims = {
            "sub": identity.id,
            "company_id": identity.company_id,
            "email": identity.email,
            "role": identity.role.authority,
            "permissions": self.engine.permission_codes(identity.role),
        }
        token = self.codec.issue(claims, self._access_ttl, token_type=ACCESS)
        return token, self._clock() + self._access_ttl

    def _verify(self, token: str, expected_type: Optional[str] = None) -> dict:
        try:
            return self.codec.verify(token, expected_type=expected_type)
        except TokenError as exc:
            logger.info("token_rejected", reason=exc.kind.value, token_type=expected_type)
            raise TokenInvalidError(exc.kind.value) from exc

    @translate_store_errors
    def authenticate(
        self,
        email: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> IssuedSession:
        email = (email or "").strip().lower()
        if not email or not password:
            raise ValidationError("Email and password are required")

        context = {"ip_addr": ip_addr, "user_agent": user_agent}
        retry_after = self.attempts.lockout_remaining(
            email,
            window=self._attempt_window,
            threshold=self.settings.login_max_failed_attempts,
        )
        if retry_after is not None:
            self._record_attempt(email, False, failure_reason="account_locked", **context)
            log_security_event(
                "login_locked_out",
                logger=logger,
                email_hash=hash_email(email),
                ip_addr=ip_addr,
                retry_after_seconds=retry_after,
            )
            raise AccountLockedError(retry_after)

        identity = self.store.get_identity_by_email(email)
        if not identity:
            self.passwords.burn(password)
            self._record_attempt(email, False, failure_reason="user_not_found", **context)
            raise InvalidCredentialsError()

        if not identity.is_active:
            self._record_attempt(email, False, failure_reason="account_inactive", **context)
            raise AccountNotActiveError()

        company = self.store.get_company(identity.company_id)
        if not company or not company.is_active:
            self._record_attempt(email, False, failure_reason="company_inactive", **context)
            raise CompanySuspendedError()

        if not self.passwords.verify(identity.password_hash, identity.password_algo, password):
            self._record_attempt(email, False, failure_reason="invalid_password", **context)
            raise InvalidCredentialsError()

        access_token, expires_at = self._issue_access_token(identity)
        refresh_row = self.refresh_tokens.issue(
            identity, user_agent=user_agent, ip_addr=ip_addr
        )
        self._record_attempt(email, True, user_id=identity.id, **context)
        logger.info(
            "login_succeeded",
            user_id=identity.id,
            company_id=identity.company_id,
            role=identity.role.value,
        )
        return IssuedSession(
            access_token=access_token,
            refresh_token=refresh_row.token,
            expires_at=expires_at,
            expires_in=int(self._access_ttl.total_seconds()),
            identity=IdentitySummary.of(identity),
        )

    @translate_store_errors
    def refresh(
        self,
        refresh_token: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> IssuedSession:
        """Mint a new access token from a live refresh token.

        The refresh token comes back unchanged unless ``refresh_token_rotation``
        is enabled, in which case the presented token is marked rotated and a
        child token is returned in its place.
        """
        claims = self._verify(refresh_token, REFRESH)
        row = self.refresh_tokens.find(refresh_token)
        if not row or not row.is_valid(self._clock()) or row.user_id != claims.get("sub"):
            state = row.state(self._clock()) if row else "MISSING"
            if row and row.rotated:
                log_security_event(
                    "refresh_token_reuse", logger=logger, user_id=row.user_id, token_id=row.id
                )
            logger.info("refresh_rejected", state=state)
            raise TokenInvalidError(state.lower())

        identity = self.store.get_identity(row.user_id)
        if not identity:
            raise TokenInvalidError("identity_missing")
        if not identity.is_active:
            raise AccountNotActiveError()
        if claims.get("company_id") != identity.company_id:
            logger.warning(
                "refresh_company_mismatch",
                user_id=identity.id,
                token_company_id=claims.get("company_id"),
                company_id=identity.company_id,
            )
            raise TokenInvalidError("company_mismatch")
        company = self.store.get_company(identity.company_id)
        if not company or not company.is_active:
            raise CompanySuspendedError()

        returned_token = refresh_token
        if self.settings.refresh_token_rotation:
            child = self.refresh_tokens.rotate(
                row, identity, user_agent=user_agent, ip_addr=ip_addr
            )
            if child is None:
                log_security_event(
                    "refresh_token_reuse", logger=logger, user_id=identity.id, token_id=row.id
                )
                raise TokenInvalidError("rotated")
            returned_token = child.token

        access_token, expires_at = self._issue_access_token(identity)
        return IssuedSession(
            access_token=access_token,
            refresh_token=returned_token,
            expires_at=expires_at,
            expires_in=int(self._access_ttl.total_seconds()),
            identity=IdentitySummary.of(identity),
        )

    @translate_store_errors
    def logout(self, token: str) -> int:
        """Revoke every refresh token of the token's owner; returns rows revoked."""
        claims = self._verify(token)
        user_id = claims.get("sub")
        if not user_id:
            raise TokenInvalidError("missing_subject")
        revoked = self.refresh_tokens.revoke_all_for(user_id)
        logger.info("logout", user_id=user_id, revoked_tokens=revoked)
        return revoked

    @translate_store_errors
    def validate_token(self, token: str) -> bool:
        try:
            claims = self.codec.verify(token)
        except TokenError:
            return False
        if claims.get("token_type") == REFRESH:
            return self.refresh_tokens.is_valid(token)
        return True

    def resolve(self, access_token: str) -> AuthContext:
        """Build the acting principal from an access token's claims."""
        claims = self._verify(access_token, ACCESS)
        try:
            return AuthContext(
                user_id=claims["sub"],
                company_id=claims["company_id"],
                email=claims.get("email", ""),
                role=parse_role(claims["role"]),
                permissions=frozenset(claims.get("permissions") or ()),
            )
        except (KeyError, ValueError) as exc:
            raise TokenInvalidError("malformed_claims") from exc
