"""Registration, email verification, password reset and role assignment."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from fleetauth.config import Settings
from fleetauth.logging import get_logger, hash_email, log_security_event
from fleetauth.service.email import EmailService
from fleetauth.service.errors import (
    CompanySuspendedError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from fleetauth.service.ledgers import (
    AuthStore,
    RefreshTokenLedger,
    VerificationCodeLedger,
    translate_store_errors,
)
from fleetauth.service.password_policy import PasswordPolicy
from fleetauth.service.passwords import PasswordHashing
from fleetauth.service.rbac import (
    AuthorizationEngine,
    Permission,
    Principal,
    Role,
    require_permission,
)
from fleetauth.storage.errors import ConstraintViolation
from fleetauth.storage.models import (
    AuditEvent,
    Company,
    CompanyStatus,
    Identity,
    IdentityStatus,
    new_id,
    utcnow,
)

logger = get_logger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

ROLE_ASSIGNED = "ROLE_ASSIGNED"


@dataclass
class BootstrapResult:
    company: Company
    owner: Identity
    created: bool


class AccountService:
    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        engine: AuthorizationEngine,
        passwords: PasswordHashing,
        policy: PasswordPolicy,
        verification_codes: VerificationCodeLedger,
        reset_codes: VerificationCodeLedger,
        refresh_tokens: RefreshTokenLedger,
        notifier: EmailService,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.engine = engine
        self.passwords = passwords
        self.policy = policy
        self.verification_codes = verification_codes
        self.reset_codes = reset_codes
        self.refresh_tokens = refresh_tokens
        self.notifier = notifier
        self._clock = clock

    @staticmethod
    def _normalize_email(email: str) -> str:
        normalized = (email or "").strip().lower()
        if not normalized or not _EMAIL_RE.match(normalized):
            raise ValidationError("A valid email address is required", detail={"field": "email"})
        return normalized

    def _require_identity(self, identity_id: str) -> Identity:
        identity = self.store.get_identity(identity_id)
        if not identity:
            raise NotFoundError("User not found", detail={"user_id": identity_id})
        return identity

    @translate_store_errors
    def register_identity(
        self,
        email: str,
        password: str,
        full_name: str,
        company_id: str,
        *,
        actor: Optional[Principal] = None,
    ) -> Identity:
        """Create an INACTIVE driver account and mail it a verification code.

        With an ``actor`` the caller needs CREATE_USER and access to the
        company. Without one, self-registration is only open while the
        company has no accounts at all.
        """
        email = self._normalize_email(email)
        full_name = (full_name or "").strip()
        if not full_name:
            raise ValidationError("Full name is required", detail={"field": "full_name"})
        if not company_id:
            raise ValidationError("Company is required", detail={"field": "company_id"})
        self.policy.ensure(password)

        company = self.store.get_company(company_id)
        if not company:
            raise NotFoundError("Company not found", detail={"company_id": company_id})
        if not company.is_active:
            raise CompanySuspendedError()

        if actor is not None:
            self.engine.ensure_permission(actor, Permission.CREATE_USER)
            self.engine.ensure_company_access(actor, company_id)
        elif self.store.count_identities_by_company(company_id) > 0:
            logger.warning("self_registration_closed", company_id=company_id)
            raise ForbiddenError("Registration requires an authorized user for this company")

        # only an authorized caller may learn whether the email is taken
        if self.store.get_identity_by_email(email):
            raise ConflictError("Email already registered", detail={"field": "email"})

        password_hash, algo = self.passwords.hash(password)
        now = self._clock()
        identity = Identity(
            id=new_id(),
            company_id=company_id,
            email=email,
            full_name=full_name,
            password_hash=password_hash,
            password_algo=algo,
            role=Role.DRIVER,
            status=IdentityStatus.INACTIVE,
            created_at=now,
            updated_at=now,
        )
        try:
            identity = self.store.save_identity(identity)
        except ConstraintViolation as exc:
            raise ConflictError("Email already registered", detail=exc.detail) from exc

        code = self.verification_codes.create(email)
        self.notifier.send_verification_code(email, full_name, code.code)
        logger.info(
            "identity_registered",
            user_id=identity.id,
            company_id=company_id,
            created_by=actor.id if actor is not None else None,
        )
        return identity

    @translate_store_errors
    def resend_verification_code(self, email: str) -> None:
        email = self._normalize_email(email)
        identity = self.store.get_identity_by_email(email)
        if not identity:
            raise NotFoundError("User not found")
        if identity.is_active:
            raise ConflictError("Email already verified")
        code = self.verification_codes.create(email)
        self.notifier.send_verification_code(email, identity.full_name, code.code)

    @translate_store_errors
    def verify_email(self, email: str, code: str) -> Identity:
        email = self._normalize_email(email)

        def activate(_row) -> Identity:
            identity = self.store.get_identity_by_email(email)
            if not identity:
                raise NotFoundError("User not found")
            if identity.is_active:
                raise ConflictError("Email already verified")
            identity.status = IdentityStatus.ACTIVE
            identity.updated_at = self._clock()
            return self.store.save_identity(identity)

        identity = self.verification_codes.redeem(email, code, activate)
        logger.info("email_verified", user_id=identity.id)
        self.notifier.send_account_activated_email(identity.email, identity.full_name)
        return identity

    @translate_store_errors
    def request_password_reset(self, email: str) -> None:
        """Issue a reset code; unknown emails return silently."""
        email = self._normalize_email(email)
        identity = self.store.get_identity_by_email(email)
        if not identity:
            logger.info("password_reset_unknown_email", email_hash=hash_email(email))
            return
        code = self.reset_codes.create(email)
        self.notifier.send_password_reset_email(email, identity.full_name, code.code)
        logger.info("password_reset_requested", user_id=identity.id)

    def resend_password_reset_code(self, email: str) -> None:
        self.request_password_reset(email)

    @translate_store_errors
    def reset_password(self, email: str, code: str, new_password: str) -> None:
        email = self._normalize_email(email)
        # a policy failure must not burn the code
        self.policy.ensure(new_password)

        def apply(_row) -> Identity:
            identity = self.store.get_identity_by_email(email)
            if not identity:
                raise NotFoundError("User not found")
            identity.password_hash, identity.password_algo = self.passwords.hash(new_password)
            identity.updated_at = self._clock()
            return self.store.save_identity(identity)

        identity = self.reset_codes.redeem(email, code, apply)
        revoked = self.refresh_tokens.revoke_all_for(identity.id)
        log_security_event(
            "password_reset_completed",
            logger=logger,
            user_id=identity.id,
            revoked_tokens=revoked,
        )
        self.notifier.send_password_changed_email(identity.email, identity.full_name)

    @translate_store_errors
    def is_reset_code_valid(self, email: str, code: str) -> bool:
        normalized = (email or "").strip().lower()
        if not normalized or not code:
            return False
        return self.reset_codes.is_valid(normalized, code)

    @translate_store_errors
    def change_role(
        self,
        actor: Principal,
        target_id: str,
        new_role: Role,
        reason: Optional[str] = None,
    ) -> Identity:
        # decide on the actor's stored role, not the one frozen into its token
        actor_identity = self.store.get_identity(actor.id)
        if not actor_identity or not actor_identity.is_active:
            raise ForbiddenError("Acting user is not active")
        target = self._require_identity(target_id)
        self.engine.ensure_company_access(actor_identity, target.company_id)
        self.engine.check_role_change(actor_identity, target, new_role)

        old_role = target.role
        target.role = new_role
        target.updated_at = self._clock()
        target = self.store.save_identity(target)

        detail = {
            "old_role": old_role.value,
            "new_role": new_role.value,
            "reason": reason,
        }
        self.store.add_audit_event(
            AuditEvent(
                id=new_id(),
                action=ROLE_ASSIGNED,
                actor_id=actor_identity.id,
                target_id=target.id,
                company_id=target.company_id,
                detail=detail,
                created_at=self._clock(),
            )
        )
        log_security_event(
            "role_changed",
            logger=logger,
            actor_id=actor_identity.id,
            target_id=target.id,
            **detail,
        )
        return target

    @translate_store_errors
    @require_permission(Permission.VIEW_AUDIT_LOG)
    def list_audit_events(self, *, actor: Principal, limit: int = 100) -> List[AuditEvent]:
        """Audit trail visible to ``actor``: every company for an OWNER, else its own."""
        company_id = None if actor.role == Role.OWNER else actor.company_id
        return self.store.list_audit_events(company_id=company_id, limit=limit)

    @translate_store_errors
    def get_permissions(self, identity_id: str) -> List[str]:
        identity = self._require_identity(identity_id)
        return self.engine.permission_codes(identity.role)

    @translate_store_errors
    def bootstrap_owner(
        self,
        *,
        company_name: str,
        email: str,
        password: str,
        full_name: str,
    ) -> BootstrapResult:
        """Seed an ACTIVE company and OWNER when no owner exists yet."""
        email = self._normalize_email(email)
        existing = self.store.get_identity_by_email(email)
        if existing and existing.role == Role.OWNER:
            company = self.store.get_company(existing.company_id)
            if company is None:
                raise NotFoundError("Owner company missing", detail={"company_id": existing.company_id})
            return BootstrapResult(company=company, owner=existing, created=False)
        if existing:
            raise ConflictError("Email already registered with another role")
        self.policy.ensure(password)

        company = self.store.get_company_by_name(company_name)
        if company is None:
            company = self.store.save_company(
                Company(
                    id=new_id(),
                    name=company_name,
                    status=CompanyStatus.ACTIVE,
                    created_at=self._clock(),
                )
            )
        password_hash, algo = self.passwords.hash(password)
        now = self._clock()
        owner = self.store.save_identity(
            Identity(
                id=new_id(),
                company_id=company.id,
                email=email,
                full_name=full_name,
                password_hash=password_hash,
                password_algo=algo,
                role=Role.OWNER,
                status=IdentityStatus.ACTIVE,
                created_at=now,
                updated_at=now,
            )
        )
        log_security_event("owner_bootstrapped", logger=logger, user_id=owner.id, company_id=company.id)
        self.notifier.send_welcome_email(owner.email, owner.full_name)
        return BootstrapResult(company=company, owner=owner, created=True)
