from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from fleetauth.logging import get_logger
from fleetauth.service.rbac import Role
from fleetauth.storage.errors import ConstraintViolation
from fleetauth.storage.models import (
    AuditEvent,
    CodePurpose,
    Company,
    Identity,
    LoginAttempt,
    RefreshToken,
    VerificationCode,
)


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class MemoryStore:
    """In-memory backing store used for tests and single-process deployments.

    Every method takes ``_data_lock`` so multi-row operations such as bulk
    revocation are atomic with respect to other callers.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.companies: Dict[str, Company] = {}
        self.identities: Dict[str, Identity] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.login_attempts: List[LoginAttempt] = []
        self.verification_codes: Dict[tuple[CodePurpose, str], VerificationCode] = {}
        self.audit_events: List[AuditEvent] = []
        # RLock so helpers can nest acquisitions within the same thread
        self._data_lock = threading.RLock()

    # companies
    def save_company(self, company: Company) -> Company:
        with self._data_lock:
            self.companies[company.id] = replace(company)
            return replace(company)

    def get_company(self, company_id: str) -> Optional[Company]:
        with self._data_lock:
            company = self.companies.get(company_id)
            return replace(company) if company else None

    def get_company_by_name(self, name: str) -> Optional[Company]:
        with self._data_lock:
            company = next((c for c in self.companies.values() if c.name == name), None)
            return replace(company) if company else None

    # identities
    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            return replace(identity) if identity else None

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        normalized = _normalize_email(email)
        with self._data_lock:
            identity = next(
                (i for i in self.identities.values() if i.email == normalized), None
            )
            return replace(identity) if identity else None

    def save_identity(self, identity: Identity) -> Identity:
        stored = replace(identity, email=_normalize_email(identity.email))
        with self._data_lock:
            clash = next(
                (
                    i
                    for i in self.identities.values()
                    if i.email == stored.email and i.id != stored.id
                ),
                None,
            )
            if clash:
                raise ConstraintViolation("email already exists", {"field": "email"})
            self.identities[stored.id] = stored
            return replace(stored)

    def count_identities_by_company(self, company_id: str) -> int:
        with self._data_lock:
            return sum(1 for i in self.identities.values() if i.company_id == company_id)

    def count_identities_by_role(self, role: Role) -> int:
        with self._data_lock:
            return sum(1 for i in self.identities.values() if i.role == role)

    # refresh tokens
    def add_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if token.token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            self.refresh_tokens[token.token] = replace(token)
            return replace(token)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            row = self.refresh_tokens.get(token)
            return replace(row) if row else None

    def list_valid_refresh_tokens(self, user_id: str, now: datetime) -> List[RefreshToken]:
        with self._data_lock:
            return [
                replace(t)
                for t in self.refresh_tokens.values()
                if t.user_id == user_id and t.is_valid(now)
            ]

    def count_valid_refresh_tokens(self, user_id: str, now: datetime) -> int:
        return len(self.list_valid_refresh_tokens(user_id, now))

    def mark_refresh_token_rotated(self, token: str) -> bool:
        """Flip ``rotated`` only if the row is not already rotated or revoked."""
        with self._data_lock:
            row = self.refresh_tokens.get(token)
            if not row or row.rotated or row.revoked:
                return False
            row.rotated = True
            return True

    def revoke_refresh_tokens_for_user(self, user_id: str) -> int:
        with self._data_lock:
            count = 0
            for row in self.refresh_tokens.values():
                if row.user_id == user_id and not row.revoked:
                    row.revoked = True
                    count += 1
            return count

    def revoke_refresh_tokens_for_device(self, user_id: str, device_fingerprint: str) -> int:
        with self._data_lock:
            count = 0
            for row in self.refresh_tokens.values():
                if (
                    row.user_id == user_id
                    and row.device_fingerprint == device_fingerprint
                    and not row.revoked
                ):
                    row.revoked = True
                    count += 1
            return count

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._data_lock:
            stale = [k for k, t in self.refresh_tokens.items() if t.is_expired(now)]
            for key in stale:
                self.refresh_tokens.pop(key, None)
            return len(stale)

    # login attempts
    def add_login_attempt(self, attempt: LoginAttempt) -> LoginAttempt:
        stored = replace(attempt, email=_normalize_email(attempt.email))
        with self._data_lock:
            self.login_attempts.append(stored)
            return replace(stored)

    def list_failed_login_times(self, email: str, since: datetime) -> List[datetime]:
        normalized = _normalize_email(email)
        with self._data_lock:
            return sorted(
                a.attempted_at
                for a in self.login_attempts
                if a.email == normalized and not a.success and a.attempted_at >= since
            )

    def count_failed_login_attempts(self, email: str, since: datetime) -> int:
        return len(self.list_failed_login_times(email, since))

    def count_login_attempts_from_ip(self, ip_addr: str, since: datetime) -> int:
        with self._data_lock:
            return sum(
                1
                for a in self.login_attempts
                if a.ip_addr == ip_addr and a.attempted_at >= since
            )

    def last_successful_login(self, email: str) -> Optional[LoginAttempt]:
        normalized = _normalize_email(email)
        with self._data_lock:
            successes = [a for a in self.login_attempts if a.email == normalized and a.success]
            if not successes:
                return None
            return replace(max(successes, key=lambda a: a.attempted_at))

    def delete_login_attempts_before(self, cutoff: datetime) -> int:
        with self._data_lock:
            before = len(self.login_attempts)
            self.login_attempts = [a for a in self.login_attempts if a.attempted_at >= cutoff]
            return before - len(self.login_attempts)

    # verification codes
    def replace_verification_code(self, code: VerificationCode) -> VerificationCode:
        stored = replace(code, email=_normalize_email(code.email))
        with self._data_lock:
            self.verification_codes[(stored.purpose, stored.email)] = stored
            return replace(stored)

    def get_verification_code(self, purpose: CodePurpose, email: str) -> Optional[VerificationCode]:
        with self._data_lock:
            row = self.verification_codes.get((purpose, _normalize_email(email)))
            return replace(row) if row else None

    def claim_verification_code(self, code_id: str) -> bool:
        """Atomically flip ``used`` from false to true; False if already used or gone."""
        with self._data_lock:
            row = next((c for c in self.verification_codes.values() if c.id == code_id), None)
            if not row or row.used:
                return False
            row.used = True
            return True

    def release_verification_code(self, code_id: str) -> None:
        with self._data_lock:
            row = next((c for c in self.verification_codes.values() if c.id == code_id), None)
            if row:
                row.used = False

    def delete_verification_code(self, purpose: CodePurpose, email: str) -> None:
        with self._data_lock:
            self.verification_codes.pop((purpose, _normalize_email(email)), None)

    def delete_expired_verification_codes(self, now: datetime) -> int:
        with self._data_lock:
            stale = [k for k, c in self.verification_codes.items() if c.is_expired(now)]
            for key in stale:
                self.verification_codes.pop(key, None)
            return len(stale)

    # audit
    def add_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self._data_lock:
            self.audit_events.append(replace(event))
            return event

    def list_audit_events(
        self, company_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]:
        with self._data_lock:
            rows = [
                e for e in self.audit_events if not company_id or e.company_id == company_id
            ]
            return [replace(e) for e in sorted(rows, key=lambda e: e.created_at, reverse=True)[:limit]]
