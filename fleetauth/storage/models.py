from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from fleetauth.service.rbac import Role


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class IdentityStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class CompanyStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    INACTIVE = "INACTIVE"


class CodePurpose(str, Enum):
    EMAIL_VERIFICATION = "EMAIL_VERIFICATION"
    PASSWORD_RESET = "PASSWORD_RESET"


@dataclass
class Company:
    id: str
    name: str
    status: CompanyStatus = CompanyStatus.ACTIVE
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == CompanyStatus.ACTIVE


@dataclass
class Identity:
    id: str
    company_id: str
    email: str
    full_name: str
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    role: Role = Role.DRIVER
    status: IdentityStatus = IdentityStatus.INACTIVE
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == IdentityStatus.ACTIVE


@dataclass
class RefreshToken:
    """Persisted refresh token; VALID/EXPIRED/REVOKED/ROTATED is derived, not stored."""

    id: str
    user_id: str
    token: str
    expires_at: datetime
    device_fingerprint: Optional[str] = None
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    revoked: bool = False
    rotated: bool = False
    parent_token_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_valid(self, now: datetime) -> bool:
        return not self.is_expired(now) and not self.revoked and not self.rotated

    def state(self, now: datetime) -> str:
        if self.revoked:
            return "REVOKED"
        if self.rotated:
            return "ROTATED"
        if self.is_expired(now):
            return "EXPIRED"
        return "VALID"


@dataclass
class LoginAttempt:
    id: str
    email: str
    success: bool
    attempted_at: datetime = field(default_factory=utcnow)
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    failure_reason: Optional[str] = None
    user_id: Optional[str] = None


@dataclass
class VerificationCode:
    id: str
    purpose: CodePurpose
    email: str
    code: str
    expires_at: datetime
    used: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class AuditEvent:
    id: str
    action: str
    actor_id: Optional[str]
    target_id: Optional[str]
    company_id: Optional[str] = None
    detail: Dict | None = None
    created_at: datetime = field(default_factory=utcnow)
