from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from fleetauth.service.rbac import Role, parse_role

_VALID_ERROR_CODES = frozenset(
    {
        "validation_error",
        "invalid_code",
        "unauthorized",
        "forbidden",
        "account_inactive",
        "company_suspended",
        "not_found",
        "conflict",
        "account_locked",
        "service_unavailable",
        "server_error",
    }
)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = value.strip().lower()
    if len(normalized) > 254:
        raise ValueError("email address too long")
    return normalized


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=1024)

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _normalize_email(value)


class TokenRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=8192)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=8192)


class RegisterRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=1024)
    full_name: str = Field(..., min_length=1, max_length=255)
    company_id: str = Field(..., min_length=1, max_length=64)

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _normalize_email(value)


class EmailRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _normalize_email(value)


class EmailCodeRequest(EmailRequest):
    code: str = Field(..., min_length=1, max_length=256)


class PasswordResetConfirmRequest(EmailCodeRequest):
    new_password: str = Field(..., max_length=1024)


class RoleChangeRequest(BaseModel):
    role: Role
    reason: Optional[str] = Field(default=None, max_length=500)

    @field_validator("role", mode="before")
    @classmethod
    def _role(cls, value: Any) -> Role:
        return parse_role(value)


class IdentityResponse(BaseModel):
    id: str
    email: str
    full_name: str
    role: str
    role_display_name: str
    company_id: str
    status: Optional[str] = None


class SessionResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    expires_at: datetime
    user: IdentityResponse


class PermissionsResponse(BaseModel):
    role: str
    permissions: List[str]


class PermissionCheckResponse(BaseModel):
    role: str
    permission: str
    allowed: bool
