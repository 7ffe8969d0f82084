from __future__ import annotations

from typing import List, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code surfaced in the error envelope:
    - validation_error (400)
    - invalid_code (400)
    - unauthorized (401)
    - forbidden (403)
    - account_inactive / company_suspended (403)
    - not_found (404)
    - conflict (409)
    - account_locked (423)
    - service_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class PasswordPolicyViolationError(ValidationError):
    """Password does not satisfy the configured policy (400)."""

    def __init__(self, violations: List[str]) -> None:
        super().__init__(
            "Password does not meet policy: " + "; ".join(violations),
            detail={"violations": list(violations)},
        )
        self.violations = list(violations)


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; both share one message."""

    MESSAGE = "Invalid email or password"

    def __init__(self) -> None:
        super().__init__(self.MESSAGE)


class TokenInvalidError(AuthenticationError):
    """Token malformed, forged, expired, revoked or otherwise unusable (401).

    The external message never says which; `reason` is for logs only.
    """

    MESSAGE = "Invalid or expired token"

    def __init__(self, reason: str = "invalid") -> None:
        super().__init__(self.MESSAGE)
        self.reason = reason


class AccountLockedError(ServiceError):
    """Too many recent failed logins for this email (423)."""
    status_code = 423
    error_code = "account_locked"

    def __init__(self, retry_after_seconds: int) -> None:
        super().__init__(
            "Too many failed login attempts. Try again later.",
            detail={"retry_after_seconds": retry_after_seconds},
        )
        self.retry_after_seconds = retry_after_seconds


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountNotActiveError(ForbiddenError):
    """Identity exists but is not ACTIVE (403)."""
    error_code = "account_inactive"

    def __init__(self, message: str = "Account is not active") -> None:
        super().__init__(message)


class CompanySuspendedError(ForbiddenError):
    """Identity's company is not ACTIVE (403)."""
    error_code = "company_suspended"

    def __init__(self, message: str = "Company is not active") -> None:
        super().__init__(message)


class TenantAccessDeniedError(ForbiddenError):
    """Actor may not act on another company's resources."""

    def __init__(self, message: str = "Access to this company is not allowed") -> None:
        super().__init__(message)


class PrivilegeEscalationDeniedError(ForbiddenError):
    """Role change rejected by the escalation rules."""

    def __init__(self, message: str, *, actor_role: str, target_role: str) -> None:
        super().__init__(
            message, detail={"actor_role": actor_role, "target_role": target_role}
        )
        self.actor_role = actor_role
        self.target_role = target_role


class CodeError(ServiceError):
    """One-time code rejected (400).

    Subclasses keep the precise reason internally while the client only ever
    sees one generic message.
    """
    status_code = 400
    error_code = "invalid_code"
    reason = "invalid"

    MESSAGE = "Invalid or expired code"

    def __init__(self) -> None:
        super().__init__(self.MESSAGE)


class InvalidCodeError(CodeError):
    reason = "not_found"


class CodeExpiredError(CodeError):
    reason = "expired"


class CodeAlreadyUsedError(CodeError):
    reason = "used"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class InfrastructureError(ServiceError):
    """Backing store unreachable; the caller may retry (503)."""
    status_code = 503
    error_code = "service_unavailable"

    def __init__(self, message: str = "Service temporarily unavailable") -> None:
        super().__init__(message, detail={"retryable": True})


__all__ = [
    "ServiceError",
    "ValidationError",
    "PasswordPolicyViolationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "TokenInvalidError",
    "AccountLockedError",
    "ForbiddenError",
    "AccountNotActiveError",
    "CompanySuspendedError",
    "TenantAccessDeniedError",
    "PrivilegeEscalationDeniedError",
    "CodeError",
    "InvalidCodeError",
    "CodeExpiredError",
    "CodeAlreadyUsedError",
    "NotFoundError",
    "ConflictError",
    "InfrastructureError",
]
