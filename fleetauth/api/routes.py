from __future__ import annotations

from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request

from fleetauth.api.schemas import (
    EmailCodeRequest,
    EmailRequest,
    Envelope,
    IdentityResponse,
    LoginRequest,
    PasswordResetConfirmRequest,
    PermissionCheckResponse,
    PermissionsResponse,
    RefreshRequest,
    RegisterRequest,
    RoleChangeRequest,
    SessionResponse,
    TokenRequest,
)
from fleetauth.service.errors import AuthenticationError, NotFoundError, ValidationError
from fleetauth.service.rbac import AuthContext, Permission, parse_role
from fleetauth.service.runtime import get_runtime
from fleetauth.service.session import IssuedSession
from fleetauth.storage.models import Identity

router = APIRouter(prefix="/v1")


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _client(request: Request) -> dict:
    return {
        "user_agent": request.headers.get("user-agent"),
        "ip_addr": request.client.host if request.client else None,
    }


def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    token = _bearer(authorization)
    if not token:
        raise AuthenticationError("Missing bearer token")
    return get_runtime().sessions.resolve(token)


def get_optional_user(authorization: Optional[str] = Header(None)) -> Optional[AuthContext]:
    token = _bearer(authorization)
    if not token:
        return None
    return get_runtime().sessions.resolve(token)


def require(*permissions: Permission) -> Callable[..., AuthContext]:
    """Dependency factory: the bearer principal must hold every permission."""

    def dependency(principal: AuthContext = Depends(get_user)) -> AuthContext:
        engine = get_runtime().engine
        for permission in permissions:
            engine.ensure_permission(principal, permission)
        return principal

    return dependency


def _identity_response(identity: Identity) -> IdentityResponse:
    return IdentityResponse(
        id=identity.id,
        email=identity.email,
        full_name=identity.full_name,
        role=identity.role.authority,
        role_display_name=identity.role.display_name,
        company_id=identity.company_id,
        status=identity.status.value,
    )


def _session_response(session: IssuedSession) -> SessionResponse:
    summary = session.identity
    return SessionResponse(
        access_token=session.access_token,
        refresh_token=session.refresh_token,
        token_type=session.token_type,
        expires_in=session.expires_in,
        expires_at=session.expires_at,
        user=IdentityResponse(
            id=summary.id,
            email=summary.email,
            full_name=summary.full_name,
            role=summary.role.authority,
            role_display_name=summary.role_display_name,
            company_id=summary.company_id,
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    Raises:
        400: If email or password is empty
        401: If credentials are invalid
        403: If the account or its company is not active
        423: If too many recent failures locked the email
    """
    session = get_runtime().sessions.authenticate(body.email, body.password, **_client(request))
    return Envelope(status="ok", data=_session_response(session))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
def refresh(body: RefreshRequest, request: Request):
    session = get_runtime().sessions.refresh(body.refresh_token, **_client(request))
    return Envelope(status="ok", data=_session_response(session))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
def logout(
    body: Optional[TokenRequest] = None,
    authorization: Optional[str] = Header(None),
):
    """Revoke every refresh token of the token owner.

    Accepts the token in the body or as a bearer header.
    """
    token = (body.token if body else None) or _bearer(authorization)
    if not token:
        raise ValidationError("Token is required")
    revoked = get_runtime().sessions.logout(token)
    return Envelope(status="ok", data={"revoked": revoked})


@router.post("/auth/validate", response_model=Envelope, tags=["auth"])
def validate_token(body: TokenRequest):
    return Envelope(status="ok", data={"valid": get_runtime().sessions.validate_token(body.token)})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    identity = runtime.store.get_identity(principal.user_id)
    if not identity:
        raise AuthenticationError("Unknown user")
    return Envelope(status="ok", data=_identity_response(identity))


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
def register(body: RegisterRequest, principal: Optional[AuthContext] = Depends(get_optional_user)):
    identity = get_runtime().accounts.register_identity(
        body.email,
        body.password,
        body.full_name,
        body.company_id,
        actor=principal,
    )
    return Envelope(status="ok", data=_identity_response(identity))


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
def verify_email(body: EmailCodeRequest):
    identity = get_runtime().accounts.verify_email(body.email, body.code)
    return Envelope(status="ok", data=_identity_response(identity))


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
def resend_verification(body: EmailRequest):
    get_runtime().accounts.resend_verification_code(body.email)
    return Envelope(status="ok", data={"sent": True})


@router.post("/auth/password-reset/request", response_model=Envelope, tags=["auth"])
def request_password_reset(body: EmailRequest):
    # same response whether or not the email exists
    get_runtime().accounts.request_password_reset(body.email)
    return Envelope(status="ok", data={"sent": True})


@router.post("/auth/password-reset/resend", response_model=Envelope, tags=["auth"])
def resend_password_reset(body: EmailRequest):
    get_runtime().accounts.resend_password_reset_code(body.email)
    return Envelope(status="ok", data={"sent": True})


@router.post("/auth/password-reset/validate", response_model=Envelope, tags=["auth"])
def validate_reset_code(body: EmailCodeRequest):
    valid = get_runtime().accounts.is_reset_code_valid(body.email, body.code)
    return Envelope(status="ok", data={"valid": valid})


@router.post("/auth/password-reset/confirm", response_model=Envelope, tags=["auth"])
def confirm_password_reset(body: PasswordResetConfirmRequest):
    get_runtime().accounts.reset_password(body.email, body.code, body.new_password)
    return Envelope(status="ok", data={"reset": True})


@router.get("/auth/password-policy", response_model=Envelope, tags=["auth"])
def password_policy():
    return Envelope(status="ok", data={"description": get_runtime().policy.describe()})


@router.get("/authz/permissions", response_model=Envelope, tags=["authz"])
def my_permissions(principal: AuthContext = Depends(get_user)):
    codes = get_runtime().engine.permission_codes(principal.role)
    return Envelope(
        status="ok", data=PermissionsResponse(role=principal.role.authority, permissions=codes)
    )


@router.get("/authz/roles/{role}/permissions", response_model=Envelope, tags=["authz"])
def role_permissions(
    role: str = Path(..., description="Role name, e.g. FLEET_MANAGER"),
    principal: AuthContext = Depends(require(Permission.READ_USER)),
):
    try:
        parsed = parse_role(role)
    except ValueError as exc:
        raise ValidationError("Unknown role", detail={"role": role}) from exc
    codes = get_runtime().engine.permission_codes(parsed)
    return Envelope(status="ok", data=PermissionsResponse(role=parsed.authority, permissions=codes))


@router.get("/authz/check", response_model=Envelope, tags=["authz"])
def check_permission(
    permission: str = Query(..., description="Permission code"),
    principal: AuthContext = Depends(get_user),
):
    try:
        parsed = Permission(permission.strip().upper())
    except ValueError as exc:
        raise ValidationError("Unknown permission", detail={"permission": permission}) from exc
    allowed = get_runtime().engine.has_permission(principal.role, parsed)
    return Envelope(
        status="ok",
        data=PermissionCheckResponse(
            role=principal.role.authority, permission=parsed.code, allowed=allowed
        ),
    )


@router.put("/users/{user_id}/role", response_model=Envelope, tags=["authz"])
def change_role(
    body: RoleChangeRequest,
    user_id: str = Path(...),
    principal: AuthContext = Depends(require(Permission.MANAGE_USER_ROLES)),
):
    identity = get_runtime().accounts.change_role(principal, user_id, body.role, body.reason)
    return Envelope(status="ok", data=_identity_response(identity))


@router.get("/users/{user_id}/permissions", response_model=Envelope, tags=["authz"])
def user_permissions(
    user_id: str = Path(...),
    principal: AuthContext = Depends(require(Permission.READ_USER)),
):
    runtime = get_runtime()
    target = runtime.store.get_identity(user_id)
    if target is None:
        raise NotFoundError("User not found", detail={"user_id": user_id})
    runtime.engine.ensure_company_access(principal, target.company_id)
    codes = runtime.accounts.get_permissions(user_id)
    return Envelope(status="ok", data=PermissionsResponse(role=target.role.authority, permissions=codes))


@router.get("/audit/events", response_model=Envelope, tags=["authz"])
def audit_events(
    limit: int = Query(100, ge=1, le=500),
    principal: AuthContext = Depends(require(Permission.VIEW_AUDIT_LOG)),
):
    events = get_runtime().accounts.list_audit_events(actor=principal, limit=limit)
    return Envelope(
        status="ok",
        data=[
            {
                "id": e.id,
                "action": e.action,
                "actor_id": e.actor_id,
                "target_id": e.target_id,
                "company_id": e.company_id,
                "detail": e.detail,
                "created_at": e.created_at.isoformat(),
            }
            for e in events
        ],
    )
