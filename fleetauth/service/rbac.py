"""Role hierarchy, permission map and authorization decisions.

The role -> permission map is built once at import time from a declarative
table and exposed read-only. Every decision takes the acting principal as an
explicit argument; nothing here reads request-scoped state.
"""

from __future__ import annotations

import functools
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, FrozenSet, Iterable, List, Mapping, Optional, Protocol

from fleetauth.logging import get_logger, log_security_event
from fleetauth.service.errors import (
    ForbiddenError,
    PrivilegeEscalationDeniedError,
    TenantAccessDeniedError,
)

logger = get_logger(__name__)


class Role(str, Enum):
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    FLEET_MANAGER = "FLEET_MANAGER"
    ACCOUNTANT = "ACCOUNTANT"
    DRIVER = "DRIVER"

    @property
    def level(self) -> int:
        return _ROLE_LEVELS[self]

    @property
    def display_name(self) -> str:
        return _ROLE_DISPLAY_NAMES[self]

    @property
    def authority(self) -> str:
        """Authority string carried in token claims."""
        return self.value


# FLEET_MANAGER and ACCOUNTANT are peers at the same level
_ROLE_LEVELS = {
    Role.OWNER: 5,
    Role.ADMIN: 4,
    Role.FLEET_MANAGER: 3,
    Role.ACCOUNTANT: 3,
    Role.DRIVER: 1,
}

_ROLE_DISPLAY_NAMES = {
    Role.OWNER: "Company Owner",
    Role.ADMIN: "System Administrator",
    Role.FLEET_MANAGER: "Fleet Manager",
    Role.ACCOUNTANT: "Accountant",
    Role.DRIVER: "Driver",
}


class Permission(str, Enum):
    # user management
    CREATE_USER = "CREATE_USER"
    READ_USER = "READ_USER"
    UPDATE_USER = "UPDATE_USER"
    DELETE_USER = "DELETE_USER"
    MANAGE_USER_ROLES = "MANAGE_USER_ROLES"

    # company
    CREATE_COMPANY = "CREATE_COMPANY"
    READ_COMPANY = "READ_COMPANY"
    UPDATE_COMPANY = "UPDATE_COMPANY"
    DELETE_COMPANY = "DELETE_COMPANY"
    MANAGE_COMPANY_SETTINGS = "MANAGE_COMPANY_SETTINGS"

    # vehicles
    CREATE_VEHICLE = "CREATE_VEHICLE"
    READ_VEHICLE = "READ_VEHICLE"
    UPDATE_VEHICLE = "UPDATE_VEHICLE"
    DELETE_VEHICLE = "DELETE_VEHICLE"
    VIEW_VEHICLE_USAGE = "VIEW_VEHICLE_USAGE"

    # drivers
    CREATE_DRIVER = "CREATE_DRIVER"
    READ_DRIVER = "READ_DRIVER"
    UPDATE_DRIVER = "UPDATE_DRIVER"
    DELETE_DRIVER = "DELETE_DRIVER"
    MANAGE_DRIVER_WORK_LIMITS = "MANAGE_DRIVER_WORK_LIMITS"

    # rentals
    CREATE_RENTAL = "CREATE_RENTAL"
    READ_RENTAL = "READ_RENTAL"
    UPDATE_RENTAL = "UPDATE_RENTAL"
    DELETE_RENTAL = "DELETE_RENTAL"
    APPROVE_RENTAL = "APPROVE_RENTAL"

    # clients
    CREATE_CLIENT = "CREATE_CLIENT"
    READ_CLIENT = "READ_CLIENT"
    UPDATE_CLIENT = "UPDATE_CLIENT"
    DELETE_CLIENT = "DELETE_CLIENT"

    # GPS
    VIEW_GPS_DATA = "VIEW_GPS_DATA"
    VIEW_VEHICLE_LOCATION = "VIEW_VEHICLE_LOCATION"
    EXPORT_GPS_DATA = "EXPORT_GPS_DATA"

    # fuel
    CREATE_FUEL_LOG = "CREATE_FUEL_LOG"
    READ_FUEL_LOG = "READ_FUEL_LOG"
    UPDATE_FUEL_LOG = "UPDATE_FUEL_LOG"
    DELETE_FUEL_LOG = "DELETE_FUEL_LOG"
    VIEW_FUEL_ANALYSIS = "VIEW_FUEL_ANALYSIS"

    # maintenance
    CREATE_MAINTENANCE = "CREATE_MAINTENANCE"
    READ_MAINTENANCE = "READ_MAINTENANCE"
    UPDATE_MAINTENANCE = "UPDATE_MAINTENANCE"
    DELETE_MAINTENANCE = "DELETE_MAINTENANCE"

    # invoicing
    CREATE_INVOICE = "CREATE_INVOICE"
    READ_INVOICE = "READ_INVOICE"
    UPDATE_INVOICE = "UPDATE_INVOICE"
    DELETE_INVOICE = "DELETE_INVOICE"
    APPROVE_INVOICE = "APPROVE_INVOICE"
    VIEW_FINANCIAL_REPORTS = "VIEW_FINANCIAL_REPORTS"

    # payroll
    CREATE_PAYROLL = "CREATE_PAYROLL"
    READ_PAYROLL = "READ_PAYROLL"
    UPDATE_PAYROLL = "UPDATE_PAYROLL"
    DELETE_PAYROLL = "DELETE_PAYROLL"
    APPROVE_PAYROLL = "APPROVE_PAYROLL"
    PROCESS_PAYROLL = "PROCESS_PAYROLL"

    # audit and reporting
    VIEW_AUDIT_LOG = "VIEW_AUDIT_LOG"
    EXPORT_REPORTS = "EXPORT_REPORTS"
    VIEW_ANALYTICS = "VIEW_ANALYTICS"

    # system administration
    MANAGE_PRICING_RULES = "MANAGE_PRICING_RULES"
    MANAGE_SYSTEM_CONFIG = "MANAGE_SYSTEM_CONFIG"
    VIEW_SYSTEM_HEALTH = "VIEW_SYSTEM_HEALTH"
    MANAGE_BACKUPS = "MANAGE_BACKUPS"

    @property
    def code(self) -> str:
        return self.value

    @property
    def description(self) -> str:
        return PERMISSION_DESCRIPTIONS[self]


PERMISSION_DESCRIPTIONS: Mapping[Permission, str] = MappingProxyType({
    Permission.CREATE_USER: "Create new user",
    Permission.READ_USER: "View user details",
    Permission.UPDATE_USER: "Update user information",
    Permission.DELETE_USER: "Delete user account",
    Permission.MANAGE_USER_ROLES: "Assign/revoke user roles",
    Permission.CREATE_COMPANY: "Create new company",
    Permission.READ_COMPANY: "View company details",
    Permission.UPDATE_COMPANY: "Update company information",
    Permission.DELETE_COMPANY: "Delete company",
    Permission.MANAGE_COMPANY_SETTINGS: "Manage company settings",
    Permission.CREATE_VEHICLE: "Add new vehicle",
    Permission.READ_VEHICLE: "View vehicle details",
    Permission.UPDATE_VEHICLE: "Update vehicle information",
    Permission.DELETE_VEHICLE: "Delete vehicle",
    Permission.VIEW_VEHICLE_USAGE: "View vehicle usage metrics",
    Permission.CREATE_DRIVER: "Register new driver",
    Permission.READ_DRIVER: "View driver details",
    Permission.UPDATE_DRIVER: "Update driver information",
    Permission.DELETE_DRIVER: "Delete driver",
    Permission.MANAGE_DRIVER_WORK_LIMITS: "Set driver work limits",
    Permission.CREATE_RENTAL: "Create rental contract",
    Permission.READ_RENTAL: "View rental contract",
    Permission.UPDATE_RENTAL: "Update rental contract",
    Permission.DELETE_RENTAL: "Cancel rental contract",
    Permission.APPROVE_RENTAL: "Approve rental requests",
    Permission.CREATE_CLIENT: "Register new client",
    Permission.READ_CLIENT: "View client details",
    Permission.UPDATE_CLIENT: "Update client information",
    Permission.DELETE_CLIENT: "Delete client",
    Permission.VIEW_GPS_DATA: "Access GPS tracking data",
    Permission.VIEW_VEHICLE_LOCATION: "View real-time vehicle location",
    Permission.EXPORT_GPS_DATA: "Export GPS tracking data",
    Permission.CREATE_FUEL_LOG: "Record fuel consumption",
    Permission.READ_FUEL_LOG: "View fuel logs",
    Permission.UPDATE_FUEL_LOG: "Update fuel logs",
    Permission.DELETE_FUEL_LOG: "Delete fuel logs",
    Permission.VIEW_FUEL_ANALYSIS: "View fuel analysis reports",
    Permission.CREATE_MAINTENANCE: "Create maintenance record",
    Permission.READ_MAINTENANCE: "View maintenance records",
    Permission.UPDATE_MAINTENANCE: "Update maintenance records",
    Permission.DELETE_MAINTENANCE: "Delete maintenance records",
    Permission.CREATE_INVOICE: "Create invoice",
    Permission.READ_INVOICE: "View invoice",
    Permission.UPDATE_INVOICE: "Update invoice",
    Permission.DELETE_INVOICE: "Delete invoice",
    Permission.APPROVE_INVOICE: "Approve invoice for payment",
    Permission.VIEW_FINANCIAL_REPORTS: "Access financial reports",
    Permission.CREATE_PAYROLL: "Create payroll record",
    Permission.READ_PAYROLL: "View payroll records",
    Permission.UPDATE_PAYROLL: "Update payroll records",
    Permission.DELETE_PAYROLL: "Delete payroll records",
    Permission.APPROVE_PAYROLL: "Approve payroll for processing",
    Permission.PROCESS_PAYROLL: "Execute payroll processing",
    Permission.VIEW_AUDIT_LOG: "Access audit logs",
    Permission.EXPORT_REPORTS: "Export system reports",
    Permission.VIEW_ANALYTICS: "View system analytics",
    Permission.MANAGE_PRICING_RULES: "Configure pricing rules",
    Permission.MANAGE_SYSTEM_CONFIG: "Manage system configuration",
    Permission.VIEW_SYSTEM_HEALTH: "Monitor system health",
    Permission.MANAGE_BACKUPS: "Manage system backups",
})


def _grants(*codes: str) -> FrozenSet[Permission]:
    return frozenset(Permission(code) for code in codes)


_ROLE_GRANTS = {
    Role.OWNER: frozenset(Permission),
    Role.ADMIN: _grants(
        "CREATE_USER", "READ_USER", "UPDATE_USER", "MANAGE_USER_ROLES",
        "READ_COMPANY", "UPDATE_COMPANY", "MANAGE_COMPANY_SETTINGS",
        "CREATE_VEHICLE", "READ_VEHICLE", "UPDATE_VEHICLE", "DELETE_VEHICLE", "VIEW_VEHICLE_USAGE",
        "CREATE_DRIVER", "READ_DRIVER", "UPDATE_DRIVER", "DELETE_DRIVER", "MANAGE_DRIVER_WORK_LIMITS",
        "CREATE_RENTAL", "READ_RENTAL", "UPDATE_RENTAL", "DELETE_RENTAL",
        "CREATE_CLIENT", "READ_CLIENT", "UPDATE_CLIENT", "DELETE_CLIENT",
        "VIEW_AUDIT_LOG", "EXPORT_REPORTS",
    ),
    Role.FLEET_MANAGER: _grants(
        "CREATE_VEHICLE", "READ_VEHICLE", "UPDATE_VEHICLE", "DELETE_VEHICLE", "VIEW_VEHICLE_USAGE",
        "CREATE_DRIVER", "READ_DRIVER", "UPDATE_DRIVER", "DELETE_DRIVER", "MANAGE_DRIVER_WORK_LIMITS",
        "CREATE_RENTAL", "READ_RENTAL", "UPDATE_RENTAL", "APPROVE_RENTAL",
        "READ_CLIENT",
        "VIEW_GPS_DATA", "VIEW_VEHICLE_LOCATION",
        "CREATE_FUEL_LOG", "READ_FUEL_LOG", "VIEW_FUEL_ANALYSIS",
        "CREATE_MAINTENANCE", "READ_MAINTENANCE", "UPDATE_MAINTENANCE",
        "VIEW_ANALYTICS", "EXPORT_REPORTS",
    ),
    Role.ACCOUNTANT: _grants(
        "CREATE_INVOICE", "READ_INVOICE", "UPDATE_INVOICE", "DELETE_INVOICE",
        "APPROVE_INVOICE", "VIEW_FINANCIAL_REPORTS",
        "CREATE_PAYROLL", "READ_PAYROLL", "UPDATE_PAYROLL", "DELETE_PAYROLL",
        "APPROVE_PAYROLL", "PROCESS_PAYROLL",
        "READ_RENTAL", "READ_FUEL_LOG", "VIEW_FUEL_ANALYSIS",
        "READ_VEHICLE", "READ_DRIVER", "READ_CLIENT",
        "VIEW_AUDIT_LOG", "EXPORT_REPORTS", "VIEW_ANALYTICS",
    ),
    Role.DRIVER: _grants(
        "READ_VEHICLE", "READ_DRIVER",
        "CREATE_FUEL_LOG", "READ_FUEL_LOG",
        "READ_MAINTENANCE",
        "VIEW_VEHICLE_LOCATION",
        "VIEW_ANALYTICS",
    ),
}

ROLE_PERMISSIONS: Mapping[Role, FrozenSet[Permission]] = MappingProxyType(dict(_ROLE_GRANTS))

del _ROLE_GRANTS


def parse_role(value: Any) -> Role:
    """Accept a Role, its name, or a ``ROLE_``-prefixed authority string."""
    if isinstance(value, Role):
        return value
    text = str(value or "").strip().upper()
    if text.startswith("ROLE_"):
        text = text[len("ROLE_"):]
    return Role(text)


class Principal(Protocol):
    """Anything that can act: an authenticated context or a stored identity."""

    id: str
    company_id: str
    role: Role


@dataclass
class AuthContext:
    """Authenticated principal resolved from an access token."""

    user_id: str
    company_id: str
    email: str
    role: Role
    permissions: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def id(self) -> str:
        return self.user_id


class AuthorizationEngine:
    """Pure authorization decisions over the static role/permission map."""

    def __init__(self, role_permissions: Mapping[Role, FrozenSet[Permission]] = ROLE_PERMISSIONS) -> None:
        self._map = role_permissions

    @staticmethod
    def is_higher(a: Role, b: Role) -> bool:
        return a.level > b.level

    def has_permission(self, role: Role, permission: Permission) -> bool:
        return permission in self._map.get(role, frozenset())

    def has_any_permission(self, role: Role, permissions: Iterable[Permission]) -> bool:
        granted = self._map.get(role, frozenset())
        return any(p in granted for p in permissions)

    def has_all_permissions(self, role: Role, permissions: Iterable[Permission]) -> bool:
        granted = self._map.get(role, frozenset())
        return all(p in granted for p in permissions)

    def permissions_for(self, role: Role) -> FrozenSet[Permission]:
        return self._map.get(role, frozenset())

    def permission_codes(self, role: Role) -> List[str]:
        """Sorted permission codes for embedding in token claims."""
        return sorted(p.code for p in self.permissions_for(role))

    def roles_with_permission(self, permission: Permission) -> List[Role]:
        return [role for role in Role if permission in self._map.get(role, frozenset())]

    @staticmethod
    def can_access_company(
        actor_company_id: Optional[str], actor_role: Role, target_company_id: Optional[str]
    ) -> bool:
        if actor_role == Role.OWNER:
            return True
        return actor_company_id is not None and actor_company_id == target_company_id

    def ensure_permission(self, actor: Principal, permission: Permission) -> None:
        if not self.has_permission(actor.role, permission):
            logger.warning(
                "permission_denied",
                actor_id=actor.id,
                actor_role=actor.role.value,
                permission=permission.code,
            )
            raise ForbiddenError(
                "Insufficient permissions", detail={"permission": permission.code}
            )

    def ensure_company_access(self, actor: Principal, target_company_id: str) -> None:
        if not self.can_access_company(actor.company_id, actor.role, target_company_id):
            log_security_event(
                "tenant_access_denied",
                logger=logger,
                actor_id=actor.id,
                actor_company_id=actor.company_id,
                target_company_id=target_company_id,
            )
            raise TenantAccessDeniedError()

    def check_role_change(self, actor: Principal, target: Principal, new_role: Role) -> None:
        """Raise PrivilegeEscalationDeniedError unless ``actor`` may give ``target`` ``new_role``."""
        actor_role = actor.role
        target_role = target.role

        def deny(message: str) -> None:
            log_security_event(
                "privilege_escalation_denied",
                logger=logger,
                actor_id=actor.id,
                actor_role=actor_role.value,
                target_id=target.id,
                target_role=target_role.value,
                requested_role=new_role.value,
                reason=message,
            )
            raise PrivilegeEscalationDeniedError(
                message, actor_role=actor_role.value, target_role=target_role.value
            )

        if not self.has_permission(actor_role, Permission.MANAGE_USER_ROLES):
            deny("Actor is not allowed to manage roles")
        if self.is_higher(new_role, actor_role):
            deny("Cannot assign a role higher than your own")
        if self.is_higher(target_role, actor_role):
            deny("Cannot modify a user with a higher role")
        if target_role == Role.OWNER and actor_role != Role.OWNER:
            deny("Only an owner can modify another owner")
        if actor.id == target.id and target_role == Role.OWNER and new_role != Role.OWNER:
            deny("Owners cannot demote themselves")


_default_engine = AuthorizationEngine()


def has_permission(role: Role, permission: Permission) -> bool:
    return _default_engine.has_permission(role, permission)


def can_access_company(
    actor_company_id: Optional[str], actor_role: Role, target_company_id: Optional[str]
) -> bool:
    return AuthorizationEngine.can_access_company(actor_company_id, actor_role, target_company_id)


def require_permission(*permissions: Permission, actor_arg: str = "actor") -> Callable:
    """Guard a function whose keyword argument ``actor_arg`` is the acting principal.

    The actor must hold every listed permission; otherwise ForbiddenError is
    raised before the wrapped function runs.
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            actor = kwargs.get(actor_arg)
            if actor is None:
                raise ForbiddenError("Authenticated actor required")
            for permission in permissions:
                _default_engine.ensure_permission(actor, permission)
            return func(*args, **kwargs)

        return wrapper

    return decorator


__all__ = [
    "Role",
    "Permission",
    "PERMISSION_DESCRIPTIONS",
    "ROLE_PERMISSIONS",
    "AuthContext",
    "AuthorizationEngine",
    "has_permission",
    "can_access_company",
    "parse_role",
    "require_permission",
]
