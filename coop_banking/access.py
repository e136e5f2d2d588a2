"""
Access Policy Module

Resolves a caller identity {actor_id, role, tenant_id} into permission
decisions. Roles map to permission sets the same way for every tenant; only
super_admin crosses tenant boundaries.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional

from .errors import AccessDenied, CrossTenantAccessDenied, ValidationError


class Role(Enum):
    """Caller roles"""
    MEMBER = "member"
    MANAGER = "manager"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


class Permission(Enum):
    """Permissions granted to roles"""
    OPERATE_OWN_ACCOUNTS = "operate_own_accounts"
    OPERATE_ANY_ACCOUNT = "operate_any_account"   # Any account of the actor's bank
    POST_ADJUSTMENTS = "post_adjustments"         # Interest and penalty postings
    VIEW_TENANT_REPORTS = "view_tenant_reports"
    CROSS_TENANT = "cross_tenant"
    MANAGE_BANKS = "manage_banks"                 # Register, activate and deactivate banks


STAFF_ROLES: FrozenSet[Role] = frozenset({Role.ADMIN, Role.MANAGER, Role.SUPER_ADMIN})

ROLE_PERMISSIONS: Dict[Role, FrozenSet[Permission]] = {
    Role.MEMBER: frozenset({Permission.OPERATE_OWN_ACCOUNTS}),
    Role.MANAGER: frozenset({
        Permission.OPERATE_OWN_ACCOUNTS,
        Permission.OPERATE_ANY_ACCOUNT,
        Permission.POST_ADJUSTMENTS,
        Permission.VIEW_TENANT_REPORTS,
    }),
    Role.ADMIN: frozenset({
        Permission.OPERATE_OWN_ACCOUNTS,
        Permission.OPERATE_ANY_ACCOUNT,
        Permission.POST_ADJUSTMENTS,
        Permission.VIEW_TENANT_REPORTS,
    }),
    Role.SUPER_ADMIN: frozenset(Permission),
}


@dataclass(frozen=True)
class Actor:
    """Authenticated caller, resolved before the core is invoked"""
    actor_id: str
    role: Role
    tenant_id: Optional[str]

    def __post_init__(self):
        if not self.actor_id:
            raise ValidationError("Actor id is required", {"field": "actor_id"})
        if not isinstance(self.role, Role):
            try:
                object.__setattr__(self, 'role', Role(self.role))
            except ValueError:
                raise ValidationError(f"Unknown role: {self.role}", {"field": "role"})
        if self.role != Role.SUPER_ADMIN and not self.tenant_id:
            raise ValidationError("Tenant id is required for this role", {"field": "tenant_id"})

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    @property
    def is_super_admin(self) -> bool:
        return self.role == Role.SUPER_ADMIN

    def has_permission(self, permission: Permission) -> bool:
        return permission in ROLE_PERMISSIONS[self.role]


class AccessPolicy:
    """
    Permission decisions for accounts and tenant-wide operations.

    When given a bank registry, callers whose cooperative bank is missing or
    deactivated are denied (super-admins excepted).
    """

    def __init__(self, bank_registry=None):
        self.bank_registry = bank_registry

    def authorize_tenant(self, actor: Actor, tenant_id: str) -> None:
        """
        Raises:
            CrossTenantAccessDenied: If the actor belongs to another bank
            AccessDenied: If the actor's bank is inactive
        """
        if actor.has_permission(Permission.CROSS_TENANT):
            return
        if actor.tenant_id != tenant_id:
            raise CrossTenantAccessDenied(
                "Access denied: resource belongs to a different cooperative bank",
                {"actor_tenant_id": actor.tenant_id, "resource_tenant_id": tenant_id}
            )
        self._check_bank(actor)

    def authorize_account(self, actor: Actor, account) -> None:
        """Owner or staff of the account's bank may operate on it"""
        self.authorize_tenant(actor, account.tenant_id)
        if actor.has_permission(Permission.OPERATE_ANY_ACCOUNT):
            return
        if actor.has_permission(Permission.OPERATE_OWN_ACCOUNTS) and actor.actor_id == account.owner_id:
            return
        raise AccessDenied(
            "Access denied: you can only access your own accounts",
            {"account_id": account.id}
        )

    def require_permission(self, actor: Actor, permission: Permission,
                           tenant_id: Optional[str] = None) -> None:
        if not actor.has_permission(permission):
            raise AccessDenied(
                f"Access denied: {actor.role.value} lacks {permission.value}",
                {"role": actor.role.value, "permission": permission.value}
            )
        if tenant_id is not None:
            self.authorize_tenant(actor, tenant_id)
        else:
            self._check_bank(actor)

    def require_staff(self, actor: Actor, tenant_id: Optional[str] = None) -> None:
        if not actor.is_staff:
            raise AccessDenied("Access denied: staff role required", {"role": actor.role.value})
        if tenant_id is not None:
            self.authorize_tenant(actor, tenant_id)
        else:
            self._check_bank(actor)

    def tenant_scope(self, actor: Actor) -> Optional[str]:
        """Tenant filter for list queries; None means every tenant"""
        if actor.has_permission(Permission.CROSS_TENANT):
            return None
        return actor.tenant_id

    def _check_bank(self, actor: Actor) -> None:
        if self.bank_registry is None or actor.is_super_admin:
            return
        if not self.bank_registry.is_active(actor.tenant_id):
            raise AccessDenied(
                "Access denied: cooperative bank is not active",
                {"tenant_id": actor.tenant_id}
            )
