"""
Authorization Gate -- the enforcement primitive.

Business code calls ``can()`` (or ``require()``) before any module-scoped
read or write.  It must never branch on role names itself.

The gate is **fail-closed**: an unrecognized role, module or permission,
a missing tenant, or any error raised while reading overrides produces
a deny.  Nothing on the read path raises to the caller, so an exception can never
be mistaken for "allow".
"""

from __future__ import annotations

from rolematrix.errors import AccessDenied
from rolematrix.log import get_logger
from rolematrix.models import (
    Module,
    Permission,
    Principal,
    Role,
    parse_module,
    parse_permission,
    parse_role,
)
from rolematrix.resolver import PermissionResolver

log = get_logger(__name__)


class AuthorizationGate:
    """Answers allow/deny questions from resolved tenant permissions."""

    def __init__(self, resolver: PermissionResolver) -> None:
        self.resolver = resolver

    def can(
        self,
        tenant_id: str,
        role: Role | str,
        module: Module | str,
        permission: Permission | str,
    ) -> bool:
        """Check whether ``role`` may perform ``permission`` in ``module``.

        Args:
            tenant_id: Tenant the request belongs to.
            role: The caller's role (enum member or its value).
            module: Target module (enum member or its value).
            permission: Requested verb (enum member or its value).

        Returns:
            True only if ``permission`` is in the resolved set for
            ``module``.  False for any unrecognized input or storage
            failure.
        """
        try:
            role = parse_role(role)
            module = parse_module(module)
            permission = parse_permission(permission)
            effective = self.resolver.resolve(tenant_id, role)
        except Exception as exc:
            log.warning(
                "Denying %s.%s for role=%r tenant=%r: %s",
                module, permission, role, tenant_id, exc,
            )
            return False
        return permission in effective.permissions_for(module)

    def can_principal(
        self,
        principal: Principal,
        module: Module | str,
        permission: Permission | str,
    ) -> bool:
        """``can()`` for an authenticated principal."""
        return self.can(principal.tenant_id, principal.role, module, permission)

    def can_access_module(self, tenant_id: str, role: Role | str, module: Module | str) -> bool:
        """True if the role holds any permission in ``module``."""
        try:
            return self.resolver.resolve(tenant_id, parse_role(role)).can_access_module(module)
        except Exception as exc:
            log.warning("Denying access to module %r for role=%r tenant=%r: %s", module, role, tenant_id, exc)
            return False

    def require(
        self,
        tenant_id: str,
        role: Role | str,
        module: Module | str,
        permission: Permission | str,
    ) -> None:
        """Enforce a permission check; raise if denied.

        Raises:
            AccessDenied: If ``can()`` returns False.
        """
        if not self.can(tenant_id, role, module, permission):
            role_name = role.value if isinstance(role, Role) else role
            module_name = module.value if isinstance(module, Module) else module
            permission_name = permission.value if isinstance(permission, Permission) else permission
            raise AccessDenied(
                f"Role '{role_name}' is not permitted to '{permission_name}' "
                f"in module '{module_name}' for tenant '{tenant_id}'."
            )

    def require_principal(
        self,
        principal: Principal,
        module: Module | str,
        permission: Permission | str,
    ) -> None:
        self.require(principal.tenant_id, principal.role, module, permission)
