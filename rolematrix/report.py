"""
Tenant Customization Report.

Summarizes how a tenant's effective permissions differ from the platform
baseline: which modules each role has overridden, what was granted beyond
the baseline and what was revoked from it, and who made the last change.
Administrators and auditors use it to review a tenant's policy at a
glance.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from rolematrix.models import EDITABLE_ROLES, Role
from rolematrix.resolver import PermissionResolver


class CustomizationReport:
    """Per-role differences between a tenant's policy and the baseline."""

    def __init__(
        self,
        tenant_id: str,
        baseline_version: str,
        roles: dict[str, list[dict[str, Any]]],
        generated_at: str,
    ) -> None:
        self.tenant_id = tenant_id
        self.baseline_version = baseline_version
        self.roles = roles
        self.generated_at = generated_at

    @property
    def customized_roles(self) -> list[str]:
        return sorted(role for role, modules in self.roles.items() if modules)

    @property
    def widened(self) -> bool:
        """True if any override grants something the baseline does not."""
        return any(m["granted"] for modules in self.roles.values() for m in modules)

    def to_dict(self) -> dict[str, Any]:
        """Serialize the report to a dictionary."""
        return {
            "report_type": "Tenant Permission Customization Report",
            "tenant_id": self.tenant_id,
            "baseline_version": self.baseline_version,
            "customized_roles": self.customized_roles,
            "roles": self.roles,
            "generated_at": self.generated_at,
        }

    def __repr__(self) -> str:
        return (
            f"CustomizationReport(tenant_id={self.tenant_id}, "
            f"customized_roles={self.customized_roles})"
        )


def generate_customization_report(
    resolver: PermissionResolver,
    tenant_id: str,
) -> CustomizationReport:
    """Build a ``CustomizationReport`` for every editable role of a tenant.

    Args:
        resolver: Resolver for the tenant's effective permissions.
        tenant_id: Tenant to report on.

    Returns:
        The report.  Roles without overrides map to an empty list.

    Raises:
        StorageUnavailable: If overrides cannot be read.
    """
    entries = {(e.role, e.module): e for e in resolver.store.entries(tenant_id)}
    roles: dict[str, list[dict[str, Any]]] = {}

    for role in Role:
        if role not in EDITABLE_ROLES:
            continue
        effective = resolver.resolve(tenant_id, role)
        baseline = resolver.baseline.get_baseline(role)
        modules = []
        for module in sorted(effective.overridden_modules, key=lambda m: m.value):
            current = effective.permissions_for(module)
            default = baseline.get(module, frozenset())
            entry = entries.get((role, module))
            modules.append({
                "module": module.value,
                "permissions": sorted(p.value for p in current),
                "granted": sorted(p.value for p in current - default),
                "revoked": sorted(p.value for p in default - current),
                "updated_by": entry.updated_by if entry else None,
                "updated_at": entry.updated_at.isoformat() if entry else None,
            })
        roles[role.value] = modules

    return CustomizationReport(
        tenant_id=tenant_id,
        baseline_version=resolver.baseline.version,
        roles=roles,
        generated_at=datetime.now(timezone.utc).isoformat(),
    )
