"""
Baseline Policy Registry -- platform default permission matrix.

The baseline is compiled into the package and versioned with it.  It is
the fallback for every (role, module) pair a tenant has not customized
and the target of "reset to default" in the editor.

The registry is immutable: mappings are exposed through
``MappingProxyType`` and permission sets are ``frozenset`` values, so a
request handler cannot mutate state shared with other requests.

**Module catalog:**  besides the per-role defaults, the registry knows
the platform's working verb set for each module.  This is the union of
what any role holds in the baseline for that module plus a few verbs
(``delete``, ``export``) that are only ever granted by a tenant.
``super_admin`` holds the full catalog for every module.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from types import MappingProxyType

from rolematrix.models import BaselineEntry, Module, Permission, Role

M = Module
P = Permission


# ---------------------------------------------------------------------------
# Default matrix
# ---------------------------------------------------------------------------

BASELINE_VERSION = "2024.10"

_DEFAULTS: dict[Role, dict[Module, tuple[Permission, ...]]] = {
    Role.TENANT_ADMIN: {
        M.PATIENTS: (P.VIEW, P.SEARCH),
        M.APPOINTMENTS: (P.VIEW,),
        M.USERS: (P.VIEW, P.CREATE, P.UPDATE, P.DEACTIVATE),
        M.ROLES: (P.ASSIGN, P.MODIFY),
        M.TENANT_SETTINGS: (P.VIEW, P.UPDATE),
        M.AUDIT_LOGS: (P.VIEW,),
        M.REPORTS: (P.VIEW, P.GENERATE),
        M.BILLING: (P.VIEW, P.MANAGE),
        M.SERVICE_PRICE: (P.VIEW, P.MANAGE),
        M.DASHBOARD: (P.VIEW_ADMIN,),
    },
    Role.DIRECTOR: {
        M.PATIENTS: (P.VIEW, P.SEARCH),
        M.APPOINTMENTS: (P.VIEW, P.CREATE, P.UPDATE, P.CANCEL),
        M.PRESCRIPTIONS: (P.VIEW,),
        M.LAB_ORDERS: (P.VIEW,),
        M.BILLING: (P.VIEW, P.MANAGE),
        M.REPORTS: (P.VIEW, P.GENERATE),
        M.USERS: (P.VIEW, P.CREATE_STAFF),
        M.AUDIT_LOGS: (P.VIEW,),
        M.DASHBOARD: (P.VIEW_METRICS,),
    },
    Role.PHYSICIAN: {
        M.PATIENTS: (P.VIEW, P.CREATE, P.UPDATE, P.SEARCH, P.MEDICAL_RECORDS),
        M.APPOINTMENTS: (P.VIEW, P.CREATE, P.UPDATE, P.CANCEL),
        M.PRESCRIPTIONS: (P.VIEW, P.CREATE, P.UPDATE, P.CANCEL),
        M.LAB_ORDERS: (P.VIEW, P.CREATE, P.UPDATE, P.ASSIGN),
        M.CONSULTATIONS: (P.VIEW, P.CREATE, P.UPDATE, P.FINALIZE),
        M.VITAL_SIGNS: (P.VIEW, P.RECORD),
        M.MEDICAL_HISTORY: (P.VIEW, P.EDIT),
        M.BILLING: (P.VIEW,),
        M.REPORTS: (P.VIEW,),
        M.COMMUNICATIONS: (P.VIEW, P.CREATE),
        M.DASHBOARD: (P.VIEW_CLINICAL,),
    },
    Role.NURSE: {
        M.PATIENTS: (P.VIEW, P.SEARCH, P.BASIC_INFO),
        M.APPOINTMENTS: (P.VIEW, P.UPDATE_STATUS),
        M.PRESCRIPTIONS: (P.VIEW,),
        M.LAB_ORDERS: (P.VIEW,),
        M.CONSULTATIONS: (P.VIEW, P.ASSIST),
        M.VITAL_SIGNS: (P.VIEW, P.RECORD),
        M.MEDICAL_HISTORY: (P.VIEW,),
        M.PATIENT_CHECK_IN: (P.MANAGE,),
        M.COMMUNICATIONS: (P.VIEW,),
        M.DASHBOARD: (P.VIEW_PATIENT_CARE,),
    },
    Role.PHARMACIST: {
        M.PATIENTS: (P.VIEW_BASIC, P.SEARCH_PRESCRIPTIONS),
        M.PRESCRIPTIONS: (P.VIEW, P.DISPENSE, P.UPDATE_STATUS),
        M.MEDICATIONS: (P.MANAGE, P.INVENTORY),
        M.BILLING: (P.MEDICATION_CLAIMS,),
        M.COMMUNICATIONS: (P.VIEW, P.CREATE),
        M.DASHBOARD: (P.VIEW_PHARMACY,),
    },
    Role.LAB_TECHNICIAN: {
        M.PATIENTS: (P.VIEW_BASIC, P.SEARCH_LAB),
        M.LAB_ORDERS: (P.VIEW, P.PROCESS, P.ENTER_RESULTS),
        M.LAB_RESULTS: (P.CREATE, P.UPDATE, P.VIEW),
        M.DASHBOARD: (P.VIEW_LAB,),
    },
    Role.RECEPTIONIST: {
        M.PATIENTS: (P.VIEW, P.CREATE, P.UPDATE_BASIC, P.SEARCH),
        M.APPOINTMENTS: (P.VIEW, P.CREATE, P.UPDATE, P.CANCEL),
        M.PATIENT_CHECK_IN: (P.MANAGE,),
        M.VITAL_SIGNS: (P.RECORD,),
        M.BILLING: (P.VIEW, P.PROCESS_PAYMENTS),
        M.SERVICE_PRICE: (P.VIEW, P.MANAGE),
        M.DASHBOARD: (P.VIEW_FRONT_DESK,),
    },
    Role.BILLING_STAFF: {
        M.PATIENTS: (P.VIEW_BILLING, P.SEARCH),
        M.APPOINTMENTS: (P.VIEW,),
        M.BILLING: (P.VIEW, P.CREATE, P.UPDATE, P.PROCESS),
        M.INSURANCE_CLAIMS: (P.VIEW, P.CREATE, P.SUBMIT, P.TRACK),
        M.SERVICE_PRICE: (P.VIEW, P.MANAGE),
        M.REPORTS: (P.VIEW, P.GENERATE_FINANCIAL),
        M.DASHBOARD: (P.VIEW_BILLING,),
    },
}

# Verbs a tenant may grant that no role holds by default.
_TENANT_ONLY: dict[Module, tuple[Permission, ...]] = {
    M.PATIENTS: (P.DELETE, P.EXPORT),
    M.APPOINTMENTS: (P.DELETE,),
    M.PRESCRIPTIONS: (P.DELETE,),
    M.LAB_ORDERS: (P.DELETE,),
    M.LAB_RESULTS: (P.DELETE,),
    M.BILLING: (P.DELETE, P.EXPORT),
    M.INSURANCE_CLAIMS: (P.UPDATE,),
    M.REPORTS: (P.EXPORT,),
    M.USERS: (P.DELETE,),
    M.AUDIT_LOGS: (P.EXPORT,),
    M.COMMUNICATIONS: (P.DELETE,),
    M.MEDICAL_HISTORY: (P.CREATE,),
}


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class BaselinePolicyRegistry:
    """Immutable, versioned default permission matrix.

    ``get_baseline()`` is pure and total: every ``Role`` has an entry,
    possibly with no modules.
    """

    def __init__(
        self,
        defaults: Mapping[Role, Mapping[Module, tuple[Permission, ...]]],
        tenant_only: Mapping[Module, tuple[Permission, ...]] | None = None,
        version: str = BASELINE_VERSION,
    ) -> None:
        self.version = version

        catalog: dict[Module, set[Permission]] = {module: set() for module in Module}
        for modules in defaults.values():
            for module, permissions in modules.items():
                catalog[module].update(permissions)
        for module, permissions in (tenant_only or {}).items():
            catalog[module].update(permissions)

        self._catalog: Mapping[Module, frozenset[Permission]] = MappingProxyType(
            {m: frozenset(p) for m, p in catalog.items() if p}
        )

        matrix: dict[Role, Mapping[Module, frozenset[Permission]]] = {}
        for role in Role:
            if role == Role.SUPER_ADMIN:
                matrix[role] = self._catalog
                continue
            modules = defaults.get(role, {})
            matrix[role] = MappingProxyType(
                {m: frozenset(p) for m, p in modules.items()}
            )
        self._matrix: Mapping[Role, Mapping[Module, frozenset[Permission]]] = (
            MappingProxyType(matrix)
        )

    def get_baseline(self, role: Role) -> Mapping[Module, frozenset[Permission]]:
        """Return the read-only default module map for ``role``."""
        return self._matrix[role]

    def modules_for(self, role: Role) -> frozenset[Module]:
        return frozenset(self._matrix[role])

    def catalog(self, module: Module) -> frozenset[Permission]:
        """Every permission in use for ``module`` on the platform."""
        return self._catalog.get(module, frozenset())

    @property
    def catalog_modules(self) -> tuple[Module, ...]:
        """Modules with at least one catalog permission, in enum order."""
        return tuple(m for m in Module if m in self._catalog)

    def entries(self) -> Iterator[BaselineEntry]:
        """Iterate every (role, module) default as a ``BaselineEntry``."""
        for role, modules in self._matrix.items():
            for module, permissions in modules.items():
                yield BaselineEntry(role=role, module=module, permissions=permissions)

    def __repr__(self) -> str:
        return f"BaselinePolicyRegistry(version={self.version!r})"


DEFAULT_BASELINE = BaselinePolicyRegistry(_DEFAULTS, _TENANT_ONLY)
"""The registry built once at import and shared by the whole process."""
