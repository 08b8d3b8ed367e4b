"""
Permission Resolver -- merges baseline and tenant overrides.

The resolver computes the **effective permissions** of a role within a
tenant.  This view is the single source of truth consulted by both the
administrative UI and the ``AuthorizationGate``.

**Merge rule:**  override replaces the whole module, baseline fills the
gaps.  For a module with an override row the override's set is used,
even when it is empty (explicit revocation).  For a module without one
the baseline set is used.  Permissions are never diffed inside a module.

**Caching:**  results are cached per ``(tenant_id, role)``.  The cache is
invalidated synchronously by the override store's change notification,
before ``put``/``delete`` returns.  Each key carries a generation counter
that is bumped on invalidation; a result computed from a read that
started before an invalidation is returned to its caller but never
stored, so a revoked permission cannot be resurrected from the cache.
There is no time-based expiry.
"""

from __future__ import annotations

import threading
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any

from rolematrix.baseline import DEFAULT_BASELINE, BaselinePolicyRegistry
from rolematrix.log import get_logger
from rolematrix.models import Module, Permission, Role, parse_module, parse_permission, parse_role
from rolematrix.store import OverrideStore

log = get_logger(__name__)


class EffectivePermissions:
    """Resolved, read-only permission map of one role within one tenant."""

    __slots__ = ("tenant_id", "role", "modules", "overridden_modules", "baseline_version")

    def __init__(
        self,
        tenant_id: str,
        role: Role,
        modules: Mapping[Module, frozenset[Permission]],
        overridden_modules: frozenset[Module],
        baseline_version: str,
    ) -> None:
        self.tenant_id = tenant_id
        self.role = role
        self.modules: Mapping[Module, frozenset[Permission]] = MappingProxyType(dict(modules))
        self.overridden_modules = overridden_modules
        self.baseline_version = baseline_version

    def permissions_for(self, module: Module | str) -> frozenset[Permission]:
        """Permissions granted in ``module`` (empty if the module is absent)."""
        return self.modules.get(parse_module(module), frozenset())

    def allows(self, module: Module | str, permission: Permission | str) -> bool:
        return parse_permission(permission) in self.permissions_for(module)

    def can_access_module(self, module: Module | str) -> bool:
        """True if at least one permission is granted in ``module``."""
        return bool(self.permissions_for(module))

    def __getitem__(self, module: Module | str) -> frozenset[Permission]:
        return self.permissions_for(module)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, EffectivePermissions):
            return NotImplemented
        return (
            self.tenant_id == other.tenant_id
            and self.role == other.role
            and dict(self.modules) == dict(other.modules)
            and self.overridden_modules == other.overridden_modules
        )

    def __hash__(self) -> int:
        return hash((self.tenant_id, self.role, frozenset(self.modules.items())))

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the ``{module: [permission, ...]}`` shape the UI consumes."""
        return {
            "tenant_id": self.tenant_id,
            "role": self.role.value,
            "baseline_version": self.baseline_version,
            "modules": {
                module.value: sorted(p.value for p in permissions)
                for module, permissions in self.modules.items()
            },
            "overridden_modules": sorted(m.value for m in self.overridden_modules),
        }

    def __repr__(self) -> str:
        return (
            f"EffectivePermissions(tenant_id={self.tenant_id!r}, role={self.role.value}, "
            f"modules={len(self.modules)}, overridden={len(self.overridden_modules)})"
        )


class PermissionResolver:
    """Computes ``EffectivePermissions`` and caches them per tenant and role.

    ``resolve()`` is safe to call concurrently from many request threads.
    Storage errors propagate as ``StorageUnavailable``; the
    ``AuthorizationGate`` turns them into a deny.
    """

    def __init__(
        self,
        store: OverrideStore,
        baseline: BaselinePolicyRegistry = DEFAULT_BASELINE,
        cache_enabled: bool = True,
    ) -> None:
        self.store = store
        self.baseline = baseline
        self.cache_enabled = cache_enabled
        self._cache: dict[tuple[str, Role], EffectivePermissions] = {}
        self._generations: dict[tuple[str, Role], int] = {}
        self._epoch = 0
        self._lock = threading.Lock()
        store.subscribe(self._on_store_change)

    # -- resolution --

    def resolve(self, tenant_id: str, role: Role | str) -> EffectivePermissions:
        """Return the effective permissions of ``role`` within ``tenant_id``.

        Raises:
            UnknownRole: If ``role`` is not defined.
            ValueError: If ``tenant_id`` is empty.
            StorageUnavailable: If overrides cannot be read.
        """
        if not tenant_id:
            raise ValueError("tenant_id is required to resolve permissions.")
        role = parse_role(role)
        key = (tenant_id, role)

        if not self.cache_enabled:
            return self._compute(tenant_id, role)

        with self._lock:
            cached = self._cache.get(key)
            snapshot = (self._epoch, self._generations.get(key, 0))
        if cached is not None:
            return cached

        effective = self._compute(tenant_id, role)

        with self._lock:
            if (self._epoch, self._generations.get(key, 0)) == snapshot:
                self._cache[key] = effective
            else:
                log.debug("Discarding stale resolution for tenant=%s role=%s", tenant_id, role.value)
        return effective

    def resolve_all(self, tenant_id: str) -> dict[Role, EffectivePermissions]:
        """Resolve every role of a tenant, for the administrative overview."""
        return {role: self.resolve(tenant_id, role) for role in Role}

    def _compute(self, tenant_id: str, role: Role) -> EffectivePermissions:
        modules: dict[Module, frozenset[Permission]] = dict(self.baseline.get_baseline(role))
        if role == Role.SUPER_ADMIN:
            overrides: dict[Module, frozenset[Permission]] = {}
        else:
            overrides = self.store.get(tenant_id, role)
        modules.update(overrides)
        return EffectivePermissions(
            tenant_id=tenant_id,
            role=role,
            modules=modules,
            overridden_modules=frozenset(overrides),
            baseline_version=self.baseline.version,
        )

    # -- invalidation --

    def invalidate(self, tenant_id: str, role: Role | str) -> None:
        """Drop the cached result for one tenant and role."""
        key = (tenant_id, parse_role(role))
        with self._lock:
            self._generations[key] = self._generations.get(key, 0) + 1
            self._cache.pop(key, None)

    def invalidate_tenant(self, tenant_id: str) -> None:
        for role in Role:
            self.invalidate(tenant_id, role)

    def clear(self) -> None:
        """Drop every cached result."""
        with self._lock:
            self._epoch += 1
            self._cache.clear()

    def _on_store_change(self, tenant_id: str, role: Role, module: Module) -> None:
        log.debug(
            "Invalidating cache tenant=%s role=%s after change to %s",
            tenant_id, role.value, module.value,
        )
        self.invalidate(tenant_id, role)

    @property
    def cached_keys(self) -> frozenset[tuple[str, Role]]:
        with self._lock:
            return frozenset(self._cache)
