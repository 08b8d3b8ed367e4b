"""
Override Store -- tenant-scoped persistence of permission overrides.

One logical record exists per ``(tenant_id, role, module)``.  A write
replaces the record's permission set wholesale; there is no diffing.
An override with an empty permission set is an explicit revocation and
must survive a round trip through storage as such.

**Concurrency:**  writes to the same key are linearized by the store and
the last write wins.  There is no optimistic locking and no cross-key
transaction: two administrators editing different modules of the same
role never conflict, two administrators editing the same module race.

**Change notification:**  every successful ``put``/``delete`` calls the
subscribed listeners synchronously, before the write returns.  The
``PermissionResolver`` uses this to drop cached matrices so that an
authorization check never observes a revoked permission.
"""

from __future__ import annotations

import abc
import threading
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from typing import Optional

from rolematrix.errors import RoleNotEditableError, StorageUnavailable
from rolematrix.log import get_logger
from rolematrix.models import (
    EDITABLE_ROLES,
    Module,
    OverrideEntry,
    Permission,
    Role,
    parse_module,
    parse_permissions,
    parse_role,
)

log = get_logger(__name__)

ChangeListener = Callable[[str, Role, Module], None]


class OverrideStore(abc.ABC):
    """Contract every override backend satisfies.

    Subclasses implement the ``_get``/``_put``/``_delete``/``_entries``
    primitives; this base class validates input, rejects non-editable
    roles and notifies listeners after successful writes.
    """

    def __init__(self) -> None:
        self._listeners: list[ChangeListener] = []

    # -- listeners --

    def subscribe(self, listener: ChangeListener) -> None:
        """Register a callback invoked with ``(tenant_id, role, module)``
        after every successful write."""
        self._listeners.append(listener)

    def _notify(self, tenant_id: str, role: Role, module: Module) -> None:
        for listener in list(self._listeners):
            listener(tenant_id, role, module)

    # -- public contract --

    def get(self, tenant_id: str, role: Role | str) -> dict[Module, frozenset[Permission]]:
        """Return the tenant's explicit overrides for ``role``.

        Only modules with an override are present; an absent module means
        "use baseline".

        Raises:
            StorageUnavailable: If the backend cannot be read.
        """
        return self._get(tenant_id, parse_role(role))

    def put(
        self,
        tenant_id: str,
        role: Role | str,
        module: Module | str,
        permissions: Iterable[Permission | str],
        updated_by: Optional[str] = None,
    ) -> OverrideEntry:
        """Upsert the override for ``(tenant_id, role, module)``.

        Args:
            tenant_id: Owning tenant.
            role: Role being customized (never ``super_admin``).
            module: Module whose permission set is replaced.
            permissions: Replacement set; may be empty.
            updated_by: Acting administrator, recorded for audit.

        Returns:
            The stored ``OverrideEntry``.

        Raises:
            RoleNotEditableError: If ``role`` is not tenant editable.
            UnknownRole, UnknownModule, UnknownPermission: On bad vocabulary.
            StorageUnavailable: If the write could not be persisted.
        """
        role = self._writable_role(role)
        entry = OverrideEntry(
            tenant_id=tenant_id,
            role=role,
            module=parse_module(module),
            permissions=parse_permissions(permissions),
            updated_at=datetime.now(timezone.utc),
            updated_by=updated_by,
        )
        stored = self._put(entry)
        log.info(
            "Override written tenant=%s role=%s module=%s permissions=%s by=%s",
            tenant_id, role.value, entry.module.value,
            sorted(p.value for p in entry.permissions), updated_by,
        )
        self._notify(tenant_id, role, entry.module)
        return stored

    def delete(self, tenant_id: str, role: Role | str, module: Module | str) -> bool:
        """Remove an override so the module falls back to baseline.

        Returns:
            True if an override existed.

        Raises:
            RoleNotEditableError: If ``role`` is not tenant editable.
            StorageUnavailable: If the delete could not be persisted.
        """
        role = self._writable_role(role)
        module = parse_module(module)
        existed = self._delete(tenant_id, role, module)
        log.info(
            "Override deleted tenant=%s role=%s module=%s existed=%s",
            tenant_id, role.value, module.value, existed,
        )
        self._notify(tenant_id, role, module)
        return existed

    def entries(self, tenant_id: str, role: Role | str | None = None) -> list[OverrideEntry]:
        """Return the tenant's override records, optionally for one role."""
        return self._entries(tenant_id, parse_role(role) if role is not None else None)

    @staticmethod
    def _writable_role(role: Role | str) -> Role:
        role = parse_role(role)
        if role not in EDITABLE_ROLES:
            raise RoleNotEditableError(
                f"Role '{role.value}' is not subject to tenant overrides."
            )
        return role

    # -- backend primitives --

    @abc.abstractmethod
    def _get(self, tenant_id: str, role: Role) -> dict[Module, frozenset[Permission]]:
        ...

    @abc.abstractmethod
    def _put(self, entry: OverrideEntry) -> OverrideEntry:
        ...

    @abc.abstractmethod
    def _delete(self, tenant_id: str, role: Role, module: Module) -> bool:
        ...

    @abc.abstractmethod
    def _entries(self, tenant_id: str, role: Optional[Role]) -> list[OverrideEntry]:
        ...


class InMemoryOverrideStore(OverrideStore):
    """Process-local store guarded by a single lock.

    Suitable for tests, single-process deployments and as the default
    when no database is configured.  Reads return copies, so callers can
    never mutate stored state.
    """

    def __init__(self) -> None:
        super().__init__()
        self._rows: dict[tuple[str, Role, Module], OverrideEntry] = {}
        self._lock = threading.Lock()
        self.available = True

    def _check_available(self) -> None:
        if not self.available:
            raise StorageUnavailable("In-memory override store is marked unavailable.")

    def _get(self, tenant_id: str, role: Role) -> dict[Module, frozenset[Permission]]:
        with self._lock:
            self._check_available()
            return {
                module: entry.permissions
                for (t, r, module), entry in self._rows.items()
                if t == tenant_id and r == role
            }

    def _put(self, entry: OverrideEntry) -> OverrideEntry:
        with self._lock:
            self._check_available()
            self._rows[entry.key] = entry
        return entry

    def _delete(self, tenant_id: str, role: Role, module: Module) -> bool:
        with self._lock:
            self._check_available()
            return self._rows.pop((tenant_id, role, module), None) is not None

    def _entries(self, tenant_id: str, role: Optional[Role]) -> list[OverrideEntry]:
        with self._lock:
            self._check_available()
            rows = [
                entry for (t, r, _), entry in self._rows.items()
                if t == tenant_id and (role is None or r == role)
            ]
        return sorted(rows, key=lambda e: (e.role.value, e.module.value))

    def __len__(self) -> int:
        return len(self._rows)
