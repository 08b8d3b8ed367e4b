"""
Permission Editor Session -- staged editing of one role's matrix.

A tenant administrator edits one role at a time.  The session seeds a
mutable staging copy from the role's effective permissions, accepts
toggles, and persists the changes as one override write per touched
module.

**State machine:**

    IDLE -> LOADED -> EDITING -> SAVING -> SAVED | FAILED

``FAILED`` keeps every staged value of the modules that did not persist,
so the administrator can retry without re-entering choices.  ``SAVED``
and ``FAILED`` may go back to ``EDITING``; ``load()`` re-seeds from any
state except ``SAVING``; ``discard()`` returns to ``IDLE``.

**Save semantics:**

* One ``put`` (or ``delete`` after a reset) per module, each an
  independent write.  There is no multi-module transaction; partial
  failure is reported per module.
* Writes that remove a permission are issued before writes that only add
  permissions, so a failure part-way through leaves the tenant with
  fewer grants rather than more.
* After the writes the resolver cache is invalidated and the session
  re-reads ground truth from the resolver instead of trusting the staged
  copy.
* Failed writes are never retried automatically.

**Who may edit:**  ``tenant_admin`` principals within their own tenant and
``super_admin`` principals in any tenant.  Access follows the actor's role,
never a tenant-overridable grant, so no override can open the editor to
another role or lock administrators out of it.  ``super_admin`` and
``tenant_admin`` themselves are not editable here.

**Checkbox grid:**  every module offers every ``Permission`` value, so
any verb can be granted as well as revoked.
"""

from __future__ import annotations

import enum
from typing import Optional

from pydantic import BaseModel, Field

from rolematrix.audit import AuditEventType, AuditLog
from rolematrix.errors import (
    AccessDenied,
    InvalidTransitionError,
    PartialSaveFailure,
    RoleNotEditableError,
    SaveFailedError,
    StorageUnavailable,
)
from rolematrix.log import get_logger
from rolematrix.models import (
    EDITABLE_ROLES,
    Module,
    Permission,
    Principal,
    Role,
    parse_module,
    parse_permission,
    parse_role,
)
from rolematrix.resolver import EffectivePermissions, PermissionResolver

log = get_logger(__name__)

EDITOR_ROLES: frozenset[Role] = EDITABLE_ROLES - {Role.TENANT_ADMIN}
"""Roles a tenant administrator may load in the editor."""


# ---------------------------------------------------------------------------
# States and transitions
# ---------------------------------------------------------------------------

class EditorState(str, enum.Enum):
    """Lifecycle states of an editor session."""

    IDLE = "IDLE"
    LOADED = "LOADED"
    EDITING = "EDITING"
    SAVING = "SAVING"
    SAVED = "SAVED"
    FAILED = "FAILED"


_VALID_TRANSITIONS: dict[EditorState, set[EditorState]] = {
    EditorState.IDLE: {EditorState.LOADED},
    EditorState.LOADED: {EditorState.LOADED, EditorState.EDITING, EditorState.IDLE},
    EditorState.EDITING: {
        EditorState.LOADED,
        EditorState.EDITING,
        EditorState.SAVING,
        EditorState.IDLE,
    },
    EditorState.SAVING: {EditorState.SAVED, EditorState.FAILED},
    EditorState.SAVED: {EditorState.LOADED, EditorState.EDITING, EditorState.IDLE},
    EditorState.FAILED: {
        EditorState.LOADED,
        EditorState.EDITING,
        EditorState.SAVING,
        EditorState.IDLE,
    },
}


# ---------------------------------------------------------------------------
# Save report models
# ---------------------------------------------------------------------------

class WriteAction(str, enum.Enum):
    PUT = "put"
    DELETE = "delete"


class ModuleSaveResult(BaseModel):
    """Outcome of persisting one module."""

    module: Module
    action: WriteAction
    permissions: Optional[frozenset[Permission]] = Field(
        default=None,
        description="Set written by a PUT; None for a DELETE.",
    )
    succeeded: bool
    error: str = ""


class SaveReport(BaseModel):
    """Per-module outcome of one ``save()`` call."""

    tenant_id: str
    role: Role
    results: list[ModuleSaveResult] = Field(default_factory=list)

    @property
    def succeeded_modules(self) -> list[Module]:
        return [r.module for r in self.results if r.succeeded]

    @property
    def failed_modules(self) -> list[Module]:
        return [r.module for r in self.results if not r.succeeded]

    @property
    def ok(self) -> bool:
        return all(r.succeeded for r in self.results)

    @property
    def partial(self) -> bool:
        return bool(self.succeeded_modules) and bool(self.failed_modules)


# ---------------------------------------------------------------------------
# Editor session
# ---------------------------------------------------------------------------

class PermissionEditorSession:
    """Stateful editor used by a tenant administrator for one role at a time.

    Args:
        actor: The administrator driving the session.
        resolver: Resolver shared with the authorization gate.
        tenant_id: Tenant being edited; defaults to the actor's tenant.
        audit_log: Where permission changes are recorded.

    Raises:
        AccessDenied: If the actor may not edit permissions of the tenant.
    """

    def __init__(
        self,
        actor: Principal,
        resolver: PermissionResolver,
        tenant_id: Optional[str] = None,
        audit_log: Optional[AuditLog] = None,
    ) -> None:
        self.actor = actor
        self.tenant_id = tenant_id or actor.tenant_id
        self._resolver = resolver
        self._audit_log = audit_log if audit_log is not None else AuditLog()

        self._state = EditorState.IDLE
        self._role: Optional[Role] = None
        self._effective: Optional[EffectivePermissions] = None
        self._staged: dict[Module, dict[Permission, bool]] = {}
        self._touched: set[Module] = set()
        self._reset_pending: set[Module] = set()

        self._authorize()

    # -- helpers --

    @property
    def _store(self):
        return self._resolver.store

    @property
    def _baseline(self):
        return self._resolver.baseline

    def _authorize(self) -> None:
        """Raise AccessDenied unless the actor may edit this tenant."""
        reason = None
        if self.actor.role == Role.SUPER_ADMIN:
            pass
        elif self.actor.role != Role.TENANT_ADMIN:
            reason = f"role '{self.actor.role.value}' is not an administrator"
        elif self.actor.tenant_id != self.tenant_id:
            reason = "cross-tenant edit"

        if reason is not None:
            self._emit_audit(
                AuditEventType.EDIT_REJECTED,
                target=self._role.value if self._role else "",
                metadata={"reason": reason},
            )
            raise AccessDenied(
                f"User '{self.actor.user_id}' ({self.actor.role.value}) may not edit "
                f"role permissions of tenant '{self.tenant_id}': {reason}."
            )

    def _validate_transition(self, target: EditorState) -> None:
        allowed = _VALID_TRANSITIONS.get(self._state, set())
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot transition from {self._state.value} to {target.value}. "
                f"Allowed transitions: {sorted(s.value for s in allowed)}"
            )

    def _emit_audit(
        self,
        event_type: AuditEventType,
        target: str,
        metadata: Optional[dict] = None,
    ) -> None:
        self._audit_log.record(
            event_type=event_type,
            tenant_id=self.tenant_id,
            actor_id=self.actor.user_id or "unknown",
            actor_role=self.actor.role.value,
            target_entity=target,
            metadata=metadata or {},
        )

    def _require_role(self) -> Role:
        if self._role is None:
            raise InvalidTransitionError("No role loaded. Call load() first.")
        return self._role

    def _flags_for(self, granted: dict[Module, frozenset[Permission]]) -> dict[Module, dict[Permission, bool]]:
        """One boolean per (module, permission) over the full vocabulary."""
        return {
            module: {p: p in granted.get(module, frozenset()) for p in Permission}
            for module in Module
        }

    def _staged_set(self, module: Module) -> frozenset[Permission]:
        return frozenset(p for p, on in self._staged[module].items() if on)

    def _stage_key(self, module: Module | str, permission: Permission | str) -> tuple[Module, Permission]:
        return parse_module(module), parse_permission(permission)

    # -- read-only views --

    @property
    def state(self) -> EditorState:
        return self._state

    @property
    def role(self) -> Optional[Role]:
        return self._role

    @property
    def effective(self) -> Optional[EffectivePermissions]:
        """Ground truth as last read from the resolver."""
        return self._effective

    def staged(self) -> dict[Module, frozenset[Permission]]:
        """Staged grants per module, as they would be written."""
        return {module: self._staged_set(module) for module in self._staged}

    def staged_flags(self) -> dict[Module, dict[Permission, bool]]:
        """Copy of the checkbox grid: one boolean per (module, permission)."""
        return {module: dict(flags) for module, flags in self._staged.items()}

    def pending_modules(self) -> frozenset[Module]:
        """Modules that the next ``save()`` would write or delete."""
        return frozenset(self._touched | self._reset_pending)

    @property
    def is_dirty(self) -> bool:
        return bool(self._touched or self._reset_pending)

    # -- lifecycle operations --

    def load(self, role: Role | str) -> dict[Module, dict[Permission, bool]]:
        """Select a role and seed the staging copy from its effective permissions.

        Any staged changes of a previously loaded role are dropped.

        Returns:
            The seeded checkbox grid.

        Raises:
            RoleNotEditableError: If ``role`` is outside the editable set.
                Nothing is read or written in that case.
            InvalidTransitionError: If called while a save is in progress.
            StorageUnavailable: If the effective permissions cannot be read.
        """
        role = parse_role(role)
        if role not in EDITOR_ROLES:
            self._emit_audit(
                AuditEventType.EDIT_REJECTED,
                target=role.value,
                metadata={"reason": "role not editable"},
            )
            raise RoleNotEditableError(f"Role '{role.value}' cannot be edited by a tenant.")
        self._validate_transition(EditorState.LOADED)

        effective = self._resolver.resolve(self.tenant_id, role)

        self._role = role
        self._effective = effective
        self._staged = self._flags_for(dict(effective.modules))
        self._touched = set()
        self._reset_pending = set()
        self._state = EditorState.LOADED
        log.debug("Editor loaded tenant=%s role=%s", self.tenant_id, role.value)
        return self.staged_flags()

    def set_permission(self, module: Module | str, permission: Permission | str, granted: bool) -> None:
        """Stage an explicit grant or revoke of one permission."""
        self._require_role()
        self._validate_transition(EditorState.EDITING)
        module, permission = self._stage_key(module, permission)

        self._staged[module][permission] = bool(granted)
        self._touched.add(module)
        self._state = EditorState.EDITING

    def toggle(self, module: Module | str, permission: Permission | str) -> bool:
        """Flip one staged checkbox.

        Returns:
            The new staged value.

        Raises:
            UnknownModule, UnknownPermission: If either value is not defined.
        """
        self._require_role()
        self._validate_transition(EditorState.EDITING)
        module, permission = self._stage_key(module, permission)

        value = not self._staged[module][permission]
        self._staged[module][permission] = value
        self._touched.add(module)
        self._state = EditorState.EDITING
        return value

    def reset_to_default(self) -> dict[Module, dict[Permission, bool]]:
        """Re-seed the staging copy from the baseline.

        The next ``save()`` deletes the tenant's override for every module
        not toggled again afterwards, so those modules fall back to the
        baseline.
        """
        role = self._require_role()
        self._validate_transition(EditorState.EDITING)

        self._staged = self._flags_for(dict(self._baseline.get_baseline(role)))
        self._touched = set()
        self._reset_pending = set(self._staged)
        if self._effective is not None:
            self._reset_pending |= set(self._effective.overridden_modules)
        self._state = EditorState.EDITING
        return self.staged_flags()

    def discard(self) -> None:
        """Drop the staging copy and return to IDLE without writing anything."""
        if self._state == EditorState.IDLE:
            return
        self._validate_transition(EditorState.IDLE)
        self._role = None
        self._effective = None
        self._staged = {}
        self._touched = set()
        self._reset_pending = set()
        self._state = EditorState.IDLE

    # -- persistence --

    def _plan(self, role: Role) -> list[tuple[Module, WriteAction, Optional[frozenset[Permission]]]]:
        current = self._effective.modules if self._effective is not None else {}
        baseline = self._baseline.get_baseline(role)
        plan = []

        for module in Module:
            if module in self._touched:
                new = self._staged_set(module)
                if module not in self._reset_pending and new == current.get(module, frozenset()):
                    # toggled back to what is already stored
                    self._touched.discard(module)
                    continue
                plan.append((module, WriteAction.PUT, new))
            elif module in self._reset_pending:
                plan.append((module, WriteAction.DELETE, None))

        def removes_access(item) -> bool:
            module, action, new = item
            after = baseline.get(module, frozenset()) if action == WriteAction.DELETE else new
            return bool(current.get(module, frozenset()) - after)

        # narrowing writes first; sort is stable so enum order is kept within each group
        return sorted(plan, key=lambda item: 0 if removes_access(item) else 1)

    def save(self) -> SaveReport:
        """Persist staged changes, one independent write per module.

        Returns:
            The ``SaveReport`` when every module persisted.

        Raises:
            InvalidTransitionError: If there is nothing loaded or editing.
            PartialSaveFailure: If some modules persisted and others failed.
            SaveFailedError: If no module could be persisted.
        """
        role = self._require_role()
        self._validate_transition(EditorState.SAVING)

        self._state = EditorState.SAVING
        report = SaveReport(tenant_id=self.tenant_id, role=role)
        current = dict(self._effective.modules) if self._effective is not None else {}
        had_reset = bool(self._reset_pending)

        try:
            for module, action, new in self._plan(role):
                target = f"{role.value}.{module.value}"
                before = sorted(p.value for p in current.get(module, frozenset()))
                existed = True
                try:
                    if action == WriteAction.PUT:
                        self._store.put(self.tenant_id, role, module, new, updated_by=self.actor.user_id or None)
                    else:
                        existed = self._store.delete(self.tenant_id, role, module)
                except StorageUnavailable as exc:
                    log.warning("Override %s failed for tenant=%s %s: %s", action.value, self.tenant_id, target, exc)
                    report.results.append(ModuleSaveResult(
                        module=module, action=action, permissions=new, succeeded=False, error=str(exc),
                    ))
                    self._emit_audit(
                        AuditEventType.OVERRIDE_WRITE_FAILED,
                        target=target,
                        metadata={"action": action.value, "error": str(exc)},
                    )
                    continue

                report.results.append(ModuleSaveResult(
                    module=module, action=action, permissions=new, succeeded=True,
                ))
                self._touched.discard(module)
                self._reset_pending.discard(module)
                if action == WriteAction.PUT:
                    self._emit_audit(
                        AuditEventType.OVERRIDE_WRITTEN,
                        target=target,
                        metadata={"before": before, "after": sorted(p.value for p in new)},
                    )
                elif existed:
                    self._emit_audit(
                        AuditEventType.OVERRIDE_DELETED,
                        target=target,
                        metadata={"before": before},
                    )
        except Exception:
            self._state = EditorState.FAILED
            raise

        self._resolver.invalidate(self.tenant_id, role)
        self._refresh(role)

        if had_reset and any(r.action == WriteAction.DELETE and r.succeeded for r in report.results):
            self._emit_audit(AuditEventType.PERMISSIONS_RESET, target=role.value)
        self._emit_audit(
            AuditEventType.PERMISSIONS_SAVED,
            target=role.value,
            metadata={
                "succeeded": [m.value for m in report.succeeded_modules],
                "failed": [m.value for m in report.failed_modules],
            },
        )

        if report.ok:
            self._state = EditorState.SAVED
            log.info(
                "Saved permissions tenant=%s role=%s modules=%s",
                self.tenant_id, role.value, [m.value for m in report.succeeded_modules],
            )
            return report

        self._state = EditorState.FAILED
        failed = ", ".join(m.value for m in report.failed_modules)
        if report.succeeded_modules:
            log.warning("Partial save tenant=%s role=%s failed=%s", self.tenant_id, role.value, failed)
            raise PartialSaveFailure(f"Some modules could not be saved: {failed}", report)
        raise SaveFailedError(f"No module could be saved: {failed}", report)

    def _refresh(self, role: Role) -> None:
        """Re-read ground truth, keeping staged values of still-pending modules."""
        try:
            effective = self._resolver.resolve(self.tenant_id, role)
        except StorageUnavailable as exc:
            log.warning("Could not re-read permissions after save tenant=%s role=%s: %s", self.tenant_id, role.value, exc)
            return

        pending = self._touched | self._reset_pending
        kept = {module: self._staged[module] for module in pending if module in self._staged}
        self._effective = effective
        self._staged = self._flags_for(dict(effective.modules))
        self._staged.update(kept)
