"""
Tests for rolematrix.editor -- the staged permission editor.

Covers: loading and seeding, toggling, the physician prescriptions and
nurse lab orders scenarios, reset to default, super_admin edit rejection,
editor authorization, narrowing-first write order, partial and total
save failure with retry, concurrent saves of different modules, state
machine enforcement, and audit trail.
"""

from __future__ import annotations

import threading

import pytest

from rolematrix.audit import AuditEventType, AuditLog
from rolematrix.baseline import DEFAULT_BASELINE
from rolematrix.editor import EditorState, PermissionEditorSession, WriteAction
from rolematrix.errors import (
    AccessDenied,
    InvalidTransitionError,
    PartialSaveFailure,
    RoleNotEditableError,
    SaveFailedError,
    StorageUnavailable,
    UnknownModule,
    UnknownPermission,
)
from rolematrix.gate import AuthorizationGate
from rolematrix.models import Module, OverrideEntry, Permission, Principal, Role
from rolematrix.resolver import PermissionResolver
from rolematrix.store import InMemoryOverrideStore


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

class FlakyStore(InMemoryOverrideStore):
    """In-memory store whose writes fail for selected modules."""

    def __init__(self, failing: set[Module] | None = None) -> None:
        super().__init__()
        self.failing = set(failing or ())

    def _put(self, entry: OverrideEntry) -> OverrideEntry:
        if entry.module in self.failing:
            raise StorageUnavailable(f"write to {entry.module.value} timed out")
        return super()._put(entry)

    def _delete(self, tenant_id: str, role: Role, module: Module) -> bool:
        if module in self.failing:
            raise StorageUnavailable(f"delete of {module.value} timed out")
        return super()._delete(tenant_id, role, module)


def _make_admin(tenant_id: str = "clinic_a", user_id: str = "admin_1") -> Principal:
    return Principal(tenant_id=tenant_id, role=Role.TENANT_ADMIN, user_id=user_id)


def _make_engine(store: InMemoryOverrideStore | None = None):
    store = store if store is not None else InMemoryOverrideStore()
    resolver = PermissionResolver(store)
    gate = AuthorizationGate(resolver)
    audit = AuditLog()
    return store, resolver, gate, audit


def _open(resolver, gate, audit, actor: Principal | None = None, tenant_id: str | None = None):
    return PermissionEditorSession(
        actor=actor or _make_admin(),
        resolver=resolver,
        tenant_id=tenant_id,
        audit_log=audit,
    )


# ---------------------------------------------------------------------------
# 1. Loading
# ---------------------------------------------------------------------------

class TestLoad:
    def test_load_seeds_from_effective_permissions(self):
        _, resolver, gate, audit = _make_engine()
        session = _open(resolver, gate, audit)

        flags = session.load(Role.NURSE)

        assert session.state == EditorState.LOADED
        assert session.role == Role.NURSE
        assert flags[Module.LAB_ORDERS][Permission.VIEW] is True
        assert flags[Module.LAB_ORDERS][Permission.CREATE] is False
        assert session.is_dirty is False

    def test_load_reflects_existing_overrides(self):
        store, resolver, gate, audit = _make_engine()
        store.put("clinic_a", Role.NURSE, Module.LAB_ORDERS, [])
        session = _open(resolver, gate, audit)

        flags = session.load("nurse")

        assert not any(flags[Module.LAB_ORDERS].values())
        assert Module.LAB_ORDERS in session.effective.overridden_modules

    def test_grid_offers_every_permission_for_every_module(self):
        _, resolver, gate, audit = _make_engine()
        session = _open(resolver, gate, audit)
        flags = session.load(Role.RECEPTIONIST)

        assert set(flags) == set(Module)
        for module in Module:
            assert set(flags[module]) == set(Permission)
        assert flags[Module.PATIENTS][Permission.VIEW] is True
        assert flags[Module.PRESCRIPTIONS][Permission.VIEW] is False

    def test_permission_outside_baseline_can_be_granted(self):
        store, resolver, gate, audit = _make_engine()
        session = _open(resolver, gate, audit)
        session.load(Role.PHYSICIAN)

        session.set_permission(Module.VITAL_SIGNS, Permission.DELETE, True)
        assert session.toggle(Module.PRESCRIPTIONS, Permission.FINALIZE) is True
        session.save()

        stored = store.get("clinic_a", Role.PHYSICIAN)
        assert Permission.DELETE in stored[Module.VITAL_SIGNS]
        assert Permission.FINALIZE in stored[Module.PRESCRIPTIONS]
        assert gate.can("clinic_a", Role.PHYSICIAN, Module.VITAL_SIGNS, Permission.DELETE)
        assert gate.can("clinic_a", Role.PHYSICIAN, Module.PRESCRIPTIONS, Permission.FINALIZE)
        assert not gate.can("clinic_b", Role.PHYSICIAN, Module.PRESCRIPTIONS, Permission.FINALIZE)

    def test_storage_unavailable_on_load(self):
        store, resolver, gate, audit = _make_engine()
        session = _open(resolver, gate, audit)
        store.available = False
        with pytest.raises(StorageUnavailable):
            session.load(Role.NURSE)
        assert session.state == EditorState.IDLE

    def test_loading_another_role_drops_staged_changes(self):
        _, resolver, gate, audit = _make_engine()
        session = _open(resolver, gate, audit)
        session.load(Role.NURSE)
        session.toggle(Module.LAB_ORDERS, Permission.CREATE)

        session.load(Role.PHYSICIAN)

        assert session.role == Role.PHYSICIAN
        assert session.is_dirty is False
        assert session.state == EditorState.LOADED


# ---------------------------------------------------------------------------
# 2. Saving scenarios
# ---------------------------------------------------------------------------

class TestSaveScenarios:
    def test_physician_prescriptions_view_only(self):
        store, resolver, gate, audit = _make_engine()
        session = _open(resolver, gate, audit)
        session.load(Role.PHYSICIAN)
        for permission in (Permission.CREATE, Permission.UPDATE, Permission.CANCEL):
            session.set_permission(Module.PRESCRIPTIONS, permission, False)

        report = session.save()

        assert report.ok
        assert report.succeeded_modules == [Module.PRESCRIPTIONS]
        assert session.state == EditorState.SAVED
        assert store.get("clinic_a", Role.PHYSICIAN) == {
            Module.PRESCRIPTIONS: frozenset({Permission.VIEW}),
        }
        assert not gate.can("clinic_a", Role.PHYSICIAN, Module.PRESCRIPTIONS, Permission.CREATE)
        assert gate.can("clinic_a", Role.PHYSICIAN, Module.PRESCRIPTIONS, Permission.VIEW)
        # other modules untouched
        assert gate.can("clinic_a", Role.PHYSICIAN, Module.LAB_ORDERS, Permission.CREATE)

    def test_nurse_lab_orders_widened(self):
        store, resolver, gate, audit = _make_engine()
        session = _open(resolver, gate, audit)
        session.load(Role.NURSE)
        assert session.toggle(Module.LAB_ORDERS, Permission.CREATE) is True

        session.save()

        assert store.get("clinic_a", Role.NURSE) == {
            Module.LAB_ORDERS: frozenset({Permission.VIEW, Permission.CREATE}),
        }
        assert gate.can("clinic_a", Role.NURSE, Module.LAB_ORDERS, Permission.CREATE)
        assert not gate.can("clinic_b", Role.NURSE, Module.LAB_ORDERS, Permission.CREATE)

    def test_revoking_every_permission_stores_empty_override(self):
        store, resolver, gate, audit = _make_engine()
        session = _open(resolver, gate, audit)
        session.load(Role.NURSE)
        session.set_permission(Module.LAB_ORDERS, Permission.VIEW, False)

        session.save()

        assert store.get("clinic_a", Role.NURSE) == {Module.LAB_ORDERS: frozenset()}
        assert not gate.can_access_module("clinic_a", Role.NURSE, Module.LAB_ORDERS)

    def test_session_rereads_ground_truth_after_save(self):
        _, resolver, gate, audit = _make_engine()
        session = _open(resolver, gate, audit)
        session.load(Role.NURSE)
        session.toggle(Module.LAB_ORDERS, Permission.CREATE)

        session.save()

        assert session.effective.allows(Module.LAB_ORDERS, Permission.CREATE)
        assert Module.LAB_ORDERS in session.effective.overridden_modules
        assert session.is_dirty is False

    def test_toggled_back_module_is_not_written(self):
        store, resolver, gate, audit = _make_engine()
        session = _open(resolver, gate, audit)
        session.load(Role.NURSE)
        session.toggle(Module.LAB_ORDERS, Permission.CREATE)
        session.toggle(Module.LAB_ORDERS, Permission.CREATE)

        report = session.save()

        assert report.results == []
        assert len(store) == 0
        assert session.state == EditorState.SAVED

    def test_edit_after_save_continues(self):
        store, resolver, gate, audit = _make_engine()
        session = _open(resolver, gate, audit)
        session.load(Role.NURSE)
        session.toggle(Module.LAB_ORDERS, Permission.CREATE)
        session.save()

        session.toggle(Module.BILLING, Permission.VIEW)
        session.save()

        assert set(store.get("clinic_a", Role.NURSE)) == {Module.LAB_ORDERS, Module.BILLING}


# ---------------------------------------------------------------------------
# 3. Reset to default
# ---------------------------------------------------------------------------

class TestResetToDefault:
    def test_reset_deletes_overrides(self):
        store, resolver, gate, audit = _make_engine()
        store.put("clinic_a", Role.PHYSICIAN, Module.PRESCRIPTIONS, ["view"])
        session = _open(resolver, gate, audit)
        session.load(Role.PHYSICIAN)

        flags = session.reset_to_default()
        assert flags[Module.PRESCRIPTIONS][Permission.CREATE] is True
        assert session.staged()[Module.PRESCRIPTIONS] == (
            DEFAULT_BASELINE.get_baseline(Role.PHYSICIAN)[Module.PRESCRIPTIONS]
        )

        report = session.save()

        assert report.ok
        assert store.get("clinic_a", Role.PHYSICIAN) == {}
        assert gate.can("clinic_a", Role.PHYSICIAN, Module.PRESCRIPTIONS, Permission.CREATE)
        assert session.effective.overridden_modules == frozenset()
        assert len(audit.query("clinic_a", event_type=AuditEventType.PERMISSIONS_RESET)) == 1
        deleted = audit.query("clinic_a", event_type=AuditEventType.OVERRIDE_DELETED)
        assert [e.target_entity for e in deleted] == ["physician.prescriptions"]

    def test_reset_then_toggle_writes_override(self):
        store, resolver, gate, audit = _make_engine()
        store.put("clinic_a", Role.PHYSICIAN, Module.PRESCRIPTIONS, ["view"])
        session = _open(resolver, gate, audit)
        session.load(Role.PHYSICIAN)
        session.reset_to_default()
        session.set_permission(Module.BILLING, Permission.VIEW, False)

        report = session.save()

        assert store.get("clinic_a", Role.PHYSICIAN) == {Module.BILLING: frozenset()}
        actions = {r.module: r.action for r in report.results}
        assert actions[Module.BILLING] == WriteAction.PUT
        assert actions[Module.PRESCRIPTIONS] == WriteAction.DELETE

    def test_reset_only_affects_own_tenant(self):
        store, resolver, gate, audit = _make_engine()
        store.put("clinic_a", Role.NURSE, Module.LAB_ORDERS, [])
        store.put("clinic_b", Role.NURSE, Module.LAB_ORDERS, [])
        session = _open(resolver, gate, audit)
        session.load(Role.NURSE)
        session.reset_to_default()
        session.save()

        assert store.get("clinic_a", Role.NURSE) == {}
        assert store.get("clinic_b", Role.NURSE) == {Module.LAB_ORDERS: frozenset()}


# ---------------------------------------------------------------------------
# 4. super_admin and authorization
# ---------------------------------------------------------------------------

class TestAuthorization:
    def test_super_admin_role_cannot_be_loaded(self):
        store, resolver, gate, audit = _make_engine()
        session = _open(resolver, gate, audit)

        with pytest.raises(RoleNotEditableError):
            session.load(Role.SUPER_ADMIN)

        assert session.state == EditorState.IDLE
        assert len(store) == 0
        rejected = audit.query("clinic_a", event_type=AuditEventType.EDIT_REJECTED)
        assert rejected[0].target_entity == "super_admin"

    def test_non_admin_cannot_open_editor(self):
        _, resolver, gate, audit = _make_engine()
        nurse = Principal(tenant_id="clinic_a", role=Role.NURSE, user_id="n1")
        with pytest.raises(AccessDenied):
            _open(resolver, gate, audit, actor=nurse)
        assert len(audit.query("clinic_a", event_type=AuditEventType.EDIT_REJECTED)) == 1

    def test_cross_tenant_edit_denied(self):
        _, resolver, gate, audit = _make_engine()
        with pytest.raises(AccessDenied, match="cross-tenant"):
            _open(resolver, gate, audit, actor=_make_admin("clinic_a"), tenant_id="clinic_b")

    def test_super_admin_may_edit_any_tenant(self):
        store, resolver, gate, audit = _make_engine()
        operator = Principal(tenant_id="platform", role=Role.SUPER_ADMIN, user_id="ops_1")
        session = _open(resolver, gate, audit, actor=operator, tenant_id="clinic_b")
        session.load(Role.NURSE)
        session.toggle(Module.LAB_ORDERS, Permission.CREATE)
        session.save()

        assert Module.LAB_ORDERS in store.get("clinic_b", Role.NURSE)
        assert store.entries("clinic_b")[0].updated_by == "ops_1"

    def test_override_cannot_delegate_role_editing(self):
        store, resolver, gate, audit = _make_engine()
        store.put("clinic_a", Role.RECEPTIONIST, Module.ROLES, ["view", "modify"])
        assert gate.can("clinic_a", Role.RECEPTIONIST, Module.ROLES, Permission.MODIFY)

        receptionist = Principal(tenant_id="clinic_a", role=Role.RECEPTIONIST, user_id="r1")
        with pytest.raises(AccessDenied, match="not an administrator"):
            _open(resolver, gate, audit, actor=receptionist)

    def test_revoking_roles_override_does_not_lock_out_admin(self):
        store, resolver, gate, audit = _make_engine()
        store.put("clinic_a", Role.TENANT_ADMIN, Module.ROLES, [])
        assert not gate.can("clinic_a", Role.TENANT_ADMIN, Module.ROLES, Permission.MODIFY)

        session = _open(resolver, gate, audit)
        session.load(Role.NURSE)
        session.toggle(Module.LAB_ORDERS, Permission.CREATE)
        session.save()

        assert session.state == EditorState.SAVED
        assert Permission.CREATE in store.get("clinic_a", Role.NURSE)[Module.LAB_ORDERS]

    def test_tenant_admin_role_cannot_be_loaded(self):
        store, resolver, gate, audit = _make_engine()
        session = _open(resolver, gate, audit)

        with pytest.raises(RoleNotEditableError):
            session.load(Role.TENANT_ADMIN)

        assert session.state == EditorState.IDLE
        assert len(store) == 0
        rejected = audit.query("clinic_a", event_type=AuditEventType.EDIT_REJECTED)
        assert rejected[0].target_entity == "tenant_admin"


# ---------------------------------------------------------------------------
# 5. Write ordering
# ---------------------------------------------------------------------------

class TestWriteOrdering:
    def test_revocations_written_before_grants(self):
        store, resolver, gate, audit = _make_engine()
        written = []
        store.subscribe(lambda t, r, m: written.append(m))
        session = _open(resolver, gate, audit)
        session.load(Role.PHYSICIAN)
        # PATIENTS precedes PRESCRIPTIONS in module order
        session.set_permission(Module.PATIENTS, Permission.DELETE, True)
        session.set_permission(Module.PRESCRIPTIONS, Permission.CREATE, False)

        report = session.save()

        assert written == [Module.PRESCRIPTIONS, Module.PATIENTS]
        assert [r.module for r in report.results] == [Module.PRESCRIPTIONS, Module.PATIENTS]

    def test_swap_counts_as_narrowing(self):
        store, resolver, gate, audit = _make_engine()
        written = []
        store.subscribe(lambda t, r, m: written.append(m))
        session = _open(resolver, gate, audit)
        session.load(Role.NURSE)
        session.set_permission(Module.APPOINTMENTS, Permission.CREATE, True)
        session.set_permission(Module.LAB_ORDERS, Permission.VIEW, False)
        session.set_permission(Module.LAB_ORDERS, Permission.CREATE, True)

        session.save()

        assert written == [Module.LAB_ORDERS, Module.APPOINTMENTS]


# ---------------------------------------------------------------------------
# 6. Partial and total failure
# ---------------------------------------------------------------------------

class TestSaveFailures:
    def test_partial_failure_reports_per_module(self):
        store = FlakyStore(failing={Module.BILLING})
        _, resolver, gate, audit = _make_engine(store)
        session = _open(resolver, gate, audit)
        session.load(Role.RECEPTIONIST)
        session.set_permission(Module.BILLING, Permission.PROCESS_PAYMENTS, False)
        session.set_permission(Module.PATIENTS, Permission.CREATE, False)

        with pytest.raises(PartialSaveFailure) as exc_info:
            session.save()

        report = exc_info.value.report
        assert report.partial
        assert report.failed_modules == [Module.BILLING]
        assert report.succeeded_modules == [Module.PATIENTS]
        assert session.state == EditorState.FAILED

        # succeeded module is live, failed module is not
        assert not gate.can("clinic_a", Role.RECEPTIONIST, Module.PATIENTS, Permission.CREATE)
        assert gate.can("clinic_a", Role.RECEPTIONIST, Module.BILLING, Permission.PROCESS_PAYMENTS)

        # failed module keeps its staged value
        assert session.pending_modules() == frozenset({Module.BILLING})
        assert Permission.PROCESS_PAYMENTS not in session.staged()[Module.BILLING]
        assert len(audit.query("clinic_a", event_type=AuditEventType.OVERRIDE_WRITE_FAILED)) == 1

    def test_retry_resends_only_failed_modules(self):
        store = FlakyStore(failing={Module.BILLING})
        _, resolver, gate, audit = _make_engine(store)
        session = _open(resolver, gate, audit)
        session.load(Role.RECEPTIONIST)
        session.set_permission(Module.BILLING, Permission.PROCESS_PAYMENTS, False)
        session.set_permission(Module.PATIENTS, Permission.CREATE, False)
        with pytest.raises(PartialSaveFailure):
            session.save()

        store.failing.clear()
        report = session.save()

        assert [r.module for r in report.results] == [Module.BILLING]
        assert session.state == EditorState.SAVED
        assert not gate.can("clinic_a", Role.RECEPTIONIST, Module.BILLING, Permission.PROCESS_PAYMENTS)

    def test_total_failure_raises_save_failed(self):
        store = FlakyStore(failing={Module.BILLING})
        _, resolver, gate, audit = _make_engine(store)
        session = _open(resolver, gate, audit)
        session.load(Role.RECEPTIONIST)
        session.set_permission(Module.BILLING, Permission.PROCESS_PAYMENTS, False)

        with pytest.raises(SaveFailedError) as exc_info:
            session.save()

        assert not isinstance(exc_info.value, PartialSaveFailure)
        assert exc_info.value.report.succeeded_modules == []
        assert store.get("clinic_a", Role.RECEPTIONIST) == {}

    def test_failed_state_allows_further_edits(self):
        store = FlakyStore(failing={Module.BILLING})
        _, resolver, gate, audit = _make_engine(store)
        session = _open(resolver, gate, audit)
        session.load(Role.RECEPTIONIST)
        session.set_permission(Module.BILLING, Permission.PROCESS_PAYMENTS, False)
        with pytest.raises(SaveFailedError):
            session.save()

        session.toggle(Module.PATIENTS, Permission.CREATE)
        assert session.state == EditorState.EDITING
        assert session.pending_modules() == frozenset({Module.BILLING, Module.PATIENTS})


# ---------------------------------------------------------------------------
# 7. Concurrent administrators
# ---------------------------------------------------------------------------

class TestConcurrentSaves:
    def test_different_modules_both_persist(self):
        store, resolver, gate, audit = _make_engine()
        first = _open(resolver, gate, audit, actor=_make_admin(user_id="admin_1"))
        second = _open(resolver, gate, audit, actor=_make_admin(user_id="admin_2"))
        first.load(Role.RECEPTIONIST)
        second.load(Role.RECEPTIONIST)
        first.set_permission(Module.BILLING, Permission.PROCESS_PAYMENTS, False)
        second.set_permission(Module.PATIENTS, Permission.CREATE, False)

        barrier = threading.Barrier(2)
        errors = []

        def save(session):
            barrier.wait()
            try:
                session.save()
            except Exception as exc:  # surfaced by the assertion below
                errors.append(exc)

        threads = [threading.Thread(target=save, args=(s,)) for s in (first, second)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        overrides = store.get("clinic_a", Role.RECEPTIONIST)
        assert set(overrides) == {Module.BILLING, Module.PATIENTS}
        assert not gate.can("clinic_a", Role.RECEPTIONIST, Module.BILLING, Permission.PROCESS_PAYMENTS)
        assert not gate.can("clinic_a", Role.RECEPTIONIST, Module.PATIENTS, Permission.CREATE)
        by_module = {e.module: e.updated_by for e in store.entries("clinic_a")}
        assert by_module == {Module.BILLING: "admin_1", Module.PATIENTS: "admin_2"}
        valid, _ = audit.verify_chain()
        assert valid


# ---------------------------------------------------------------------------
# 8. State machine
# ---------------------------------------------------------------------------

class TestStateMachine:
    def test_toggle_before_load_rejected(self):
        _, resolver, gate, audit = _make_engine()
        session = _open(resolver, gate, audit)
        with pytest.raises(InvalidTransitionError):
            session.toggle(Module.BILLING, Permission.VIEW)

    def test_save_without_edits_rejected(self):
        _, resolver, gate, audit = _make_engine()
        session = _open(resolver, gate, audit)
        session.load(Role.NURSE)
        with pytest.raises(InvalidTransitionError):
            session.save()

    def test_discard_returns_to_idle(self):
        store, resolver, gate, audit = _make_engine()
        session = _open(resolver, gate, audit)
        session.load(Role.NURSE)
        session.toggle(Module.LAB_ORDERS, Permission.CREATE)

        session.discard()

        assert session.state == EditorState.IDLE
        assert session.role is None
        assert session.staged() == {}
        assert len(store) == 0
        with pytest.raises(InvalidTransitionError):
            session.toggle(Module.LAB_ORDERS, Permission.CREATE)

    def test_unknown_module_or_permission_rejected(self):
        _, resolver, gate, audit = _make_engine()
        session = _open(resolver, gate, audit)
        session.load(Role.PHARMACIST)
        with pytest.raises(UnknownModule):
            session.toggle("pharmacy", Permission.VIEW)
        with pytest.raises(UnknownPermission):
            session.toggle(Module.PRESCRIPTIONS, "approve")
        assert session.state == EditorState.LOADED


# ---------------------------------------------------------------------------
# 9. Audit trail
# ---------------------------------------------------------------------------

class TestAuditTrail:
    def test_written_override_is_attributed(self):
        _, resolver, gate, audit = _make_engine()
        session = _open(resolver, gate, audit)
        session.load(Role.PHYSICIAN)
        session.set_permission(Module.PRESCRIPTIONS, Permission.CREATE, False)
        session.save()

        (written,) = audit.query("clinic_a", event_type=AuditEventType.OVERRIDE_WRITTEN)
        assert written.actor_id == "admin_1"
        assert written.actor_role == "tenant_admin"
        assert written.target_entity == "physician.prescriptions"
        assert "create" in written.metadata["before"]
        assert "create" not in written.metadata["after"]

        (saved,) = audit.query("clinic_a", event_type=AuditEventType.PERMISSIONS_SAVED)
        assert saved.metadata == {"succeeded": ["prescriptions"], "failed": []}
        assert audit.verify_chain() == (True, None)
