"""
Tenant Walkthrough: Customizing Role Permissions
================================================

This script walks a tenant administrator through the RoleMatrix editing
workflow against an in-memory store.  No real tenant data is used.

Steps demonstrated:
  1. Build the engine and seed overrides from YAML
  2. Check permissions through the authorization gate
  3. Edit a role in the permission editor and save
  4. Reset a role to the platform defaults
  5. Attempt to edit super_admin (rejected)
  6. Generate a tenant customization report
  7. Export the audit log for review

Usage:
    python -m examples.tenant_walkthrough
    # or: python examples/tenant_walkthrough.py
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from rolematrix.config import EngineSettings, build_engine, load_overrides_from_yaml, seed_overrides
from rolematrix.errors import RoleNotEditableError
from rolematrix.models import Module, Permission, Principal, Role
from rolematrix.report import generate_customization_report

TENANT = "clinic_alpha"


def _banner(text: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print(f"{'=' * 60}\n")


def main() -> None:
    _banner("RoleMatrix Walkthrough: Tenant Permission Customization")

    # ------------------------------------------------------------------
    # Step 1: Build engine and seed overrides
    # ------------------------------------------------------------------
    _banner("Step 1: Build Engine and Seed Overrides")

    engine = build_engine(EngineSettings(log_level="WARNING"), configure_logs=True)
    sample_yaml = Path(__file__).parent / "tenant_overrides.yaml"
    if sample_yaml.exists():
        seeds = load_overrides_from_yaml(sample_yaml)
        seed_overrides(engine.store, seeds, actor_id="onboarding")
        print(f"Seeded {len(seeds)} overrides from {sample_yaml.name}")
    else:
        engine.store.put(TENANT, Role.PHYSICIAN, Module.PRESCRIPTIONS, ["view"], updated_by="onboarding")
        print("Seeded one inline override (physician.prescriptions = view)")

    for entry in engine.store.entries(TENANT):
        print(f"  {entry.role.value}.{entry.module.value} = {sorted(p.value for p in entry.permissions)}")

    # ------------------------------------------------------------------
    # Step 2: Authorization checks
    # ------------------------------------------------------------------
    _banner("Step 2: Authorization Checks")

    checks = [
        (Role.PHYSICIAN, Module.PRESCRIPTIONS, Permission.CREATE),
        (Role.PHYSICIAN, Module.PRESCRIPTIONS, Permission.VIEW),
        (Role.NURSE, Module.LAB_ORDERS, Permission.CREATE),
        (Role.RECEPTIONIST, Module.BILLING, Permission.PROCESS_PAYMENTS),
    ]
    for role, module, permission in checks:
        allowed = engine.gate.can(TENANT, role, module, permission)
        print(f"  {role.value:<14} {module.value}.{permission.value:<18} -> {'ALLOW' if allowed else 'DENY'}")

    other = engine.gate.can("bravo_family", Role.PHYSICIAN, Module.PRESCRIPTIONS, Permission.CREATE)
    print(f"\n  bravo_family physician prescriptions.create -> {'ALLOW' if other else 'DENY'} (baseline)")

    # ------------------------------------------------------------------
    # Step 3: Edit the nurse role
    # ------------------------------------------------------------------
    _banner("Step 3: Edit Nurse Permissions")

    admin = Principal(tenant_id=TENANT, role=Role.TENANT_ADMIN, user_id="admin_synthetic_001")
    session = engine.open_editor(admin)
    session.load(Role.NURSE)
    print(f"Loaded nurse. State: {session.state.value}")

    session.set_permission(Module.VITAL_SIGNS, Permission.RECORD, False)
    session.toggle(Module.APPOINTMENTS, Permission.CREATE)
    print(f"Pending modules: {sorted(m.value for m in session.pending_modules())}")

    report = session.save()
    print(f"Saved. State: {session.state.value}")
    for result in report.results:
        print(f"  {result.action.value:<6} {result.module.value:<14} ok={result.succeeded}")

    # ------------------------------------------------------------------
    # Step 4: Reset physician to defaults
    # ------------------------------------------------------------------
    _banner("Step 4: Reset Physician to Defaults")

    session.load(Role.PHYSICIAN)
    session.reset_to_default()
    session.save()
    allowed = engine.gate.can(TENANT, Role.PHYSICIAN, Module.PRESCRIPTIONS, Permission.CREATE)
    print(f"physician prescriptions.create after reset -> {'ALLOW' if allowed else 'DENY'}")

    # ------------------------------------------------------------------
    # Step 5: super_admin is not editable
    # ------------------------------------------------------------------
    _banner("Step 5: Attempt to Edit super_admin")

    try:
        session.load(Role.SUPER_ADMIN)
    except RoleNotEditableError as exc:
        print(f"Rejected: {exc}")

    # ------------------------------------------------------------------
    # Step 6: Customization report
    # ------------------------------------------------------------------
    _banner("Step 6: Tenant Customization Report")

    customization = generate_customization_report(engine.resolver, TENANT)
    print(json.dumps(customization.to_dict(), indent=2))

    # ------------------------------------------------------------------
    # Step 7: Audit export
    # ------------------------------------------------------------------
    _banner("Step 7: Audit Log Export")

    export = engine.audit_log.export_for_review(TENANT)
    print(json.dumps(export["export_metadata"], indent=2))
    for entry in export["entries"]:
        print(f"  {entry['event_type']:<22} {entry['target_entity']}")

    _banner("Walkthrough Complete")


if __name__ == "__main__":
    main()
