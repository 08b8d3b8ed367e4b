"""
Core vocabulary and data models for RoleMatrix.

The ``Role``, ``Module`` and ``Permission`` enumerations are the contract
shared verbatim by every caller and by the administrative editor.  Their
string values are the wire values used by the application's UI and
persisted by the override stores.

Adding a role, module or permission is a deployment change, never a
runtime operation.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from rolematrix.errors import UnknownModule, UnknownPermission, UnknownRole


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Role(str, enum.Enum):
    """Job-function identities used as the unit of permission assignment.

    ``SUPER_ADMIN`` is the platform operator.  It is never subject to
    tenant overrides and cannot be edited by a tenant administrator.
    """

    SUPER_ADMIN = "super_admin"
    TENANT_ADMIN = "tenant_admin"
    DIRECTOR = "director"
    PHYSICIAN = "physician"
    NURSE = "nurse"
    PHARMACIST = "pharmacist"
    LAB_TECHNICIAN = "lab_technician"
    RECEPTIONIST = "receptionist"
    BILLING_STAFF = "billing_staff"


class Module(str, enum.Enum):
    """Functional areas of the application that permissions are scoped to."""

    PATIENTS = "patients"
    APPOINTMENTS = "appointments"
    PRESCRIPTIONS = "prescriptions"
    LAB_ORDERS = "labOrders"
    LAB_RESULTS = "labResults"
    CONSULTATIONS = "consultations"
    VITAL_SIGNS = "vitalSigns"
    MEDICAL_HISTORY = "medicalHistory"
    PATIENT_CHECK_IN = "patientCheckIn"
    MEDICATIONS = "medications"
    BILLING = "billing"
    INSURANCE_CLAIMS = "insuranceClaims"
    SERVICE_PRICE = "servicePrice"
    REPORTS = "reports"
    USERS = "users"
    ROLES = "roles"
    TENANT_SETTINGS = "tenantSettings"
    AUDIT_LOGS = "auditLogs"
    COMMUNICATIONS = "communications"
    DASHBOARD = "dashboard"


class Permission(str, enum.Enum):
    """Verbs within a module.

    The meaning of a verb is module specific: ``manage`` on ``billing`` is
    not the same capability as ``manage`` on ``patientCheckIn``.
    """

    VIEW = "view"
    SEARCH = "search"
    CREATE = "create"
    UPDATE = "update"
    EDIT = "edit"
    DELETE = "delete"
    CANCEL = "cancel"
    EXPORT = "export"
    MANAGE = "manage"
    ASSIGN = "assign"
    MODIFY = "modify"
    FINALIZE = "finalize"
    RECORD = "record"
    ASSIST = "assist"
    PROCESS = "process"
    SUBMIT = "submit"
    TRACK = "track"
    DISPENSE = "dispense"
    INVENTORY = "inventory"
    DEACTIVATE = "deactivate"
    GENERATE = "generate"
    GENERATE_FINANCIAL = "generate_financial"
    CREATE_STAFF = "create_staff"
    MEDICAL_RECORDS = "medical_records"
    BASIC_INFO = "basic_info"
    VIEW_BASIC = "view_basic"
    VIEW_BILLING = "view_billing"
    UPDATE_BASIC = "update_basic"
    UPDATE_STATUS = "update_status"
    SEARCH_PRESCRIPTIONS = "search_prescriptions"
    SEARCH_LAB = "search_lab"
    ENTER_RESULTS = "enter_results"
    PROCESS_PAYMENTS = "process_payments"
    MEDICATION_CLAIMS = "medication_claims"
    VIEW_METRICS = "view_metrics"
    VIEW_CLINICAL = "view_clinical"
    VIEW_PATIENT_CARE = "view_patient_care"
    VIEW_PHARMACY = "view_pharmacy"
    VIEW_LAB = "view_lab"
    VIEW_FRONT_DESK = "view_front_desk"
    VIEW_ADMIN = "view_admin"


EDITABLE_ROLES: frozenset[Role] = frozenset(r for r in Role if r != Role.SUPER_ADMIN)
"""Roles a tenant administrator may customize."""


# ---------------------------------------------------------------------------
# Vocabulary parsing
# ---------------------------------------------------------------------------

def parse_role(value: Role | str) -> Role:
    """Coerce a role value, raising ``UnknownRole`` if it is not defined."""
    try:
        return Role(value)
    except (ValueError, TypeError):
        raise UnknownRole(f"Unknown role {value!r}") from None


def parse_module(value: Module | str) -> Module:
    """Coerce a module value, raising ``UnknownModule`` if it is not defined."""
    try:
        return Module(value)
    except (ValueError, TypeError):
        raise UnknownModule(f"Unknown module {value!r}") from None


def parse_permission(value: Permission | str) -> Permission:
    """Coerce a permission value, raising ``UnknownPermission`` if it is not defined."""
    try:
        return Permission(value)
    except (ValueError, TypeError):
        raise UnknownPermission(f"Unknown permission {value!r}") from None


def parse_permissions(values) -> frozenset[Permission]:
    """Coerce an iterable of permission values into a frozenset."""
    if isinstance(values, str):
        raise UnknownPermission(
            f"Expected a collection of permissions, got the string {values!r}"
        )
    return frozenset(parse_permission(v) for v in values)


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------

class Principal(BaseModel):
    """An authenticated caller as handed over by the auth/session layer.

    The engine trusts these values as given; it does not verify identity.
    """

    model_config = ConfigDict(frozen=True)

    tenant_id: str = Field(..., min_length=1, description="Tenant the principal acts within.")
    role: Role = Field(..., description="The principal's role.")
    user_id: str = Field(default="", description="User identifier, recorded on writes for audit.")


class BaselineEntry(BaseModel):
    """One immutable row of the platform default matrix."""

    model_config = ConfigDict(frozen=True)

    role: Role
    module: Module
    permissions: frozenset[Permission]


class OverrideEntry(BaseModel):
    """A tenant-specific replacement of a role's permission set for one module.

    An empty ``permissions`` set is an explicit revocation, which is not
    the same as the absence of an entry (baseline applies).
    """

    model_config = ConfigDict(frozen=True)

    tenant_id: str = Field(..., min_length=1, description="Owning tenant (isolation key).")
    role: Role = Field(..., description="Role being customized.")
    module: Module = Field(..., description="Module whose permission set is replaced.")
    permissions: frozenset[Permission] = Field(
        default_factory=frozenset,
        description="Replacement permission set; may be empty.",
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="UTC timestamp of the last write.",
    )
    updated_by: Optional[str] = Field(
        default=None,
        description="Identifier of the administrator who wrote this entry.",
    )

    @property
    def key(self) -> tuple[str, Role, Module]:
        return (self.tenant_id, self.role, self.module)
