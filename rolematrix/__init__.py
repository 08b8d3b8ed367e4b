"""
RoleMatrix Role-Permission Resolution Engine
============================================

Tenant-aware role permissions for a multi-tenant healthcare application.
A compiled-in baseline matrix defines what each role (physician, nurse,
pharmacist, ...) may do in each module (patients, prescriptions, billing,
...).  Each tenant may replace a role's permission set for individual
modules.  The resolver merges both layers into the effective permissions
consulted by the administrative editor and by every authorization check.

Business code asks ``AuthorizationGate.can()`` and nothing else.  The
gate fails closed on unknown input or unavailable storage.
"""

__version__ = "0.1.0"
