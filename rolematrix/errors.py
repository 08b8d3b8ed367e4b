"""
Error taxonomy for the permission engine.

Malformed input (``UnknownRole``, ``UnknownModule``, ``UnknownPermission``)
is a caller bug.  The ``AuthorizationGate`` turns these into a deny instead
of raising, so a forgetful caller can never read an exception as "allow".
Write-path failures (``StorageUnavailable``, ``SaveFailedError``) are always
raised to the administrator and never retried in the background.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from rolematrix.editor import SaveReport


class PermissionEngineError(Exception):
    """Base class for all errors raised by the engine."""
    pass


# ---------------------------------------------------------------------------
# Vocabulary errors
# ---------------------------------------------------------------------------

class UnknownRole(PermissionEngineError, ValueError):
    """Raised when a role value is not part of the platform vocabulary."""
    pass


class UnknownModule(PermissionEngineError, ValueError):
    """Raised when a module value is not part of the platform vocabulary."""
    pass


class UnknownPermission(PermissionEngineError, ValueError):
    """Raised when a permission value is not part of the platform vocabulary."""
    pass


# ---------------------------------------------------------------------------
# Storage and editing errors
# ---------------------------------------------------------------------------

class StorageUnavailable(PermissionEngineError):
    """Transient failure of the override store.

    Callers must not assume a write took effect when this is raised.
    """
    pass


class RoleNotEditableError(PermissionEngineError):
    """Raised when a tenant edit targets a role outside the editable set."""
    pass


class InvalidTransitionError(PermissionEngineError):
    """Raised when an editor operation is not permitted in its current state."""
    pass


class AccessDenied(PermissionEngineError, PermissionError):
    """Raised when a principal is not allowed to perform an action."""
    pass


class SaveFailedError(PermissionEngineError):
    """Raised when no module of an editor save could be persisted.

    Attributes:
        report: Per-module outcome of the save attempt.
    """

    def __init__(self, message: str, report: "SaveReport") -> None:
        super().__init__(message)
        self.report = report


class PartialSaveFailure(SaveFailedError):
    """Raised when some modules of an editor save persisted and others failed."""
    pass
