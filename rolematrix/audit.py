"""
Append-Only, Tamper-Evident Audit Log for Permission Changes (Hash-Chained).

Every permission change made through the editor -- override writes,
resets to default, failed writes and rejected edit requests -- is
recorded as a structured, append-only audit entry attributed to the
acting administrator.  Entries are linked via a SHA-256 hash chain: if
any entry is modified after the fact, chain verification detects the
inconsistency.

**Scope note:**  the hash chain provides structural tamper evidence for
review.  A deployment with stronger requirements would ship entries to
WORM storage or an external log service.

**Multi-tenant isolation:**  all queries and exports are scoped by
``tenant_id``.  Entries belonging to tenant A are never visible in
queries or exports for tenant B.
"""

from __future__ import annotations

import enum
import hashlib
import json
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Audit event types
# ---------------------------------------------------------------------------

class AuditEventType(str, enum.Enum):
    """Auditable permission-management events."""

    # Persisted changes
    OVERRIDE_WRITTEN = "OVERRIDE_WRITTEN"
    OVERRIDE_DELETED = "OVERRIDE_DELETED"
    PERMISSIONS_RESET = "PERMISSIONS_RESET"
    PERMISSIONS_SAVED = "PERMISSIONS_SAVED"

    # Failures and rejections
    OVERRIDE_WRITE_FAILED = "OVERRIDE_WRITE_FAILED"
    EDIT_REJECTED = "EDIT_REJECTED"


# ---------------------------------------------------------------------------
# Audit entry model
# ---------------------------------------------------------------------------

class AuditEntry(BaseModel):
    """A single audit log entry.

    Each entry records who did what, when, for which tenant, and includes
    a hash link to the previous entry for tamper evidence.
    """

    entry_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique identifier for this audit entry (UUID).",
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="UTC timestamp of the event.",
    )
    tenant_id: str = Field(
        ...,
        description="Tenant identifier -- scopes this entry for multi-tenant isolation.",
    )
    actor_id: str = Field(
        ...,
        description="Identifier of the administrator (or SYSTEM) that acted.",
    )
    actor_role: str = Field(
        ...,
        description="Role of the actor (tenant_admin, super_admin, SYSTEM).",
    )
    event_type: AuditEventType = Field(
        ...,
        description="The type of event being recorded.",
    )
    target_entity: str = Field(
        default="",
        description="What was changed, as 'role' or 'role.module'.",
    )
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Event-specific data such as the old and new permission sets.",
    )
    previous_hash: str = Field(
        default="",
        description=(
            "SHA-256 hash of the previous entry's canonical representation. "
            "Empty string for the first entry in the chain."
        ),
    )

    def canonical_bytes(self) -> bytes:
        """Return a deterministic byte representation for hashing."""
        data = {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "tenant_id": self.tenant_id,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "event_type": self.event_type.value,
            "target_entity": self.target_entity,
            "metadata": self.metadata,
            "previous_hash": self.previous_hash,
        }
        return json.dumps(data, sort_keys=True, default=str).encode("utf-8")

    def compute_hash(self) -> str:
        """Compute the SHA-256 hash of this entry's canonical representation."""
        return hashlib.sha256(self.canonical_bytes()).hexdigest()


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

class AuditLog:
    """Append-only, tamper-evident audit log with SHA-256 hash chaining.

    * **Append-only writes** -- there are no ``update()`` or ``delete()``
      methods.
    * **Hash chain verification** -- ``verify_chain()`` walks the full log
      and detects any tampering.
    * **Tenant-scoped reads** -- ``query()`` and ``export_for_review()``
      always filter by ``tenant_id``.

    Appends from concurrent administrators are serialized by a lock so
    the chain stays linear.
    """

    def __init__(self) -> None:
        self._entries: list[AuditEntry] = []
        self._hashes: list[str] = []  # parallel list of computed hashes
        self._lock = threading.Lock()

    def append(self, entry: AuditEntry) -> AuditEntry:
        """Append a new entry, linking it to the previous one.

        Args:
            entry: The audit entry to append.

        Returns:
            The entry with ``previous_hash`` populated.
        """
        with self._lock:
            entry.previous_hash = self._hashes[-1] if self._hashes else ""
            self._entries.append(entry)
            self._hashes.append(entry.compute_hash())
        return entry

    def record(
        self,
        event_type: AuditEventType,
        tenant_id: str,
        actor_id: str,
        actor_role: str,
        target_entity: str = "",
        metadata: Optional[dict[str, Any]] = None,
    ) -> AuditEntry:
        """Build and append an entry in one call."""
        return self.append(AuditEntry(
            tenant_id=tenant_id,
            actor_id=actor_id,
            actor_role=actor_role,
            event_type=event_type,
            target_entity=target_entity,
            metadata=metadata or {},
        ))

    def verify_chain(self) -> tuple[bool, Optional[int]]:
        """Walk the log and validate every hash link.

        Returns:
            A tuple of ``(valid, broken_at)`` where ``broken_at`` is the
            index of the first broken link, or None if the chain is intact.
        """
        with self._lock:
            entries = list(self._entries)
            hashes = list(self._hashes)

        for i, entry in enumerate(entries):
            if i == 0:
                if entry.previous_hash != "":
                    return (False, 0)
            elif entry.previous_hash != entries[i - 1].compute_hash():
                return (False, i)

            if hashes[i] != entry.compute_hash():
                return (False, i)

        return (True, None)

    def query(
        self,
        tenant_id: str,
        event_type: Optional[AuditEventType] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
        actor_id: Optional[str] = None,
        target_entity: Optional[str] = None,
    ) -> list[AuditEntry]:
        """Query audit entries of one tenant.

        Args:
            tenant_id: Required.  Only entries for this tenant are returned.
            event_type: Optional filter by event type.
            time_start: Optional inclusive start time.
            time_end: Optional inclusive end time.
            actor_id: Optional filter by actor.
            target_entity: Optional filter by target, e.g. ``"nurse.billing"``.

        Returns:
            List of matching ``AuditEntry`` objects (copies).
        """
        with self._lock:
            entries = list(self._entries)

        results = []
        for entry in entries:
            if entry.tenant_id != tenant_id:
                continue
            if event_type is not None and entry.event_type != event_type:
                continue
            if time_start is not None and entry.timestamp < time_start:
                continue
            if time_end is not None and entry.timestamp > time_end:
                continue
            if actor_id is not None and entry.actor_id != actor_id:
                continue
            if target_entity is not None and entry.target_entity != target_entity:
                continue
            results.append(entry.model_copy(deep=True))
        return results

    def export_for_review(
        self,
        tenant_id: str,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Produce a JSON-serializable export bundle for compliance review.

        Includes the chain verification result in the bundle.
        """
        entries = self.query(tenant_id, time_start=time_start, time_end=time_end)
        exported = [entry.model_dump(mode="json") for entry in entries]
        chain_valid, broken_at = self.verify_chain()

        return {
            "export_metadata": {
                "tenant_id": tenant_id,
                "exported_at": datetime.now(timezone.utc).isoformat(),
                "entry_count": len(exported),
                "chain_integrity": "VALID" if chain_valid else f"BROKEN_AT_INDEX_{broken_at}",
            },
            "entries": exported,
        }

    @property
    def length(self) -> int:
        """Return the number of entries in the log."""
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)
