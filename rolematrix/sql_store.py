"""
SQL-backed override store.

Current: any SQLAlchemy 2.0 engine (SQLite for tests and small installs,
PostgreSQL in production).  The ``role_permission_overrides`` table holds
one row per (tenant_id, role, module), enforced by a unique constraint.

Permissions are stored as a JSON list so that an empty list (explicit
revocation) is distinct from a missing row (baseline applies).

Any ``SQLAlchemyError`` raised by the driver is re-raised as
``StorageUnavailable``; callers must not assume the write took effect.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Engine, String, UniqueConstraint, create_engine, func, select
from sqlalchemy.exc import ArgumentError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from rolematrix.errors import StorageUnavailable
from rolematrix.log import get_logger
from rolematrix.models import Module, OverrideEntry, Permission, Role
from rolematrix.store import OverrideStore

log = get_logger(__name__)


class Base(DeclarativeBase):
    """Declarative base for the engine's tables."""
    pass


class TimestampMixin:
    """Adds created_at and updated_at columns."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class RolePermissionOverride(Base, TimestampMixin):
    """One tenant override of a role's permissions for a module."""
    __tablename__ = "role_permission_overrides"
    __table_args__ = (
        UniqueConstraint("tenant_id", "role", "module", name="uq_override_tenant_role_module"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    role: Mapped[str] = mapped_column(String(32), nullable=False)
    module: Mapped[str] = mapped_column(String(50), nullable=False)
    permissions: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    updated_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<RolePermissionOverride(tenant_id={self.tenant_id!r}, role={self.role!r}, "
            f"module={self.module!r}, permissions={self.permissions!r})>"
        )


def _aware(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _parse_stored_permissions(row: RolePermissionOverride) -> frozenset[Permission]:
    permissions = set()
    for value in row.permissions or []:
        try:
            permissions.add(Permission(value))
        except ValueError:
            log.warning(
                "Ignoring unknown stored permission %r for tenant=%s role=%s module=%s",
                value, row.tenant_id, row.role, row.module,
            )
    return frozenset(permissions)


class SqlOverrideStore(OverrideStore):
    """``OverrideStore`` persisted through a SQLAlchemy engine.

    Usage:
        store = SqlOverrideStore.from_url("sqlite:///./permissions.db")
        store.create_all()
    """

    def __init__(self, engine: Engine) -> None:
        super().__init__()
        self.engine = engine
        self._sessions = sessionmaker(engine, expire_on_commit=False, autoflush=False)

    @classmethod
    def from_url(cls, url: str, echo: bool = False) -> "SqlOverrideStore":
        """Create a store for ``url``.

        In-memory SQLite URLs share a single connection across threads so
        every session sees the same database.

        Raises:
            ValueError: If ``url`` is malformed or names an unknown dialect.
        """
        kwargs: dict[str, Any] = {"echo": echo, "future": True}
        if url.startswith("sqlite") and (url.endswith(":memory:") or url.rstrip("/") == "sqlite:"):
            kwargs["poolclass"] = StaticPool
            kwargs["connect_args"] = {"check_same_thread": False}
        try:
            engine = create_engine(url, **kwargs)
        except ArgumentError as exc:
            raise ValueError(f"Invalid database URL: {exc}") from exc
        return cls(engine)

    def create_all(self) -> None:
        """Create the overrides table if it does not exist."""
        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"Could not create override tables: {exc}") from exc

    # -- helpers --

    @staticmethod
    def _find(session: Session, tenant_id: str, role: Role, module: Module) -> Optional[RolePermissionOverride]:
        return session.scalars(
            select(RolePermissionOverride).where(
                RolePermissionOverride.tenant_id == tenant_id,
                RolePermissionOverride.role == role.value,
                RolePermissionOverride.module == module.value,
            )
        ).one_or_none()

    def _to_entry(self, row: RolePermissionOverride) -> Optional[OverrideEntry]:
        try:
            role = Role(row.role)
            module = Module(row.module)
        except ValueError:
            log.warning("Ignoring override row with unknown vocabulary: %r", row)
            return None
        return OverrideEntry(
            tenant_id=row.tenant_id,
            role=role,
            module=module,
            permissions=_parse_stored_permissions(row),
            updated_at=_aware(row.updated_at),
            updated_by=row.updated_by,
        )

    def _upsert(self, entry: OverrideEntry) -> None:
        with self._sessions.begin() as session:
            row = self._find(session, entry.tenant_id, entry.role, entry.module)
            if row is None:
                row = RolePermissionOverride(
                    tenant_id=entry.tenant_id,
                    role=entry.role.value,
                    module=entry.module.value,
                    created_at=entry.updated_at,
                )
                session.add(row)
            row.permissions = sorted(p.value for p in entry.permissions)
            row.updated_by = entry.updated_by
            row.updated_at = entry.updated_at

    # -- backend primitives --

    def _get(self, tenant_id: str, role: Role) -> dict[Module, frozenset[Permission]]:
        try:
            with self._sessions() as session:
                rows = session.scalars(
                    select(RolePermissionOverride).where(
                        RolePermissionOverride.tenant_id == tenant_id,
                        RolePermissionOverride.role == role.value,
                    )
                ).all()
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"Could not read overrides for tenant '{tenant_id}': {exc}") from exc

        overrides: dict[Module, frozenset[Permission]] = {}
        for row in rows:
            entry = self._to_entry(row)
            if entry is not None:
                overrides[entry.module] = entry.permissions
        return overrides

    def _put(self, entry: OverrideEntry) -> OverrideEntry:
        try:
            try:
                self._upsert(entry)
            except IntegrityError:
                # A concurrent first write created the row; overwrite it.
                log.debug("Concurrent insert for %s, retrying as update", entry.key)
                self._upsert(entry)
        except SQLAlchemyError as exc:
            raise StorageUnavailable(
                f"Could not write override {entry.role.value}.{entry.module.value} "
                f"for tenant '{entry.tenant_id}': {exc}"
            ) from exc
        return entry

    def _delete(self, tenant_id: str, role: Role, module: Module) -> bool:
        try:
            with self._sessions.begin() as session:
                row = self._find(session, tenant_id, role, module)
                if row is None:
                    return False
                session.delete(row)
                return True
        except SQLAlchemyError as exc:
            raise StorageUnavailable(
                f"Could not delete override {role.value}.{module.value} "
                f"for tenant '{tenant_id}': {exc}"
            ) from exc

    def _entries(self, tenant_id: str, role: Optional[Role]) -> list[OverrideEntry]:
        query = select(RolePermissionOverride).where(RolePermissionOverride.tenant_id == tenant_id)
        if role is not None:
            query = query.where(RolePermissionOverride.role == role.value)
        query = query.order_by(RolePermissionOverride.role, RolePermissionOverride.module)
        try:
            with self._sessions() as session:
                rows = session.scalars(query).all()
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"Could not list overrides for tenant '{tenant_id}': {exc}") from exc
        return [e for e in (self._to_entry(row) for row in rows) if e is not None]
