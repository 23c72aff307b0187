"""Relational permission catalog.

Reads roles, permissions and assignments with SQLAlchemy Core. Only the
columns the ability engine consumes are modelled here; the full schema
belongs to the persistence layer.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from pydantic import ValidationError
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    MetaData,
    String,
    Table,
    create_engine,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from packages.ability.catalog import CatalogUnavailable, PermissionCatalog, UserNotFound, user_context
from packages.ability.models import Grant, GrantSource

logger = logging.getLogger(__name__)

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("email", String(255)),
    Column("organization_id", String(64), nullable=True),
    Column("is_active", Boolean, nullable=False, default=True),
)

user_departments = Table(
    "user_departments",
    metadata,
    Column("user_id", String(64), ForeignKey("users.id"), primary_key=True),
    Column("department_id", String(64), primary_key=True),
    Column("is_head", Boolean, nullable=False, default=False),
)

staff_profiles = Table(
    "staff_profiles",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("user_id", String(64), ForeignKey("users.id"), unique=True),
    Column("staff_type", String(64)),
)

roles = Table(
    "roles",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("is_system_role", Boolean, nullable=False, default=False),
    Column("organization_id", String(64), nullable=True),
)

permissions = Table(
    "permissions",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("action", String(32), nullable=False),
    Column("subject", String(64), nullable=False),
    Column("description", String(255), nullable=True),
)

role_permissions = Table(
    "role_permissions",
    metadata,
    Column("role_id", String(64), ForeignKey("roles.id"), primary_key=True),
    Column("permission_id", String(64), ForeignKey("permissions.id"), primary_key=True),
    Column("conditions", JSON, nullable=True),
)

user_roles = Table(
    "user_roles",
    metadata,
    Column("user_id", String(64), ForeignKey("users.id"), primary_key=True),
    Column("role_id", String(64), ForeignKey("roles.id"), primary_key=True),
    Column("expires_at", DateTime(timezone=True), nullable=True),
)

user_permissions = Table(
    "user_permissions",
    metadata,
    Column("user_id", String(64), ForeignKey("users.id"), primary_key=True),
    Column("permission_id", String(64), ForeignKey("permissions.id"), primary_key=True),
    Column("conditions", JSON, nullable=True),
    Column("expires_at", DateTime(timezone=True), nullable=True),
)


class SqlPermissionCatalog(PermissionCatalog):
    """Catalog backed by a relational database.

    Queries run on a worker thread so the event loop is never blocked;
    driver errors surface as CatalogUnavailable.

    Usage:
        catalog = SqlPermissionCatalog.from_url(settings.database_url)
        grants = await catalog.load_grants(user_id)
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    @classmethod
    def from_url(cls, database_url: str, **engine_kwargs: Any) -> SqlPermissionCatalog:
        return cls(create_engine(database_url, **engine_kwargs))

    def create_schema(self) -> None:
        """Create the catalog tables if missing (development and tests)."""
        metadata.create_all(self.engine)

    async def load_user_context(self, user_id: str) -> dict[str, Any]:
        return await asyncio.to_thread(self._load_user_context, user_id)

    async def load_grants(self, user_id: str) -> list[Grant]:
        return await asyncio.to_thread(self._load_grants, user_id)

    def _require_user(self, conn, user_id: str) -> dict[str, Any]:
        row = conn.execute(
            select(users.c.id, users.c.organization_id)
            .where(users.c.id == user_id)
            .where(users.c.is_active.is_(True))
        ).mappings().first()
        if row is None:
            raise UserNotFound(user_id)
        return dict(row)

    def _load_user_context(self, user_id: str) -> dict[str, Any]:
        try:
            with self.engine.connect() as conn:
                user = self._require_user(conn, user_id)
                memberships = conn.execute(
                    select(user_departments.c.department_id, user_departments.c.is_head)
                    .where(user_departments.c.user_id == user_id)
                    .order_by(user_departments.c.department_id)
                ).all()
                staff_profile_id = conn.execute(
                    select(staff_profiles.c.id).where(staff_profiles.c.user_id == user_id)
                ).scalar()
        except SQLAlchemyError as e:
            raise CatalogUnavailable(f"Failed to load user {user_id}: {e}") from e

        return user_context(
            user["id"],
            organization_id=user["organization_id"],
            department_ids=[m.department_id for m in memberships],
            head_of_department_ids=[m.department_id for m in memberships if m.is_head],
            staff_profile_id=staff_profile_id,
        )

    def _load_grants(self, user_id: str) -> list[Grant]:
        role_query = (
            select(
                permissions.c.action,
                permissions.c.subject,
                role_permissions.c.conditions,
                user_roles.c.expires_at,
                roles.c.id.label("role_id"),
                roles.c.name.label("role_name"),
                roles.c.is_system_role,
            )
            .select_from(
                user_roles.join(roles, roles.c.id == user_roles.c.role_id)
                .join(role_permissions, role_permissions.c.role_id == roles.c.id)
                .join(permissions, permissions.c.id == role_permissions.c.permission_id)
            )
            .where(user_roles.c.user_id == user_id)
            .order_by(roles.c.id, permissions.c.id)
        )
        direct_query = (
            select(
                permissions.c.action,
                permissions.c.subject,
                user_permissions.c.conditions,
                user_permissions.c.expires_at,
            )
            .select_from(
                user_permissions.join(
                    permissions, permissions.c.id == user_permissions.c.permission_id
                )
            )
            .where(user_permissions.c.user_id == user_id)
            .order_by(permissions.c.id)
        )

        try:
            with self.engine.connect() as conn:
                self._require_user(conn, user_id)
                role_rows = conn.execute(role_query).mappings().all()
                direct_rows = conn.execute(direct_query).mappings().all()
        except SQLAlchemyError as e:
            raise CatalogUnavailable(f"Failed to load grants for user {user_id}: {e}") from e

        grants = []
        for row in role_rows:
            grant = self._to_grant(row, GrantSource.ROLE, user_id)
            if grant is not None:
                grants.append(grant)
        for row in direct_rows:
            grant = self._to_grant(row, GrantSource.DIRECT, user_id)
            if grant is not None:
                grants.append(grant)
        return grants

    def _to_grant(self, row, source: GrantSource, user_id: str) -> Grant | None:
        fields = {
            "action": row["action"],
            "subject": row["subject"],
            "conditions": row["conditions"],
            "expires_at": row["expires_at"],
            "source": source,
        }
        if source == GrantSource.ROLE:
            fields.update(
                role_id=row["role_id"],
                role_name=row["role_name"],
                is_system_role=bool(row["is_system_role"]),
            )

        try:
            return Grant(**fields)
        except ValidationError as e:
            # Unknown action or subject names
            logger.warning(
                "Skipping invalid %s grant %s:%s for user %s: %s",
                source.value, row["action"], row["subject"], user_id, e.error_count()
            )
            return None
