"""Permission catalog boundary.

The catalog is implemented by the persistence layer. It supplies, for a
user id, the user's identity attributes and the raw grant list: role
grants (with role-assignment expiry) and direct user grants (with
per-grant expiry).
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from packages.ability.models import AbilityError, Action, Grant, GrantSource, SubjectType

logger = logging.getLogger(__name__)


class CatalogError(AbilityError):
    """Raised when a catalog cannot answer for a user."""

    def __init__(self, message: str, code: str = "catalog_error"):
        super().__init__(message, code)


class CatalogUnavailable(CatalogError):
    """Raised when the backing store fails (I/O error, timeout)."""

    def __init__(self, reason: str = "Permission catalog unavailable"):
        super().__init__(reason, "catalog_unavailable")


class UserNotFound(CatalogError):
    """Raised when the user id is unknown to the catalog."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User not found: {user_id}", "user_not_found")


class PermissionCatalog(ABC):
    """Abstract source of grants.

    Implementations:
    - InMemoryPermissionCatalog: dict-backed, for tests and development
    - SqlPermissionCatalog: SQLAlchemy-backed relational store
    """

    @abstractmethod
    async def load_user_context(self, user_id: str) -> dict[str, Any]:
        """Load the identity attributes placed under ``context["user"]``.

        Returns:
            Mapping with id, organizationId, departmentIds,
            headOfDepartmentIds and staffProfileId

        Raises:
            UserNotFound: If the user does not exist
            CatalogUnavailable: If the store cannot be reached
        """
        pass

    @abstractmethod
    async def load_grants(self, user_id: str) -> list[Grant]:
        """Load every grant for a user, expired ones included.

        Raises:
            UserNotFound: If the user does not exist
            CatalogUnavailable: If the store cannot be reached
        """
        pass


def user_context(
    user_id: str,
    organization_id: str | None = None,
    department_ids: list[str] | None = None,
    head_of_department_ids: list[str] | None = None,
    staff_profile_id: str | None = None,
) -> dict[str, Any]:
    """Build the standard ``user`` context entry."""
    return {
        "id": user_id,
        "organizationId": organization_id,
        "departmentIds": list(department_ids or []),
        "headOfDepartmentIds": list(head_of_department_ids or []),
        "staffProfileId": staff_profile_id,
    }


@dataclass
class CatalogRole:
    """A role and the permissions it carries."""

    role_id: str
    name: str
    is_system_role: bool = False
    organization_id: str | None = None
    # (action, subject, conditions)
    permissions: list[tuple[Action | str, SubjectType | str, dict[str, Any] | None]] = field(
        default_factory=list
    )


@dataclass
class CatalogUser:
    """A user and their assignments."""

    user_id: str
    organization_id: str | None = None
    department_ids: list[str] = field(default_factory=list)
    head_of_department_ids: list[str] = field(default_factory=list)
    staff_profile_id: str | None = None
    # role_id -> assignment expiry
    role_assignments: dict[str, datetime | None] = field(default_factory=dict)
    direct_grants: list[Grant] = field(default_factory=list)


class InMemoryPermissionCatalog(PermissionCatalog):
    """Dict-backed catalog.

    Usage:
        catalog = InMemoryPermissionCatalog()
        catalog.add_role(CatalogRole("r1", "Org Admin", permissions=[...]))
        catalog.add_user(CatalogUser("u1", organization_id="org1"))
        catalog.assign_role("u1", "r1")
    """

    def __init__(self):
        self.roles: dict[str, CatalogRole] = {}
        self.users: dict[str, CatalogUser] = {}

    def add_role(self, role: CatalogRole) -> None:
        self.roles[role.role_id] = role

    def add_user(self, user: CatalogUser) -> None:
        self.users[user.user_id] = user

    def assign_role(self, user_id: str, role_id: str, expires_at: datetime | None = None) -> None:
        """Assign a role to a user, optionally until a point in time."""
        if role_id not in self.roles:
            raise KeyError(f"Unknown role: {role_id}")
        self._get_user(user_id).role_assignments[role_id] = expires_at

    def revoke_role(self, user_id: str, role_id: str) -> bool:
        assignments = self._get_user(user_id).role_assignments
        if role_id in assignments:
            del assignments[role_id]
            return True
        return False

    def grant_direct(
        self,
        user_id: str,
        action: Action | str,
        subject: SubjectType | str,
        conditions: dict[str, Any] | None = None,
        expires_at: datetime | None = None,
    ) -> Grant:
        """Attach a direct permission override to a user."""
        grant = Grant(
            action=action,
            subject=subject,
            conditions=conditions,
            source=GrantSource.DIRECT,
            expires_at=expires_at,
        )
        self._get_user(user_id).direct_grants.append(grant)
        return grant

    def _get_user(self, user_id: str) -> CatalogUser:
        user = self.users.get(user_id)
        if user is None:
            raise UserNotFound(user_id)
        return user

    async def load_user_context(self, user_id: str) -> dict[str, Any]:
        user = self._get_user(user_id)
        return user_context(
            user.user_id,
            organization_id=user.organization_id,
            department_ids=user.department_ids,
            head_of_department_ids=user.head_of_department_ids,
            staff_profile_id=user.staff_profile_id,
        )

    async def load_grants(self, user_id: str) -> list[Grant]:
        user = self._get_user(user_id)
        grants: list[Grant] = []

        for role_id, expires_at in user.role_assignments.items():
            role = self.roles.get(role_id)
            if role is None:
                logger.warning("User %s assigned to missing role %s", user_id, role_id)
                continue
            for action, subject, conditions in role.permissions:
                grants.append(
                    Grant(
                        action=action,
                        subject=subject,
                        conditions=conditions,
                        source=GrantSource.ROLE,
                        expires_at=expires_at,
                        role_id=role.role_id,
                        role_name=role.name,
                        is_system_role=role.is_system_role,
                    )
                )

        grants.extend(user.direct_grants)
        return grants
