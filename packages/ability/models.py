"""Ability data models.

Defines actions, subject types, grants, resolved rules and rulesets.
"""

import copy
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Action(str, Enum):
    """Verbs a user may be authorized to perform.

    MANAGE is a wildcard: a rule granting MANAGE satisfies every action.
    """

    MANAGE = "manage"
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"

    # Clinical and staffing actions
    DIAGNOSE = "diagnose"
    PRESCRIBE = "prescribe"
    ADMIT = "admit"
    DISCHARGE = "discharge"
    SCHEDULE = "schedule"
    APPROVE = "approve"
    ASSIGN = "assign"


class SubjectType(str, Enum):
    """Logical kinds of records an action can target.

    ALL is the wildcard subject matched by every query.
    """

    ORGANIZATION = "Organization"
    USER = "User"
    DEPARTMENT = "Department"
    ROLE = "Role"
    PERMISSION = "Permission"
    PATIENT = "Patient"
    MEDICAL_RECORD = "MedicalRecord"
    APPOINTMENT = "Appointment"
    SHIFT_TYPE = "ShiftType"
    STAFF_PROFILE = "StaffProfile"
    SHIFT_SCHEDULE = "ShiftSchedule"
    SHIFT_ATTENDANCE = "ShiftAttendance"
    PAY_PERIOD = "PayPeriod"
    STAFF_PAYMENT = "StaffPayment"
    INVITATION = "Invitation"
    ALL = "all"

    @classmethod
    def from_name(cls, name: Any) -> "SubjectType | None":
        """Look up a subject type by value or member name, None if unknown."""
        if isinstance(name, cls):
            return name
        if not isinstance(name, str):
            return None
        for member in cls:
            if name == member.value or name == member.name:
                return member
        if name.lower() == "all":
            return cls.ALL
        return None


class GrantSource(str, Enum):
    """Where a grant came from."""

    ROLE = "role"
    DIRECT = "direct"


SUPER_ADMIN_ROLE_NAME = "Super Admin"


def freeze_conditions(value: Any, _seen: frozenset[int] = frozenset()) -> Any:
    """Copy a condition tree into read-only mappings and tuples."""
    if isinstance(value, Mapping):
        if id(value) in _seen:
            raise ValueError("Condition contains a cycle")
        seen = _seen | {id(value)}
        return MappingProxyType({k: freeze_conditions(v, seen) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        if id(value) in _seen:
            raise ValueError("Condition contains a cycle")
        seen = _seen | {id(value)}
        return tuple(freeze_conditions(item, seen) for item in value)
    return value


def thaw_conditions(value: Any) -> Any:
    """Copy a frozen condition tree back into plain dicts and lists."""
    if isinstance(value, Mapping):
        return {k: thaw_conditions(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [thaw_conditions(item) for item in value]
    return value


class Grant(BaseModel):
    """One raw permission assignment, as supplied by a permission catalog.

    Role-sourced grants carry the role's name and system flag so the
    builder can recognise the system Super Admin role.
    """

    model_config = ConfigDict(frozen=True)

    action: Action = Field(description="Granted action")
    subject: SubjectType = Field(description="Subject type the action applies to")
    # Left unvalidated: malformed templates become never-matching rules at build time
    conditions: Any = Field(
        default=None,
        description="Condition template; string leaves may reference $context.paths",
    )
    source: GrantSource = Field(default=GrantSource.ROLE, description="Role or direct grant")
    expires_at: datetime | None = Field(
        default=None,
        description="When the grant (or the role assignment) stops applying",
    )
    role_id: str | None = Field(default=None, description="Granting role, if role-sourced")
    role_name: str | None = Field(default=None, description="Granting role name")
    is_system_role: bool = Field(default=False, description="Whether the role is a system role")

    @field_validator("conditions")
    @classmethod
    def copy_conditions(cls, v: Any) -> Any:
        """Detach the template from the caller's object."""
        try:
            return copy.deepcopy(v)
        except TypeError:
            # Read-only mappings taken from a Rule
            return thaw_conditions(v)

    def is_super_admin(self, role_name: str = SUPER_ADMIN_ROLE_NAME) -> bool:
        """Check if this grant comes from the system Super Admin role."""
        return (
            self.source == GrantSource.ROLE
            and self.is_system_role
            and self.role_name == role_name
        )


class Rule(BaseModel):
    """A grant with its condition template resolved against a context.

    A rule with ``conditions=None`` matches unconditionally. A rule with
    ``never_matches=True`` was built from a malformed template and can
    never be satisfied.
    """

    model_config = ConfigDict(frozen=True)

    action: Action
    subject: SubjectType
    conditions: Mapping[str, Any] | None = None
    never_matches: bool = False

    @field_validator("conditions")
    @classmethod
    def freeze(cls, v: Mapping[str, Any] | None) -> Mapping[str, Any] | None:
        """Store conditions as a read-only copy."""
        return None if v is None else freeze_conditions(v)

    @property
    def is_unconditional(self) -> bool:
        return self.conditions is None and not self.never_matches

    def applies_to(self, action: Action, subject: SubjectType) -> bool:
        """Check whether the rule covers an action/subject pair."""
        subject_ok = self.subject == SubjectType.ALL or self.subject == subject
        action_ok = self.action == Action.MANAGE or self.action == action
        return subject_ok and action_ok

    def to_dict(self) -> dict[str, Any]:
        packed: dict[str, Any] = {
            "action": self.action.value,
            "subject": self.subject.value,
        }
        if self.conditions is not None:
            packed["conditions"] = thaw_conditions(self.conditions)
        return packed


@dataclass(frozen=True)
class Ruleset:
    """Ordered, immutable rules derived for one (user, context) pair.

    ``valid_until`` is the earliest expiry among the grants that produced
    the rules; a cached ruleset must not be served past it. ``degraded``
    marks the fallback built when the catalog could not be read.
    """

    rules: tuple[Rule, ...] = ()
    user_id: str | None = None
    valid_until: datetime | None = None
    built_at: datetime | None = field(default=None, compare=False)
    degraded: bool = field(default=False, compare=False)

    def __iter__(self):
        return iter(self.rules)

    def __len__(self) -> int:
        return len(self.rules)

    def can(self, action: Action, subject: Any, instance: Any = None) -> bool:
        """Shortcut for ``engine.can(self, ...)``, used by policy predicates."""
        from packages.ability.engine import can

        return can(self, action, subject, instance)

    def cannot(self, action: Action, subject: Any, instance: Any = None) -> bool:
        return not self.can(action, subject, instance)

    def to_list(self) -> list[dict[str, Any]]:
        """Pack rules for transport, e.g. to hydrate a frontend ability."""
        return [rule.to_dict() for rule in self.rules if not rule.never_matches]


class AbilityDecision(BaseModel):
    """Result of an ability query, with the rule that decided it."""

    allowed: bool = Field(description="Whether the action is permitted")
    action: Action = Field(description="Action that was checked")
    subject: SubjectType = Field(description="Subject type that was checked")
    reason: str = Field(default="", description="Explanation of decision")
    matched_rule: int | None = Field(
        default=None,
        description="Index of the deciding rule in the ruleset",
    )
    evaluated_rules: int = Field(default=0, description="Number of rules that applied")


class AuthorizeRequest(BaseModel):
    """Inbound authorization query, as supplied by route guards and services."""

    user_id: str | None = Field(default=None, description="Caller; None for anonymous")
    action: Action
    subject_type: SubjectType
    instance: dict[str, Any] | None = Field(default=None, description="Record under test")
    context: dict[str, Any] = Field(
        default_factory=dict,
        description="Extension keys merged into the build context",
    )


class AbilityError(Exception):
    """Base class for ability engine errors."""

    def __init__(self, message: str, code: str = "ability_error"):
        self.message = message
        self.code = code
        super().__init__(message)
