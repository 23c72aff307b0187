"""Ability Package.

Attribute-based permission evaluation for the staffing backend: builds a
ruleset per (user, request context) from role and direct grants, then
answers point-in-time authorization queries.

Usage:
    from packages.ability import AbilityService, Action, SubjectType

    service = AbilityService(catalog)
    ability = await service.ability_for(user_id)

    if ability.can(Action.READ, SubjectType.PATIENT, patient):
        # Allowed
        pass
"""

from packages.ability.models import (
    Action,
    SubjectType,
    GrantSource,
    Grant,
    Rule,
    Ruleset,
    AbilityDecision,
    AuthorizeRequest,
    AbilityError,
)
from packages.ability.conditions import (
    ConditionTemplateEvaluator,
    MalformedConditionTemplate,
    resolve_conditions,
)
from packages.ability.subjects import SubjectTypeResolver, detect_subject_type
from packages.ability.catalog import (
    PermissionCatalog,
    InMemoryPermissionCatalog,
    CatalogError,
    CatalogUnavailable,
    UserNotFound,
)
from packages.ability.builder import AbilityBuilder, build_ruleset, public_ruleset
from packages.ability.engine import AbilityQueryEngine, can, cannot, evaluate, filter_permitted
from packages.ability.policies import (
    PolicyGate,
    Predicate,
    check_policies,
    read_policy,
    create_policy,
    update_policy,
    delete_policy,
    manage_policy,
)
from packages.ability.service import AbilityService, get_ability_service, set_ability_service

__all__ = [
    "Action",
    "SubjectType",
    "GrantSource",
    "Grant",
    "Rule",
    "Ruleset",
    "AbilityDecision",
    "AuthorizeRequest",
    "AbilityError",
    "ConditionTemplateEvaluator",
    "MalformedConditionTemplate",
    "resolve_conditions",
    "SubjectTypeResolver",
    "detect_subject_type",
    "PermissionCatalog",
    "InMemoryPermissionCatalog",
    "CatalogError",
    "CatalogUnavailable",
    "UserNotFound",
    "AbilityBuilder",
    "build_ruleset",
    "public_ruleset",
    "AbilityQueryEngine",
    "can",
    "cannot",
    "evaluate",
    "filter_permitted",
    "PolicyGate",
    "Predicate",
    "check_policies",
    "read_policy",
    "create_policy",
    "update_policy",
    "delete_policy",
    "manage_policy",
    "AbilityService",
    "get_ability_service",
    "set_ability_service",
]
