"""Ability service.

Wires a permission catalog, the builder, the query engine and the policy
gate together for route guards and business logic.
"""

import logging
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from packages.ability.builder import AbilityBuilder
from packages.ability.cache import RulesetCache
from packages.ability.catalog import InMemoryPermissionCatalog, PermissionCatalog
from packages.ability.config import AbilitySettings, get_settings
from packages.ability.engine import AbilityQueryEngine
from packages.ability.models import Action, AuthorizeRequest, Ruleset, SubjectType
from packages.ability.policies import PolicyGate, Predicate
from packages.ability.subjects import SubjectTypeResolver

logger = logging.getLogger(__name__)


class AbilityService:
    """Authorization entry point.

    Usage:
        service = AbilityService(catalog)

        ruleset = await service.ability_for(user_id)
        if service.can(ruleset, Action.UPDATE, shift):
            ...

        allowed = await service.authorize(AuthorizeRequest(
            user_id=user_id,
            action=Action.READ,
            subject_type=SubjectType.PATIENT,
            instance=patient,
        ))
    """

    def __init__(
        self,
        catalog: PermissionCatalog,
        settings: AbilitySettings | None = None,
        cache: RulesetCache | None = None,
    ):
        self.catalog = catalog
        self.settings = settings or get_settings()

        self.resolver = SubjectTypeResolver(self.settings.subject_type_field)
        self.builder = AbilityBuilder(
            super_admin_role_name=self.settings.super_admin_role_name,
            catalog_timeout=self.settings.catalog_timeout_seconds,
        )
        self.engine = AbilityQueryEngine(self.resolver)
        self.gate = PolicyGate()

        if cache is None and self.settings.cache_enabled:
            cache = RulesetCache(
                ttl_seconds=self.settings.cache_ttl_seconds,
                max_entries=self.settings.cache_max_entries,
            )
        self.cache = cache

        logger.info(
            "AbilityService initialized with catalog %s (cache: %s)",
            type(catalog).__name__,
            "on" if self.cache else "off",
        )

    async def ability_for(
        self,
        user_id: str | None,
        context: Mapping[str, Any] | None = None,
    ) -> Ruleset:
        """Build (or fetch from cache) the ruleset for a caller.

        Args:
            user_id: Caller id, None for anonymous
            context: Extension keys, e.g. the in-flight request
        """
        if self.cache is not None and user_id:
            cached = self.cache.get(user_id, context)
            if cached is not None:
                return cached

        ruleset = await self.builder.build_for_user(self.catalog, user_id, context)

        # Degraded rulesets are not cached so a recovered catalog is seen at once
        if self.cache is not None and user_id and not ruleset.degraded:
            self.cache.set(user_id, context, ruleset)
        return ruleset

    def can(
        self,
        ruleset: Ruleset,
        action: Action | str,
        subject: Any,
        instance: Any = None,
    ) -> bool:
        return self.engine.can(ruleset, action, subject, instance)

    def filter_permitted(
        self,
        ruleset: Ruleset,
        action: Action | str,
        records: Iterable[Any],
        subject: SubjectType | None = None,
    ) -> list[Any]:
        return self.engine.filter_permitted(ruleset, action, records, subject)

    async def authorize(self, request: AuthorizeRequest) -> bool:
        """Answer one authorization query."""
        ruleset = await self.ability_for(request.user_id, request.context)
        decision = self.engine.evaluate(
            ruleset, request.action, request.subject_type, request.instance
        )
        logger.debug(
            "Authorize user=%s action=%s subject=%s -> %s (%s)",
            request.user_id,
            request.action.value,
            request.subject_type.value,
            decision.allowed,
            decision.reason,
        )
        return decision.allowed

    async def check(
        self,
        user_id: str | None,
        predicates: Sequence[Predicate],
        context: Mapping[str, Any] | None = None,
    ) -> bool:
        """Run route policies for a caller."""
        if not predicates:
            return True
        ruleset = await self.ability_for(user_id, context)
        return self.gate.check(ruleset, predicates)

    def invalidate_user(self, user_id: str) -> None:
        """Call after a user's roles, direct grants or memberships change."""
        if self.cache is not None:
            dropped = self.cache.invalidate_user(user_id)
            logger.debug("Invalidated %d cached ruleset(s) for user %s", dropped, user_id)

    def invalidate_all(self) -> None:
        """Call after any role's permissions change."""
        if self.cache is not None:
            self.cache.invalidate_all()


# Singleton instance
_ability_service: AbilityService | None = None


def get_ability_service() -> AbilityService:
    """Get the ability service singleton.

    Defaults to an empty in-memory catalog until configured with
    set_ability_service().
    """
    global _ability_service
    if _ability_service is None:
        _ability_service = AbilityService(InMemoryPermissionCatalog())
    return _ability_service


def set_ability_service(service: AbilityService | None) -> None:
    """Install the process-wide ability service."""
    global _ability_service
    _ability_service = service
