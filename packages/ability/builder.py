"""Ability builder.

Turns a user's grants and the request context into an immutable Ruleset.

Rule order:
1. One rule per unexpired grant, in catalog order
2. Organization boundary: READ on everything in the caller's organization
3. Super admin: MANAGE on everything
"""

import asyncio
import logging
from collections.abc import Mapping, Sequence
from datetime import datetime, UTC
from typing import Any

from pydantic import ValidationError

from packages.ability.catalog import CatalogError, CatalogUnavailable, PermissionCatalog, UserNotFound
from packages.ability.conditions import (
    ConditionTemplateEvaluator,
    MalformedConditionTemplate,
    validate_operators,
)
from packages.ability.models import (
    SUPER_ADMIN_ROLE_NAME,
    Action,
    Grant,
    Rule,
    Ruleset,
    SubjectType,
)

logger = logging.getLogger(__name__)

ORGANIZATION_FIELD = "organizationId"
PUBLIC_FIELD = "isPublic"

PUBLIC_RULE = Rule(action=Action.READ, subject=SubjectType.ALL, conditions={PUBLIC_FIELD: True})
SUPER_ADMIN_RULE = Rule(action=Action.MANAGE, subject=SubjectType.ALL)


def _as_utc(moment: datetime) -> datetime:
    # Naive timestamps from the store are UTC
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment


def is_expired(grant: Grant, now: datetime) -> bool:
    """Check whether a grant's expiry is at or before ``now``."""
    return grant.expires_at is not None and _as_utc(grant.expires_at) <= _as_utc(now)


def public_ruleset(
    user_id: str | None = None,
    now: datetime | None = None,
    degraded: bool = False,
) -> Ruleset:
    """Minimal ability: read access to records flagged public."""
    return Ruleset(
        rules=(PUBLIC_RULE,),
        user_id=user_id,
        built_at=now or datetime.now(UTC),
        degraded=degraded,
    )


def organization_rule(organization_id: Any) -> Rule:
    return Rule(
        action=Action.READ,
        subject=SubjectType.ALL,
        conditions={ORGANIZATION_FIELD: organization_id},
    )


class AbilityBuilder:
    """Builds Rulesets from grants.

    Usage:
        builder = AbilityBuilder()
        ruleset = builder.build(user_id, grants, {"user": {...}})

        # or straight from a catalog
        ruleset = await builder.build_for_user(catalog, user_id)
    """

    def __init__(
        self,
        evaluator: ConditionTemplateEvaluator | None = None,
        super_admin_role_name: str = SUPER_ADMIN_ROLE_NAME,
        catalog_timeout: float | None = None,
    ):
        self.evaluator = evaluator or ConditionTemplateEvaluator()
        self.super_admin_role_name = super_admin_role_name
        self.catalog_timeout = catalog_timeout

    def build(
        self,
        user_id: str | None,
        grants: Sequence[Grant],
        context: Mapping[str, Any] | None,
        now: datetime | None = None,
    ) -> Ruleset:
        """Build the ruleset for one (user, context) pair.

        Args:
            user_id: User the ruleset is for (informational)
            grants: Raw grants from the catalog, expired ones included
            context: Build context; ``user.organizationId`` drives the
                organization boundary rule
            now: Reference time for expiry, defaults to the current time

        Returns:
            Immutable Ruleset
        """
        now = now or datetime.now(UTC)
        context = context or {}

        if not grants:
            logger.debug("No grants for user %s, building public ability", user_id)
            return public_ruleset(user_id, now)

        grants = [grant if isinstance(grant, Grant) else Grant.model_validate(grant) for grant in grants]
        active = [grant for grant in grants if not is_expired(grant, now)]
        skipped = len(grants) - len(active)
        if skipped:
            logger.debug("Skipped %d expired grant(s) for user %s", skipped, user_id)

        rules = [self._to_rule(grant, context, user_id) for grant in active]

        user = context.get("user")
        organization_id = user.get(ORGANIZATION_FIELD) if isinstance(user, Mapping) else None
        if organization_id is not None:
            rules.append(organization_rule(organization_id))

        if any(grant.is_super_admin(self.super_admin_role_name) for grant in active):
            rules.append(SUPER_ADMIN_RULE)

        expiries = [_as_utc(grant.expires_at) for grant in active if grant.expires_at is not None]

        ruleset = Ruleset(
            rules=tuple(rules),
            user_id=user_id,
            valid_until=min(expiries) if expiries else None,
            built_at=now,
        )
        logger.debug("Built ability for user %s with %d rules", user_id, len(ruleset))
        return ruleset

    def _to_rule(self, grant: Grant, context: Mapping[str, Any], user_id: str | None) -> Rule:
        if grant.conditions is None:
            return Rule(action=grant.action, subject=grant.subject)

        try:
            conditions = self.evaluator.resolve(grant.conditions, context)
            validate_operators(conditions)
            return Rule(action=grant.action, subject=grant.subject, conditions=conditions)
        except (MalformedConditionTemplate, ValidationError) as e:
            logger.warning(
                "Malformed condition on %s %s for user %s: %s",
                grant.action.value, grant.subject.value, user_id, e
            )
            return Rule(action=grant.action, subject=grant.subject, never_matches=True)

    async def build_for_user(
        self,
        catalog: PermissionCatalog,
        user_id: str | None,
        extra_context: Mapping[str, Any] | None = None,
        now: datetime | None = None,
    ) -> Ruleset:
        """Load a user's grants from a catalog and build their ruleset.

        Catalog failures degrade to the public ruleset and are logged.
        Cancellation propagates; no partial ruleset is produced.
        """
        if not user_id:
            logger.debug("Anonymous caller, building public ability")
            return public_ruleset(None, now)

        try:
            user, grants = await self._load(catalog, user_id)
        except UserNotFound:
            logger.warning("Creating abilities for non-existent user: %s", user_id)
            return public_ruleset(user_id, now)
        except CatalogError as e:
            logger.error("Error creating abilities for user %s: %s", user_id, e.message)
            return public_ruleset(user_id, now, degraded=True)

        # Extension keys cannot shadow the verified identity
        context = {**(extra_context or {}), "user": user}
        return self.build(user_id, grants, context, now=now)

    async def _load(self, catalog: PermissionCatalog, user_id: str) -> tuple[dict[str, Any], list[Grant]]:
        try:
            user = await asyncio.wait_for(catalog.load_user_context(user_id), self.catalog_timeout)
            grants = await asyncio.wait_for(catalog.load_grants(user_id), self.catalog_timeout)
        except asyncio.TimeoutError as e:
            raise CatalogUnavailable(
                f"Permission catalog timed out after {self.catalog_timeout}s"
            ) from e
        return user, grants


_default_builder = AbilityBuilder()


def build_ruleset(
    user_id: str | None,
    grants: Sequence[Grant],
    context: Mapping[str, Any] | None,
    now: datetime | None = None,
) -> Ruleset:
    """Build a ruleset with the default builder."""
    return _default_builder.build(user_id, grants, context, now=now)
