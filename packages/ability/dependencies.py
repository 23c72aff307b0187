"""FastAPI dependency helpers for ability checks.

Usage:
    @app.patch("/users/{user_id}")
    async def update_user(
        user_id: str,
        ability: Ruleset = Depends(require_policies(update_policy(SubjectType.USER))),
    ):
        pass

The authentication layer must have placed the caller on
``request.state.user``.
"""

import logging
from collections.abc import Mapping
from typing import Any

from fastapi import Depends, HTTPException, Request, status

from packages.ability.models import Ruleset
from packages.ability.policies import Predicate
from packages.ability.service import AbilityService, get_ability_service
from packages.auth.models import AuthenticatedUser

logger = logging.getLogger(__name__)


def request_context(request: Request) -> dict[str, Any]:
    """Extension context describing the in-flight request."""
    return {
        "request": {
            "method": request.method,
            "path": request.url.path,
            "params": dict(request.path_params),
            "query": dict(request.query_params),
        }
    }


def current_user_id(request: Request) -> str:
    """Read the verified caller id from request state, or reject with 401."""
    user = getattr(request.state, "user", None)
    if isinstance(user, AuthenticatedUser):
        return user.user_id
    if isinstance(user, Mapping) and (user.get("user_id") or user.get("id")):
        return str(user.get("user_id") or user.get("id"))

    logger.warning("No authenticated user found for %s %s", request.method, request.url.path)
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": "unauthorized", "message": "Missing authentication"},
    )


async def current_ability(
    request: Request,
    service: AbilityService = Depends(get_ability_service),
) -> Ruleset:
    """Ruleset of the current caller, for filtering inside handlers."""
    user_id = current_user_id(request)
    return await service.ability_for(user_id, request_context(request))


def require_policies(*predicates: Predicate):
    """FastAPI dependency requiring every policy to pass.

    Returns the caller's ruleset, or None when no policies are attached.
    """

    async def check(
        request: Request,
        service: AbilityService = Depends(get_ability_service),
    ) -> Ruleset | None:
        route = f"{request.method} {request.url.path}"

        if not predicates:
            logger.info("No policy handlers for %s - allowing request", route)
            return None

        user_id = current_user_id(request)
        ruleset = await service.ability_for(user_id, request_context(request))
        logger.debug("Ability for user %s has %d rules", user_id, len(ruleset))

        if not service.gate.check(ruleset, predicates):
            logger.warning("Policy checks failed for %s - user=%s", route, user_id)
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "error": "forbidden",
                    "message": "Insufficient permissions for this operation",
                },
            )

        logger.info("All %d policy checks passed for %s - user=%s", len(predicates), route, user_id)
        return ruleset

    return check
