"""Policy gate.

A policy is a predicate over a Ruleset, typically wrapping one ``can``
call. Route guards attach a list of policies; the gate allows the request
only when every policy passes.

Usage:
    gate = PolicyGate()
    allowed = gate.check(ruleset, [
        update_policy(SubjectType.USER),
        lambda ability: ability.can(Action.ASSIGN, SubjectType.ROLE),
    ])
"""

import logging
from collections.abc import Callable, Sequence
from typing import Any

from packages.ability.engine import can
from packages.ability.models import Action, Ruleset

logger = logging.getLogger(__name__)

Predicate = Callable[[Ruleset], bool]


class PolicyGate:
    """ANDs policy predicates into one allow/deny decision.

    An empty policy list allows: the route relies on authentication only.
    A predicate that raises counts as a failed check.
    """

    def check(self, ruleset: Ruleset, predicates: Sequence[Predicate]) -> bool:
        if not predicates:
            return True

        for index, predicate in enumerate(predicates):
            try:
                passed = bool(predicate(ruleset))
            except Exception:
                logger.exception("Error executing policy %d (%r)", index, predicate)
                return False

            if not passed:
                logger.debug("Policy %d failed for user %s", index, getattr(ruleset, "user_id", None))
                return False

        return True


def policy_for(action: Action, subject: Any, instance: Any = None) -> Predicate:
    """Predicate checking one action on a subject type or record."""

    def check(ruleset: Ruleset) -> bool:
        return can(ruleset, action, subject, instance)

    check.__qualname__ = f"policy_for({action.value}, {getattr(subject, 'value', subject)!s})"
    return check


def read_policy(subject: Any, instance: Any = None) -> Predicate:
    return policy_for(Action.READ, subject, instance)


def create_policy(subject: Any, instance: Any = None) -> Predicate:
    return policy_for(Action.CREATE, subject, instance)


def update_policy(subject: Any, instance: Any = None) -> Predicate:
    return policy_for(Action.UPDATE, subject, instance)


def delete_policy(subject: Any, instance: Any = None) -> Predicate:
    return policy_for(Action.DELETE, subject, instance)


def manage_policy(subject: Any, instance: Any = None) -> Predicate:
    return policy_for(Action.MANAGE, subject, instance)


def all_of(*predicates: Predicate) -> Predicate:
    """Combine predicates; passes when every one passes."""
    return lambda ruleset: all(predicate(ruleset) for predicate in predicates)


def any_of(*predicates: Predicate) -> Predicate:
    """Combine predicates; passes when at least one passes."""
    return lambda ruleset: any(predicate(ruleset) for predicate in predicates)


_default_gate = PolicyGate()


def check_policies(ruleset: Ruleset, predicates: Sequence[Predicate]) -> bool:
    """Run predicates through the default gate."""
    return _default_gate.check(ruleset, predicates)

