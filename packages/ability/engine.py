"""Ability query engine.

Answers ``can(action, subject, instance)`` against a Ruleset.

Evaluation:
1. A rule applies when its subject is the queried type (or ALL) and its
   action is the queried action (or MANAGE)
2. An applicable rule is satisfied when it has no conditions, or every
   condition field equals the instance's field
3. Rules are scanned last to first; the last satisfied rule decides
4. Default deny
"""

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from packages.ability.conditions import VARIABLE_PREFIX
from packages.ability.models import AbilityDecision, Action, Rule, Ruleset, SubjectType
from packages.ability.subjects import SubjectTypeResolver

logger = logging.getLogger(__name__)

_MISSING = object()


def read_field(instance: Any, name: str) -> Any:
    """Read a field from a mapping or attribute object."""
    if isinstance(instance, Mapping):
        return instance[name] if name in instance else _MISSING
    return getattr(instance, name, _MISSING)


def _equals(expected: Any, actual: Any) -> bool:
    # Rule conditions hold tuples and read-only mappings; records hold lists and dicts
    if isinstance(expected, (list, tuple)) and isinstance(actual, (list, tuple)):
        return len(expected) == len(actual) and all(
            _equals(e, a) for e, a in zip(expected, actual)
        )
    if isinstance(expected, Mapping) and isinstance(actual, Mapping):
        return expected.keys() == actual.keys() and all(
            _equals(expected[k], actual[k]) for k in expected
        )
    try:
        return bool(expected == actual)
    except (TypeError, ValueError):
        return False


def _contains(operand: Iterable[Any], actual: Any) -> bool:
    if isinstance(actual, (list, tuple, set, frozenset)):
        return any(_contains(operand, item) for item in actual)
    return any(_equals(candidate, actual) for candidate in operand)


def _is_operator_map(expected: Any) -> bool:
    return (
        isinstance(expected, Mapping)
        and bool(expected)
        and all(isinstance(k, str) and k.startswith(VARIABLE_PREFIX) for k in expected)
    )


def _apply_operator(op: str, operand: Any, actual: Any) -> bool:
    if op == "$eq":
        return _equals(operand, actual)
    if op == "$ne":
        return not _equals(operand, actual)
    if op in ("$in", "$nin"):
        if not isinstance(operand, (list, tuple, set, frozenset)):
            return False
        found = _contains(operand, actual)
        return found if op == "$in" else not found
    return False


def field_matches(expected: Any, actual: Any) -> bool:
    """Check one condition field against the instance value."""
    if actual is _MISSING:
        return False
    if _is_operator_map(expected):
        return all(_apply_operator(op, operand, actual) for op, operand in expected.items())
    return _equals(expected, actual)


class AbilityQueryEngine:
    """Evaluates ability queries against rulesets.

    Usage:
        engine = AbilityQueryEngine()

        engine.can(ruleset, Action.READ, SubjectType.PATIENT, patient)
        engine.can(ruleset, Action.READ, patient)  # type detected

        decision = engine.evaluate(ruleset, Action.DELETE, SubjectType.USER)
        if not decision.allowed:
            # Reject with decision.reason

    Queries without an instance are type-level: a conditional rule
    counts, since some record of that type could satisfy it.
    """

    def __init__(self, resolver: SubjectTypeResolver | None = None):
        self.resolver = resolver or SubjectTypeResolver()

    def satisfies(self, rule: Rule, instance: Any = None) -> bool:
        """Check whether a rule's conditions hold for an instance."""
        if rule.never_matches:
            return False
        if rule.conditions is None or instance is None:
            return True
        return all(
            field_matches(expected, read_field(instance, name))
            for name, expected in rule.conditions.items()
        )

    def _normalize(
        self, action: Any, subject: Any, instance: Any
    ) -> tuple[Action | None, SubjectType | None, Any]:
        try:
            action = Action(action)
        except (ValueError, TypeError):
            return None, None, instance

        subject_type = SubjectType.from_name(subject)
        if subject_type is None and subject is not None and not isinstance(subject, str):
            # A record was passed in place of a subject type
            if instance is None:
                instance = subject
            subject_type = self.resolver.detect(subject)
        return action, subject_type, instance

    def evaluate(
        self,
        ruleset: Ruleset,
        action: Action | str,
        subject: Any,
        instance: Any = None,
    ) -> AbilityDecision:
        """Check an action against a ruleset and explain the outcome.

        Args:
            ruleset: Rules built for the caller
            action: Action to check
            subject: Subject type, subject type name, or a record whose
                type is detected
            instance: Optional record the conditions are tested against

        Returns:
            AbilityDecision with the deciding rule index when allowed
        """
        checked_action, subject_type, instance = self._normalize(action, subject, instance)
        if checked_action is None or subject_type is None:
            return AbilityDecision(
                allowed=False,
                action=checked_action or Action.READ,
                subject=subject_type or SubjectType.ALL,
                reason=f"Unknown action or subject: {action!r} {subject!r}",
            )

        applicable = 0
        rules = ruleset.rules if isinstance(ruleset, Ruleset) else tuple(ruleset)
        for index in range(len(rules) - 1, -1, -1):
            rule = rules[index]
            if not rule.applies_to(checked_action, subject_type):
                continue
            applicable += 1
            if self.satisfies(rule, instance):
                return AbilityDecision(
                    allowed=True,
                    action=checked_action,
                    subject=subject_type,
                    reason=f"Granted by rule {index}: {rule.action.value} {rule.subject.value}",
                    matched_rule=index,
                    evaluated_rules=applicable,
                )

        logger.debug(
            "Ability denied: user=%s action=%s subject=%s applicable=%d",
            getattr(ruleset, "user_id", None), checked_action.value, subject_type.value, applicable
        )
        return AbilityDecision(
            allowed=False,
            action=checked_action,
            subject=subject_type,
            reason="No rule grants this action" if not applicable else "No rule conditions satisfied",
            evaluated_rules=applicable,
        )

    def can(
        self,
        ruleset: Ruleset,
        action: Action | str,
        subject: Any,
        instance: Any = None,
    ) -> bool:
        return self.evaluate(ruleset, action, subject, instance).allowed

    def cannot(
        self,
        ruleset: Ruleset,
        action: Action | str,
        subject: Any,
        instance: Any = None,
    ) -> bool:
        return not self.can(ruleset, action, subject, instance)

    def rules_for(self, ruleset: Ruleset, action: Action, subject: SubjectType) -> list[Rule]:
        """Rules that apply to an action/subject pair, latest first.

        Services translate these into query filters.
        """
        return [
            rule for rule in reversed(ruleset.rules)
            if rule.applies_to(action, subject) and not rule.never_matches
        ]

    def filter_permitted(
        self,
        ruleset: Ruleset,
        action: Action | str,
        records: Iterable[Any],
        subject: SubjectType | None = None,
    ) -> list[Any]:
        """Keep the records the caller may act on.

        Each record's type is detected unless ``subject`` is given.
        """
        permitted = []
        for record in records:
            subject_type = subject or self.resolver.detect(record)
            if self.can(ruleset, action, subject_type, record):
                permitted.append(record)
        return permitted

    def permitted_subjects(self, ruleset: Ruleset, action: Action | str) -> set[SubjectType]:
        """Subject types the caller may act on in at least some cases."""
        return {
            subject_type
            for subject_type in SubjectType
            if subject_type != SubjectType.ALL and self.can(ruleset, action, subject_type)
        }


_default_engine = AbilityQueryEngine()


def can(ruleset: Ruleset, action: Action | str, subject: Any, instance: Any = None) -> bool:
    """Check an action with the default engine."""
    return _default_engine.can(ruleset, action, subject, instance)


def cannot(ruleset: Ruleset, action: Action | str, subject: Any, instance: Any = None) -> bool:
    return _default_engine.cannot(ruleset, action, subject, instance)


def evaluate(
    ruleset: Ruleset, action: Action | str, subject: Any, instance: Any = None
) -> AbilityDecision:
    return _default_engine.evaluate(ruleset, action, subject, instance)


def filter_permitted(
    ruleset: Ruleset,
    action: Action | str,
    records: Iterable[Any],
    subject: SubjectType | None = None,
) -> list[Any]:
    return _default_engine.filter_permitted(ruleset, action, records, subject)
