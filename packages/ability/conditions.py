"""Condition template resolution.

Grants carry condition templates whose string leaves may reference
request context values, e.g.::

    {"organizationId": "$user.organizationId"}
    {"departmentId": {"$in": "$user.departmentIds"}}

Resolution substitutes each ``$dot.path`` reference with the value found
in the context. References that cannot be walked keep their literal text.
"""

import logging
from collections.abc import Mapping
from typing import Any

from packages.ability.models import AbilityError

logger = logging.getLogger(__name__)

VARIABLE_PREFIX = "$"

# Field-level operators understood by the query engine
SUPPORTED_OPERATORS = frozenset({"$eq", "$ne", "$in", "$nin"})

_MISSING = object()


class MalformedConditionTemplate(AbilityError):
    """Raised when a condition template cannot be turned into a rule."""

    def __init__(self, reason: str):
        super().__init__(reason, "malformed_condition")


def lookup_path(context: Any, path: str) -> Any:
    """Walk a dot path through nested mappings.

    Returns the module-private ``_MISSING`` sentinel when any segment is
    absent; use :func:`resolve_variable` for the public behaviour.
    """
    current = context
    for segment in path.split("."):
        if isinstance(current, Mapping) and segment in current:
            current = current[segment]
        else:
            return _MISSING
    return current


def resolve_variable(reference: str, context: Mapping[str, Any]) -> Any:
    """Resolve a single ``$path`` reference, falling back to the literal."""
    value = lookup_path(context, reference[len(VARIABLE_PREFIX):])
    if value is _MISSING:
        logger.debug("Unresolved condition variable %s kept as literal", reference)
        return reference
    return value


def is_variable(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(VARIABLE_PREFIX) and len(value) > 1


class ConditionTemplateEvaluator:
    """Resolves condition templates against a build context.

    Resolution never fails on unknown paths. It raises
    MalformedConditionTemplate only for templates that are not a tree of
    string-keyed mappings (non-mapping root, non-string keys, cycles).
    """

    def resolve(self, template: Any, context: Mapping[str, Any] | None) -> dict[str, Any]:
        if not isinstance(template, Mapping):
            raise MalformedConditionTemplate(
                f"Condition template must be a mapping, got {type(template).__name__}"
            )
        return self._resolve_mapping(template, context or {}, set())

    def _resolve_mapping(
        self,
        template: Mapping[Any, Any],
        context: Mapping[str, Any],
        seen: set[int],
    ) -> dict[str, Any]:
        if id(template) in seen:
            raise MalformedConditionTemplate("Condition template contains a cycle")
        seen = seen | {id(template)}

        result: dict[str, Any] = {}
        for key, value in template.items():
            if not isinstance(key, str):
                raise MalformedConditionTemplate(f"Condition key {key!r} is not a string")

            if isinstance(value, Mapping):
                result[key] = self._resolve_mapping(value, context, seen)
            elif is_variable(value):
                result[key] = resolve_variable(value, context)
            else:
                # Sequences and scalars are literals
                result[key] = value
        return result


def validate_operators(conditions: Mapping[str, Any]) -> None:
    """Check operator usage in a resolved condition.

    A field may map to a literal, or to a mapping made only of supported
    operators. Mixing operator and plain keys, or using any other
    ``$``-prefixed key, is rejected.
    """
    for field_name, expected in conditions.items():
        if not isinstance(field_name, str):
            raise MalformedConditionTemplate(f"Condition key {field_name!r} is not a string")
        if field_name.startswith(VARIABLE_PREFIX):
            raise MalformedConditionTemplate(
                f"Unsupported top-level operator {field_name!r}"
            )
        if not isinstance(expected, Mapping):
            continue
        if not all(isinstance(k, str) for k in expected):
            raise MalformedConditionTemplate(
                f"Field {field_name!r} has non-string keys"
            )

        operator_keys = [k for k in expected if k.startswith(VARIABLE_PREFIX)]
        if not operator_keys:
            continue
        if len(operator_keys) != len(expected):
            raise MalformedConditionTemplate(
                f"Field {field_name!r} mixes operators with plain keys"
            )
        unsupported = set(operator_keys) - SUPPORTED_OPERATORS
        if unsupported:
            raise MalformedConditionTemplate(
                f"Unsupported operator(s) {sorted(unsupported)} on {field_name!r}"
            )
        for op in ("$in", "$nin"):
            if op in expected and not isinstance(expected[op], (list, tuple, set, frozenset)):
                raise MalformedConditionTemplate(
                    f"Operator {op} on {field_name!r} needs a list"
                )


_default_evaluator = ConditionTemplateEvaluator()


def resolve_conditions(template: Any, context: Mapping[str, Any] | None) -> dict[str, Any]:
    """Resolve a condition template with the default evaluator."""
    return _default_evaluator.resolve(template, context)
