"""
Condition Evaluator

Evaluates flow conditions and escalation trigger conditions against a
context mapping. Evaluation never raises: an unknown operator, a missing
field or incomparable values simply leave the condition unsatisfied.
"""

import operator
from typing import Any, Callable, Mapping

import structlog

logger = structlog.get_logger()

_MISSING = object()


def _as_number(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    if isinstance(value, (int, float)):
        return value
    return None


def _ordered(compare: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def check(actual: Any, expected: Any) -> bool:
        if actual is _MISSING or actual is None or expected is None:
            return False
        # bool is an int subclass; never order booleans against numbers
        if isinstance(actual, bool) != isinstance(expected, bool):
            return False
        # "85" against 80 compares as numbers
        if isinstance(actual, str) != isinstance(expected, str):
            actual, expected = _as_number(actual), _as_number(expected)
            if actual is None or expected is None:
                return False
        try:
            return bool(compare(actual, expected))
        except TypeError:
            return False
    return check


def _equals(actual: Any, expected: Any) -> bool:
    if actual is _MISSING:
        return False
    if isinstance(actual, bool) != isinstance(expected, bool):
        return False
    return actual == expected


def _not_equals(actual: Any, expected: Any) -> bool:
    if actual is _MISSING:
        return True
    return not _equals(actual, expected)


def _contains(actual: Any, expected: Any) -> bool:
    if actual is _MISSING or actual is None or expected is None:
        return False
    return str(expected) in str(actual)


def _member_of(actual: Any, expected: Any) -> bool:
    if actual is _MISSING or not isinstance(expected, list):
        return False
    return any(_equals(actual, candidate) for candidate in expected)


OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "equals": _equals,
    "not_equals": _not_equals,
    "greater_than": _ordered(operator.gt),
    "less_than": _ordered(operator.lt),
    "contains": _contains,
    "in": _member_of,
}


def evaluate_condition(condition: Mapping[str, Any], context: Mapping[str, Any]) -> bool:
    """Evaluate a single ``{field, operator, value}`` condition."""
    check = OPERATORS.get(condition.get("operator"))
    if check is None:
        logger.warning("unknown_condition_operator", operator=condition.get("operator"))
        return False
    actual = context.get(condition.get("field"), _MISSING)
    return check(actual, condition.get("value"))


def evaluate_conditions(conditions: list[Mapping[str, Any]] | None, context: Mapping[str, Any]) -> bool:
    """All conditions must hold. No conditions always matches."""
    if not conditions:
        return True
    return all(evaluate_condition(condition, context) for condition in conditions)


def match_trigger_conditions(trigger_conditions: Mapping[str, Any] | None, context: Mapping[str, Any]) -> bool:
    """
    Match an escalation rule's trigger conditions.

    Each key names a context field:
    - scalar or list value: the field must equal it
    - ``{"operator": ..., "value": ...}``: evaluated like a flow condition
    - any other object: the field only has to be present
    """
    for field, expected in (trigger_conditions or {}).items():
        if isinstance(expected, Mapping):
            if "operator" in expected:
                condition = {"field": field, "operator": expected["operator"], "value": expected.get("value")}
                if not evaluate_condition(condition, context):
                    return False
            elif context.get(field) is None:
                return False
        elif not _equals(context.get(field, _MISSING), expected):
            return False
    return True
