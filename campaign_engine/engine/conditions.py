"""
Condition evaluation for logic nodes.

Values are compared trimmed and case-insensitively; when both sides parse as
numbers the comparison is numeric. Ordering operators (>, <, >=, <=) only
match numbers. A missing variable never matches, except for `not_exists`.

Usage:
    from campaign_engine.engine.conditions import evaluate, select_handle

    evaluate({"intent": "TECH"}, Condition("intent", "==", "tech"))   # True
    select_handle(config, variables)                                  # "true" / "output-1" / ...
"""

import math
import re
from typing import Any, Callable, Dict, Mapping, Optional

from campaign_engine.engine.models import Condition, Handle, LogicConfig
from campaign_engine.logger import logger


def _to_number(value: str) -> Optional[float]:
    try:
        number = float(value.replace(",", "."))
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def _compare(op: Callable[[Any, Any], bool], numeric_only: bool = False) -> Callable[[str, str], bool]:
    """Numeric when both sides parse; ordering operators never compare text."""
    def _apply(actual: str, expected: str) -> bool:
        num_actual = _to_number(actual)
        num_expected = _to_number(expected)
        if num_actual is not None and num_expected is not None:
            return op(num_actual, num_expected)
        if numeric_only:
            return False
        return op(actual, expected)
    return _apply


def _matches(actual: str, expected: str) -> bool:
    try:
        return re.search(expected, actual, re.IGNORECASE) is not None
    except re.error:
        logger.warning("Invalid regex in logic condition", pattern=expected)
        return False


OPERATORS: Dict[str, Callable[[str, str], bool]] = {
    "==": _compare(lambda a, b: a == b),
    "!=": _compare(lambda a, b: a != b),
    ">": _compare(lambda a, b: a > b, numeric_only=True),
    "<": _compare(lambda a, b: a < b, numeric_only=True),
    ">=": _compare(lambda a, b: a >= b, numeric_only=True),
    "<=": _compare(lambda a, b: a <= b, numeric_only=True),
    "contains": lambda a, b: b in a,
    "not_contains": lambda a, b: b not in a,
    "matches": _matches,
}

OPERATOR_ALIASES: Dict[str, str] = {
    "=": "==",
    "equals": "==",
    "variable_matches": "==",
    "not_equals": "!=",
    "greater_than": ">",
    "less_than": "<",
    "regex": "matches",
}


def normalize_operator(operator: str) -> str:
    operator = (operator or "==").strip()
    return OPERATOR_ALIASES.get(operator, operator)


def _is_empty(value: Any) -> bool:
    return value is None or str(value).strip() == ""


def evaluate(variables: Mapping[str, Any], condition: Condition) -> bool:
    """Evaluate one condition against stored variables."""
    operator = normalize_operator(condition.operator)
    resolved = variables.get(condition.variable) if condition.variable else None

    if operator == "exists":
        return not _is_empty(resolved)
    if operator == "not_exists":
        return _is_empty(resolved)

    if resolved is None:
        return False

    handler = OPERATORS.get(operator)
    if handler is None:
        logger.warning("Unknown logic operator, evaluating to false", operator=condition.operator)
        return False

    actual = str(resolved).strip()
    expected = "" if condition.value is None else str(condition.value).strip()
    if operator != "matches":
        actual = actual.lower()
        expected = expected.lower()
    return handler(actual, expected)


def select_handle(config: LogicConfig, variables: Mapping[str, Any]) -> str:
    """
    Handle selected by a logic node.

    Single mode: "true"/"false". Multi mode: "output-<i>" of the first
    matching condition, "output-<n>" when none matches.
    """
    if not config.multi:
        if not config.conditions:
            return Handle.FALSE
        return Handle.TRUE if evaluate(variables, config.conditions[0]) else Handle.FALSE

    for index, condition in enumerate(config.conditions):
        if evaluate(variables, condition):
            return Handle.output(index)
    return Handle.output(len(config.conditions))
