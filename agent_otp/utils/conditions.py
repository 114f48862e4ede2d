"""Condition evaluator for the policy engine.

A policy's ``conditions`` maps a field path to a condition object. Every
operator present on a condition must hold (AND), and every entry of the
mapping must hold for the policy to match. An empty mapping always matches.

Supported operators:
  equals / notEquals          strict equality (True is not 1)
  lessThan / greaterThan      value must be a number
  lessThanOrEqual / greaterThanOrEqual
  startsWith / endsWith       value must be a string
  contains                    substring test, value must be a string
  matches                     regular expression searched in the value
  in / notIn                  membership in a literal list
  exists                      true = value present and not null

Example:
  {
    "action": {"equals": "bank.transfer"},
    "scope.amount": {"lessThanOrEqual": 100},
    "context.recipient": {"endsWith": "@example.com"}
  }

Evaluation never raises: a wrongly typed value, a malformed operand or an
invalid pattern simply fails the condition.
"""
import re
from functools import lru_cache
from numbers import Real
from typing import Any, Dict, Mapping, Optional, Pattern

CONDITION_OPERATORS = (
    "equals",
    "notEquals",
    "lessThan",
    "greaterThan",
    "lessThanOrEqual",
    "greaterThanOrEqual",
    "startsWith",
    "endsWith",
    "contains",
    "matches",
    "in",
    "notIn",
    "exists",
)

# Field namespaces that may carry nested keys (``scope.amount``)
FIELD_NAMESPACES = ("scope", "context")
TOP_LEVEL_FIELDS = ("action", "resource", "agentId")


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool)


def _strict_equals(left: Any, right: Any) -> bool:
    """Equality that does not coerce between bools, numbers and strings"""
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if _is_number(left) and _is_number(right):
        return left == right
    if type(left) is not type(right):
        return False
    return left == right


@lru_cache(maxsize=256)
def _compile(pattern: str) -> Optional[Pattern[str]]:
    try:
        return re.compile(pattern)
    except re.error:
        return None


def _compare(value: Any, operand: Any, op: str) -> bool:
    if not (_is_number(value) and _is_number(operand)):
        return False
    if op == "lessThan":
        return value < operand
    if op == "greaterThan":
        return value > operand
    if op == "lessThanOrEqual":
        return value <= operand
    return value >= operand


def _member(value: Any, operand: Any) -> Optional[bool]:
    """Membership test; None when the operand is not a list"""
    if not isinstance(operand, (list, tuple)):
        return None
    return any(_strict_equals(value, item) for item in operand)


def evaluate_condition(value: Any, condition: Mapping[str, Any]) -> bool:
    """Return True if ``value`` satisfies every operator in ``condition``.

    Args:
        value:     The field value extracted from the request (None if absent).
        condition: The condition object from a policy.

    Returns:
        True when all present operators pass. Unknown operator keys are ignored.
    """
    if not isinstance(condition, Mapping):
        return False

    if "equals" in condition and not _strict_equals(value, condition["equals"]):
        return False

    if "notEquals" in condition and _strict_equals(value, condition["notEquals"]):
        return False

    for op in ("lessThan", "greaterThan", "lessThanOrEqual", "greaterThanOrEqual"):
        if op in condition and not _compare(value, condition[op], op):
            return False

    for op in ("startsWith", "endsWith", "contains"):
        if op not in condition:
            continue
        operand = condition[op]
        if not (isinstance(value, str) and isinstance(operand, str)):
            return False
        if op == "startsWith" and not value.startswith(operand):
            return False
        if op == "endsWith" and not value.endswith(operand):
            return False
        if op == "contains" and operand not in value:
            return False

    if "matches" in condition:
        pattern = condition["matches"]
        if not (isinstance(value, str) and isinstance(pattern, str)):
            return False
        compiled = _compile(pattern)
        if compiled is None or compiled.search(value) is None:
            return False

    if "in" in condition and _member(value, condition["in"]) is not True:
        return False

    if "notIn" in condition and _member(value, condition["notIn"]) is not False:
        return False

    if "exists" in condition:
        if bool(condition["exists"]) != (value is not None):
            return False

    return True


def resolve_field(flat_request: Mapping[str, Any], path: str) -> Any:
    """Look up a field path in a flattened request.

    Only ``action``, ``resource``, ``agentId`` and keys under ``scope.`` and
    ``context.`` resolve; anything else is treated as absent. A path deeper
    than one level walks nested dicts below the longest flattened key.
    """
    if path in flat_request:
        return flat_request[path]

    root, _, rest = path.partition(".")
    if root not in FIELD_NAMESPACES or not rest:
        return None

    parts = rest.split(".")
    for split in range(len(parts) - 1, 0, -1):
        key = f"{root}.{'.'.join(parts[:split])}"
        if key in flat_request:
            current = flat_request[key]
            for part in parts[split:]:
                if not isinstance(current, Mapping) or part not in current:
                    return None
                current = current[part]
            return current
    return None


def matches_conditions(conditions: Optional[Dict[str, Any]], flat_request: Mapping[str, Any]) -> bool:
    """True if every field condition holds; an empty mapping always matches"""
    if not conditions:
        return True
    if not isinstance(conditions, Mapping):
        return False
    return all(
        evaluate_condition(resolve_field(flat_request, path), condition)
        for path, condition in conditions.items()
    )
