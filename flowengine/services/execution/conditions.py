"""Condition evaluation for branch selection.

A condition node holds ordered rules; each rule compares a field of the
node's input against a value and names the branch taken when it matches.

Supported operators:
- eq / neq: Equal / not equal
- gt / lt / gte / lte: Numeric comparison (string fallback)
- contains / not_contains: String, list or dict membership
- exists / not_exists: Field present and not None
- is_empty / is_not_empty: None, "", [], {}
- matches: Regex search
- in / not_in: Value in list
- starts_with / ends_with: String prefix / suffix
- is_true / is_false, is_string / is_number / is_boolean / is_array / is_object
"""

import re
from typing import Any, Dict, List, Optional, Tuple

from flowengine.core.errors import ExecutionError
from flowengine.core.logging import get_logger

logger = get_logger(__name__)

ConditionDict = Dict[str, Any]


def get_nested_value(data: Any, field_path: str) -> Any:
    """Get a nested value using dot notation, None when missing.

    Examples:
        >>> get_nested_value({"result": {"status": "ok"}}, "result.status")
        'ok'
        >>> get_nested_value({"items": [{"name": "a"}]}, "items.0.name")
        'a'
    """
    if not field_path:
        return data

    current = data
    for part in field_path.split('.'):
        if current is None:
            return None
        if part.isdigit() and isinstance(current, (list, tuple)):
            index = int(part)
            current = current[index] if 0 <= index < len(current) else None
        elif isinstance(current, dict):
            current = current.get(part)
        else:
            return None
    return current


def evaluate_condition(condition: ConditionDict, data: Any) -> bool:
    """Evaluate one comparison against ``data``.

    Args:
        condition: {"field": "amount", "operator": "gt", "value": 100};
            without ``field`` the whole input is compared.
        data: The condition node's input

    Returns:
        True if the comparison holds; evaluation errors count as no match.
    """
    if not condition:
        return True

    field = condition.get("field") or ""
    operator = condition.get("operator", "eq")
    target_value = condition.get("value")
    actual_value = get_nested_value(data, field)

    try:
        result = _evaluate_operator(operator, actual_value, target_value)
    except (TypeError, ValueError) as e:
        logger.warning("Condition evaluation error", field=field, operator=operator, error=str(e))
        return False

    logger.debug("Evaluated condition", field=field, operator=operator, result=result)
    return result


def _evaluate_operator(operator: str, actual: Any, target: Any) -> bool:
    if operator == "eq":
        return actual == target
    elif operator == "neq":
        return actual != target

    elif operator == "gt":
        return _safe_compare(actual, target, lambda a, b: a > b)
    elif operator == "lt":
        return _safe_compare(actual, target, lambda a, b: a < b)
    elif operator == "gte":
        return _safe_compare(actual, target, lambda a, b: a >= b)
    elif operator == "lte":
        return _safe_compare(actual, target, lambda a, b: a <= b)

    elif operator == "contains":
        if isinstance(actual, str):
            return str(target) in actual
        if isinstance(actual, (list, tuple, dict)):
            return target in actual
        return False
    elif operator == "not_contains":
        return not _evaluate_operator("contains", actual, target)

    elif operator == "exists":
        return actual is not None
    elif operator == "not_exists":
        return actual is None

    elif operator == "is_empty":
        if actual is None:
            return True
        if isinstance(actual, (str, list, dict, tuple)):
            return len(actual) == 0
        return False
    elif operator == "is_not_empty":
        return not _evaluate_operator("is_empty", actual, target)

    elif operator == "matches":
        if actual is None or target is None:
            return False
        try:
            return bool(re.search(str(target), str(actual)))
        except re.error:
            logger.warning("Invalid regex pattern", pattern=target)
            return False

    elif operator == "in":
        if not isinstance(target, (list, tuple)):
            return actual == target
        return actual in target
    elif operator == "not_in":
        return not _evaluate_operator("in", actual, target)

    elif operator == "starts_with":
        if actual is None or target is None:
            return False
        return str(actual).startswith(str(target))
    elif operator == "ends_with":
        if actual is None or target is None:
            return False
        return str(actual).endswith(str(target))

    elif operator == "is_true":
        return actual is True or actual == "true" or actual == 1
    elif operator == "is_false":
        return actual is False or actual == "false" or actual == 0

    elif operator == "is_string":
        return isinstance(actual, str)
    elif operator == "is_number":
        return isinstance(actual, (int, float)) and not isinstance(actual, bool)
    elif operator == "is_boolean":
        return isinstance(actual, bool)
    elif operator == "is_array":
        return isinstance(actual, (list, tuple))
    elif operator == "is_object":
        return isinstance(actual, dict)

    logger.warning("Unknown operator", operator=operator)
    return False


def _safe_compare(actual: Any, target: Any, comparator) -> bool:
    """Numeric comparison first, string comparison as fallback."""
    if actual is None or target is None:
        return False
    try:
        return comparator(float(actual), float(target))
    except (ValueError, TypeError):
        pass
    try:
        return comparator(str(actual), str(target))
    except (ValueError, TypeError):
        return False


def evaluate_conditions(conditions: List[ConditionDict], data: Any, logic: str = "and") -> bool:
    """Evaluate several comparisons with AND/OR logic."""
    if not conditions:
        return True
    results = [evaluate_condition(c, data) for c in conditions]
    return any(results) if logic == "or" else all(results)


def evaluate_rule(rule: ConditionDict, data: Any) -> bool:
    """A rule is either a single comparison or a ``conditions`` group."""
    if rule.get("conditions"):
        return evaluate_conditions(rule["conditions"], data, rule.get("logic", "and"))
    return evaluate_condition(rule, data)


def choose_branches(rules: List[ConditionDict], data: Any, policy: str = "first",
                    default: Optional[str] = None) -> Tuple[str, List[str]]:
    """Pick the branch label(s) for ``data``.

    ``first`` takes the first matching rule in declared order; ``all`` takes
    every matching rule. When nothing matches the ``default`` branch is used.

    Returns:
        (primary branch, all chosen branches)

    Raises:
        ExecutionError: MISSING_DATA when nothing matches and there is no default.
    """
    matched: List[str] = []
    for rule in rules:
        if evaluate_rule(rule, data):
            if rule["branch"] not in matched:
                matched.append(rule["branch"])
            if policy == "first":
                break

    if not matched:
        if default is None:
            raise ExecutionError("No condition rule matched and no default branch is set",
                                 code="MISSING_DATA")
        matched = [default]

    logger.debug("Chose branches", branches=matched, policy=policy)
    return matched[0], matched
