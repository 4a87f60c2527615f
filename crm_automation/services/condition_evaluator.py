import logging
import math
from collections.abc import Mapping, Sequence
from typing import Any

logger = logging.getLogger("crm_automation.conditions")

_NUMERIC_OPERATORS = {"greater_than", "less_than", "greater_or_equal", "less_or_equal"}


def resolve_path(container: Any, path: str) -> Any:
    """Walk a dotted path through dicts and lists, returning None when it breaks."""
    normalized = (path or "").strip()
    if not normalized:
        return None

    current: Any = container
    for part in [item for item in normalized.split(".") if item]:
        if isinstance(current, Mapping):
            if part not in current:
                return None
            current = current[part]
            continue
        if isinstance(current, list):
            if not part.isdigit():
                return None
            index = int(part)
            if index >= len(current):
                return None
            current = current[index]
            continue
        return None
    return current


def evaluate_conditions(conditions: Sequence[Mapping[str, Any]] | None, snapshot: Mapping[str, Any]) -> bool:
    """Sequential left fold: each condition joins the next through its own logical_operator.

    ``[A(AND), B(OR), C]`` is ``(A and B) or C``. Every condition is evaluated.
    """
    if not conditions:
        return True
    return fold_condition_results(conditions, condition_results(conditions, snapshot))


def condition_results(conditions: Sequence[Mapping[str, Any]], snapshot: Mapping[str, Any]) -> list[bool]:
    return [evaluate_condition(condition, snapshot) for condition in conditions]


def fold_condition_results(conditions: Sequence[Mapping[str, Any]], results: Sequence[bool]) -> bool:
    if not results:
        return True
    outcome = results[0]
    for index in range(1, len(results)):
        joiner = str(conditions[index - 1].get("logical_operator") or "AND").strip().upper()
        if joiner == "OR":
            outcome = outcome or results[index]
        else:
            outcome = outcome and results[index]
    return outcome


def evaluate_condition(condition: Mapping[str, Any], snapshot: Mapping[str, Any]) -> bool:
    field = str(condition.get("field") or "").strip()
    operator = str(condition.get("operator") or "equals").strip().lower()
    try:
        actual = resolve_path(snapshot, field)
        return _condition_matches(actual, operator=operator, expected=condition.get("value"))
    except Exception:  # noqa: BLE001
        logger.debug("condition %s %s raised; treating as false", field, operator, exc_info=True)
        return False


def _condition_matches(actual: Any, *, operator: str, expected: Any) -> bool:
    if operator == "equals":
        return actual == expected
    if operator == "not_equals":
        return actual != expected

    if operator in _NUMERIC_OPERATORS:
        left = _to_number(actual)
        right = _to_number(expected)
        if left is None or right is None:
            return False
        if operator == "greater_than":
            return left > right
        if operator == "less_than":
            return left < right
        if operator == "greater_or_equal":
            return left >= right
        return left <= right

    if operator == "contains":
        return _contains(actual, expected)
    if operator == "not_contains":
        return not _contains(actual, expected)
    if operator == "starts_with":
        return _as_text(actual).startswith(_as_text(expected))
    if operator == "ends_with":
        return _as_text(actual).endswith(_as_text(expected))

    if operator == "is_empty":
        return _is_empty(actual)
    if operator == "is_not_empty":
        return not _is_empty(actual)

    if operator == "in_list":
        return isinstance(expected, list) and actual in expected
    if operator == "not_in_list":
        return isinstance(expected, list) and actual not in expected

    return False


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, list):
        return expected in actual
    return _as_text(expected) in _as_text(actual)


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value == ""
    if isinstance(value, list):
        return len(value) == 0
    return False


def _to_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number):
        return None
    return number
