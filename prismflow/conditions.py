"""Evaluation of form-field conditions on conditional connections."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from .contracts import ConnectionCondition

logger = logging.getLogger(__name__)

_TRUTHY = (True, "true", "yes")
_FALSY = (False, "false", "no")


def _text(value: Any) -> str:
    return "" if value is None else str(value).lower()


def _number(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _date(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except (TypeError, ValueError):
        return None


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or (isinstance(value, (list, tuple)) and not value)


def _checked(value: Any) -> Optional[bool]:
    """Checkbox state of a form value, ``None`` when it is not a checkbox value.

    Checkbox groups submit a list of the ticked options.
    """
    if isinstance(value, (list, tuple, set)):
        return bool(value)
    if isinstance(value, (str, bool, int)) and value in _TRUTHY:
        return True
    if not value or (isinstance(value, (str, bool, int)) and value in _FALSY):
        return False
    return None


def _compare(op: Callable[[Any, Any], bool], parse: Callable[[Any], Any]):
    def check(field: Any, expected: Any, _second: Any) -> bool:
        left, right = parse(field), parse(expected)
        if left is None or right is None:
            return False
        try:
            return op(left, right)
        except TypeError:
            # naive vs aware datetimes
            return False

    return check


def _between(field: Any, low: Any, high: Any) -> bool:
    value, low_n, high_n = _number(field), _number(low), _number(high)
    if value is None or low_n is None or high_n is None:
        return False
    return low_n <= value <= high_n


_OPERATORS: Dict[str, Callable[[Any, Any, Any], bool]] = {
    "equals": lambda f, v, _: _text(f) == _text(v),
    "contains": lambda f, v, _: _text(v) in _text(f),
    "starts_with": lambda f, v, _: _text(f).startswith(_text(v)),
    "ends_with": lambda f, v, _: _text(f).endswith(_text(v)),
    "is_empty": lambda f, _v, _w: _is_empty(f),
    "is_not_empty": lambda f, _v, _w: not _is_empty(f),
    "greater_than": _compare(lambda a, b: a > b, _number),
    "less_than": _compare(lambda a, b: a < b, _number),
    "greater_or_equal": _compare(lambda a, b: a >= b, _number),
    "less_or_equal": _compare(lambda a, b: a <= b, _number),
    "between": _between,
    "before": _compare(lambda a, b: a < b, _date),
    "after": _compare(lambda a, b: a > b, _date),
    "is_checked": lambda f, _v, _w: _checked(f) is True,
    "is_not_checked": lambda f, _v, _w: _checked(f) is False,
}


def evaluate_condition(condition: ConnectionCondition, form_data: Dict[str, Any]) -> bool:
    """Return ``True`` when ``form_data`` satisfies the connection's form condition."""
    if not condition.has_form_condition:
        return False
    operator = _OPERATORS.get(condition.condition_type or "")
    if operator is None:
        logger.warning(f"Unknown condition type: {condition.condition_type}")
        return False
    field_value = form_data.get(condition.source_form_field_id or "")
    return operator(field_value, condition.value, condition.value2)


__all__ = ["evaluate_condition"]
