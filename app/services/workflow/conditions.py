"""Form predicate evaluation for conditional edges."""

import logging
import math

from app.utils.helpers import parse_datetime

logger = logging.getLogger(__name__)

TRUTHY_CHECKBOX = ("true", "yes")
FALSY_CHECKBOX = ("false", "no")


def _as_text(value) -> str:
    return "" if value is None else str(value)


def _as_number(value) -> float:
    """Numeric coercion; anything unparseable becomes NaN so every comparison fails."""
    if isinstance(value, bool):
        return float(value)
    if value is None:
        return math.nan
    if value == "":
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


def _is_empty(value) -> bool:
    return value is None or value == "" or (isinstance(value, (list, tuple)) and len(value) == 0)


def _compare_dates(field_value, condition_value, op) -> bool:
    left = parse_datetime(field_value)
    right = parse_datetime(condition_value)
    if left is None or right is None:
        return False
    return op(left, right)


def evaluate_form_condition(condition: dict, form_data: dict) -> bool:
    """True when ``form_data`` satisfies the edge's form predicate.

    Unknown predicate types never match.
    """
    field_id = condition.get("sourceFormFieldId")
    condition_type = condition.get("conditionType")
    if not field_id or not condition_type:
        return False

    field_value = (form_data or {}).get(field_id)
    expected = condition.get("value")
    field_str = _as_text(field_value).lower()
    expected_str = _as_text(expected).lower()

    if condition_type == "equals":
        return field_str == expected_str
    if condition_type == "contains":
        return expected_str in field_str
    if condition_type == "starts_with":
        return field_str.startswith(expected_str)
    if condition_type == "ends_with":
        return field_str.endswith(expected_str)
    if condition_type == "is_empty":
        return _is_empty(field_value)
    if condition_type == "is_not_empty":
        return not _is_empty(field_value)
    if condition_type == "greater_than":
        return _as_number(field_value) > _as_number(expected)
    if condition_type == "less_than":
        return _as_number(field_value) < _as_number(expected)
    if condition_type == "greater_or_equal":
        return _as_number(field_value) >= _as_number(expected)
    if condition_type == "less_or_equal":
        return _as_number(field_value) <= _as_number(expected)
    if condition_type == "between":
        number = _as_number(field_value)
        return _as_number(expected) <= number <= _as_number(condition.get("value2"))
    if condition_type == "before":
        return _compare_dates(field_value, expected, lambda a, b: a < b)
    if condition_type == "after":
        return _compare_dates(field_value, expected, lambda a, b: a > b)
    if condition_type == "is_checked":
        return field_value is True or field_value in TRUTHY_CHECKBOX
    if condition_type == "is_not_checked":
        return not field_value or field_value in FALSY_CHECKBOX

    logger.warning("Unknown form condition type: %s", condition_type)
    return False
