"""
Context condition evaluator: decides whether a suggestion applies to the
caller's current context (page, course, locale, …).

Conditions are RuleCondition objects (or plain dicts from seed data/YAML)
evaluated against the context dict with dot-notation field access.
"""
from __future__ import annotations

import operator as op
import re
from typing import Any, Iterable, Union

from models.schemas import RuleCondition


OPERATORS: dict[str, Any] = {
    "eq": op.eq,
    "neq": op.ne,
    "gt": op.gt,
    "gte": op.ge,
    "lt": op.lt,
    "lte": op.le,
    "in": lambda a, b: a in b,
    "not_in": lambda a, b: a not in b,
    "contains": lambda a, b: b in str(a),
    "startswith": lambda a, b: str(a).startswith(str(b)),
    "regex": lambda a, b: bool(re.search(str(b), str(a))),
    "exists": lambda a, b: a is not None,
    "not_exists": lambda a, b: a is None,
}

ConditionLike = Union[RuleCondition, dict]


def get_nested_value(data: dict, field: str) -> Any:
    """Get a value from nested dict using dot notation. e.g. 'course.level'"""
    current = data
    for part in field.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        else:
            return None
    return current


def _coerce(condition: ConditionLike) -> RuleCondition:
    return condition if isinstance(condition, RuleCondition) else RuleCondition(**condition)


def evaluate_condition(condition: ConditionLike, data: dict[str, Any]) -> bool:
    """Evaluate a single condition against data. Unknown operators never match."""
    condition = _coerce(condition)
    val = get_nested_value(data, condition.field)
    fn = OPERATORS.get(condition.operator)
    if fn is None:
        return False
    if val is None and condition.operator not in ("exists", "not_exists", "eq", "neq"):
        return False
    try:
        if isinstance(condition.value, (int, float)) and not isinstance(condition.value, bool) and isinstance(val, str):
            val = float(val)
        return fn(val, condition.value)
    except (TypeError, ValueError):
        return False


def evaluate_conditions(conditions: Iterable[ConditionLike], data: dict[str, Any]) -> bool:
    """Evaluate all conditions (AND logic). Returns True if all pass."""
    return all(evaluate_condition(c, data) for c in conditions or [])


def matches_context(context_conditions: dict[str, Any], context: dict[str, Any]) -> bool:
    """
    Match a suggestion's context_conditions block:
      pages:       the context page must be one of these (when the context names a page)
      conditions:  field conditions, all of which must hold
    """
    context_conditions = context_conditions or {}
    pages = context_conditions.get("pages") or []
    page = context.get("page")
    if pages and page is not None and page not in pages:
        return False
    return evaluate_conditions(context_conditions.get("conditions") or [], context)
