"""
Shared condition evaluator — used by condition nodes and the context search.

Evaluates ConditionClause objects against the variables mapping.
Supports nested dot-notation access with list indexes (``items[0].name``)
and the operator spellings the flow builder emits.
"""
from __future__ import annotations

import re
from typing import Any

from models.schemas import ConditionClause


_MISSING = object()
_PATH_TOKEN = re.compile(r"([^.\[\]]+)|\[(\d+)\]")


def _as_number(value: Any) -> float:
    if isinstance(value, bool):
        raise TypeError("booleans are not numbers here")
    return float(value)


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


OPERATORS: dict[str, Any] = {
    "eq": lambda a, b: _as_text(a) == _as_text(b),
    "neq": lambda a, b: _as_text(a) != _as_text(b),
    "gt": lambda a, b: _as_number(a) > _as_number(b),
    "gte": lambda a, b: _as_number(a) >= _as_number(b),
    "lt": lambda a, b: _as_number(a) < _as_number(b),
    "lte": lambda a, b: _as_number(a) <= _as_number(b),
    "in": lambda a, b: a in b if isinstance(b, (list, tuple, set, dict)) else _as_text(a) in _as_text(b),
    "contains": lambda a, b: _as_text(b).lower() in _as_text(a).lower(),
    "not_contains": lambda a, b: _as_text(b).lower() not in _as_text(a).lower(),
    "regex": lambda a, b: bool(re.search(str(b), _as_text(a))),
    "exists": lambda a, b: a is not None,
    "not_exists": lambda a, b: a is None,
    "is_empty": lambda a, b: _is_empty(a),
    "is_not_empty": lambda a, b: not _is_empty(a),
}

OPERATOR_ALIASES: dict[str, str] = {
    "==": "eq", "equals": "eq",
    "!=": "neq", "not_equals": "neq",
    ">": "gt", "greater": "gt",
    ">=": "gte", "greater_or_equal": "gte",
    "<": "lt", "less": "lt",
    "<=": "lte", "less_or_equal": "lte",
}

# Operators that are meaningful when the variable is absent
_PRESENCE_OPERATORS = {"exists", "not_exists", "is_empty", "is_not_empty"}


def normalize_operator(operator: str) -> str:
    op = (operator or "").strip().lower()
    return OPERATOR_ALIASES.get(op, op)


def lookup_path(data: Any, path: str) -> Any:
    """
    Resolve ``a.b[0].c`` against nested dicts/lists.
    Returns the module-level sentinel when any segment is missing.
    """
    current = data
    for name, index in _PATH_TOKEN.findall(path.strip()):
        if name:
            if isinstance(current, dict) and name in current:
                current = current[name]
            elif isinstance(current, list) and name.isdigit() and int(name) < len(current):
                current = current[int(name)]
            else:
                return _MISSING
        else:
            idx = int(index)
            if isinstance(current, list) and idx < len(current):
                current = current[idx]
            else:
                return _MISSING
    return current


def has_path(data: Any, path: str) -> bool:
    return bool(path) and lookup_path(data, path) is not _MISSING


def get_nested_value(data: Any, field: str) -> Any:
    """Get a value from nested data using dot notation. e.g. 'order.items[0].sku'"""
    value = lookup_path(data, field)
    return None if value is _MISSING else value


def evaluate_condition(condition: ConditionClause, data: dict[str, Any]) -> bool:
    """
    Evaluate a single condition against data.
    A missing variable fails every comparison except the presence checks.
    """
    op = normalize_operator(condition.operator)
    fn = OPERATORS.get(op)
    if fn is None:
        return False
    if not has_path(data, condition.variable) and op not in _PRESENCE_OPERATORS:
        return False
    val = get_nested_value(data, condition.variable)
    try:
        return bool(fn(val, condition.value))
    except (TypeError, ValueError, re.error):
        return False


def evaluate_conditions(
    conditions: list[ConditionClause], data: dict[str, Any], logic: str = "and",
) -> bool:
    """Evaluate a group of conditions with AND (default) or OR logic."""
    if not conditions:
        return True
    results = (evaluate_condition(c, data) for c in conditions)
    return any(results) if logic == "or" else all(results)


def references_missing_variable(conditions: list[ConditionClause], data: dict[str, Any]) -> bool:
    return any(
        not has_path(data, c.variable) and normalize_operator(c.operator) not in _PRESENCE_OPERATORS
        for c in conditions
    )
