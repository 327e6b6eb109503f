"""
Variable interpolation for node content, REST call configs and flow payloads.

``{{name}}`` / ``{{order.items[0].sku}}`` placeholders are replaced with values
from the context's variables. Unknown placeholders are left untouched so the
missing binding is visible in the rendered message.
"""
from __future__ import annotations

import json
import re
from typing import Any

from utils.conditions import get_nested_value, has_path

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.\[\]]+)\s*\}\}")

_DISPLAY_KEYS = ("name", "title", "label", "display_name", "displayName", "sku", "id")


def format_for_display(value: Any) -> str:
    """Turn a bound value into text suitable for a chat message."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        return _format_list(value)
    if isinstance(value, dict):
        return "\n".join(
            f"{key}: {format_for_display(val) if not isinstance(val, (dict, list)) else json.dumps(val, default=str)}"
            for key, val in value.items()
        )
    return str(value)


def _format_list(items: list[Any]) -> str:
    if not items:
        return "(empty list)"
    first = items[0]
    if isinstance(first, dict):
        key = next((k for k in _DISPLAY_KEYS if k in first), None)
        if key is None:
            return json.dumps(items, default=str)
        lines = []
        for i, item in enumerate(items, start=1):
            extras = [str(item[k]) for k in ("description", "price") if item.get(k) not in (None, "")]
            suffix = f" - {', '.join(extras)}" if extras else ""
            lines.append(f"{i}. {item.get(key, '')}{suffix}")
        return "\n".join(lines)
    return "\n".join(f"{i}. {item}" for i, item in enumerate(items, start=1))


def render(template: str, variables: dict[str, Any]) -> str:
    """Replace {{variable}} placeholders with values from variables."""
    if not template:
        return ""

    def replacer(match: re.Match) -> str:
        path = match.group(1)
        if not has_path(variables, path):
            return match.group(0)
        value = get_nested_value(variables, path)
        if value is None:
            return match.group(0)
        return format_for_display(value)

    return _PLACEHOLDER.sub(replacer, template)


def render_value(value: Any, variables: dict[str, Any]) -> Any:
    """
    Render placeholders inside a nested structure (REST headers/body).
    A string that is exactly one placeholder keeps the bound value's type.
    """
    if isinstance(value, str):
        whole = _PLACEHOLDER.fullmatch(value.strip())
        if whole and has_path(variables, whole.group(1)):
            return get_nested_value(variables, whole.group(1))
        return _PLACEHOLDER.sub(
            lambda m: _raw_text(m, variables), value,
        )
    if isinstance(value, dict):
        return {k: render_value(v, variables) for k, v in value.items()}
    if isinstance(value, list):
        return [render_value(v, variables) for v in value]
    return value


def _raw_text(match: re.Match, variables: dict[str, Any]) -> str:
    path = match.group(1)
    if not has_path(variables, path):
        return match.group(0)
    value = get_nested_value(variables, path)
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)
