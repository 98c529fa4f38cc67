"""Validate raw tool input against a declarative parameter list.

One check function per declared primitive type. Returns the
validated input with defaults applied and undeclared keys dropped.
"""
from __future__ import annotations

import json
import math
from collections.abc import Callable, Sequence
from typing import Any

from .errors import ToolValidationError
from .models import ParamType, ToolParameter

_MISSING = object()


def _check_string(param: ToolParameter, value: Any) -> tuple[Any, str | None]:
    if isinstance(value, str):
        return value, None
    return value, f"'{param.name}' must be a string"


def _check_number(param: ToolParameter, value: Any) -> tuple[Any, str | None]:
    # bool is an int subclass in Python but never a number here
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return value, f"'{param.name}' must be a number"
    if isinstance(value, float) and not math.isfinite(value):
        return value, f"'{param.name}' must be a finite number"
    return value, None


def _check_boolean(param: ToolParameter, value: Any) -> tuple[Any, str | None]:
    if isinstance(value, bool):
        return value, None
    return value, f"'{param.name}' must be a boolean"


def _check_array(param: ToolParameter, value: Any) -> tuple[Any, str | None]:
    if not isinstance(value, list):
        return value, f"'{param.name}' must be an array"
    if param.min_items is not None and len(value) < param.min_items:
        return value, f"'{param.name}' must have at least {param.min_items} item(s)"
    if param.max_items is not None and len(value) > param.max_items:
        return value, f"'{param.name}' must have at most {param.max_items} item(s)"
    return value, None


def _check_object(param: ToolParameter, value: Any) -> tuple[Any, str | None]:
    if isinstance(value, dict):
        return value, None
    return value, f"'{param.name}' must be an object"


_CHECKS: dict[ParamType, Callable[[ToolParameter, Any], tuple[Any, str | None]]] = {
    ParamType.STRING: _check_string,
    ParamType.NUMBER: _check_number,
    ParamType.BOOLEAN: _check_boolean,
    ParamType.ARRAY: _check_array,
    ParamType.OBJECT: _check_object,
}


def coerce_input(raw_input: dict[str, Any] | str | None) -> dict[str, Any]:
    """Turn the provider's raw input into a mapping or raise ValueError."""
    if raw_input is None or raw_input == "":
        return {}
    if isinstance(raw_input, str):
        parsed = json.loads(raw_input)
    else:
        parsed = raw_input
    if not isinstance(parsed, dict):
        raise ValueError("tool input must be a JSON object")
    return parsed


def _is_absent(param: ToolParameter, value: Any) -> bool:
    if value is _MISSING or value is None:
        return True
    # The literal string "null" for an optional non-string parameter is
    # an absent value.
    return (
        not param.required
        and param.type != ParamType.STRING
        and isinstance(value, str)
        and value.strip() == "null"
    )


def validate_input(
    tool_name: str,
    parameters: Sequence[ToolParameter],
    raw_input: dict[str, Any] | str | None,
) -> dict[str, Any]:
    """Validate ``raw_input``; raise ToolValidationError listing every problem."""
    try:
        data = coerce_input(raw_input)
    except (ValueError, TypeError) as exc:
        raise ToolValidationError(tool_name, [f"input is not a JSON object: {exc}"])

    errors: list[str] = []
    validated: dict[str, Any] = {}
    for param in parameters:
        value = data.get(param.name, _MISSING)
        if _is_absent(param, value):
            if param.required and param.default is None:
                errors.append(f"'{param.name}' is required")
            elif param.default is not None:
                validated[param.name] = param.default
            continue
        checked, error = _CHECKS[param.type](param, value)
        if error:
            errors.append(error)
        else:
            validated[param.name] = checked
    if errors:
        raise ToolValidationError(tool_name, errors)
    return validated
