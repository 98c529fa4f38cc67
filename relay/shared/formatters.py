"""One-line summaries of tool calls for the console.

Registry-based: a formatter is a decorated function keyed by tool
name. Unregistered tools (including dynamic ones) use the default.

    @tool_formatter("my_tool")
    def _format_my_tool(name, args):
        return FormattedToolCall(icon="*", label=name, summary=...)
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable

from relay.engine.json_repair import loads_repaired


@dataclass
class FormattedToolCall:
    icon: str = ""
    label: str = ""
    summary: str = ""


_FORMATTERS: dict[str, Callable[[str, dict], FormattedToolCall]] = {}


def tool_formatter(name: str):
    """Decorator to register a formatter for a given tool name."""

    def decorator(fn: Callable[[str, dict], FormattedToolCall]):
        _FORMATTERS[name] = fn
        return fn

    return decorator


def parse_args(arguments: Any) -> dict:
    """Parse tool arguments to a dict, falling back gracefully.

    Streamed arguments are usually valid JSON. Malformed text goes
    through the same repair the engine uses, then to ``{"_raw": ...}``.
    """
    if isinstance(arguments, dict):
        return arguments
    if not isinstance(arguments, str) or not arguments.strip():
        return {}
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError:
        try:
            parsed = loads_repaired(arguments)
        except ValueError:
            return {"_raw": arguments}
    return parsed if isinstance(parsed, dict) else {"_raw": arguments}


def format_tool_call(name: str, arguments: Any) -> FormattedToolCall:
    """Dispatch to a registered formatter or the default."""
    return _FORMATTERS.get(name, _format_default)(name, parse_args(arguments))


def _trunc(text: str, length: int = 60) -> str:
    text = " ".join(str(text).split())
    return text if len(text) <= length else text[:length - 3] + "..."


def _format_default(name: str, args: dict) -> FormattedToolCall:
    summary = ", ".join(f"{k}={_trunc(v, 30)}" for k, v in args.items())
    icon = "+" if name.startswith("dynamic-") else "*"
    return FormattedToolCall(icon=icon, label=name, summary=_trunc(summary, 80))


@tool_formatter("read_file")
def _format_read(name: str, args: dict) -> FormattedToolCall:
    return FormattedToolCall(icon="r", label="Read", summary=args.get("path", ""))


@tool_formatter("write_file")
def _format_write(name: str, args: dict) -> FormattedToolCall:
    return FormattedToolCall(icon="w", label="Write", summary=args.get("path", ""))


@tool_formatter("edit_file")
def _format_edit(name: str, args: dict) -> FormattedToolCall:
    return FormattedToolCall(icon="e", label="Edit", summary=args.get("path", ""))


@tool_formatter("bash")
def _format_bash(name: str, args: dict) -> FormattedToolCall:
    return FormattedToolCall(icon="$", label="Bash", summary=_trunc(args.get("command", ""), 80))


@tool_formatter("grep")
def _format_grep(name: str, args: dict) -> FormattedToolCall:
    where = args.get("path", ".")
    return FormattedToolCall(icon="?", label="Grep", summary=f"/{args.get('pattern', '')}/ in {where}")


@tool_formatter("batch")
def _format_batch(name: str, args: dict) -> FormattedToolCall:
    calls = args.get("calls") or []
    tools = ", ".join(
        str(c.get("tool")) for c in calls if isinstance(c, dict)
    )
    return FormattedToolCall(icon="#", label="Batch", summary=_trunc(f"{len(calls)} call(s): {tools}", 80))
