"""Core data models for the agent engine.

All dataclasses, enums, and type aliases shared by the orchestrator,
the dispatcher and the tool implementations. Kept dependency-free so
every other engine module can import from here without cycles.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


class ParamType(str, Enum):
    """Primitive types a tool parameter may declare."""
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    # Built-in tools only; dynamic tools are limited to the three above.
    ARRAY = "array"
    OBJECT = "object"


DYNAMIC_PARAM_TYPES = frozenset(
    {ParamType.STRING, ParamType.NUMBER, ParamType.BOOLEAN}
)


class ToolStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


class ToolSource(str, Enum):
    """Where a tool definition came from."""
    BUILTIN = "builtin"
    USER = "user"
    PROJECT = "project"


class TerminationReason(str, Enum):
    """Why the orchestrator loop stopped."""
    NATURAL_COMPLETION = "natural_completion"
    ITERATION_LIMIT = "iteration_limit"
    CANCELLED = "cancelled"
    PROVIDER_ERROR = "provider_error"


def _make_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


@dataclass(frozen=True)
class ToolParameter:
    """One entry of a tool's declarative input contract."""
    name: str
    type: ParamType
    description: str = ""
    required: bool = True
    default: Any = None
    # Only meaningful for ARRAY parameters.
    min_items: int | None = None
    max_items: int | None = None

    def to_json_schema(self) -> dict[str, Any]:
        schema: dict[str, Any] = {"type": self.type.value}
        if self.description:
            schema["description"] = self.description
        if self.default is not None:
            schema["default"] = self.default
        if self.type == ParamType.ARRAY:
            schema["items"] = {}
            if self.min_items is not None:
                schema["minItems"] = self.min_items
            if self.max_items is not None:
                schema["maxItems"] = self.max_items
        return schema


@dataclass(frozen=True)
class ToolDefinition:
    """Immutable description of a tool as the model sees it."""
    name: str
    description: str
    parameters: tuple[ToolParameter, ...] = ()
    needs_approval: bool = False
    source: ToolSource = ToolSource.BUILTIN

    def parameter(self, name: str) -> ToolParameter | None:
        for param in self.parameters:
            if param.name == name:
                return param
        return None

    def to_json_schema(self) -> dict[str, Any]:
        """JSON schema of the input object (used for repair prompts too)."""
        return {
            "type": "object",
            "properties": {
                p.name: p.to_json_schema() for p in self.parameters
            },
            "required": [p.name for p in self.parameters if p.required],
            "additionalProperties": False,
        }

    def to_openai_schema(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.to_json_schema(),
            },
        }


@dataclass
class ToolCallRequest:
    """A tool invocation requested by the model within one iteration.

    ``raw_input`` is whatever the provider produced: normally a dict,
    but a raw string when the model emitted arguments that did not
    parse as JSON.
    """
    tool_name: str
    raw_input: dict[str, Any] | str = field(default_factory=dict)
    call_id: str = field(default_factory=_make_id)


@dataclass(frozen=True)
class ToolCallResult:
    call_id: str
    tool_name: str
    status: ToolStatus
    content: str

    @property
    def is_error(self) -> bool:
        return self.status == ToolStatus.ERROR


@dataclass(frozen=True)
class ApprovalDecision:
    """Outcome of a permission check. A rejection always carries a reason."""
    approve: bool
    reason: str = ""

    def __post_init__(self) -> None:
        if not self.approve and not self.reason:
            raise ValueError("A rejected ApprovalDecision requires a reason")

    @classmethod
    def approved(cls) -> ApprovalDecision:
        return cls(approve=True)

    @classmethod
    def rejected(cls, reason: str) -> ApprovalDecision:
        return cls(approve=False, reason=reason)


@dataclass(frozen=True)
class DynamicToolDescriptor:
    """A tool backed by an external script, as reported by its describe phase."""
    name: str
    description: str
    parameters: tuple[ToolParameter, ...]
    needs_approval: bool
    script_path: Path
    source: ToolSource


@dataclass(frozen=True)
class ProgressEvent:
    """Intermediate status emitted by a streaming executor.

    Relayed to the display only; never becomes part of a tool result.
    """
    message: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class LoopResult:
    """What the orchestrator returns once a turn ends."""
    reason: TerminationReason
    iterations: int
    results: list[ToolCallResult] = field(default_factory=list)
    final_text: str = ""
    usage: Any = None  # TokenUsage, cumulative
    step_usage: Any = None  # TokenUsage of the last iteration
    error: str | None = None

    @property
    def cancelled(self) -> bool:
        return self.reason == TerminationReason.CANCELLED
