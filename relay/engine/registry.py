"""Tool registry: name -> definition, executor and guard settings."""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .errors import UnknownToolError
from .models import ProgressEvent, ToolDefinition, ToolSource

if TYPE_CHECKING:
    from .cancellation import CancellationToken
    from .permissions import PreviewFn
    from .token_budget import TruncationPolicy

logger = logging.getLogger(__name__)


@dataclass
class ToolContext:
    """Per-call context handed to every executor."""
    call_id: str
    tool_name: str
    cancel_token: CancellationToken | None = None
    # Relays a progress event to the display; never part of the result.
    emit: Callable[[ProgressEvent], Awaitable[None]] | None = None

    async def progress(self, message: str, **data: Any) -> None:
        if self.emit is not None:
            await self.emit(ProgressEvent(message, data))


# execute(validated_input, ctx) -> value | awaitable | (async) generator
Executor = Callable[[dict[str, Any], ToolContext], Any]


@dataclass
class RegisteredTool:
    definition: ToolDefinition
    executor: Executor = field(repr=False)
    preview: PreviewFn | None = field(default=None, repr=False)
    # Remediation text for the replace-policy diagnostic.
    guidance: str | None = None
    # None means the guard's configured default.
    truncation: TruncationPolicy | None = None

    @property
    def name(self) -> str:
        return self.definition.name


class ToolRegistry:
    """Union of built-in and dynamic tools, rebuildable on rescan."""

    def __init__(self) -> None:
        self._tools: dict[str, RegisteredTool] = {}

    def register(self, tool: RegisteredTool, *, replace: bool = False) -> None:
        name = tool.definition.name
        if name in self._tools and not replace:
            raise ValueError(f"Tool '{name}' is already registered")
        self._tools[name] = tool
        logger.debug("Registered tool %s (source=%s)", name, tool.definition.source.value)

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def remove_source(self, *sources: ToolSource) -> int:
        """Drop every tool from the given sources; returns how many."""
        doomed = [
            name for name, tool in self._tools.items()
            if tool.definition.source in sources
        ]
        for name in doomed:
            del self._tools[name]
        return len(doomed)

    def get(self, name: str) -> RegisteredTool | None:
        return self._tools.get(name)

    def require(self, name: str) -> RegisteredTool:
        try:
            return self._tools[name]
        except KeyError:
            raise UnknownToolError(name) from None

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def names(self) -> list[str]:
        return list(self._tools)

    def tools(self) -> list[RegisteredTool]:
        return list(self._tools.values())

    def definitions(self) -> list[ToolDefinition]:
        return [tool.definition for tool in self._tools.values()]
