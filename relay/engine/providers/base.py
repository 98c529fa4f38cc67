"""Abstract base for model providers.

A provider turns conversation history into a stream of events:
text and reasoning deltas, fully assembled tool-call requests, a
usage report and exactly one finish event. The orchestrator only
ever talks to this interface.
"""
from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator, Union

from ..models import ToolCallRequest, ToolDefinition
from ..usage import TokenUsage

if TYPE_CHECKING:
    from ..cancellation import CancellationToken

logger = logging.getLogger(__name__)


class FinishReason(str, Enum):
    STOP = "stop"
    TOOL_CALLS = "tool_calls"
    LENGTH = "length"
    ERROR = "error"

    @classmethod
    def parse(cls, raw: str | None) -> FinishReason:
        if raw in ("tool_calls", "function_call"):
            return cls.TOOL_CALLS
        if raw == "length":
            return cls.LENGTH
        if raw in ("error", "content_filter"):
            return cls.ERROR
        return cls.STOP


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ReasoningDelta:
    text: str


@dataclass(frozen=True)
class ToolCallEvent:
    request: ToolCallRequest


@dataclass(frozen=True)
class UsageEvent:
    usage: TokenUsage


@dataclass(frozen=True)
class FinishEvent:
    reason: FinishReason
    metadata: dict[str, Any] = field(default_factory=dict)


StreamEvent = Union[TextDelta, ReasoningDelta, ToolCallEvent, UsageEvent, FinishEvent]


class Provider(abc.ABC):
    """Abstract provider interface.

    Implementations wrap a specific model API:
    - OpenAICompatibleProvider: any /chat/completions SSE endpoint
    """

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short provider name (e.g. 'openai')."""

    @abc.abstractmethod
    def stream_chat(
        self,
        messages: list[dict[str, Any]],
        *,
        system_prompt: str | None = None,
        tools: list[ToolDefinition] | None = None,
        model: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream one model response.

        Must end with a FinishEvent. Raises ProviderError when the
        stream cannot be obtained.
        """

    @abc.abstractmethod
    async def complete(
        self,
        prompt: str,
        *,
        model: str | None = None,
        system_prompt: str | None = None,
        json_output: bool = False,
        cancel_token: CancellationToken | None = None,
    ) -> str:
        """Single non-streamed completion (used for tool-call repair)."""

    async def shutdown(self) -> None:
        """Release network resources. Default: no-op."""
