"""Model provider abstraction."""
from .base import (
    FinishEvent,
    FinishReason,
    Provider,
    ReasoningDelta,
    StreamEvent,
    TextDelta,
    ToolCallEvent,
    UsageEvent,
)
from .openai_provider import OpenAICompatibleProvider

__all__ = [
    "FinishEvent",
    "FinishReason",
    "Provider",
    "ReasoningDelta",
    "StreamEvent",
    "TextDelta",
    "ToolCallEvent",
    "UsageEvent",
    "OpenAICompatibleProvider",
]
