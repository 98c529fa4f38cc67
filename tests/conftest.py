from __future__ import annotations

import asyncio
from typing import Any

import pytest

from relay.engine.dispatch import ToolDispatcher
from relay.engine.models import ToolCallRequest, ToolDefinition, ToolParameter, ParamType
from relay.engine.providers.base import (
    FinishEvent,
    FinishReason,
    Provider,
    TextDelta,
    ToolCallEvent,
    UsageEvent,
)
from relay.engine.registry import RegisteredTool, ToolRegistry
from relay.engine.token_budget import ApproxTokenCounter, TokenBudgetGuard
from relay.engine.usage import TokenUsage


class ScriptedProvider(Provider):
    """Replays one pre-built list of stream events per model request."""

    def __init__(self, steps: list[list[Any]] | None = None, completions: list[str] | None = None):
        self.steps = list(steps or [])
        self.completions = list(completions or [])
        self.requests: list[list[dict]] = []
        self.complete_prompts: list[str] = []

    @property
    def name(self) -> str:
        return "scripted"

    async def stream_chat(self, messages, *, system_prompt=None, tools=None, model=None, cancel_token=None):
        self.requests.append(list(messages))
        if not self.steps:
            raise AssertionError("model requested more times than scripted")
        for event in self.steps.pop(0):
            if isinstance(event, BaseException):
                raise event
            if callable(event):
                await event()
                continue
            yield event

    async def complete(self, prompt, *, model=None, system_prompt=None, json_output=False, cancel_token=None):
        self.complete_prompts.append(prompt)
        if not self.completions:
            raise AssertionError("unexpected completion request")
        return self.completions.pop(0)


def tool_step(*calls: tuple[str, str, Any]) -> list[Any]:
    """Events for a response that requests (call_id, tool, input) calls."""
    events: list[Any] = [
        ToolCallEvent(ToolCallRequest(tool_name=name, raw_input=raw, call_id=call_id))
        for call_id, name, raw in calls
    ]
    events.append(UsageEvent(TokenUsage(input_tokens=10, output_tokens=5, total_tokens=15)))
    events.append(FinishEvent(FinishReason.TOOL_CALLS))
    return events


def text_step(text: str) -> list[Any]:
    return [
        TextDelta(text),
        UsageEvent(TokenUsage(input_tokens=20, output_tokens=3, total_tokens=23)),
        FinishEvent(FinishReason.STOP),
    ]


ECHO_DEFINITION = ToolDefinition(
    name="echo",
    description="Return the message unchanged",
    parameters=(ToolParameter("message", ParamType.STRING, "text to echo"),),
)


def echo_tool(delay: float = 0.0) -> RegisteredTool:
    async def _echo(args, ctx):
        if delay:
            await asyncio.sleep(delay)
        return args["message"]
    return RegisteredTool(ECHO_DEFINITION, _echo)


@pytest.fixture
def registry() -> ToolRegistry:
    return ToolRegistry()


@pytest.fixture
def make_dispatcher():
    def _make(registry: ToolRegistry, *, max_tokens: int = 8000, repairer=None, events=None):
        async def _record(event):
            if events is not None:
                events.append(event)
        return ToolDispatcher(
            registry,
            TokenBudgetGuard(max_tokens),
            ApproxTokenCounter(),
            repairer=repairer,
            event_callback=_record,
        )
    return _make
