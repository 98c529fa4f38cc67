"""Append-only conversation history owned by the orchestrator loop."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator

from .models import ToolCallRequest, ToolCallResult


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True)
class Message:
    role: Role
    content: str = ""
    tool_calls: tuple[ToolCallRequest, ...] = ()
    # Set on TOOL messages only.
    result: ToolCallResult | None = None

    def to_openai(self) -> dict[str, Any]:
        if self.role == Role.TOOL and self.result is not None:
            return {
                "role": "tool",
                "tool_call_id": self.result.call_id,
                "content": self.result.content,
            }
        message: dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.tool_calls:
            message["content"] = self.content or None
            message["tool_calls"] = [
                {
                    "id": call.call_id,
                    "type": "function",
                    "function": {
                        "name": call.tool_name,
                        "arguments": (
                            call.raw_input if isinstance(call.raw_input, str)
                            else json.dumps(call.raw_input)
                        ),
                    },
                }
                for call in self.tool_calls
            ]
        return message


@dataclass
class ConversationHistory:
    """Ordered user/assistant/tool entries.

    Only ever appended to. Readers get a tuple snapshot so nothing
    outside the loop can edit entries in place.
    """
    _messages: list[Message] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(tuple(self._messages))

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def append_user(self, text: str) -> None:
        self._messages.append(Message(Role.USER, text))

    def append_assistant(
        self,
        text: str,
        tool_calls: list[ToolCallRequest] | None = None,
    ) -> None:
        self._messages.append(
            Message(Role.ASSISTANT, text, tuple(tool_calls or ()))
        )

    def append_tool_results(self, results: list[ToolCallResult]) -> None:
        """Append one iteration's results as a single batch.

        Every result must answer a call announced by the latest
        assistant message, exactly once.
        """
        pending = self.pending_call_ids()
        seen: set[str] = set()
        for result in results:
            if result.call_id not in pending or result.call_id in seen:
                raise ValueError(
                    f"Tool result {result.call_id} does not match a pending call"
                )
            seen.add(result.call_id)
        self._messages.extend(
            Message(Role.TOOL, result.content, result=result) for result in results
        )

    def pending_call_ids(self) -> set[str]:
        """Call ids of the latest assistant message not yet answered."""
        for index in range(len(self._messages) - 1, -1, -1):
            message = self._messages[index]
            if message.role == Role.ASSISTANT:
                answered = {
                    m.result.call_id
                    for m in self._messages[index + 1:]
                    if m.result is not None
                }
                return {c.call_id for c in message.tool_calls} - answered
        return set()

    def to_openai(self) -> list[dict[str, Any]]:
        return [message.to_openai() for message in self._messages]

    def clear(self) -> None:
        """Start a new conversation."""
        self._messages = []
