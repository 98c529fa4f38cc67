"""OpenAI-compatible /chat/completions provider over aiohttp.

Works against any endpoint speaking the OpenAI streaming protocol
(OpenAI, OpenRouter, vLLM, Ollama's /v1, ...). Tool-call arguments
arrive as fragments keyed by index and are assembled here.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator

import aiohttp

from ..errors import ProviderError
from ..models import ToolCallRequest, ToolDefinition
from ..usage import TokenUsage
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

if TYPE_CHECKING:
    from ..cancellation import CancellationToken

logger = logging.getLogger(__name__)

RETRY_STATUSES = frozenset({429, 500, 502, 503, 504})
MAX_RETRIES = 2


@dataclass
class _PartialCall:
    call_id: str = ""
    name: str = ""
    arguments: list[str] = field(default_factory=list)

    def build(self, index: int) -> ToolCallRequest:
        raw = "".join(self.arguments)
        try:
            parsed: dict[str, Any] | str = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError:
            # Keep the raw text for tool-call repair.
            parsed = raw
        if not isinstance(parsed, (dict, str)):
            parsed = raw
        return ToolCallRequest(
            tool_name=self.name,
            raw_input=parsed,
            call_id=self.call_id or f"call_{index}",
        )


class StreamAssembler:
    """Turns decoded SSE chunks into stream events."""

    def __init__(self) -> None:
        self._calls: dict[int, _PartialCall] = {}
        self._finish: str | None = None
        self._usage: TokenUsage | None = None

    def feed(self, chunk: dict[str, Any]) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        if chunk.get("error"):
            raise ProviderError(str(chunk["error"]))
        if chunk.get("usage"):
            self._usage = TokenUsage.from_openai(chunk["usage"])
        for choice in chunk.get("choices") or []:
            delta = choice.get("delta") or {}
            if delta.get("content"):
                events.append(TextDelta(delta["content"]))
            reasoning = delta.get("reasoning_content") or delta.get("reasoning")
            if reasoning:
                events.append(ReasoningDelta(reasoning))
            for fragment in delta.get("tool_calls") or []:
                partial = self._calls.setdefault(fragment.get("index", 0), _PartialCall())
                if fragment.get("id"):
                    partial.call_id = fragment["id"]
                function = fragment.get("function") or {}
                if function.get("name"):
                    partial.name += function["name"]
                if function.get("arguments"):
                    partial.arguments.append(function["arguments"])
            if choice.get("finish_reason"):
                self._finish = choice["finish_reason"]
        return events

    def finish(self) -> list[StreamEvent]:
        events: list[StreamEvent] = [
            ToolCallEvent(self._calls[index].build(index))
            for index in sorted(self._calls)
        ]
        if self._usage is not None:
            events.append(UsageEvent(self._usage))
        reason = FinishReason.parse(self._finish)
        # Some servers report "stop" even when tool calls were emitted.
        if self._calls and reason == FinishReason.STOP:
            reason = FinishReason.TOOL_CALLS
        events.append(FinishEvent(reason, {"raw_finish_reason": self._finish}))
        return events


def _system_first(messages: list[dict[str, Any]], system_prompt: str | None) -> list[dict[str, Any]]:
    if not system_prompt:
        return list(messages)
    return [{"role": "system", "content": system_prompt}, *messages]


class OpenAICompatibleProvider(Provider):
    """Streams chat completions from an OpenAI-compatible endpoint."""

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        api_key: str | None = None,
        api_key_env: str = "OPENAI_API_KEY",
        timeout_seconds: float = 600.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._api_key = api_key if api_key is not None else os.getenv(api_key_env, "")
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds, sock_read=timeout_seconds)
        self._session: aiohttp.ClientSession | None = None

    @property
    def name(self) -> str:
        return "openai"

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def _post(self, payload: dict[str, Any]) -> aiohttp.ClientResponse:
        """POST with retries on rate limits and transient server errors."""
        url = f"{self.base_url}/chat/completions"
        for attempt in range(MAX_RETRIES + 1):
            try:
                response = await self._get_session().post(
                    url, json=payload, headers=self._headers()
                )
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                reason = str(exc) or "request timed out"
                if attempt < MAX_RETRIES:
                    logger.warning("Request to %s failed (%s), retrying", url, reason)
                    await asyncio.sleep(2 ** attempt)
                    continue
                raise ProviderError(reason) from exc
            if response.status < 400:
                return response
            try:
                body = await response.text()
            except (aiohttp.ClientError, asyncio.TimeoutError):
                body = ""
            finally:
                response.release()
            if response.status in RETRY_STATUSES and attempt < MAX_RETRIES:
                logger.warning(
                    "Provider returned HTTP %d, retrying (%d/%d)",
                    response.status, attempt + 1, MAX_RETRIES,
                )
                await asyncio.sleep(2 ** attempt)
                continue
            raise ProviderError(body[:500] or response.reason or "request failed", response.status)
        raise ProviderError("retries exhausted")

    async def stream_chat(
        self,
        messages: list[dict[str, Any]],
        *,
        system_prompt: str | None = None,
        tools: list[ToolDefinition] | None = None,
        model: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[StreamEvent]:
        payload: dict[str, Any] = {
            "model": model or self.model,
            "messages": _system_first(messages, system_prompt),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if tools:
            payload["tools"] = [tool.to_openai_schema() for tool in tools]
        logger.debug(
            "stream_chat model=%s messages=%d tools=%d",
            payload["model"], len(messages), len(tools or []),
        )
        response = await self._post(payload)
        assembler = StreamAssembler()
        try:
            async for raw_line in response.content:
                if cancel_token is not None and cancel_token.cancelled:
                    return
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line.startswith("data:"):
                    continue
                data = line[5:].strip()
                if data == "[DONE]":
                    break
                try:
                    chunk = json.loads(data)
                except json.JSONDecodeError:
                    logger.debug("Skipping undecodable SSE line: %s", data[:200])
                    continue
                for event in assembler.feed(chunk):
                    yield event
        except aiohttp.ClientError as exc:
            raise ProviderError(f"stream interrupted: {exc}") from exc
        except asyncio.TimeoutError as exc:
            raise ProviderError("stream timed out") from exc
        finally:
            response.release()
        for event in assembler.finish():
            yield event

    async def complete(
        self,
        prompt: str,
        *,
        model: str | None = None,
        system_prompt: str | None = None,
        json_output: bool = False,
        cancel_token: CancellationToken | None = None,
    ) -> str:
        payload: dict[str, Any] = {
            "model": model or self.model,
            "messages": _system_first([{"role": "user", "content": prompt}], system_prompt),
        }
        if json_output:
            payload["response_format"] = {"type": "json_object"}
        response = await self._post(payload)
        try:
            body = await response.json()
        except (aiohttp.ContentTypeError, json.JSONDecodeError) as exc:
            raise ProviderError(f"invalid completion response: {exc}") from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ProviderError(str(exc) or "completion timed out") from exc
        finally:
            response.release()
        try:
            return body["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError(f"unexpected completion payload: {exc}") from exc

    async def shutdown(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
