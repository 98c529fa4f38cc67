"""The agent loop: stream a response, run the requested tools, repeat.

Each iteration:
  1. stop if the cancellation token fired
  2. stream the model response, relaying text to the display
  3. finish unless the model asked for tool calls
  4. run gated calls one at a time in request order
  5. run ungated calls concurrently
  6. append every result for the iteration to history as one batch

The loop owns the conversation history. Tools never see it.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .cancellation import CancellationToken, race
from .config import EventCallback, fire_event
from .errors import OperationCancelledError, ProviderError
from .history import ConversationHistory
from .models import (
    LoopResult,
    TerminationReason,
    ToolCallRequest,
    ToolCallResult,
    ToolStatus,
)
from .providers.base import (
    FinishEvent,
    FinishReason,
    ReasoningDelta,
    TextDelta,
    ToolCallEvent,
    UsageEvent,
)
from .usage import TokenUsage, UsageTracker

if TYPE_CHECKING:
    from .dispatch import ToolDispatcher
    from .permissions import ApprovalPredicate
    from .providers.base import Provider
    from .registry import ToolRegistry

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 90
CANCELLED_RESULT = "Tool call cancelled before completion."


@dataclass
class _Step:
    text: str = ""
    calls: list[ToolCallRequest] = field(default_factory=list)
    finish: FinishReason = FinishReason.STOP
    usage: TokenUsage = field(default_factory=TokenUsage)


def _crashed_result(call: ToolCallRequest) -> ToolCallResult:
    # dispatch() converts tool failures itself; this covers anything it let through
    return ToolCallResult(
        call.call_id, call.tool_name, ToolStatus.ERROR,
        f"{call.tool_name}: internal dispatch error",
    )


class Orchestrator:
    """Drives one conversation turn to completion."""

    def __init__(
        self,
        provider: Provider,
        registry: ToolRegistry,
        dispatcher: ToolDispatcher,
        *,
        approval_predicates: dict[str, ApprovalPredicate] | None = None,
        usage: UsageTracker | None = None,
        model: str | None = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        event_callback: EventCallback | None = None,
    ) -> None:
        self.provider = provider
        self.registry = registry
        self.dispatcher = dispatcher
        self.approval_predicates = dict(approval_predicates or {})
        self.usage = usage or UsageTracker()
        self.model = model
        self.max_iterations = max_iterations
        self._event_callback = event_callback

    async def _emit(self, event: dict) -> None:
        await fire_event(self._event_callback, event)

    async def run(
        self,
        history: ConversationHistory,
        system_prompt: str | None = None,
        cancel_token: CancellationToken | None = None,
        max_iterations: int | None = None,
    ) -> LoopResult:
        """Run until natural completion, the iteration limit or cancellation.

        Never raises for tool failures; provider failures end the turn
        with ``TerminationReason.PROVIDER_ERROR``.
        """
        token = cancel_token or CancellationToken()
        limit = max_iterations if max_iterations is not None else self.max_iterations
        iterations = 0
        results: list[ToolCallResult] = []
        last_text = ""

        while True:
            if token.cancelled:
                return await self._cancelled(iterations, results, last_text)
            if iterations >= limit:
                logger.warning("Iteration limit %d reached", limit)
                await self._emit({"event": "iteration_limit", "iterations": iterations})
                return self._result(
                    TerminationReason.ITERATION_LIMIT, iterations, results, last_text
                )

            try:
                step = await race(
                    self._stream_step(history, system_prompt, token), token, "model stream"
                )
            except OperationCancelledError:
                return await self._cancelled(iterations, results, last_text)
            except ProviderError as exc:
                logger.error("Model request failed on iteration %d: %s", iterations + 1, exc)
                return await self._provider_failed(str(exc), iterations, results, last_text)
            except Exception as exc:
                logger.exception("Model stream crashed on iteration %d", iterations + 1)
                message = str(exc) or type(exc).__name__
                return await self._provider_failed(message, iterations, results, last_text)

            iterations += 1
            self.usage.record(step.usage)
            await self._emit({"event": "usage", **self.usage.snapshot()})
            if step.text:
                last_text = step.text

            if step.finish != FinishReason.TOOL_CALLS or not step.calls:
                history.append_assistant(step.text)
                await self._emit({"event": "assistant_message", "text": step.text})
                logger.info(
                    "Turn complete after %d iteration(s), finish=%s",
                    iterations, step.finish.value,
                )
                return self._result(
                    TerminationReason.NATURAL_COMPLETION, iterations, results, step.text
                )

            history.append_assistant(step.text, step.calls)
            completed = await self._run_calls(step.calls, token)
            results.extend(completed)

            answered = {r.call_id for r in completed}
            # History stays well-formed: every announced call gets a result.
            missing = [
                ToolCallResult(c.call_id, c.tool_name, ToolStatus.ERROR, CANCELLED_RESULT)
                for c in step.calls if c.call_id not in answered
            ]
            history.append_tool_results(completed + missing)

    async def _stream_step(
        self,
        history: ConversationHistory,
        system_prompt: str | None,
        token: CancellationToken,
    ) -> _Step:
        step = _Step()
        text_parts: list[str] = []
        seen_ids: set[str] = set()
        async for event in self.provider.stream_chat(
            history.to_openai(),
            system_prompt=system_prompt,
            tools=self.registry.definitions(),
            model=self.model,
            cancel_token=token,
        ):
            if isinstance(event, TextDelta):
                text_parts.append(event.text)
                await self._emit({"event": "text_delta", "text": event.text})
            elif isinstance(event, ReasoningDelta):
                await self._emit({"event": "reasoning_delta", "text": event.text})
            elif isinstance(event, ToolCallEvent):
                if event.request.call_id in seen_ids:
                    logger.warning("Dropping duplicate tool call id %s", event.request.call_id)
                    continue
                seen_ids.add(event.request.call_id)
                step.calls.append(event.request)
            elif isinstance(event, UsageEvent):
                step.usage = step.usage + event.usage
            elif isinstance(event, FinishEvent):
                step.finish = event.reason
        step.text = "".join(text_parts)
        return step

    async def _run_calls(
        self, calls: list[ToolCallRequest], token: CancellationToken
    ) -> list[ToolCallResult]:
        """Gated calls in order, then ungated calls concurrently.

        Returns only the calls that completed.
        """
        gated = [c for c in calls if c.tool_name in self.approval_predicates]
        ungated = [c for c in calls if c.tool_name not in self.approval_predicates]
        logger.info(
            "Dispatching %d tool call(s): %d gated, %d ungated",
            len(calls), len(gated), len(ungated),
        )

        completed: list[ToolCallResult] = []
        for call in gated:
            if token.cancelled:
                return completed
            try:
                completed.append(await self.dispatcher.dispatch(
                    call, token, self.approval_predicates[call.tool_name]
                ))
            except OperationCancelledError:
                return completed
            except Exception:
                logger.exception("Dispatch of %s crashed", call.tool_name)
                completed.append(_crashed_result(call))

        if not ungated or token.cancelled:
            return completed

        tasks = {
            asyncio.create_task(self.dispatcher.dispatch(call, token)): call
            for call in ungated
        }
        waiter = asyncio.create_task(token.wait())
        pending: set[asyncio.Task] = set(tasks)
        try:
            while pending:
                done, _ = await asyncio.wait(
                    pending | {waiter}, return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    if task is waiter:
                        continue
                    pending.discard(task)
                    try:
                        completed.append(task.result())
                    except OperationCancelledError:
                        pass
                    except Exception:
                        # dispatch() converts tool failures itself
                        call = tasks[task]
                        logger.exception("Dispatch of %s crashed", call.tool_name)
                        completed.append(_crashed_result(call))
                if waiter in done:
                    break
        finally:
            waiter.cancel()
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        return completed

    async def _cancelled(
        self, iterations: int, results: list[ToolCallResult], last_text: str
    ) -> LoopResult:
        logger.info("Turn cancelled after %d iteration(s)", iterations)
        await self._emit({"event": "turn_cancelled", "iterations": iterations})
        return self._result(TerminationReason.CANCELLED, iterations, results, last_text)

    async def _provider_failed(
        self, error: str, iterations: int, results: list[ToolCallResult], last_text: str
    ) -> LoopResult:
        await self._emit({"event": "provider_error", "error": error})
        result = self._result(TerminationReason.PROVIDER_ERROR, iterations, results, last_text)
        result.error = error
        return result

    def _result(
        self,
        reason: TerminationReason,
        iterations: int,
        results: list[ToolCallResult],
        final_text: str,
    ) -> LoopResult:
        return LoopResult(
            reason=reason,
            iterations=iterations,
            results=list(results),
            final_text=final_text,
            usage=self.usage.cumulative,
            step_usage=self.usage.step,
        )
