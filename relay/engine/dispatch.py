"""Per-call tool dispatch: lookup, validate, repair, gate, execute, guard.

Every failure except cancellation becomes an error ToolCallResult
here, so nothing a tool does can abort the orchestrator loop.
"""
from __future__ import annotations

import inspect
import json
import logging
import time
from typing import TYPE_CHECKING, Any

from .cancellation import race
from .config import EventCallback, fire_event
from .errors import (
    OperationCancelledError,
    TokenBudgetExceededError,
    ToolExecutionError,
    ToolValidationError,
    UnknownToolError,
)
from .models import ProgressEvent, ToolCallRequest, ToolCallResult, ToolStatus
from .permissions import ApprovalPredicate, CallMetadata
from .registry import RegisteredTool, ToolContext, ToolRegistry
from .token_budget import TokenBudgetGuard, TokenCounter, limit_message
from .validation import validate_input

if TYPE_CHECKING:
    from .cancellation import CancellationToken
    from .repair import ToolCallRepairer

logger = logging.getLogger(__name__)


def format_output(value: Any) -> str:
    """Render an executor's final value as result text."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def error_result(request: ToolCallRequest, message: str) -> ToolCallResult:
    return ToolCallResult(
        call_id=request.call_id,
        tool_name=request.tool_name,
        status=ToolStatus.ERROR,
        content=f"{request.tool_name}: {message}",
    )


async def run_executor(tool: RegisteredTool, validated: dict[str, Any], ctx: ToolContext) -> Any:
    """Invoke an executor and drain any progress events it yields.

    Only the last non-progress value (or a sync generator's return
    value) is the result.
    """
    outcome = tool.executor(validated, ctx)
    if inspect.isawaitable(outcome):
        return await outcome

    if inspect.isasyncgen(outcome):
        final = None
        async for item in outcome:
            if isinstance(item, ProgressEvent):
                await ctx.progress(item.message, **item.data)
            else:
                final = item
        return final

    if inspect.isgenerator(outcome):
        final = None
        while True:
            try:
                item = next(outcome)
            except StopIteration as stop:
                if stop.value is not None:
                    final = stop.value
                return final
            if isinstance(item, ProgressEvent):
                await ctx.progress(item.message, **item.data)
            else:
                final = item

    return outcome


class ToolDispatcher:
    """Runs single tool calls against a registry."""

    def __init__(
        self,
        registry: ToolRegistry,
        guard: TokenBudgetGuard,
        counter: TokenCounter,
        *,
        repairer: ToolCallRepairer | None = None,
        event_callback: EventCallback | None = None,
    ) -> None:
        self.registry = registry
        self.guard = guard
        self.counter = counter
        self.repairer = repairer
        self._event_callback = event_callback

    async def _emit(self, event: dict[str, Any]) -> None:
        await fire_event(self._event_callback, event)

    async def _validate(
        self,
        request: ToolCallRequest,
        tool: RegisteredTool,
        cancel_token: CancellationToken | None,
    ) -> dict[str, Any]:
        definition = tool.definition
        try:
            return validate_input(definition.name, definition.parameters, request.raw_input)
        except ToolValidationError as exc:
            if self.repairer is None:
                raise
            return await self.repairer.repair(request, definition, exc, cancel_token)

    async def dispatch(
        self,
        request: ToolCallRequest,
        cancel_token: CancellationToken | None = None,
        predicate: ApprovalPredicate | None = None,
    ) -> ToolCallResult:
        """Run one call. Raises only OperationCancelledError."""
        started = time.monotonic()
        await self._emit({
            "event": "tool_call_start",
            "call_id": request.call_id,
            "tool_name": request.tool_name,
            "input": request.raw_input,
        })
        try:
            result = await self._dispatch(request, cancel_token, predicate)
        except OperationCancelledError:
            logger.info("Tool call cancelled call=%s tool=%s", request.call_id, request.tool_name)
            raise
        elapsed = time.monotonic() - started
        logger.info(
            "Tool call finished call=%s tool=%s status=%s duration=%.2fs",
            request.call_id, request.tool_name, result.status.value, elapsed,
        )
        await self._emit({
            "event": "tool_call_end",
            "call_id": request.call_id,
            "tool_name": request.tool_name,
            "is_error": result.is_error,
            "content": result.content,
            "duration_seconds": elapsed,
        })
        return result

    async def _dispatch(
        self,
        request: ToolCallRequest,
        cancel_token: CancellationToken | None,
        predicate: ApprovalPredicate | None,
    ) -> ToolCallResult:
        try:
            tool = self.registry.require(request.tool_name)
        except UnknownToolError as exc:
            logger.warning("Model requested unknown tool %s", request.tool_name)
            return error_result(request, str(exc))

        try:
            validated = await self._validate(request, tool, cancel_token)
        except ToolValidationError as exc:
            return error_result(request, str(exc))

        if predicate is not None:
            try:
                decision = await predicate(
                    validated, CallMetadata(request.call_id, request.tool_name), cancel_token
                )
            except OperationCancelledError:
                raise
            except Exception as exc:
                # An approval that cannot be obtained is a rejection.
                logger.exception("Approval check for %s failed", request.tool_name)
                return error_result(request, f"approval failed: {exc}")
            if not decision.approve:
                logger.info("Tool call rejected call=%s tool=%s", request.call_id, request.tool_name)
                return ToolCallResult(
                    request.call_id, request.tool_name, ToolStatus.SUCCESS, decision.reason
                )

        async def _emit_progress(event: ProgressEvent) -> None:
            await self._emit({
                "event": "tool_progress",
                "call_id": request.call_id,
                "tool_name": request.tool_name,
                "message": event.message,
                "data": event.data,
            })

        ctx = ToolContext(request.call_id, request.tool_name, cancel_token, _emit_progress)
        try:
            value = await race(
                run_executor(tool, validated, ctx), cancel_token, request.tool_name
            )
        except OperationCancelledError:
            raise
        except ToolExecutionError as exc:
            logger.warning("Tool %s failed: %s", request.tool_name, exc)
            return error_result(request, str(exc))
        except ToolValidationError as exc:
            return error_result(request, str(exc))
        except Exception as exc:
            logger.exception("Tool %s raised", request.tool_name)
            return error_result(request, f"{type(exc).__name__}: {exc}")

        text = format_output(value)
        try:
            guarded = self.guard.guard(
                text, self.counter, request.tool_name, tool.guidance, policy=tool.truncation
            )
        except TokenBudgetExceededError as exc:
            # Soft message before it reaches the model.
            return ToolCallResult(
                request.call_id, request.tool_name, ToolStatus.SUCCESS,
                limit_message(exc.tool_name, exc.token_count, exc.max_tokens, tool.guidance),
            )
        return ToolCallResult(
            request.call_id, request.tool_name, ToolStatus.SUCCESS, guarded.content
        )
