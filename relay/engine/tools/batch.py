"""The ``batch`` tool: several tool calls in one request, run in order."""
from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, AsyncIterator

from ..models import (
    ParamType,
    ProgressEvent,
    ToolCallRequest,
    ToolDefinition,
    ToolParameter,
)
from ..registry import RegisteredTool, ToolContext

if TYPE_CHECKING:
    from ..dispatch import ToolDispatcher
    from ..permissions import ApprovalPredicate

logger = logging.getLogger(__name__)

BATCH_TOOL_NAME = "batch"
MAX_BATCH_CALLS = 10

BATCH_DEFINITION = ToolDefinition(
    name=BATCH_TOOL_NAME,
    description=(
        "Execute up to 10 tool calls in a single request. Calls run one "
        "after another in the given order; each gets its own result. Use it "
        "for independent operations such as reading several files."
    ),
    parameters=(
        ToolParameter(
            name="calls",
            type=ParamType.ARRAY,
            description=(
                "List of {tool, arguments, id?} objects. 'tool' is the tool "
                "name, 'arguments' its input object, 'id' an optional label "
                "echoed back in the result."
            ),
            min_items=1,
            max_items=MAX_BATCH_CALLS,
        ),
    ),
)


class BatchTool:
    """Runs each entry through the same dispatcher as top-level calls.

    Targets that need approval still go through their predicate.
    """

    def __init__(self, dispatcher: ToolDispatcher) -> None:
        self.dispatcher = dispatcher
        self.approval_predicates: dict[str, ApprovalPredicate] = {}

    def registered(self) -> RegisteredTool:
        return RegisteredTool(
            definition=BATCH_DEFINITION,
            executor=self.execute,
            guidance="Consider reducing the number of calls or using more specific tool calls",
        )

    async def execute(self, validated: dict[str, Any], ctx: ToolContext) -> AsyncIterator[Any]:
        calls = validated["calls"]
        results: list[dict[str, Any]] = []
        for index, item in enumerate(calls):
            entry_id = item.get("id") if isinstance(item, dict) else None
            tool_name = item.get("tool") if isinstance(item, dict) else None
            record: dict[str, Any] = {"tool": tool_name}
            if entry_id is not None:
                record["id"] = entry_id

            problem = self._check_entry(item)
            if problem:
                record.update(status="error", error=problem)
                results.append(record)
                continue

            yield ProgressEvent(
                f"batch {index + 1}/{len(calls)}: {tool_name}",
                {"index": index, "tool": tool_name},
            )
            request = ToolCallRequest(
                tool_name=tool_name,
                raw_input=item.get("arguments") or {},
                call_id=f"{ctx.call_id}-{index}",
            )
            result = await self.dispatcher.dispatch(
                request, ctx.cancel_token, self.approval_predicates.get(tool_name)
            )
            if result.is_error:
                record.update(status="error", error=result.content)
            else:
                record.update(status="success", result=result.content)
            results.append(record)

        failed = sum(1 for r in results if r["status"] == "error")
        logger.info("Batch %s finished: %d call(s), %d failed", ctx.call_id, len(results), failed)
        yield json.dumps(results, ensure_ascii=False)

    @staticmethod
    def _check_entry(item: Any) -> str | None:
        if not isinstance(item, dict):
            return "Each batch entry must be an object with 'tool' and 'arguments'"
        tool_name = item.get("tool")
        if not isinstance(tool_name, str) or not tool_name:
            return "Batch entry is missing 'tool'"
        if tool_name == BATCH_TOOL_NAME:
            return "The batch tool cannot call itself"
        arguments = item.get("arguments", {})
        if arguments is not None and not isinstance(arguments, (dict, str)):
            return "'arguments' must be an object"
        if "id" in item and not isinstance(item["id"], str):
            return "'id' must be a string"
        return None
