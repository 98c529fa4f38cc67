"""Permission gate for tools that need approval before running.

The gate owns the process-lifetime "approve all" state. It builds
one approval predicate per gated tool; the orchestrator only ever
sees those predicates, so the loop stays testable without a terminal.
"""
from __future__ import annotations

import difflib
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from .cancellation import CancellationToken, race
from .config import EventCallback, fire_event
from .errors import OperationCancelledError
from .models import ApprovalDecision

if TYPE_CHECKING:
    from .registry import ToolRegistry

logger = logging.getLogger(__name__)


class ApprovalChoice(str, Enum):
    ACCEPT = "accept"
    ACCEPT_ALL = "accept_all"
    REJECT = "reject"


@dataclass(frozen=True)
class CallMetadata:
    call_id: str
    tool_name: str


# predicate(validated_input, call_metadata, cancel_token) -> ApprovalDecision
ApprovalPredicate = Callable[
    [dict[str, Any], CallMetadata, "CancellationToken | None"],
    Awaitable[ApprovalDecision],
]

# prompter(tool_name, summary, preview) -> (choice, rejection reason)
Prompter = Callable[[str, str, "str | None"], Awaitable[tuple[ApprovalChoice, "str | None"]]]

# preview(validated_input) -> text shown before asking (diff, command, ...)
PreviewFn = Callable[[dict[str, Any]], "str | Awaitable[str] | None"]

DEFAULT_REJECTION = "The user rejected this tool call."
CANCELLED_REJECTION = "Approval was cancelled; the tool call was not run."


def unified_diff(path: str, before: str, after: str) -> str:
    """Diff preview for file-mutating tools."""
    return "".join(difflib.unified_diff(
        before.splitlines(keepends=True),
        after.splitlines(keepends=True),
        fromfile=f"a/{path}",
        tofile=f"b/{path}",
    ))


def summarize_input(validated_input: dict[str, Any], limit: int = 500) -> str:
    text = ", ".join(f"{k}={v!r}" for k, v in validated_input.items())
    return text if len(text) <= limit else text[:limit] + "..."


class PermissionGate:
    """Interactive approval with a sticky approve-all option."""

    def __init__(
        self,
        prompter: Prompter | None = None,
        *,
        auto_accept_all: bool = False,
        event_callback: EventCallback | None = None,
    ) -> None:
        self._prompter = prompter
        self._approve_all = auto_accept_all
        self._event_callback = event_callback

    @property
    def approve_all(self) -> bool:
        return self._approve_all

    def enable_approve_all(self) -> None:
        if not self._approve_all:
            logger.info("Approve-all enabled for the rest of this process")
        self._approve_all = True

    async def request(
        self,
        tool_name: str,
        validated_input: dict[str, Any],
        metadata: CallMetadata,
        cancel_token: CancellationToken | None = None,
        preview: str | None = None,
    ) -> ApprovalDecision:
        if self._approve_all:
            return ApprovalDecision.approved()
        if self._prompter is None:
            logger.warning("No approval prompter; rejecting %s", tool_name)
            return ApprovalDecision.rejected(
                f"{tool_name} requires approval and no approver is available."
            )

        await fire_event(self._event_callback, {
            "event": "approval_preview",
            "call_id": metadata.call_id,
            "tool_name": tool_name,
            "preview": preview,
        })
        try:
            choice, reason = await race(
                self._prompter(tool_name, summarize_input(validated_input), preview),
                cancel_token,
                "approval",
            )
        except OperationCancelledError:
            logger.info("Approval for %s aborted by cancellation", tool_name)
            return ApprovalDecision.rejected(CANCELLED_REJECTION)
        except Exception:
            logger.exception("Approval prompt failed for %s; rejecting", tool_name)
            return ApprovalDecision.rejected(DEFAULT_REJECTION)

        logger.info(
            "Approval result call=%s tool=%s choice=%s",
            metadata.call_id, tool_name, choice.value,
        )
        if choice == ApprovalChoice.ACCEPT_ALL:
            self.enable_approve_all()
            return ApprovalDecision.approved()
        if choice == ApprovalChoice.ACCEPT:
            return ApprovalDecision.approved()
        return ApprovalDecision.rejected(reason or DEFAULT_REJECTION)

    def predicate_for(
        self, tool_name: str, preview_fn: PreviewFn | None = None
    ) -> ApprovalPredicate:
        async def _predicate(
            validated_input: dict[str, Any],
            metadata: CallMetadata,
            cancel_token: CancellationToken | None,
        ) -> ApprovalDecision:
            preview = None
            if preview_fn is not None and not self._approve_all:
                try:
                    preview = preview_fn(validated_input)
                    if inspect.isawaitable(preview):
                        preview = await preview
                except Exception:
                    logger.debug("Preview failed for %s", tool_name, exc_info=True)
                    preview = None
            return await self.request(
                tool_name, validated_input, metadata, cancel_token, preview
            )

        return _predicate


def build_approval_predicates(
    registry: ToolRegistry, gate: PermissionGate
) -> dict[str, ApprovalPredicate]:
    """One predicate per tool whose definition needs approval."""
    return {
        tool.definition.name: gate.predicate_for(tool.definition.name, tool.preview)
        for tool in registry.tools()
        if tool.definition.needs_approval
    }
