"""Terminal rendering of engine events and interactive approval."""
from __future__ import annotations

import asyncio
import logging
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.prompt import Prompt
from rich.syntax import Syntax

from relay.engine.permissions import ApprovalChoice
from relay.shared.formatters import format_tool_call

logger = logging.getLogger(__name__)

_RESULT_PREVIEW_CHARS = 300


class ConsoleRenderer:
    """Async event callback that prints engine events with rich."""

    def __init__(self, console: Console | None = None, *, show_reasoning: bool = False):
        self.console = console or Console()
        self.show_reasoning = show_reasoning
        self._streaming = False

    def _end_stream(self) -> None:
        if self._streaming:
            self.console.print()
            self._streaming = False

    async def __call__(self, event: dict[str, Any]) -> None:
        kind = event.get("event")
        if kind == "text_delta":
            self.console.print(event["text"], end="", markup=False, highlight=False)
            self._streaming = True
        elif kind == "reasoning_delta":
            if self.show_reasoning:
                self.console.print(escape(event["text"]), end="", style="dim italic")
                self._streaming = True
        elif kind == "tool_call_start":
            self._end_stream()
            fmt = format_tool_call(event["tool_name"], event.get("input"))
            self.console.print(
                f"[cyan]{escape(fmt.icon)} {escape(fmt.label)}[/cyan] {escape(fmt.summary)}"
            )
        elif kind == "tool_progress":
            self.console.print(f"  [dim]{escape(event['message'])}[/dim]")
        elif kind == "tool_call_end":
            if event.get("is_error"):
                text = event.get("content", "")[:_RESULT_PREVIEW_CHARS]
                self.console.print(f"  [red]{escape(text)}[/red]")
            else:
                self.console.print(
                    f"  [green]done[/green] [dim]({event.get('duration_seconds', 0):.1f}s)[/dim]"
                )
        elif kind == "approval_preview":
            self._end_stream()
            preview = event.get("preview")
            if preview:
                lexer = "diff" if preview.startswith(("---", "@@")) else "bash"
                self.console.print(Syntax(preview, lexer, theme="ansi_dark", word_wrap=True))
        elif kind == "assistant_message":
            self._end_stream()
        elif kind == "turn_cancelled":
            self._end_stream()
            self.console.print("[yellow]Turn cancelled.[/yellow]")
        elif kind == "iteration_limit":
            self._end_stream()
            self.console.print(
                f"[dim]Stopped after {event.get('iterations')} iterations (limit reached).[/dim]"
            )
        elif kind == "provider_error":
            self._end_stream()
            self.console.print(f"[red]Model request failed:[/red] {escape(event.get('error', ''))}")

    def print_usage(self, snapshot: dict[str, Any]) -> None:
        cumulative = snapshot["cumulative"]
        line = (
            f"tokens in={cumulative['inputTokens']} out={cumulative['outputTokens']} "
            f"cached={cumulative['cachedInputTokens']} reasoning={cumulative['reasoningTokens']}"
        )
        if snapshot.get("totalCost"):
            line += f" cost=${snapshot['totalCost']:.4f}"
        self.console.print(f"[dim]{line}[/dim]")


class ConsolePrompter:
    """Approval prompt: accept, accept all, or reject with a reason.

    The blocking prompt runs in a worker thread so the event loop,
    and the cancellation token, stay live while the user decides.
    """

    _CHOICES = {"y": ApprovalChoice.ACCEPT, "a": ApprovalChoice.ACCEPT_ALL, "n": ApprovalChoice.REJECT}

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def _ask(self, tool_name: str, summary: str) -> tuple[ApprovalChoice, str | None]:
        self.console.print(f"[bold]{escape(tool_name)}[/bold] {escape(summary)}")
        answer = Prompt.ask(
            "Run this tool? [y]es / [a]ccept all / [n]o",
            choices=list(self._CHOICES),
            default="y",
            console=self.console,
        )
        choice = self._CHOICES[answer]
        reason = None
        if choice == ApprovalChoice.REJECT:
            reason = Prompt.ask("Feedback", default="", console=self.console).strip() or None
        return choice, reason

    async def __call__(
        self, tool_name: str, summary: str, preview: str | None
    ) -> tuple[ApprovalChoice, str | None]:
        return await asyncio.to_thread(self._ask, tool_name, summary)
