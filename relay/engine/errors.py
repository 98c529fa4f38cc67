"""Exception hierarchy for the agent engine.

Tool-level exceptions never escape the orchestrator loop: the
dispatcher converts them into error results the model can read.
Only ProviderError ends a turn early.
"""
from __future__ import annotations


class RelayError(Exception):
    """Base exception for all engine errors."""


class UnknownToolError(RelayError):
    """The model asked for a tool that is not in the registry."""
    def __init__(self, tool_name: str):
        self.tool_name = tool_name
        super().__init__(f"Unknown tool '{tool_name}'")


class ToolValidationError(RelayError):
    """Tool input does not satisfy the tool's declared contract."""
    def __init__(self, tool_name: str, errors: list[str]):
        self.tool_name = tool_name
        self.errors = list(errors)
        super().__init__(
            f"Invalid input for tool '{tool_name}': " + "; ".join(self.errors)
        )


class ToolExecutionError(RelayError):
    """An executor or a spawned tool process failed."""
    def __init__(self, tool_name: str, reason: str):
        self.tool_name = tool_name
        self.reason = reason
        super().__init__(reason)


class DynamicToolTimeoutError(ToolExecutionError):
    """A dynamic tool process exceeded its hard execution timeout."""
    def __init__(self, tool_name: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            tool_name,
            f"Execution timed out after {timeout_seconds:g} seconds",
        )


class DynamicToolDescribeError(RelayError):
    """A dynamic tool candidate could not be described."""
    def __init__(self, script_path: str, reason: str):
        self.script_path = script_path
        self.reason = reason
        super().__init__(f"Cannot describe dynamic tool {script_path}: {reason}")


class TokenBudgetExceededError(RelayError):
    """Tool output is over the per-call token ceiling (raise policy only)."""
    def __init__(self, tool_name: str, token_count: int, max_tokens: int):
        self.tool_name = tool_name
        self.token_count = token_count
        self.max_tokens = max_tokens
        super().__init__(
            f"{tool_name}: output of {token_count} tokens exceeds "
            f"the limit of {max_tokens}"
        )


class ProviderError(RelayError):
    """The model stream could not be obtained or broke mid-turn."""
    def __init__(self, reason: str, status: int | None = None):
        self.reason = reason
        self.status = status
        prefix = f"HTTP {status}: " if status is not None else ""
        super().__init__(f"Provider error: {prefix}{reason}")


class OperationCancelledError(RelayError):
    """Work was abandoned because the cancellation token fired."""
    def __init__(self, what: str = "operation"):
        self.what = what
        super().__init__(f"{what} cancelled")
