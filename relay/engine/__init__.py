"""relay engine: the agent loop and its tool dispatch."""
from .models import (
    ApprovalDecision,
    DynamicToolDescriptor,
    LoopResult,
    ParamType,
    ProgressEvent,
    TerminationReason,
    ToolCallRequest,
    ToolCallResult,
    ToolDefinition,
    ToolParameter,
    ToolSource,
    ToolStatus,
)
from .config import EngineConfig
from .cancellation import CancellationToken
from .errors import (
    DynamicToolDescribeError,
    DynamicToolTimeoutError,
    OperationCancelledError,
    ProviderError,
    RelayError,
    TokenBudgetExceededError,
    ToolExecutionError,
    ToolValidationError,
    UnknownToolError,
)

__all__ = [
    # Core loop (lazy import to avoid pulling providers at import time)
    "Orchestrator",
    "AgentSession",
    "ToolDispatcher",
    "ToolRegistry",
    "PermissionGate",
    "TokenBudgetGuard",
    "DynamicToolBridge",
    "load_config",
    # Models
    "ApprovalDecision",
    "DynamicToolDescriptor",
    "LoopResult",
    "ParamType",
    "ProgressEvent",
    "TerminationReason",
    "ToolCallRequest",
    "ToolCallResult",
    "ToolDefinition",
    "ToolParameter",
    "ToolSource",
    "ToolStatus",
    # Config
    "EngineConfig",
    "CancellationToken",
    # Errors
    "DynamicToolDescribeError",
    "DynamicToolTimeoutError",
    "OperationCancelledError",
    "ProviderError",
    "RelayError",
    "TokenBudgetExceededError",
    "ToolExecutionError",
    "ToolValidationError",
    "UnknownToolError",
]


def __getattr__(name: str):
    if name == "Orchestrator":
        from .orchestrator import Orchestrator
        return Orchestrator
    if name == "AgentSession":
        from .session import AgentSession
        return AgentSession
    if name == "ToolDispatcher":
        from .dispatch import ToolDispatcher
        return ToolDispatcher
    if name == "ToolRegistry":
        from .registry import ToolRegistry
        return ToolRegistry
    if name == "PermissionGate":
        from .permissions import PermissionGate
        return PermissionGate
    if name == "TokenBudgetGuard":
        from .token_budget import TokenBudgetGuard
        return TokenBudgetGuard
    if name == "DynamicToolBridge":
        from .tools.dynamic import DynamicToolBridge
        return DynamicToolBridge
    if name == "load_config":
        from .yaml_config import load_config
        return load_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
