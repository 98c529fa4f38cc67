"""Built-in, batch and dynamic tools."""
from .batch import BATCH_TOOL_NAME, BatchTool
from .builtin import BuiltinTools, PathPolicy, register_builtin_tools
from .dynamic import TOOL_PREFIX, DynamicToolBridge, parse_descriptor

__all__ = [
    "BATCH_TOOL_NAME",
    "BatchTool",
    "BuiltinTools",
    "PathPolicy",
    "register_builtin_tools",
    "TOOL_PREFIX",
    "DynamicToolBridge",
    "parse_descriptor",
]
