"""MCP surface: operation registry, dispatcher, stdio transport and lifecycle."""

from querygate.mcp.dispatcher import PROTOCOL_VERSION, Dispatcher
from querygate.mcp.operations import build_default_registry
from querygate.mcp.registry import Operation, OperationRegistry

__all__ = [
    "PROTOCOL_VERSION",
    "Dispatcher",
    "Operation",
    "OperationRegistry",
    "build_default_registry",
]
