"""Remote MCP connections: clients, the per-user client cache, tool calls and discovery."""

from .client import RemoteAuthError, RemoteClient, RemoteToolDefinition
from .discovery import DiscoveredTool, ToolDiscovery
from .invoker import ToolCallResult, ToolInvoker
from .manager import RemoteClientManager

__all__ = [
    "DiscoveredTool",
    "RemoteAuthError",
    "RemoteClient",
    "RemoteClientManager",
    "RemoteToolDefinition",
    "ToolCallResult",
    "ToolDiscovery",
    "ToolInvoker",
]
