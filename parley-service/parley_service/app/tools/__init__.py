from parley_service.app.tools.base import BaseTool, ToolContext, ToolResult
from parley_service.app.tools.invoker import InvocationState, ToolInvocationEngine
from parley_service.app.tools.registry import ToolRegistry

__all__ = [
    "BaseTool",
    "InvocationState",
    "ToolContext",
    "ToolInvocationEngine",
    "ToolRegistry",
    "ToolResult",
]
