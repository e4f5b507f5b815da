"""기본 도구를 등록한 ToolRegistry를 생성하는 팩토리예요."""

from __future__ import annotations

from parley_service.app.tools.documents import CreateDocumentTool, UpdateDocumentTool
from parley_service.app.tools.registry import ToolRegistry


def build_default_tool_registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(CreateDocumentTool())
    registry.register(UpdateDocumentTool())
    return registry
