"""도구를 이름으로 등록하고 조회하는 레지스트리예요."""

from __future__ import annotations

from collections.abc import Iterable

from parley_service.app.providers.base import ToolSpec
from parley_service.app.tools.base import BaseTool


class ToolRegistry:
    """이름 → 도구 매핑이에요.

    사용법::

        registry = ToolRegistry()
        registry.register(CreateDocumentTool())

        # 턴에서 허용한 도구만 추려요
        turn_tools = registry.subset(["createDocument"])
        specs = turn_tools.to_provider_specs()
    """

    def __init__(self) -> None:
        self._tools: dict[str, BaseTool] = {}

    def register(self, tool: BaseTool) -> None:
        """도구를 등록해요. 같은 이름이면 덮어씌워요."""
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> BaseTool | None:
        return self._tools.get(name)

    def list_names(self) -> list[str]:
        return list(self._tools.keys())

    def subset(self, names: Iterable[str] | None) -> "ToolRegistry":
        """주어진 이름의 도구만 담은 새 레지스트리예요. ``None``이면 전체를 복사해요.

        등록되지 않은 이름은 건너뛰어요. 모델이 그 이름을 호출하면
        호출 엔진이 `UnknownToolError`로 처리해요.
        """
        selected = ToolRegistry()
        wanted = self._tools.keys() if names is None else names
        for name in wanted:
            tool = self._tools.get(name)
            if tool is not None:
                selected.register(tool)
        return selected

    def to_provider_specs(self) -> list[ToolSpec]:
        return [
            ToolSpec(
                name=tool.name,
                description=tool.description,
                input_schema=tool.input_schema,
            )
            for tool in self._tools.values()
        ]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools
