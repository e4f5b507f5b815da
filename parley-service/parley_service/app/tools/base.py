"""도구의 추상 기반 클래스와 실행 컨텍스트예요.

새 도구를 추가하려면 `BaseTool`을 상속하고 `name`, `description`,
`input_schema`, `execute`를 구현하면 돼요. 인자 검증은 호출 엔진이
`input_schema`(JSON Schema)로 미리 하므로 `execute`에는 스키마를 통과한
인자만 들어와요.
"""

from __future__ import annotations

import abc
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from parley_service.app.artifacts import ArtifactVersionController

ProgressCallback = Callable[[dict[str, Any]], Awaitable[None]]


async def _discard_progress(data: dict[str, Any]) -> None:
    del data


@dataclass(slots=True)
class ToolResult:
    """도구 실행 결과를 담는 컨테이너예요."""

    ok: bool
    """실행 성공 여부예요."""

    output: Any = None
    """성공 시 결과예요. JSON으로 직렬화할 수 있어야 해요."""

    error: str = ""
    """실패 시 오류 메시지예요."""

    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ToolContext:
    """도구가 실행되는 턴의 정보와 부수 효과 통로예요."""

    chat_id: str
    turn_id: str
    call_id: str
    artifacts: ArtifactVersionController
    report_progress: ProgressCallback = _discard_progress

    @property
    def idempotency_key(self) -> str:
        """call id는 턴 안에서만 유일해서 턴 아이디와 묶어서 써요."""
        return f"{self.turn_id}:{self.call_id}"


class BaseTool(abc.ABC):
    """모든 도구가 구현해야 하는 추상 클래스예요."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """도구의 고유 이름이에요. 모델이 호출할 때 사용돼요."""

    @property
    @abc.abstractmethod
    def description(self) -> str:
        """모델에게 전달되는 도구 설명이에요."""

    @property
    @abc.abstractmethod
    def input_schema(self) -> dict[str, Any]:
        """JSON Schema 형식의 입력 파라미터 정의예요."""

    @abc.abstractmethod
    async def execute(self, arguments: dict[str, Any], context: ToolContext) -> ToolResult:
        """도구를 실행하고 결과를 반환해요.

        같은 ``context.call_id``로 다시 호출돼도 부수 효과가 두 번 적용되지
        않도록 구현해야 해요.
        """

    def to_spec(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }
