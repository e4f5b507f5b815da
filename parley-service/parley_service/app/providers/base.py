from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Union


@dataclass(slots=True)
class ToolSpec:
    name: str
    description: str | None
    input_schema: dict[str, Any]


@dataclass(slots=True)
class PromptMessage:
    """모델에게 전달하는 대화 기록 한 건이에요. ``parts``는 메시지 파트 dict 목록이에요."""

    role: str
    parts: list[dict[str, Any]]


@dataclass(slots=True)
class ModelRequest:
    chat_id: str
    turn_id: str
    model: str
    messages: list[PromptMessage]
    tools: list[ToolSpec] = field(default_factory=list)
    step: int = 0


# --- 모델이 내보내는 원시 이벤트 ---


@dataclass(slots=True, frozen=True)
class TextDelta:
    text: str


@dataclass(slots=True, frozen=True)
class ReasoningDelta:
    text: str


@dataclass(slots=True, frozen=True)
class ToolCallStart:
    call_id: str
    name: str


@dataclass(slots=True, frozen=True)
class ToolCallDelta:
    call_id: str
    args_delta: str


@dataclass(slots=True, frozen=True)
class ToolCallEnd:
    """인자 전송이 끝났어요. ``args``가 있으면 누적된 delta 대신 그 값을 써요."""

    call_id: str
    args: dict[str, Any] | None = None


@dataclass(slots=True, frozen=True)
class FileOutput:
    mime: str
    ref: str


@dataclass(slots=True, frozen=True)
class Finish:
    reason: str
    usage: dict[str, int] | None = None


@dataclass(slots=True, frozen=True)
class ProviderFailure:
    message: str


ModelEvent = Union[
    TextDelta,
    ReasoningDelta,
    ToolCallStart,
    ToolCallDelta,
    ToolCallEnd,
    FileOutput,
    Finish,
    ProviderFailure,
]


class ModelProvider:
    name: str

    def stream(self, request: ModelRequest) -> AsyncIterator[ModelEvent]:  # pragma: no cover - interface
        raise NotImplementedError
