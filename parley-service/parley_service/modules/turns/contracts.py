from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


class UsageHookProtocol(Protocol):
    def record(self, *, chat_id: str, model: str, usage: dict[str, int]) -> None: ...


@dataclass(slots=True)
class TurnTask:
    turn_id: str
    trace_id: str
    chat_id: str
    stream_id: str
    message_id: str
    model: str
    tool_names: list[str] | None
