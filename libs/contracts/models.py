"""스트리밍 턴의 전송 단위(청크)와 NDJSON 인코딩이에요.

한 청크는 한 줄의 JSON 객체로 직렬화돼요. 스트림은 항상 ``finish`` 또는
``error`` 청크로 끝나요.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Iterator
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

ChunkKindName = Literal[
    "start",
    "text-delta",
    "reasoning-delta",
    "tool-call-start",
    "tool-call-delta",
    "tool-call-end",
    "tool-progress",
    "tool-result",
    "file",
    "finish",
    "error",
]


class ChunkKind:
    """청크 종류 상수예요."""

    START = "start"
    TEXT_DELTA = "text-delta"
    REASONING_DELTA = "reasoning-delta"
    TOOL_CALL_START = "tool-call-start"
    TOOL_CALL_DELTA = "tool-call-delta"
    TOOL_CALL_END = "tool-call-end"
    TOOL_PROGRESS = "tool-progress"
    TOOL_RESULT = "tool-result"
    FILE = "file"
    FINISH = "finish"
    ERROR = "error"

    TERMINAL = frozenset({FINISH, ERROR})


class FinishReason:
    STOP = "stop"
    TOOL_CALLS = "tool-calls"
    LENGTH = "length"
    STOPPED = "stopped"


class Chunk(BaseModel):
    model_config = ConfigDict(frozen=True)

    stream_id: str
    seq: int = Field(ge=0)
    kind: ChunkKindName
    payload: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.kind in ChunkKind.TERMINAL


class ChunkDecodeError(ValueError):
    """NDJSON 한 줄을 청크로 해석하지 못했어요."""


def encode_chunk(chunk: Chunk) -> bytes:
    return chunk.model_dump_json().encode("utf-8") + b"\n"


def decode_chunk(line: str | bytes) -> Chunk:
    raw = line.decode("utf-8") if isinstance(line, bytes) else line
    try:
        return Chunk.model_validate_json(raw.strip())
    except ValueError as exc:
        raise ChunkDecodeError(f"청크 형식이 올바르지 않아요: {raw[:80]!r}") from exc


def iter_decode(lines: Iterable[str | bytes]) -> Iterator[Chunk]:
    """빈 줄을 건너뛰며 NDJSON 줄들을 청크로 풀어요."""
    for line in lines:
        if isinstance(line, bytes):
            line = line.decode("utf-8")
        if not line.strip():
            continue
        yield decode_chunk(line)


# --- 청크별 payload 생성 헬퍼 ---


def start_payload(*, turn_id: str, chat_id: str, message_id: str, model: str) -> dict[str, Any]:
    return {"turn_id": turn_id, "chat_id": chat_id, "message_id": message_id, "model": model}


def text_payload(text: str) -> dict[str, Any]:
    return {"text": text}


def tool_call_start_payload(*, call_id: str, name: str) -> dict[str, Any]:
    return {"call_id": call_id, "name": name}


def tool_call_delta_payload(*, call_id: str, args_delta: str) -> dict[str, Any]:
    return {"call_id": call_id, "args_delta": args_delta}


def tool_call_end_payload(*, call_id: str, name: str, args: dict[str, Any]) -> dict[str, Any]:
    return {"call_id": call_id, "name": name, "args": args}


def tool_progress_payload(*, call_id: str, data: dict[str, Any]) -> dict[str, Any]:
    return {"call_id": call_id, "data": data}


def tool_result_payload(
    *,
    call_id: str,
    name: str,
    output: Any = None,
    error: dict[str, Any] | None = None,
) -> dict[str, Any]:
    if error is not None:
        return {"call_id": call_id, "name": name, "ok": False, "error": error}
    return {"call_id": call_id, "name": name, "ok": True, "output": output}


def file_payload(*, mime: str, ref: str) -> dict[str, Any]:
    return {"mime": mime, "ref": ref}


def finish_payload(reason: str, usage: dict[str, int] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"reason": reason}
    if usage:
        payload["usage"] = usage
    return payload


def error_payload(*, error_code: str, message: str) -> dict[str, Any]:
    return {"error_code": error_code, "message": message}


# --- 재개 커서 ---


def parse_resume_from(header_value: str | None) -> int | None:
    """``x-resume-from`` 헤더(마지막으로 받은 seq)를 다음에 받을 seq로 바꿔요.

    값이 없거나 숫자가 아니면 ``None``을 반환해요.
    """
    if header_value is None or not header_value.strip():
        return None
    try:
        last_seen = int(header_value.strip())
    except ValueError:
        return None
    if last_seen < 0:
        return 0
    return last_seen + 1


def dumps_args(args: dict[str, Any]) -> str:
    return json.dumps(args, ensure_ascii=False, separators=(",", ":"))
