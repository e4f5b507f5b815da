"""청크 시퀀스를 어시스턴트 메시지의 파트 목록으로 접어서 저장해요.

- 청크는 seq 순서대로만 처리해요. 앞선 seq가 아직 안 왔으면 기다렸다가
  순서를 맞추고, 이미 처리한 seq는 버려요.
- text/reasoning 파트는 자라는 동안 ``state="streaming"``으로
  ``flush_chars``마다 파트 인덱스 기준으로 upsert하고, 다른 종류의 청크가
  오면 ``state="done"``으로 닫아요. 프로세스가 죽어도 잃는 것은 아직
  flush하지 않은 꼬리뿐이에요.
- tool-call 파트는 ``tool-call-start`` 시점에 인덱스를 예약하고
  ``tool-call-end``에서 인자와 함께 저장해요.
- ``finish``/``error``에서 메시지 상태를 확정해요.
"""

from __future__ import annotations

from dataclasses import dataclass

from parley_service.app.store import (
    InMemoryChatStore,
    MessagePart,
    MessageStatus,
    PartState,
    PartType,
)
from libs.common.logging import get_logger
from libs.contracts.models import Chunk, ChunkKind, FinishReason

logger = get_logger("parley_service.assembler")

_TEXT_KINDS = {
    ChunkKind.TEXT_DELTA: PartType.TEXT,
    ChunkKind.REASONING_DELTA: PartType.REASONING,
}
# 파트 경계를 만들지 않는 청크예요.
_NEUTRAL_KINDS = {ChunkKind.START, ChunkKind.TOOL_CALL_DELTA, ChunkKind.TOOL_PROGRESS}


@dataclass(slots=True)
class _OpenPart:
    index: int
    type: str
    text: str = ""
    unflushed: int = 0


class MessagePartAssembler:
    def __init__(self, store: InMemoryChatStore, *, message_id: str, flush_chars: int) -> None:
        self._store = store
        self._message_id = message_id
        self._flush_chars = flush_chars
        self._next_seq = 0
        self._pending: dict[int, Chunk] = {}
        self._next_index = 0
        self._open: _OpenPart | None = None
        self._tool_calls: dict[str, tuple[int, str]] = {}
        self._final_status: MessageStatus | None = None

    @property
    def message_id(self) -> str:
        return self._message_id

    @property
    def final_status(self) -> MessageStatus | None:
        return self._final_status

    @property
    def next_seq(self) -> int:
        return self._next_seq

    async def on_chunk(self, chunk: Chunk) -> None:
        if chunk.seq < self._next_seq or chunk.seq in self._pending:
            logger.debug("assembler_duplicate_chunk", message_id=self._message_id, seq=chunk.seq)
            return
        self._pending[chunk.seq] = chunk
        while self._next_seq in self._pending:
            ready = self._pending.pop(self._next_seq)
            await self._apply(ready)
            self._next_seq += 1

    async def checkpoint(self) -> None:
        """열려 있는 text 파트를 닫지 않고 지금까지의 내용만 저장해요."""
        if self._open is not None and self._open.unflushed:
            await self._flush(self._open, PartState.STREAMING)

    async def _apply(self, chunk: Chunk) -> None:
        if self._final_status is not None:
            return

        part_type = _TEXT_KINDS.get(chunk.kind)
        if part_type is not None:
            await self._append_text(part_type, str(chunk.payload.get("text", "")))
            return
        if chunk.kind in _NEUTRAL_KINDS:
            return

        await self._close_open_part()
        payload = chunk.payload
        if chunk.kind == ChunkKind.TOOL_CALL_START:
            self._tool_calls[payload["call_id"]] = (self._allocate_index(), payload["name"])
        elif chunk.kind == ChunkKind.TOOL_CALL_END:
            index, name = self._tool_calls.get(payload["call_id"], (None, payload["name"]))
            if index is None:
                index = self._allocate_index()
            await self._store.upsert_part(
                self._message_id,
                MessagePart(
                    index=index,
                    type=PartType.TOOL_CALL,
                    call_id=payload["call_id"],
                    name=name,
                    args=payload.get("args") or {},
                ),
            )
        elif chunk.kind == ChunkKind.TOOL_RESULT:
            await self._store.upsert_part(
                self._message_id,
                MessagePart(
                    index=self._allocate_index(),
                    type=PartType.TOOL_RESULT,
                    call_id=payload["call_id"],
                    name=payload.get("name"),
                    output=payload.get("output"),
                    error=payload.get("error"),
                ),
            )
        elif chunk.kind == ChunkKind.FILE:
            await self._store.upsert_part(
                self._message_id,
                MessagePart(
                    index=self._allocate_index(),
                    type=PartType.FILE,
                    mime=payload.get("mime"),
                    ref=payload.get("ref"),
                ),
            )
        elif chunk.kind == ChunkKind.FINISH:
            status = MessageStatus.STOPPED if payload.get("reason") == FinishReason.STOPPED else MessageStatus.FINISHED
            await self._finalize(status)
        elif chunk.kind == ChunkKind.ERROR:
            await self._finalize(MessageStatus.ERRORED)

    async def _append_text(self, part_type: str, text: str) -> None:
        if self._open is not None and self._open.type != part_type:
            await self._close_open_part()
        if self._open is None:
            self._open = _OpenPart(index=self._allocate_index(), type=part_type)
        self._open.text += text
        self._open.unflushed += len(text)
        if self._open.unflushed >= self._flush_chars:
            await self._flush(self._open, PartState.STREAMING)

    async def _close_open_part(self) -> None:
        if self._open is None:
            return
        await self._flush(self._open, PartState.DONE)
        self._open = None

    async def _flush(self, part: _OpenPart, state: str) -> None:
        await self._store.upsert_part(
            self._message_id,
            MessagePart(index=part.index, type=part.type, text=part.text, state=state),
        )
        part.unflushed = 0

    async def _finalize(self, status: MessageStatus) -> None:
        await self._store.set_message_status(self._message_id, status)
        self._final_status = status
        if self._pending:
            logger.warning(
                "assembler_chunks_after_terminal",
                message_id=self._message_id,
                dropped=len(self._pending),
            )
            self._pending.clear()

    def _allocate_index(self) -> int:
        index = self._next_index
        self._next_index += 1
        return index
