from __future__ import annotations

import asyncio
from typing import Any

from parley_service.app.assembler import MessagePartAssembler
from parley_service.app.stream_store import ResumableStreamStore
from libs.contracts.models import Chunk, ChunkKindName


class ChunkEmitter:
    """한 턴의 청크에 seq를 붙여 스트림 저장소와 어셈블러로 보내요.

    모델 소비 루프와 도구 태스크가 같은 emitter를 함께 써요. seq 할당,
    append, 어셈블러 반영을 하나의 락 안에서 처리해서 삽입 순서가 곧
    seq 순서가 돼요. 종료 청크가 나간 뒤에 오는 청크는 버리고 ``None``을
    돌려줘요.
    """

    def __init__(
        self,
        *,
        stream_id: str,
        stream_store: ResumableStreamStore,
        assembler: MessagePartAssembler,
    ) -> None:
        self._stream_id = stream_id
        self._stream_store = stream_store
        self._assembler = assembler
        self._lock = asyncio.Lock()
        self._sealed = False

    @property
    def stream_id(self) -> str:
        return self._stream_id

    @property
    def sealed(self) -> bool:
        return self._sealed

    async def emit(self, kind: ChunkKindName, payload: dict[str, Any]) -> Chunk | None:
        async with self._lock:
            if self._sealed:
                return None
            chunk = Chunk(
                stream_id=self._stream_id,
                seq=self._stream_store.next_seq(self._stream_id),
                kind=kind,
                payload=payload,
            )
            await self._stream_store.append(self._stream_id, chunk)
            if chunk.is_terminal:
                self._sealed = True
            await self._assembler.on_chunk(chunk)
            return chunk

    async def checkpoint(self) -> None:
        async with self._lock:
            await self._assembler.checkpoint()
