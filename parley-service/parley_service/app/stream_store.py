"""턴 하나의 청크를 보관하고 재연결한 클라이언트에게 다시 내보내는 버퍼예요.

- ``append``는 반드시 다음 seq를 가진 청크만 받아요. 같은 seq의 동일한
  청크를 다시 넣으면 아무 일도 하지 않아요.
- ``finish``/``error`` 청크가 들어오면 스트림이 봉인(seal)돼요.
- ``subscribe``는 기록된 청크를 먼저 재생하고, 봉인 전이면 새 청크를 기다려요.
  여러 구독자가 모두 같은 청크를 받아요.
- 봉인 후 ``retention_seconds``(봉인되지 않으면 생성 후
  ``max_lifetime_seconds``)가 지나면 제거되고, 이후 접근은
  `StreamExpiredError`가 돼요.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field

from parley_service.app.errors import SequenceGapError, StreamExpiredError, StreamSealedError
from libs.common.logging import get_logger
from libs.contracts.models import Chunk

logger = get_logger("parley_service.stream_store")


@dataclass(slots=True)
class StreamRecord:
    stream_id: str
    created_at: float
    deadline: float
    chunks: list[Chunk] = field(default_factory=list)
    sealed: bool = False
    sealed_at: float | None = None
    evicted: bool = False
    condition: asyncio.Condition = field(default_factory=asyncio.Condition)

    @property
    def next_seq(self) -> int:
        return len(self.chunks)


class ResumableStreamStore:
    def __init__(
        self,
        *,
        retention_seconds: float,
        max_lifetime_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._retention = retention_seconds
        self._max_lifetime = max_lifetime_seconds
        self._clock = clock
        self._records: dict[str, StreamRecord] = {}
        self._sweeper: asyncio.Task[None] | None = None

    def open(self, stream_id: str) -> StreamRecord:
        existing = self._records.get(stream_id)
        if existing is not None:
            return existing
        now = self._clock()
        record = StreamRecord(stream_id=stream_id, created_at=now, deadline=now + self._max_lifetime)
        self._records[stream_id] = record
        return record

    async def append(self, stream_id: str, chunk: Chunk) -> bool:
        """청크를 추가해요. 새로 기록했으면 ``True``, 중복이면 ``False``예요."""
        if chunk.stream_id != stream_id:
            raise ValueError(f"청크의 stream_id({chunk.stream_id!r})가 대상 스트림과 달라요.")
        record = self._require(stream_id)
        async with record.condition:
            if chunk.seq < record.next_seq:
                if record.chunks[chunk.seq] == chunk:
                    return False
                raise SequenceGapError(stream_id, record.next_seq, chunk.seq)
            if record.sealed:
                raise StreamSealedError(stream_id)
            if chunk.seq != record.next_seq:
                raise SequenceGapError(stream_id, record.next_seq, chunk.seq)

            record.chunks.append(chunk)
            if chunk.is_terminal:
                self._mark_sealed(record)
            record.condition.notify_all()
            return True

    async def seal(self, stream_id: str) -> bool:
        """스트림을 봉인해요. 이미 봉인됐으면 아무 일도 하지 않고 ``False``를 반환해요."""
        record = self._require(stream_id)
        async with record.condition:
            if record.sealed:
                return False
            self._mark_sealed(record)
            record.condition.notify_all()
            return True

    async def subscribe(self, stream_id: str, from_seq: int = 0) -> AsyncIterator[Chunk]:
        record = self._require(stream_id)
        cursor = max(from_seq, 0)
        while True:
            async with record.condition:
                while cursor >= record.next_seq and not record.sealed and not record.evicted:
                    await record.condition.wait()
                if record.evicted:
                    raise StreamExpiredError(stream_id)
                batch = record.chunks[cursor:]
                sealed = record.sealed
            for chunk in batch:
                yield chunk
            cursor += len(batch)
            if sealed:
                return

    def replay(self, stream_id: str, from_seq: int = 0) -> list[Chunk]:
        record = self._require(stream_id)
        return list(record.chunks[max(from_seq, 0):])

    def is_sealed(self, stream_id: str) -> bool:
        return self._require(stream_id).sealed

    def next_seq(self, stream_id: str) -> int:
        return self._require(stream_id).next_seq

    async def evict_expired(self) -> list[str]:
        now = self._clock()
        expired = [record for record in self._records.values() if now >= record.deadline]
        for record in expired:
            await self._evict(record)
        if expired:
            logger.info("streams_evicted", count=len(expired))
        return [record.stream_id for record in expired]

    async def start_sweeper(self, interval_seconds: float) -> None:
        if self._sweeper is not None:
            return
        self._sweeper = asyncio.create_task(self._sweep_loop(interval_seconds))

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._sweeper
        self._sweeper = None

    async def _sweep_loop(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.evict_expired()
            except Exception as exc:
                logger.exception("stream_sweep_failed", error=str(exc))

    def _require(self, stream_id: str) -> StreamRecord:
        record = self._records.get(stream_id)
        if record is None or record.evicted:
            raise StreamExpiredError(stream_id)
        if self._clock() >= record.deadline:
            # 스위퍼가 돌기 전이라도 만료된 스트림은 노출하지 않아요. 제거와
            # 대기 중인 구독자 깨우기는 evict_expired가 맡아요.
            raise StreamExpiredError(stream_id)
        return record

    def _mark_sealed(self, record: StreamRecord) -> None:
        now = self._clock()
        record.sealed = True
        record.sealed_at = now
        record.deadline = now + self._retention

    async def _evict(self, record: StreamRecord) -> None:
        self._records.pop(record.stream_id, None)
        async with record.condition:
            record.evicted = True
            record.condition.notify_all()
