from __future__ import annotations

import asyncio
import dataclasses
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from parley_service.app.errors import TurnNotFoundError


class TurnStatus(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    FINISHED = "finished"
    ERRORED = "errored"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in (TurnStatus.FINISHED, TurnStatus.ERRORED, TurnStatus.STOPPED)


@dataclass(slots=True, frozen=True)
class TurnRecord:
    turn_id: str
    chat_id: str
    stream_id: str
    message_id: str
    model: str
    status: TurnStatus
    started_at: float
    finished_at: float | None = None
    error_code: str | None = None


class InMemoryTurnStore:
    """턴 레코드를 보관해요. 종료된 턴은 보존 기간이 지나면 지워요."""

    def __init__(self, *, retention_seconds: float, clock: Callable[[], float] = time.time) -> None:
        self._retention = retention_seconds
        self._clock = clock
        self._lock = asyncio.Lock()
        self._turns: dict[str, TurnRecord] = {}

    async def create(self, record: TurnRecord) -> TurnRecord:
        async with self._lock:
            self._evict_expired_locked()
            self._turns[record.turn_id] = record
            return record

    async def get(self, turn_id: str) -> TurnRecord:
        async with self._lock:
            record = self._turns.get(turn_id)
            if record is None:
                raise TurnNotFoundError(turn_id)
            return record

    async def set_status(self, turn_id: str, status: TurnStatus, *, error_code: str | None = None) -> TurnRecord:
        """상태를 바꿔요. 이미 종료 상태인 턴은 바뀌지 않아요."""
        async with self._lock:
            record = self._turns.get(turn_id)
            if record is None:
                raise TurnNotFoundError(turn_id)
            if record.status.is_terminal:
                return record
            updated = dataclasses.replace(
                record,
                status=status,
                finished_at=self._clock() if status.is_terminal else None,
                error_code=error_code,
            )
            self._turns[turn_id] = updated
            return updated

    def _evict_expired_locked(self) -> None:
        cutoff = self._clock() - self._retention
        expired = [
            turn_id
            for turn_id, record in self._turns.items()
            if record.finished_at is not None and record.finished_at < cutoff
        ]
        for turn_id in expired:
            del self._turns[turn_id]
