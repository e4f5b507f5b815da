"""채팅별 활성 턴 리스(lease)를 관리해요.

채팅 하나에는 동시에 하나의 턴만 진행할 수 있어요. 리스는 소유 턴 아이디와
만료 시각을 가진 명시적인 레코드이고, 턴 시작 시 획득하고 스트림이 종료되면
해제해요. 진행 중인 턴은 리스를 주기적으로 연장하고, 연장이 끊겨
만료된 리스만 다른 턴이 가져갈 수 있어요.
"""

from __future__ import annotations

import asyncio
import dataclasses
import time
from collections.abc import Callable
from dataclasses import dataclass

from parley_service.app.errors import TurnConflictError
from libs.common.logging import get_logger

logger = get_logger("parley_service.leases")


@dataclass(slots=True, frozen=True)
class ChatLease:
    chat_id: str
    owner_turn_id: str
    acquired_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class ChatLeaseRegistry:
    def __init__(self, *, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = asyncio.Lock()
        self._leases: dict[str, ChatLease] = {}

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    async def acquire(self, chat_id: str, turn_id: str) -> ChatLease:
        async with self._lock:
            now = self._clock()
            existing = self._leases.get(chat_id)
            if existing is not None and existing.owner_turn_id != turn_id:
                if not existing.is_expired(now):
                    raise TurnConflictError(chat_id, existing.owner_turn_id)
                logger.warning(
                    "chat_lease_taken_over",
                    chat_id=chat_id,
                    previous_turn_id=existing.owner_turn_id,
                    turn_id=turn_id,
                )
            lease = ChatLease(
                chat_id=chat_id,
                owner_turn_id=turn_id,
                acquired_at=now,
                expires_at=now + self._ttl,
            )
            self._leases[chat_id] = lease
            return lease

    async def renew(self, chat_id: str, turn_id: str) -> bool:
        """소유 턴의 리스 만료 시각을 지금부터 다시 늘려요. 소유자가 아니면 ``False``예요."""
        async with self._lock:
            existing = self._leases.get(chat_id)
            if existing is None or existing.owner_turn_id != turn_id:
                return False
            self._leases[chat_id] = dataclasses.replace(existing, expires_at=self._clock() + self._ttl)
            return True

    async def release(self, chat_id: str, turn_id: str) -> bool:
        """소유자가 일치할 때만 해제해요. 이미 넘어간 리스는 건드리지 않아요."""
        async with self._lock:
            existing = self._leases.get(chat_id)
            if existing is None or existing.owner_turn_id != turn_id:
                return False
            del self._leases[chat_id]
            return True

    async def get(self, chat_id: str) -> ChatLease | None:
        async with self._lock:
            lease = self._leases.get(chat_id)
            if lease is None or lease.is_expired(self._clock()):
                return None
            return lease
