from __future__ import annotations

import time
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass

from parley_service.app.assembler import MessagePartAssembler
from parley_service.app.leases import ChatLeaseRegistry
from parley_service.app.providers.manager import ProviderManager
from parley_service.app.store import (
    InMemoryChatStore,
    MessagePart,
    MessageRecord,
    MessageRole,
    MessageStatus,
    PartState,
    PartType,
)
from parley_service.app.stream_store import ResumableStreamStore
from parley_service.app.tools.registry import ToolRegistry
from parley_service.app.turn_store import InMemoryTurnStore, TurnRecord, TurnStatus
from parley_service.modules.turns.contracts import TurnTask
from parley_service.modules.turns.emitter import ChunkEmitter
from parley_service.modules.turns.engine import TurnRun
from parley_service.modules.turns.worker import TurnWorkerPool
from libs.common.errors import ValidationError
from libs.common.logging import get_logger
from libs.contracts.models import Chunk, ChunkKind, start_payload

logger = get_logger("parley_service.turns_service")


@dataclass(slots=True)
class TurnStarted:
    trace_id: str
    turn_id: str
    stream_id: str
    message_id: str
    model: str


class TurnsService:
    """턴 시작/중지/조회와 스트림 구독 유스케이스를 담당해요."""

    def __init__(
        self,
        *,
        store: InMemoryChatStore,
        turn_store: InMemoryTurnStore,
        stream_store: ResumableStreamStore,
        leases: ChatLeaseRegistry,
        provider_manager: ProviderManager,
        tool_registry: ToolRegistry,
        worker_pool: TurnWorkerPool,
        default_model: str,
        part_flush_chars: int,
    ) -> None:
        self._store = store
        self._turn_store = turn_store
        self._stream_store = stream_store
        self._leases = leases
        self._provider_manager = provider_manager
        self._tool_registry = tool_registry
        self._worker_pool = worker_pool
        self._default_model = default_model
        self._part_flush_chars = part_flush_chars

    async def start_turn(
        self,
        *,
        chat_id: str,
        text: str,
        model: str | None = None,
        tool_names: list[str] | None = None,
    ) -> TurnStarted:
        if not text.strip():
            raise ValidationError("메시지 내용이 비어 있어요.")
        effective_model = model or self._default_model
        self._provider_manager.resolve(effective_model)
        if tool_names is not None:
            unknown = sorted(set(tool_names) - set(self._tool_registry.list_names()))
            if unknown:
                raise ValidationError(f"알 수 없는 도구예요: {', '.join(unknown)}")

        trace_id = str(uuid.uuid4())
        turn_id = str(uuid.uuid4())
        stream_id = str(uuid.uuid4())
        message_id = str(uuid.uuid4())

        await self._leases.acquire(chat_id, turn_id)
        try:
            now = time.time()
            await self._store.upsert_message(
                MessageRecord(
                    message_id=str(uuid.uuid4()),
                    chat_id=chat_id,
                    role=MessageRole.USER,
                    status=MessageStatus.FINISHED,
                    created_at=now,
                    turn_id=turn_id,
                    parts=(MessagePart(index=0, type=PartType.TEXT, text=text, state=PartState.DONE),),
                )
            )
            await self._store.upsert_message(
                MessageRecord(
                    message_id=message_id,
                    chat_id=chat_id,
                    role=MessageRole.ASSISTANT,
                    status=MessageStatus.STREAMING,
                    created_at=now,
                    turn_id=turn_id,
                )
            )
            await self._turn_store.create(
                TurnRecord(
                    turn_id=turn_id,
                    chat_id=chat_id,
                    stream_id=stream_id,
                    message_id=message_id,
                    model=effective_model,
                    status=TurnStatus.PENDING,
                    started_at=now,
                )
            )

            self._stream_store.open(stream_id)
            emitter = ChunkEmitter(
                stream_id=stream_id,
                stream_store=self._stream_store,
                assembler=MessagePartAssembler(
                    self._store,
                    message_id=message_id,
                    flush_chars=self._part_flush_chars,
                ),
            )
            await emitter.emit(
                ChunkKind.START,
                start_payload(turn_id=turn_id, chat_id=chat_id, message_id=message_id, model=effective_model),
            )
            task = TurnTask(
                turn_id=turn_id,
                trace_id=trace_id,
                chat_id=chat_id,
                stream_id=stream_id,
                message_id=message_id,
                model=effective_model,
                tool_names=tool_names,
            )
            await self._worker_pool.submit(TurnRun(task=task, emitter=emitter))
        except BaseException:
            await self._leases.release(chat_id, turn_id)
            raise

        logger.info(
            "turn_started",
            trace_id=trace_id,
            chat_id=chat_id,
            turn_id=turn_id,
            stream_id=stream_id,
            model=effective_model,
        )
        return TurnStarted(
            trace_id=trace_id,
            turn_id=turn_id,
            stream_id=stream_id,
            message_id=message_id,
            model=effective_model,
        )

    async def stop_stream(self, stream_id: str) -> bool:
        """스트림의 턴을 중지해요. 이미 끝난 스트림이면 ``False``를 돌려줘요."""
        stopped = await self._worker_pool.stop_turn(stream_id)
        if not stopped:
            # 없는 스트림이면 StreamExpiredError가 나요.
            self._stream_store.is_sealed(stream_id)
        logger.info("turn_stop_requested", stream_id=stream_id, stopped=stopped)
        return stopped

    async def get_turn(self, turn_id: str) -> TurnRecord:
        return await self._turn_store.get(turn_id)

    def open_stream(self, stream_id: str, from_seq: int) -> AsyncIterator[Chunk]:
        """구독을 열어요. 스트림이 없으면 응답을 시작하기 전에 예외를 던져요."""
        self._stream_store.next_seq(stream_id)
        return self._stream_store.subscribe(stream_id, from_seq)
