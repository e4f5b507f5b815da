from __future__ import annotations

import asyncio
import contextlib

from parley_service.modules.turns.engine import TurnEngine, TurnRun
from libs.common.logging import bind_log_context, clear_log_context, get_logger

logger = get_logger("parley_service.turn_worker")


class TurnWorkerPool:
    def __init__(self, engine: TurnEngine, *, worker_count: int, queue_size: int = 1000) -> None:
        self._engine = engine
        self._worker_count = worker_count
        self._queue: asyncio.Queue[TurnRun] = asyncio.Queue(maxsize=queue_size)
        self._tasks: list[asyncio.Task[None]] = []
        self._runs: dict[str, TurnRun] = {}
        self._closing = False

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._closing

    async def start(self) -> None:
        if self._tasks:
            return
        self._closing = False
        for idx in range(self._worker_count):
            self._tasks.append(asyncio.create_task(self._worker_loop(idx)))

    async def stop(self, *, timeout_seconds: float = 30.0) -> None:
        """대기 중인 턴이 모두 처리될 때까지 기다린 후 워커를 종료해요."""
        self._closing = True
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("turn_worker_graceful_shutdown_timeout", pending=self._queue.qsize())
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()

    async def submit(self, run: TurnRun) -> None:
        self._runs[run.task.stream_id] = run
        await self._queue.put(run)

    def find(self, stream_id: str) -> TurnRun | None:
        return self._runs.get(stream_id)

    async def stop_turn(self, stream_id: str) -> bool:
        """진행 중이거나 대기 중인 턴을 중지해요. 해당 턴이 없으면 ``False``예요."""
        run = self._runs.get(stream_id)
        if run is None:
            return False
        return await self._engine.stop(run)

    async def _worker_loop(self, worker_index: int) -> None:
        while True:
            run = await self._queue.get()
            bind_log_context(
                trace_id=run.task.trace_id,
                turn_id=run.task.turn_id,
                chat_id=run.task.chat_id,
                stream_id=run.task.stream_id,
                worker_index=worker_index,
            )
            try:
                if run.emitter.sealed:
                    logger.info("turn_skipped_already_sealed", stream_id=run.task.stream_id)
                else:
                    await self._engine.process(run)
            except Exception as exc:
                logger.exception("turn_worker_unexpected_error", error=str(exc))
            finally:
                self._runs.pop(run.task.stream_id, None)
                clear_log_context()
                self._queue.task_done()
