"""턴 하나를 끝까지 진행하는 엔진이에요.

스텝마다 채팅 기록으로 프롬프트를 만들고 모델 이벤트를 청크로 바꿔
내보내요. 도구 호출은 인자가 완성되는 즉시 별도 태스크로 실행해서 모델
스트림과 겹쳐 돌아가요. 스텝이 ``tool-calls``로 끝나면 도구 결과를 모두
기다린 뒤 다음 스텝으로 넘어가고, 아니면 ``finish`` 청크로 스트림을
봉인해요.

중지(stop)는 모델 소비만 취소해요. 이미 실행 중인 도구는 끝까지 돌지만
봉인 뒤라 결과 청크는 버려지고, 커밋된 부수 효과는 그대로 남아요.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from dataclasses import dataclass, field
from typing import Any

from parley_service.app.artifacts import ArtifactVersionController
from parley_service.app.errors import InvalidArgumentsError, ModelProviderError, ToolError
from parley_service.app.leases import ChatLeaseRegistry
from parley_service.app.providers.base import (
    FileOutput,
    Finish,
    ModelProvider,
    ModelRequest,
    PromptMessage,
    ProviderFailure,
    ReasoningDelta,
    TextDelta,
    ToolCallDelta,
    ToolCallEnd,
    ToolCallStart,
)
from parley_service.app.providers.manager import ProviderManager
from parley_service.app.store import InMemoryChatStore, MessageRecord, MessageStatus
from parley_service.app.tools.base import ToolContext
from parley_service.app.tools.invoker import ToolInvocationEngine
from parley_service.app.tools.registry import ToolRegistry
from parley_service.app.turn_store import InMemoryTurnStore, TurnStatus
from parley_service.modules.turns.contracts import TurnTask, UsageHookProtocol
from parley_service.modules.turns.emitter import ChunkEmitter
from libs.common.errors import DomainError
from libs.common.logging import get_logger
from libs.contracts.models import (
    ChunkKind,
    FinishReason,
    error_payload,
    file_payload,
    finish_payload,
    text_payload,
    tool_call_delta_payload,
    tool_call_end_payload,
    tool_call_start_payload,
    tool_progress_payload,
    tool_result_payload,
)

logger = get_logger("parley_service.turn_engine")


@dataclass(slots=True)
class TurnRun:
    """실행 중인 턴의 가변 상태예요. 워커 풀이 턴마다 하나씩 만들어요."""

    task: TurnTask
    emitter: ChunkEmitter
    stopped: bool = False
    model_task: asyncio.Task[str] | None = None
    tool_tasks: set[asyncio.Task[None]] = field(default_factory=set)
    arg_buffers: dict[str, list[str]] = field(default_factory=dict)
    tool_names: dict[str, str] = field(default_factory=dict)
    usage: dict[str, int] = field(default_factory=dict)

    def add_usage(self, usage: dict[str, int] | None) -> None:
        for key, value in (usage or {}).items():
            self.usage[key] = self.usage.get(key, 0) + value


class TurnEngine:
    def __init__(
        self,
        *,
        store: InMemoryChatStore,
        turn_store: InMemoryTurnStore,
        leases: ChatLeaseRegistry,
        provider_manager: ProviderManager,
        tool_registry: ToolRegistry,
        artifacts: ArtifactVersionController,
        usage_hook: UsageHookProtocol | None,
        max_steps: int,
        tool_timeout_seconds: float,
    ) -> None:
        self._store = store
        self._turn_store = turn_store
        self._leases = leases
        self._provider_manager = provider_manager
        self._tool_registry = tool_registry
        self._artifacts = artifacts
        self._usage_hook = usage_hook
        self._max_steps = max_steps
        self._tool_timeout = tool_timeout_seconds

    async def process(self, run: TurnRun) -> None:
        keep_alive = asyncio.create_task(self._keep_lease_alive(run))
        try:
            await self._run_steps(run)
        finally:
            keep_alive.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await keep_alive

    async def _keep_lease_alive(self, run: TurnRun) -> None:
        """턴이 끝날 때까지 채팅 리스를 TTL의 3분의 1 간격으로 연장해요."""
        task = run.task
        interval = self._leases.ttl_seconds / 3
        while True:
            if not await self._leases.renew(task.chat_id, task.turn_id):
                if not run.emitter.sealed:
                    logger.warning("chat_lease_lost", chat_id=task.chat_id, turn_id=task.turn_id)
                return
            await asyncio.sleep(interval)

    async def _run_steps(self, run: TurnRun) -> None:
        task = run.task
        try:
            await self._turn_store.set_status(task.turn_id, TurnStatus.STREAMING)
            provider, model_name = self._provider_manager.resolve(task.model)
            tools = self._tool_registry.subset(task.tool_names)
            invoker = ToolInvocationEngine(tools, timeout_seconds=self._tool_timeout)

            for step in range(self._max_steps):
                request = ModelRequest(
                    chat_id=task.chat_id,
                    turn_id=task.turn_id,
                    model=model_name,
                    messages=await self._build_prompt(run),
                    tools=tools.to_provider_specs(),
                    step=step,
                )
                if run.stopped:
                    return
                run.model_task = asyncio.create_task(self._consume_step(run, provider, request, invoker))
                try:
                    reason = await run.model_task
                except asyncio.CancelledError:
                    if run.stopped:
                        return
                    raise
                finally:
                    run.model_task = None

                await self._drain_tools(run)
                if run.stopped:
                    return
                if reason != FinishReason.TOOL_CALLS:
                    break
                logger.info("turn_step_completed", turn_id=task.turn_id, step=step, reason=reason)
            else:
                reason = FinishReason.LENGTH
                logger.warning("turn_max_steps_reached", turn_id=task.turn_id, max_steps=self._max_steps)

            chunk = await run.emitter.emit(ChunkKind.FINISH, finish_payload(reason, run.usage or None))
            if chunk is not None:
                await self._complete(run, TurnStatus.FINISHED)
        except DomainError as exc:
            log_level = logger.warning if exc.retryable else logger.error
            log_level(
                "turn_domain_error",
                trace_id=task.trace_id,
                turn_id=task.turn_id,
                error_code=exc.error_code,
                retryable=exc.retryable,
                error=str(exc),
            )
            await self._fail(run, exc.error_code, exc.message)
        except asyncio.CancelledError:
            await self._fail(run, "TURN_CANCELLED", "서비스가 종료되어 턴이 중단됐어요.")
            raise
        except Exception as exc:
            logger.exception(
                "turn_unexpected_error",
                trace_id=task.trace_id,
                turn_id=task.turn_id,
                error=str(exc),
            )
            await self._fail(run, "INTERNAL_ERROR", "요청 처리 중 예상치 못한 오류가 발생했어요.")

    async def stop(self, run: TurnRun) -> bool:
        """``finish{reason: stopped}``로 스트림을 봉인해요. 이미 봉인됐으면 ``False``예요."""
        chunk = await run.emitter.emit(ChunkKind.FINISH, finish_payload(FinishReason.STOPPED, run.usage or None))
        if chunk is None:
            return False
        run.stopped = True
        if run.model_task is not None and not run.model_task.done():
            run.model_task.cancel()
        await self._complete(run, TurnStatus.STOPPED)
        return True

    async def _consume_step(
        self,
        run: TurnRun,
        provider: ModelProvider,
        request: ModelRequest,
        invoker: ToolInvocationEngine,
    ) -> str:
        emit = run.emitter.emit
        async for event in provider.stream(request):
            if isinstance(event, TextDelta):
                await emit(ChunkKind.TEXT_DELTA, text_payload(event.text))
            elif isinstance(event, ReasoningDelta):
                await emit(ChunkKind.REASONING_DELTA, text_payload(event.text))
            elif isinstance(event, ToolCallStart):
                invoker.begin(event.call_id, event.name)
                run.arg_buffers[event.call_id] = []
                run.tool_names[event.call_id] = event.name
                await emit(ChunkKind.TOOL_CALL_START, tool_call_start_payload(call_id=event.call_id, name=event.name))
            elif isinstance(event, ToolCallDelta):
                run.arg_buffers.setdefault(event.call_id, []).append(event.args_delta)
                await emit(
                    ChunkKind.TOOL_CALL_DELTA,
                    tool_call_delta_payload(call_id=event.call_id, args_delta=event.args_delta),
                )
            elif isinstance(event, ToolCallEnd):
                await self._finish_tool_call(run, invoker, event)
            elif isinstance(event, FileOutput):
                await emit(ChunkKind.FILE, file_payload(mime=event.mime, ref=event.ref))
            elif isinstance(event, Finish):
                run.add_usage(event.usage)
                return event.reason
            elif isinstance(event, ProviderFailure):
                raise ModelProviderError(event.message)
        logger.warning("model_stream_ended_without_finish", turn_id=run.task.turn_id, step=request.step)
        return FinishReason.STOP

    async def _finish_tool_call(self, run: TurnRun, invoker: ToolInvocationEngine, event: ToolCallEnd) -> None:
        call_id = event.call_id
        name = run.tool_names.get(call_id, "")
        buffered = "".join(run.arg_buffers.pop(call_id, []))
        parse_error: ToolError | None = None
        args: dict[str, Any] = {}
        if event.args is not None:
            args = event.args
        elif buffered.strip():
            try:
                decoded = json.loads(buffered)
            except json.JSONDecodeError as exc:
                parse_error = InvalidArgumentsError(name, "$", f"인자가 올바른 JSON이 아니에요: {exc.msg}")
            else:
                if isinstance(decoded, dict):
                    args = decoded
                else:
                    parse_error = InvalidArgumentsError(name, "$", "인자는 JSON 객체여야 해요.")

        await run.emitter.emit(ChunkKind.TOOL_CALL_END, tool_call_end_payload(call_id=call_id, name=name, args=args))
        tool_task = asyncio.create_task(self._run_tool(run, invoker, call_id, name, args, parse_error))
        run.tool_tasks.add(tool_task)
        tool_task.add_done_callback(run.tool_tasks.discard)

    async def _run_tool(
        self,
        run: TurnRun,
        invoker: ToolInvocationEngine,
        call_id: str,
        name: str,
        args: dict[str, Any],
        parse_error: ToolError | None,
    ) -> None:
        task = run.task

        async def report_progress(data: dict[str, Any]) -> None:
            await run.emitter.emit(ChunkKind.TOOL_PROGRESS, tool_progress_payload(call_id=call_id, data=data))

        context = ToolContext(
            chat_id=task.chat_id,
            turn_id=task.turn_id,
            call_id=call_id,
            artifacts=self._artifacts,
            report_progress=report_progress,
        )
        try:
            if parse_error is not None:
                raise parse_error
            result = await invoker.invoke(name, args, call_id, context)
            payload = tool_result_payload(call_id=call_id, name=name, output=result.output)
        except ToolError as exc:
            payload = tool_result_payload(call_id=call_id, name=name, error=exc.to_payload())

        try:
            chunk = await run.emitter.emit(ChunkKind.TOOL_RESULT, payload)
        except DomainError as exc:
            logger.warning("tool_result_emit_failed", turn_id=task.turn_id, call_id=call_id, error=str(exc))
            return
        if chunk is None:
            logger.info("tool_result_discarded_after_seal", turn_id=task.turn_id, call_id=call_id, tool=name)

    async def _drain_tools(self, run: TurnRun) -> None:
        if run.tool_tasks:
            await asyncio.gather(*list(run.tool_tasks))

    async def _build_prompt(self, run: TurnRun) -> list[PromptMessage]:
        await run.emitter.checkpoint()
        history = await self._store.list_messages(run.task.chat_id)
        return [_to_prompt_message(message) for message in history if _is_prompt_worthy(message, run)]

    async def _fail(self, run: TurnRun, error_code: str, message: str) -> None:
        try:
            chunk = await run.emitter.emit(ChunkKind.ERROR, error_payload(error_code=error_code, message=message))
        except DomainError as exc:
            logger.warning("turn_error_emit_failed", turn_id=run.task.turn_id, error=str(exc))
            chunk = None
        if chunk is not None or not run.emitter.sealed:
            await self._complete(run, TurnStatus.ERRORED, error_code=error_code)

    async def _complete(self, run: TurnRun, status: TurnStatus, *, error_code: str | None = None) -> None:
        task = run.task
        await self._turn_store.set_status(task.turn_id, status, error_code=error_code)
        await self._leases.release(task.chat_id, task.turn_id)
        if self._usage_hook is not None and run.usage:
            self._usage_hook.record(chat_id=task.chat_id, model=task.model, usage=dict(run.usage))
        logger.info(
            "turn_completed",
            trace_id=task.trace_id,
            turn_id=task.turn_id,
            chat_id=task.chat_id,
            status=status.value,
            error_code=error_code,
        )


def _is_prompt_worthy(message: MessageRecord, run: TurnRun) -> bool:
    if message.message_id == run.task.message_id:
        return True
    # 다른 턴에서 오류로 끝난 어시스턴트 메시지는 프롬프트에서 빼요.
    return message.status != MessageStatus.ERRORED


def _to_prompt_message(message: MessageRecord) -> PromptMessage:
    return PromptMessage(role=message.role.value, parts=[part.to_dict() for part in message.parts])
