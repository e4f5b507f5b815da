from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest
from conftest import make_settings, wait_until

from parley_service.app.artifacts import ArtifactUpdate
from parley_service.app.errors import TurnConflictError
from parley_service.app.providers.base import (
    Finish,
    ModelEvent,
    ModelProvider,
    ModelRequest,
    ProviderFailure,
    TextDelta,
    ToolCallDelta,
    ToolCallEnd,
    ToolCallStart,
)
from parley_service.app.store import ArtifactKind, MessageRole, MessageStatus, PartType
from parley_service.app.tools import BaseTool, ToolContext, ToolRegistry, ToolResult
from parley_service.app.tools.defaults import build_default_tool_registry
from parley_service.app.turn_store import TurnStatus
from parley_service.bootstrap.container import RuntimeComponents, build_runtime_components
from libs.contracts.models import Chunk, ChunkKind, dumps_args

StepScript = Callable[[ModelRequest], list[ModelEvent]]


class _FakeProvider(ModelProvider):
    """스텝 번호별 이벤트 목록을 내보내는 프로바이더예요. ``gate``가 있으면 마지막에 멈춰요."""

    def __init__(self, script: StepScript, *, gate: asyncio.Event | None = None) -> None:
        self.name = "fake"
        self.requests: list[ModelRequest] = []
        self._script = script
        self._gate = gate

    async def stream(self, request: ModelRequest) -> AsyncIterator[ModelEvent]:
        self.requests.append(request)
        events = self._script(request)
        for event in events[:-1]:
            yield event
        if self._gate is not None:
            await self._gate.wait()
        yield events[-1]


class _SlowTool(BaseTool):
    def __init__(self, *, delay: float, commit: bool = False) -> None:
        self._delay = delay
        self._commit = commit

    @property
    def name(self) -> str:
        return "slow"

    @property
    def description(self) -> str:
        return "한참 걸리는 도구예요."

    @property
    def input_schema(self) -> dict[str, Any]:
        return {"type": "object", "properties": {}}

    async def execute(self, arguments: dict[str, Any], context: ToolContext) -> ToolResult:
        await asyncio.sleep(self._delay)
        if self._commit:
            await context.artifacts.apply_update(
                "slow-artifact",
                ArtifactUpdate.create(
                    chat_id=context.chat_id,
                    kind=ArtifactKind.TEXT,
                    title="slow.txt",
                    content="done",
                    idempotency_key=context.idempotency_key,
                ),
            )
        return ToolResult(ok=True, output={"slept": self._delay})


def _tool_call_step(name: str, args_text: str = "{}") -> list[ModelEvent]:
    return [
        ToolCallStart(call_id="call-1", name=name),
        ToolCallDelta(call_id="call-1", args_delta=args_text),
        ToolCallEnd(call_id="call-1"),
        Finish(reason="tool-calls"),
    ]


def _then_stop(first: list[ModelEvent]) -> StepScript:
    def script(request: ModelRequest) -> list[ModelEvent]:
        if request.step == 0:
            return first
        return [TextDelta(text="마쳤어요."), Finish(reason="stop", usage={"output_tokens": 2})]

    return script


async def _runtime(
    providers: list[ModelProvider] | None = None,
    tools: ToolRegistry | None = None,
    **overrides: Any,
) -> RuntimeComponents:
    if providers is not None:
        overrides.setdefault("default_provider_name", "fake")
        overrides.setdefault("default_model", "fake-model")
    runtime = build_runtime_components(make_settings(**overrides), providers=providers, tool_registry=tools)
    await runtime.worker_pool.start()
    return runtime


async def _collect(runtime: RuntimeComponents, stream_id: str) -> list[Chunk]:
    chunks = runtime.turns_service.open_stream(stream_id, 0)
    return await asyncio.wait_for(_drain(chunks), timeout=3.0)


async def _drain(chunks: AsyncIterator[Chunk]) -> list[Chunk]:
    return [chunk async for chunk in chunks]


@pytest.mark.asyncio
async def test_create_document_turn_end_to_end() -> None:
    runtime = await _runtime()
    try:
        started = await runtime.turns_service.start_turn(
            chat_id="c1",
            text="create a file named notes.txt with content 'hello'",
        )
        chunks = await _collect(runtime, started.stream_id)
    finally:
        await runtime.worker_pool.stop()

    kinds = [chunk.kind for chunk in chunks]
    assert [chunk.seq for chunk in chunks] == list(range(len(chunks)))
    assert kinds[0] == ChunkKind.START
    assert kinds[-1] == ChunkKind.FINISH
    assert chunks[-1].payload["reason"] == "stop"
    assert kinds.index(ChunkKind.TOOL_CALL_START) < kinds.index(ChunkKind.TOOL_CALL_END)
    assert kinds.index(ChunkKind.TOOL_CALL_END) < kinds.index(ChunkKind.TOOL_RESULT)

    result = next(chunk for chunk in chunks if chunk.kind == ChunkKind.TOOL_RESULT)
    assert result.payload["ok"] is True
    artifact_id = result.payload["output"]["artifact_id"]
    assert result.payload["output"]["version"] == 1
    artifact = await runtime.artifacts.get(artifact_id)
    assert artifact.content == "hello"
    assert artifact.current_version == 1

    messages = await runtime.store.list_messages("c1")
    assert [message.role for message in messages] == [MessageRole.USER, MessageRole.ASSISTANT]
    assistant = messages[1]
    assert assistant.status == MessageStatus.FINISHED
    assert [part.type for part in assistant.parts] == [
        PartType.TEXT,
        PartType.TOOL_CALL,
        PartType.TOOL_RESULT,
        PartType.TEXT,
    ]
    assert assistant.parts[1].args == {"title": "notes.txt", "content": "hello"}

    turn = await runtime.turns_service.get_turn(started.turn_id)
    assert turn.status == TurnStatus.FINISHED
    assert runtime.usage.snapshot("c1")["scripted-echo"]["output_tokens"] > 0


@pytest.mark.asyncio
async def test_streamed_text_matches_persisted_text() -> None:
    runtime = await _runtime()
    try:
        started = await runtime.turns_service.start_turn(chat_id="c1", text="하나 둘 셋 넷 다섯 여섯 일곱")
        chunks = await _collect(runtime, started.stream_id)
    finally:
        await runtime.worker_pool.stop()

    streamed = "".join(chunk.payload["text"] for chunk in chunks if chunk.kind == ChunkKind.TEXT_DELTA)
    message = await runtime.store.get_message(started.message_id)
    assert streamed == "하나 둘 셋 넷 다섯 여섯 일곱"
    assert message.text() == streamed


@pytest.mark.asyncio
async def test_second_turn_conflicts_until_first_is_sealed() -> None:
    gate = asyncio.Event()
    provider = _FakeProvider(lambda request: [TextDelta(text="생각 중"), Finish(reason="stop")], gate=gate)
    runtime = await _runtime([provider])
    try:
        first = await runtime.turns_service.start_turn(chat_id="c1", text="첫 번째")

        with pytest.raises(TurnConflictError):
            await runtime.turns_service.start_turn(chat_id="c1", text="두 번째")
        await runtime.turns_service.start_turn(chat_id="c2", text="다른 채팅")

        gate.set()
        await _collect(runtime, first.stream_id)
        await wait_until(lambda: runtime.worker_pool.find(first.stream_id) is None)
        third = await runtime.turns_service.start_turn(chat_id="c1", text="세 번째")
        await _collect(runtime, third.stream_id)
    finally:
        await runtime.worker_pool.stop()

    user_texts = [m.text() for m in await runtime.store.list_messages("c1") if m.role == MessageRole.USER]
    assert user_texts == ["첫 번째", "세 번째"]


@pytest.mark.asyncio
async def test_tool_timeout_is_reported_and_turn_continues() -> None:
    provider = _FakeProvider(_then_stop(_tool_call_step("slow")))
    tools = ToolRegistry()
    tools.register(_SlowTool(delay=1.0))
    runtime = await _runtime([provider], tools, tool_timeout_seconds=0.05)
    try:
        started = await runtime.turns_service.start_turn(chat_id="c1", text="느린 도구를 불러요")
        chunks = await _collect(runtime, started.stream_id)
    finally:
        await runtime.worker_pool.stop()

    result = next(chunk for chunk in chunks if chunk.kind == ChunkKind.TOOL_RESULT)
    assert result.payload["ok"] is False
    assert result.payload["error"]["code"] == "TOOL_TIMEOUT"
    assert chunks[-1].kind == ChunkKind.FINISH
    assert chunks[-1].payload["reason"] == "stop"
    assert (await runtime.turns_service.get_turn(started.turn_id)).status == TurnStatus.FINISHED

    # 두 번째 스텝의 프롬프트에는 실패한 도구 결과가 들어가요.
    second_prompt = provider.requests[1].messages[-1]
    assert any(part["type"] == PartType.TOOL_RESULT for part in second_prompt.parts)


@pytest.mark.asyncio
async def test_invalid_argument_json_becomes_tool_error() -> None:
    provider = _FakeProvider(_then_stop(_tool_call_step("createDocument", '{"title": ')))
    runtime = await _runtime([provider], build_default_tool_registry())
    try:
        started = await runtime.turns_service.start_turn(chat_id="c1", text="깨진 인자")
        chunks = await _collect(runtime, started.stream_id)
    finally:
        await runtime.worker_pool.stop()

    result = next(chunk for chunk in chunks if chunk.kind == ChunkKind.TOOL_RESULT)
    assert result.payload["error"]["code"] == "INVALID_ARGUMENTS"


@pytest.mark.asyncio
async def test_model_failure_seals_with_error_and_keeps_partial_parts() -> None:
    provider = _FakeProvider(lambda request: [TextDelta(text="절반까지 썼어요"), ProviderFailure(message="모델이 끊겼어요")])
    runtime = await _runtime([provider])
    try:
        started = await runtime.turns_service.start_turn(chat_id="c1", text="안녕")
        chunks = await _collect(runtime, started.stream_id)
        await wait_until(lambda: runtime.worker_pool.find(started.stream_id) is None)
        turn = await runtime.turns_service.get_turn(started.turn_id)
        message = await runtime.store.get_message(started.message_id)
        # 리스가 풀려서 같은 채팅에 새 턴을 시작할 수 있어요.
        await runtime.turns_service.start_turn(chat_id="c1", text="다시")
    finally:
        await runtime.worker_pool.stop()

    assert chunks[-1].kind == ChunkKind.ERROR
    assert chunks[-1].payload["error_code"] == "MODEL_PROVIDER_ERROR"
    assert turn.status == TurnStatus.ERRORED
    assert turn.error_code == "MODEL_PROVIDER_ERROR"
    assert message.status == MessageStatus.ERRORED
    assert message.text() == "절반까지 썼어요"


@pytest.mark.asyncio
async def test_stop_seals_stream_and_is_idempotent() -> None:
    gate = asyncio.Event()
    provider = _FakeProvider(lambda request: [TextDelta(text="길게 "), TextDelta(text="말하는 중"), Finish(reason="stop")], gate=gate)
    runtime = await _runtime([provider])
    try:
        started = await runtime.turns_service.start_turn(chat_id="c1", text="길게 말해 줘")
        await wait_until(lambda: runtime.stream_store.next_seq(started.stream_id) >= 3)

        assert await runtime.turns_service.stop_stream(started.stream_id) is True
        assert await runtime.turns_service.stop_stream(started.stream_id) is False
        gate.set()
        chunks = await _collect(runtime, started.stream_id)
        await wait_until(lambda: runtime.worker_pool.find(started.stream_id) is None)
        turn = await runtime.turns_service.get_turn(started.turn_id)
        message = await runtime.store.get_message(started.message_id)
    finally:
        await runtime.worker_pool.stop()

    assert [chunk.kind for chunk in chunks].count(ChunkKind.FINISH) == 1
    assert chunks[-1].payload["reason"] == "stopped"
    assert turn.status == TurnStatus.STOPPED
    assert message.status == MessageStatus.STOPPED
    assert message.text() == "길게 말하는 중"


@pytest.mark.asyncio
async def test_stop_discards_tool_result_but_keeps_side_effect() -> None:
    gate = asyncio.Event()
    provider = _FakeProvider(lambda request: _tool_call_step("slow"), gate=gate)
    tools = ToolRegistry()
    tools.register(_SlowTool(delay=0.1, commit=True))
    runtime = await _runtime([provider], tools)
    try:
        started = await runtime.turns_service.start_turn(chat_id="c1", text="느리게 만들어 줘")
        await wait_until(
            lambda: any(
                chunk.kind == ChunkKind.TOOL_CALL_END for chunk in runtime.stream_store.replay(started.stream_id)
            )
        )
        await runtime.turns_service.stop_stream(started.stream_id)
        chunks = await _collect(runtime, started.stream_id)
        await asyncio.sleep(0.3)
        artifact = await runtime.artifacts.get("slow-artifact")
        replayed = runtime.stream_store.replay(started.stream_id)
    finally:
        gate.set()
        await runtime.worker_pool.stop()

    assert artifact.current_version == 1
    assert ChunkKind.TOOL_RESULT not in [chunk.kind for chunk in replayed]
    assert replayed == chunks
    assert chunks[-1].payload["reason"] == "stopped"


@pytest.mark.asyncio
async def test_max_steps_finishes_with_length() -> None:
    provider = _FakeProvider(lambda request: [Finish(reason="tool-calls")])
    runtime = await _runtime([provider], max_steps=3)
    try:
        started = await runtime.turns_service.start_turn(chat_id="c1", text="계속")
        chunks = await _collect(runtime, started.stream_id)
    finally:
        await runtime.worker_pool.stop()

    assert len(provider.requests) == 3
    assert chunks[-1].payload["reason"] == "length"


@pytest.mark.asyncio
async def test_args_from_tool_call_end_override_deltas() -> None:
    events: list[ModelEvent] = [
        ToolCallStart(call_id="call-1", name="createDocument"),
        ToolCallDelta(call_id="call-1", args_delta="깨진 조각"),
        ToolCallEnd(call_id="call-1", args={"title": "a.md", "content": "# 제목"}),
        Finish(reason="tool-calls"),
    ]
    provider = _FakeProvider(_then_stop(events))
    runtime = await _runtime([provider], build_default_tool_registry())
    try:
        started = await runtime.turns_service.start_turn(chat_id="c1", text="문서")
        chunks = await _collect(runtime, started.stream_id)
    finally:
        await runtime.worker_pool.stop()

    end = next(chunk for chunk in chunks if chunk.kind == ChunkKind.TOOL_CALL_END)
    result = next(chunk for chunk in chunks if chunk.kind == ChunkKind.TOOL_RESULT)
    assert end.payload["args"] == {"title": "a.md", "content": "# 제목"}
    assert result.payload["ok"] is True
    assert dumps_args(end.payload["args"]) == '{"title":"a.md","content":"# 제목"}'


@pytest.mark.asyncio
async def test_reused_call_id_in_later_turn_creates_new_document() -> None:
    contents = iter(["첫 번째 문서", "두 번째 문서"])

    def script(request: ModelRequest) -> list[ModelEvent]:
        if request.step == 0:
            return _tool_call_step("createDocument", dumps_args({"title": "a.txt", "content": next(contents)}))
        return [TextDelta(text="만들었어요."), Finish(reason="stop")]

    runtime = await _runtime([_FakeProvider(script)], build_default_tool_registry())
    outputs: list[dict[str, Any]] = []
    try:
        for text in ("하나 만들어 줘", "하나 더 만들어 줘"):
            started = await runtime.turns_service.start_turn(chat_id="c1", text=text)
            chunks = await _collect(runtime, started.stream_id)
            await wait_until(lambda: runtime.worker_pool.find(started.stream_id) is None)
            result = next(chunk for chunk in chunks if chunk.kind == ChunkKind.TOOL_RESULT)
            assert result.payload["ok"] is True
            outputs.append(result.payload["output"])
    finally:
        await runtime.worker_pool.stop()

    first, second = outputs
    assert first["artifact_id"] != second["artifact_id"]
    assert (await runtime.artifacts.get(first["artifact_id"])).content == "첫 번째 문서"
    assert (await runtime.artifacts.get(second["artifact_id"])).content == "두 번째 문서"
    assert second["version"] == 1


@pytest.mark.asyncio
async def test_running_turn_keeps_chat_lease_past_ttl() -> None:
    provider = _FakeProvider(_then_stop(_tool_call_step("slow")))
    tools = ToolRegistry()
    tools.register(_SlowTool(delay=0.4))
    runtime = await _runtime([provider], tools, chat_lease_seconds=0.1)
    try:
        started = await runtime.turns_service.start_turn(chat_id="c1", text="오래 걸려요")
        await asyncio.sleep(0.25)
        assert (await runtime.turns_service.get_turn(started.turn_id)).status == TurnStatus.STREAMING

        with pytest.raises(TurnConflictError):
            await runtime.turns_service.start_turn(chat_id="c1", text="끼어들기")

        chunks = await _collect(runtime, started.stream_id)
        await wait_until(lambda: runtime.worker_pool.find(started.stream_id) is None)
        # 턴이 끝나면 리스가 풀려요.
        await runtime.turns_service.start_turn(chat_id="c1", text="이제 돼요")
    finally:
        await runtime.worker_pool.stop()

    assert chunks[-1].payload["reason"] == "stop"
