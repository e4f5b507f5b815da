from __future__ import annotations

from collections.abc import AsyncIterator

from fastapi import APIRouter, Header, Query, Request
from fastapi.responses import StreamingResponse

from parley_service.app.errors import StreamExpiredError
from parley_service.app.models import (
    StartTurnRequest,
    StartTurnResponse,
    StopStreamResponse,
    TurnResponse,
)
from parley_service.app.turn_store import TurnStatus
from parley_service.modules.common.deps import get_turns_service, require_auth
from libs.common.logging import get_logger
from libs.contracts.models import Chunk, encode_chunk, parse_resume_from

router = APIRouter()
logger = get_logger("parley_service.modules.turns")

NDJSON_MEDIA_TYPE = "application/x-ndjson"


async def _ndjson_body(stream_id: str, chunks: AsyncIterator[Chunk]) -> AsyncIterator[bytes]:
    try:
        async for chunk in chunks:
            yield encode_chunk(chunk)
    except StreamExpiredError:
        # 응답 헤더가 이미 나간 뒤라 상태 코드를 바꿀 수 없어요.
        logger.warning("stream_expired_while_streaming", stream_id=stream_id)


def _streaming_response(stream_id: str, chunks: AsyncIterator[Chunk], headers: dict[str, str]) -> StreamingResponse:
    return StreamingResponse(
        _ndjson_body(stream_id, chunks),
        media_type=NDJSON_MEDIA_TYPE,
        headers={"cache-control": "no-cache", "x-stream-id": stream_id, **headers},
    )


@router.post("/chats/{chat_id}/turns", response_model=None)
async def start_turn(
    request: Request,
    chat_id: str,
    req: StartTurnRequest,
    authorization: str = Header(default=""),
) -> StartTurnResponse | StreamingResponse:
    require_auth(request, authorization)
    service = get_turns_service(request)
    started = await service.start_turn(
        chat_id=chat_id,
        text=req.message,
        model=req.model,
        tool_names=req.tools,
    )
    if req.stream:
        return _streaming_response(
            started.stream_id,
            service.open_stream(started.stream_id, 0),
            {"x-turn-id": started.turn_id, "x-message-id": started.message_id},
        )
    return StartTurnResponse(
        trace_id=started.trace_id,
        turn_id=started.turn_id,
        stream_id=started.stream_id,
        message_id=started.message_id,
        model=started.model,
        status=TurnStatus.PENDING.value,
    )


@router.get("/streams/{stream_id}")
async def subscribe_stream(
    request: Request,
    stream_id: str,
    from_seq: int | None = Query(default=None, ge=0),
    x_resume_from: str | None = Header(default=None),
    authorization: str = Header(default=""),
) -> StreamingResponse:
    """기록된 청크를 재생하고 봉인될 때까지 새 청크를 이어서 보내요.

    ``x-resume-from`` 헤더(마지막으로 받은 seq)가 있으면 그 다음부터,
    없으면 ``from_seq``부터 보내요.
    """
    require_auth(request, authorization)
    resume_seq = parse_resume_from(x_resume_from)
    start_seq = resume_seq if resume_seq is not None else (from_seq or 0)
    chunks = get_turns_service(request).open_stream(stream_id, start_seq)
    logger.info("stream_subscribed", stream_id=stream_id, from_seq=start_seq)
    return _streaming_response(stream_id, chunks, {})


@router.post("/streams/{stream_id}/stop", response_model=StopStreamResponse)
async def stop_stream(
    request: Request,
    stream_id: str,
    authorization: str = Header(default=""),
) -> StopStreamResponse:
    require_auth(request, authorization)
    stopped = await get_turns_service(request).stop_stream(stream_id)
    return StopStreamResponse(stream_id=stream_id, stopped=stopped)


@router.get("/turns/{turn_id}", response_model=TurnResponse)
async def get_turn(
    request: Request,
    turn_id: str,
    authorization: str = Header(default=""),
) -> TurnResponse:
    require_auth(request, authorization)
    record = await get_turns_service(request).get_turn(turn_id)
    return TurnResponse.from_record(record)
