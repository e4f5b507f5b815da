from __future__ import annotations

from fastapi import APIRouter, Header, Request

from parley_service.app.models import ChatMessagesResponse, MessageResponse
from parley_service.modules.common.deps import get_store, require_auth

router = APIRouter()


@router.get("/chats/{chat_id}/messages", response_model=ChatMessagesResponse)
async def list_messages(
    request: Request,
    chat_id: str,
    authorization: str = Header(default=""),
) -> ChatMessagesResponse:
    """채팅의 메시지를 생성 순서대로 돌려줘요. 스트리밍 중인 메시지는 마지막 flush까지만 보여요."""
    require_auth(request, authorization)
    records = await get_store(request).list_messages(chat_id)
    return ChatMessagesResponse(
        chat_id=chat_id,
        messages=[MessageResponse.from_record(record) for record in records],
    )
