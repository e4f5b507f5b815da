from __future__ import annotations

import re
from collections.abc import AsyncIterator

from parley_service.app.providers.base import (
    Finish,
    ModelEvent,
    ModelProvider,
    ModelRequest,
    TextDelta,
    ToolCallDelta,
    ToolCallEnd,
    ToolCallStart,
)
from libs.contracts.models import FinishReason, dumps_args

_CREATE_FILE_PATTERN = re.compile(
    r"create (?:a )?file named (?P<title>\S+) with content ['\"](?P<content>.*)['\"]",
    re.IGNORECASE | re.DOTALL,
)


class ScriptedProvider(ModelProvider):
    """외부 모델 없이 개발할 때 쓰는 결정적인 프로바이더예요.

    마지막 사용자 메시지를 단어 단위로 되돌려 주고, "create a file named X
    with content 'Y'" 형태의 요청에는 ``createDocument`` 도구를 호출해요.
    """

    def __init__(self, name: str = "scripted") -> None:
        self.name = name

    async def stream(self, request: ModelRequest) -> AsyncIterator[ModelEvent]:
        user_text = _last_user_text(request)
        tool_names = {tool.name for tool in request.tools}
        match = _CREATE_FILE_PATTERN.search(user_text)

        if request.step == 0 and match and "createDocument" in tool_names:
            yield TextDelta(text=f"`{match.group('title')}` 문서를 만들게요.")
            call_id = f"{request.turn_id}-call-0"
            args_text = dumps_args({"title": match.group("title"), "content": match.group("content")})
            yield ToolCallStart(call_id=call_id, name="createDocument")
            middle = len(args_text) // 2
            yield ToolCallDelta(call_id=call_id, args_delta=args_text[:middle])
            yield ToolCallDelta(call_id=call_id, args_delta=args_text[middle:])
            yield ToolCallEnd(call_id=call_id)
            yield Finish(reason=FinishReason.TOOL_CALLS, usage={"input_tokens": len(user_text), "output_tokens": 8})
            return

        if request.step > 0:
            yield TextDelta(text="요청하신 작업을 마쳤어요.")
            yield Finish(reason=FinishReason.STOP, usage={"input_tokens": 0, "output_tokens": 4})
            return

        words = user_text.split(" ") if user_text else ["(빈 메시지)"]
        for index, word in enumerate(words):
            yield TextDelta(text=word if index == 0 else f" {word}")
        yield Finish(reason=FinishReason.STOP, usage={"input_tokens": len(user_text), "output_tokens": len(words)})


def _last_user_text(request: ModelRequest) -> str:
    for message in reversed(request.messages):
        if message.role != "user":
            continue
        return "".join(str(part.get("text", "")) for part in message.parts if part.get("type") == "text")
    return ""
