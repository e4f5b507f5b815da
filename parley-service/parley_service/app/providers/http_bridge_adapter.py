from __future__ import annotations

import json
from collections.abc import AsyncIterator
from dataclasses import asdict
from typing import Any

import httpx

from parley_service.app.errors import ModelProviderError
from parley_service.app.providers.base import (
    FileOutput,
    Finish,
    ModelEvent,
    ModelProvider,
    ModelRequest,
    ProviderFailure,
    ReasoningDelta,
    TextDelta,
    ToolCallDelta,
    ToolCallEnd,
    ToolCallStart,
)
from libs.common.errors import ConfigurationError
from libs.common.logging import get_logger

logger = get_logger("parley_service.providers.http_bridge")


class HttpBridgeProvider(ModelProvider):
    """모델 브리지 서버의 ``/v1/stream``에서 NDJSON 이벤트를 받아요.

    재시도/백오프는 브리지 쪽 책임이라 여기서는 하지 않아요.
    """

    def __init__(
        self,
        *,
        name: str,
        base_url: str,
        token: str,
        timeout_seconds: float,
        provider_hint: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.name = name
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout_seconds = timeout_seconds
        self._provider_hint = provider_hint
        self._transport = transport

    async def stream(self, request: ModelRequest) -> AsyncIterator[ModelEvent]:
        if not self._base_url:
            raise ConfigurationError(f"{self._provider_hint} 브리지 주소가 설정되지 않았어요.")

        headers = {"Content-Type": "application/json", "Accept": "application/x-ndjson"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        payload: dict[str, Any] = {
            "chat_id": request.chat_id,
            "turn_id": request.turn_id,
            "model": request.model,
            "step": request.step,
            "messages": [asdict(message) for message in request.messages],
            "tools": [asdict(tool) for tool in request.tools],
        }

        try:
            async with httpx.AsyncClient(timeout=self._timeout_seconds, transport=self._transport) as client:
                async with client.stream(
                    "POST",
                    f"{self._base_url}/v1/stream",
                    json=payload,
                    headers=headers,
                ) as response:
                    if response.status_code >= 400:
                        await response.aread()
                        raise ModelProviderError(
                            f"{self._provider_hint} 브리지가 오류를 반환했어요 (status={response.status_code})."
                        )
                    async for line in response.aiter_lines():
                        if not line.strip():
                            continue
                        event = parse_bridge_event(line)
                        if event is None:
                            logger.warning("bridge_event_ignored", provider=self.name, line=line[:200])
                            continue
                        yield event
        except httpx.TimeoutException as exc:
            raise ModelProviderError(f"{self._provider_hint} 브리지 요청이 시간 초과됐어요.") from exc
        except httpx.HTTPError as exc:
            raise ModelProviderError(f"{self._provider_hint} 브리지 연결에 실패했어요.") from exc


def parse_bridge_event(line: str) -> ModelEvent | None:
    """브리지 NDJSON 한 줄을 모델 이벤트로 바꿔요. 알 수 없는 형식이면 ``None``이에요."""
    try:
        body = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(body, dict):
        return None

    event_type = body.get("type")
    if event_type == "text-delta" and isinstance(body.get("text"), str):
        return TextDelta(text=body["text"])
    if event_type == "reasoning-delta" and isinstance(body.get("text"), str):
        return ReasoningDelta(text=body["text"])

    call_id = body.get("call_id") if isinstance(body.get("call_id"), str) else body.get("id")
    if event_type == "tool-call-start" and isinstance(call_id, str) and isinstance(body.get("name"), str):
        return ToolCallStart(call_id=call_id, name=body["name"].strip())
    if event_type == "tool-call-delta" and isinstance(call_id, str):
        args_delta = body.get("args_delta")
        return ToolCallDelta(call_id=call_id, args_delta=args_delta if isinstance(args_delta, str) else "")
    if event_type == "tool-call-end" and isinstance(call_id, str):
        args = body.get("args")
        return ToolCallEnd(call_id=call_id, args=args if isinstance(args, dict) else None)

    if event_type == "file" and isinstance(body.get("mime"), str) and isinstance(body.get("ref"), str):
        return FileOutput(mime=body["mime"], ref=body["ref"])
    if event_type == "finish":
        reason = body.get("reason")
        usage = body.get("usage")
        return Finish(
            reason=reason if isinstance(reason, str) else "stop",
            usage={k: int(v) for k, v in usage.items() if isinstance(v, int)} if isinstance(usage, dict) else None,
        )
    if event_type == "error":
        message = body.get("message")
        return ProviderFailure(message=message if isinstance(message, str) else "모델이 오류를 보고했어요.")
    return None
