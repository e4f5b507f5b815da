"""턴 오케스트레이션에서 쓰는 도메인 오류예요.

도구 관련 오류(`ToolError` 하위)는 턴을 중단시키지 않고 ``tool-result``
청크의 ``error`` payload로 바뀌어요.
"""

from __future__ import annotations

from typing import Any

from libs.common.errors import (
    ConflictError,
    DomainError,
    GoneError,
    NotFoundError,
    UpstreamTransientError,
)


class TurnConflictError(ConflictError):
    def __init__(self, chat_id: str, active_turn_id: str) -> None:
        super().__init__("TURN_CONFLICT", f"이미 진행 중인 턴이 있어요: chat={chat_id!r}")
        self.chat_id = chat_id
        self.active_turn_id = active_turn_id

    @property
    def details(self) -> dict[str, Any]:
        return {"chat_id": self.chat_id, "active_turn_id": self.active_turn_id}


class TurnNotFoundError(NotFoundError):
    def __init__(self, turn_id: str) -> None:
        super().__init__(f"턴을 찾을 수 없어요: {turn_id!r}")
        self.turn_id = turn_id


class StreamExpiredError(GoneError):
    """스트림이 만료됐거나 존재하지 않아요. 저장된 메시지를 조회해야 해요."""

    def __init__(self, stream_id: str) -> None:
        super().__init__("STREAM_EXPIRED", f"스트림이 만료됐어요: {stream_id!r}")
        self.stream_id = stream_id

    @property
    def details(self) -> dict[str, Any]:
        return {"stream_id": self.stream_id}


class StreamSealedError(ConflictError):
    def __init__(self, stream_id: str) -> None:
        super().__init__("STREAM_SEALED", f"이미 종료된 스트림에는 추가할 수 없어요: {stream_id!r}", retryable=False)
        self.stream_id = stream_id


class SequenceGapError(ConflictError):
    def __init__(self, stream_id: str, expected: int, actual: int) -> None:
        super().__init__(
            "SEQUENCE_GAP",
            f"스트림 {stream_id!r}의 다음 seq는 {expected}인데 {actual}이 들어왔어요.",
            retryable=False,
        )
        self.expected = expected
        self.actual = actual


class ModelProviderError(UpstreamTransientError):
    def __init__(self, message: str = "모델 프로바이더 오류가 발생했어요.") -> None:
        super().__init__(message)
        self.error_code = "MODEL_PROVIDER_ERROR"


class VersionConflictError(ConflictError):
    """기준 버전이 현재 버전과 달라요. 최신 버전을 다시 읽고 재시도해야 해요."""

    def __init__(self, artifact_id: str, base_version: int | None, current_version: int) -> None:
        super().__init__(
            "VERSION_CONFLICT",
            f"아티팩트 {artifact_id!r}의 기준 버전({base_version})이 현재 버전({current_version})과 달라요.",
        )
        self.artifact_id = artifact_id
        self.base_version = base_version
        self.current_version = current_version

    @property
    def details(self) -> dict[str, Any]:
        return {
            "artifact_id": self.artifact_id,
            "base_version": self.base_version,
            "current_version": self.current_version,
        }


class ArtifactNotFoundError(NotFoundError):
    def __init__(self, artifact_id: str) -> None:
        super().__init__(f"아티팩트를 찾을 수 없어요: {artifact_id!r}")
        self.artifact_id = artifact_id


class ArtifactExistsError(ConflictError):
    def __init__(self, artifact_id: str) -> None:
        super().__init__("ARTIFACT_EXISTS", f"이미 존재하는 아티팩트예요: {artifact_id!r}", retryable=False)
        self.artifact_id = artifact_id


# --- 도구 오류 ---


class ToolError(DomainError):
    """도구 호출 실패의 공통 부모예요."""

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.error_code, "message": self.message}
        payload.update(self.details)
        return payload


class UnknownToolError(ToolError):
    def __init__(self, tool_name: str) -> None:
        super().__init__("UNKNOWN_TOOL", f"등록되지 않은 도구예요: {tool_name}")
        self.tool_name = tool_name


class InvalidArgumentsError(ToolError):
    def __init__(self, tool_name: str, field: str, reason: str) -> None:
        super().__init__("INVALID_ARGUMENTS", f"도구 `{tool_name}` 인자가 올바르지 않아요 ({field}): {reason}")
        self.tool_name = tool_name
        self.field = field
        self.reason = reason

    @property
    def details(self) -> dict[str, Any]:
        return {"field": self.field}


class ToolTimeoutError(ToolError):
    def __init__(self, tool_name: str, timeout_seconds: float) -> None:
        super().__init__(
            "TOOL_TIMEOUT",
            f"도구 `{tool_name}` 실행이 {timeout_seconds:g}초를 초과했어요.",
            retryable=True,
        )
        self.tool_name = tool_name
        self.timeout_seconds = timeout_seconds


class ToolExecutionFailedError(ToolError):
    def __init__(self, tool_name: str, reason: str, *, retryable: bool = False) -> None:
        super().__init__("TOOL_EXECUTION_FAILED", f"도구 `{tool_name}` 실행에 실패했어요: {reason}", retryable=retryable)
        self.tool_name = tool_name
        self.reason = reason
        # 도구 안에서 난 도메인 오류 코드(예: VERSION_CONFLICT)예요.
        self.cause_code: str | None = None

    @property
    def details(self) -> dict[str, Any]:
        return {"cause": self.cause_code} if self.cause_code else {}
