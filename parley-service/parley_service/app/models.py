from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from parley_service.app.store import ArtifactRecord, ArtifactVersion, MessageRecord
from parley_service.app.turn_store import TurnRecord


class StartTurnRequest(BaseModel):
    message: str = Field(min_length=1)
    model: str | None = None
    # None이면 등록된 도구를 모두 써요
    tools: list[str] | None = None
    stream: bool = False


class StartTurnResponse(BaseModel):
    trace_id: str
    turn_id: str
    stream_id: str
    message_id: str
    model: str
    status: str


class StopStreamResponse(BaseModel):
    stream_id: str
    stopped: bool


class TurnResponse(BaseModel):
    turn_id: str
    chat_id: str
    stream_id: str
    message_id: str
    model: str
    status: str
    started_at: float
    finished_at: float | None = None
    error_code: str | None = None

    @classmethod
    def from_record(cls, record: TurnRecord) -> "TurnResponse":
        return cls(
            turn_id=record.turn_id,
            chat_id=record.chat_id,
            stream_id=record.stream_id,
            message_id=record.message_id,
            model=record.model,
            status=record.status.value,
            started_at=record.started_at,
            finished_at=record.finished_at,
            error_code=record.error_code,
        )


class MessageResponse(BaseModel):
    message_id: str
    chat_id: str
    role: str
    status: str
    created_at: float
    turn_id: str | None = None
    parts: list[dict[str, Any]] = Field(default_factory=list)

    @classmethod
    def from_record(cls, record: MessageRecord) -> "MessageResponse":
        return cls(
            message_id=record.message_id,
            chat_id=record.chat_id,
            role=record.role.value,
            status=record.status.value,
            created_at=record.created_at,
            turn_id=record.turn_id,
            parts=[part.to_dict() for part in record.parts],
        )


class ChatMessagesResponse(BaseModel):
    chat_id: str
    messages: list[MessageResponse]


class ArtifactResponse(BaseModel):
    artifact_id: str
    chat_id: str
    kind: str
    title: str
    current_version: int
    content: str
    created_at: float
    updated_at: float

    @classmethod
    def from_record(cls, record: ArtifactRecord) -> "ArtifactResponse":
        return cls(
            artifact_id=record.artifact_id,
            chat_id=record.chat_id,
            kind=record.kind.value,
            title=record.title,
            current_version=record.current_version,
            content=record.content,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


class ArtifactVersionSummary(BaseModel):
    version: int
    snapshot: bool
    created_at: float

    @classmethod
    def from_version(cls, version: ArtifactVersion) -> "ArtifactVersionSummary":
        return cls(version=version.version, snapshot=version.is_snapshot, created_at=version.created_at)


class ArtifactVersionsResponse(BaseModel):
    artifact_id: str
    versions: list[ArtifactVersionSummary]


class ArtifactVersionContentResponse(BaseModel):
    artifact_id: str
    version: int
    content: str
