from __future__ import annotations

import asyncio
import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from parley_service.app.errors import (
    ArtifactExistsError,
    ArtifactNotFoundError,
    VersionConflictError,
)
from libs.common.errors import NotFoundError


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class MessageStatus(str, Enum):
    STREAMING = "streaming"
    FINISHED = "finished"
    ERRORED = "errored"
    STOPPED = "stopped"


class PartType:
    TEXT = "text"
    REASONING = "reasoning"
    TOOL_CALL = "tool-call"
    TOOL_RESULT = "tool-result"
    FILE = "file"


class PartState:
    STREAMING = "streaming"
    DONE = "done"


class ArtifactKind(str, Enum):
    CODE = "code"
    TEXT = "text"
    IMAGE = "image"
    SHEET = "sheet"

    @property
    def supports_delta(self) -> bool:
        return self in (ArtifactKind.CODE, ArtifactKind.TEXT)


class MessageNotFoundError(NotFoundError):
    def __init__(self, message_id: str) -> None:
        super().__init__(f"메시지를 찾을 수 없어요: {message_id!r}")
        self.message_id = message_id


@dataclass(slots=True, frozen=True)
class MessagePart:
    index: int
    type: str
    text: str | None = None
    state: str | None = None
    call_id: str | None = None
    name: str | None = None
    args: dict[str, Any] | None = None
    output: Any = None
    error: dict[str, Any] | None = None
    mime: str | None = None
    ref: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"index": self.index, "type": self.type}
        for key in ("text", "state", "call_id", "name", "args", "output", "error", "mime", "ref"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data


@dataclass(slots=True, frozen=True)
class MessageRecord:
    message_id: str
    chat_id: str
    role: MessageRole
    status: MessageStatus
    created_at: float
    turn_id: str | None = None
    parts: tuple[MessagePart, ...] = ()

    def with_status(self, status: MessageStatus) -> "MessageRecord":
        return dataclasses.replace(self, status=status)

    def with_parts(self, parts: tuple[MessagePart, ...]) -> "MessageRecord":
        return dataclasses.replace(self, parts=parts)

    def text(self) -> str:
        """text/reasoning 파트를 순서대로 이어 붙인 문자열이에요."""
        return "".join(
            part.text or ""
            for part in self.parts
            if part.type in (PartType.TEXT, PartType.REASONING)
        )


@dataclass(slots=True, frozen=True)
class ArtifactVersion:
    artifact_id: str
    version: int
    # 1번 버전과 delta 미지원 타입은 전체 스냅샷, 나머지는 delta로 저장해요.
    content: str | None
    delta: tuple[tuple[int, int, str], ...] | None
    created_at: float
    idempotency_key: str | None = None

    @property
    def is_snapshot(self) -> bool:
        return self.content is not None


@dataclass(slots=True, frozen=True)
class ArtifactRecord:
    artifact_id: str
    chat_id: str
    kind: ArtifactKind
    title: str
    current_version: int
    content: str
    created_at: float
    updated_at: float


@dataclass(slots=True)
class _ArtifactSlot:
    record: ArtifactRecord
    versions: list[ArtifactVersion] = field(default_factory=list)


class InMemoryChatStore:
    """메시지, 메시지 파트, 아티팩트를 보관하는 영속 계층 구현이에요.

    외부 관계형 저장소가 제공해야 하는 두 가지 연산(아이디 기준 원자적
    upsert, 버전 검사를 동반한 낙관적 갱신)만 사용해요.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._messages: dict[str, MessageRecord] = {}
        self._by_chat: dict[str, list[str]] = {}
        self._parts: dict[str, dict[int, MessagePart]] = {}
        self._artifacts: dict[str, _ArtifactSlot] = {}
        self._by_idempotency: dict[str, tuple[str, int]] = {}

    # --- 메시지 ---

    async def upsert_message(self, record: MessageRecord) -> MessageRecord:
        async with self._lock:
            if record.message_id not in self._messages:
                self._by_chat.setdefault(record.chat_id, []).append(record.message_id)
            self._messages[record.message_id] = record.with_parts(())
            parts = self._parts.setdefault(record.message_id, {})
            for part in record.parts:
                parts[part.index] = part
            return self._materialize(record.message_id)

    async def set_message_status(self, message_id: str, status: MessageStatus) -> MessageRecord:
        async with self._lock:
            record = self._require_message(message_id)
            self._messages[message_id] = record.with_status(status)
            return self._materialize(message_id)

    async def upsert_part(self, message_id: str, part: MessagePart) -> None:
        async with self._lock:
            self._require_message(message_id)
            self._parts.setdefault(message_id, {})[part.index] = part

    async def get_message(self, message_id: str) -> MessageRecord:
        async with self._lock:
            self._require_message(message_id)
            return self._materialize(message_id)

    async def list_messages(self, chat_id: str) -> list[MessageRecord]:
        async with self._lock:
            return [self._materialize(message_id) for message_id in self._by_chat.get(chat_id, [])]

    def _require_message(self, message_id: str) -> MessageRecord:
        record = self._messages.get(message_id)
        if record is None:
            raise MessageNotFoundError(message_id)
        return record

    def _materialize(self, message_id: str) -> MessageRecord:
        parts = self._parts.get(message_id, {})
        ordered = tuple(parts[index] for index in sorted(parts))
        return self._messages[message_id].with_parts(ordered)

    # --- 아티팩트 ---

    async def get_artifact(self, artifact_id: str) -> ArtifactRecord:
        async with self._lock:
            slot = self._artifacts.get(artifact_id)
            if slot is None:
                raise ArtifactNotFoundError(artifact_id)
            return slot.record

    async def find_artifact(self, artifact_id: str) -> ArtifactRecord | None:
        async with self._lock:
            slot = self._artifacts.get(artifact_id)
            return slot.record if slot is not None else None

    async def list_artifact_versions(self, artifact_id: str) -> list[ArtifactVersion]:
        async with self._lock:
            slot = self._artifacts.get(artifact_id)
            if slot is None:
                raise ArtifactNotFoundError(artifact_id)
            return list(slot.versions)

    async def find_by_idempotency_key(self, key: str) -> tuple[str, int] | None:
        async with self._lock:
            return self._by_idempotency.get(key)

    async def commit_artifact_version(
        self,
        record: ArtifactRecord,
        version: ArtifactVersion,
        *,
        expected_version: int,
    ) -> ArtifactRecord:
        """``expected_version``이 현재 버전과 같을 때만 새 버전을 기록해요.

        생성은 ``expected_version=0``이에요. 검사와 기록은 하나의 락 구간에서
        일어나므로 부분적으로 기록된 상태는 관찰되지 않아요.
        """
        async with self._lock:
            slot = self._artifacts.get(record.artifact_id)
            current = slot.record.current_version if slot is not None else 0
            if expected_version == 0 and slot is not None:
                raise ArtifactExistsError(record.artifact_id)
            if current != expected_version:
                raise VersionConflictError(record.artifact_id, expected_version, current)
            if version.version != current + 1 or record.current_version != version.version:
                raise ValueError("아티팩트 버전은 1부터 연속해서 증가해야 해요.")

            if slot is None:
                slot = _ArtifactSlot(record=record)
                self._artifacts[record.artifact_id] = slot
            slot.record = record
            slot.versions.append(version)
            if version.idempotency_key:
                self._by_idempotency[version.idempotency_key] = (record.artifact_id, version.version)
            return record
