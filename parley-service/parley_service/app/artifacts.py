"""아티팩트 버전을 커밋하는 컨트롤러예요.

- 생성은 전체 내용을 가진 1번 버전을 만들어요.
- 수정은 ``base_version``이 현재 버전과 같을 때만 N+1 버전을 커밋해요.
  다르면 `VersionConflictError`가 나고 병합은 하지 않아요.
- ``code``/``text`` 타입은 이전 내용 대비 delta(`difflib` opcode)로
  저장하고, ``image``/``sheet``는 매번 전체 스냅샷을 저장해요.
- 같은 ``idempotency_key``(턴 아이디와 도구 call id)로 다시 들어온 요청은 이미 만든
  버전을 그대로 돌려줘요.
"""

from __future__ import annotations

import asyncio
import dataclasses
import time
from collections.abc import Callable
from dataclasses import dataclass
from difflib import SequenceMatcher

from parley_service.app.errors import ArtifactNotFoundError, VersionConflictError
from parley_service.app.store import (
    ArtifactKind,
    ArtifactRecord,
    ArtifactVersion,
    InMemoryChatStore,
)
from libs.common.errors import ValidationError
from libs.common.logging import get_logger

logger = get_logger("parley_service.artifacts")

Delta = tuple[tuple[int, int, str], ...]


@dataclass(slots=True, frozen=True)
class ArtifactUpdate:
    action: str
    chat_id: str
    kind: ArtifactKind | None = None
    title: str | None = None
    content: str | None = None
    delta: Delta | None = None
    base_version: int | None = None
    idempotency_key: str | None = None

    @classmethod
    def create(
        cls,
        *,
        chat_id: str,
        kind: ArtifactKind,
        title: str,
        content: str,
        idempotency_key: str | None = None,
    ) -> "ArtifactUpdate":
        return cls(
            action="create",
            chat_id=chat_id,
            kind=kind,
            title=title,
            content=content,
            idempotency_key=idempotency_key,
        )

    @classmethod
    def edit(
        cls,
        *,
        chat_id: str,
        base_version: int,
        content: str | None = None,
        delta: Delta | None = None,
        title: str | None = None,
        idempotency_key: str | None = None,
    ) -> "ArtifactUpdate":
        return cls(
            action="edit",
            chat_id=chat_id,
            title=title,
            content=content,
            delta=delta,
            base_version=base_version,
            idempotency_key=idempotency_key,
        )


def compute_delta(before: str, after: str) -> Delta:
    """``before``를 ``after``로 바꾸는 (시작, 끝, 대체 문자열) 목록이에요."""
    matcher = SequenceMatcher(a=before, b=after, autojunk=False)
    ops: list[tuple[int, int, str]] = []
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            continue
        ops.append((i1, i2, after[j1:j2]))
    return tuple(ops)


def apply_delta(content: str, delta: Delta) -> str:
    previous_end = 0
    for start, end, _replacement in delta:
        if start < previous_end or end < start or end > len(content):
            raise ValueError(f"delta 범위가 올바르지 않아요: ({start}, {end})")
        previous_end = end

    result = content
    for start, end, replacement in reversed(delta):
        result = result[:start] + replacement + result[end:]
    return result


class ArtifactVersionController:
    def __init__(self, store: InMemoryChatStore, *, clock: Callable[[], float] = time.time) -> None:
        self._store = store
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}

    async def apply_update(self, artifact_id: str, update: ArtifactUpdate) -> int:
        """업데이트를 커밋하고 새 버전 번호를 반환해요."""
        lock = self._locks.setdefault(artifact_id, asyncio.Lock())
        async with lock:
            replayed = await self._find_replayed_version(artifact_id, update)
            if replayed is not None:
                return replayed
            if update.action == "create":
                record, version = self._build_create(artifact_id, update)
                await self._store.commit_artifact_version(record, version, expected_version=0)
            elif update.action == "edit":
                current = await self._store.find_artifact(artifact_id)
                if current is None:
                    raise ArtifactNotFoundError(artifact_id)
                if update.base_version != current.current_version:
                    raise VersionConflictError(artifact_id, update.base_version, current.current_version)
                record, version = self._build_edit(current, update)
                await self._store.commit_artifact_version(
                    record,
                    version,
                    expected_version=current.current_version,
                )
            else:
                raise ValidationError(f"알 수 없는 아티팩트 작업이에요: {update.action!r}")

        logger.info(
            "artifact_version_committed",
            artifact_id=artifact_id,
            version=version.version,
            kind=record.kind.value,
            stored_as="snapshot" if version.is_snapshot else "delta",
        )
        return version.version

    async def get(self, artifact_id: str) -> ArtifactRecord:
        return await self._store.get_artifact(artifact_id)

    async def list_versions(self, artifact_id: str) -> list[ArtifactVersion]:
        return await self._store.list_artifact_versions(artifact_id)

    async def get_version_content(self, artifact_id: str, version_number: int) -> str:
        versions = await self._store.list_artifact_versions(artifact_id)
        if version_number < 1 or version_number > len(versions):
            raise ArtifactNotFoundError(f"{artifact_id}@{version_number}")

        snapshot_index = version_number - 1
        while not versions[snapshot_index].is_snapshot:
            snapshot_index -= 1
        content = versions[snapshot_index].content or ""
        for version in versions[snapshot_index + 1 : version_number]:
            content = apply_delta(content, version.delta or ())
        return content

    async def _find_replayed_version(self, artifact_id: str, update: ArtifactUpdate) -> int | None:
        if not update.idempotency_key:
            return None
        existing = await self._store.find_by_idempotency_key(update.idempotency_key)
        if existing is None or existing[0] != artifact_id:
            return None
        logger.info(
            "artifact_update_replayed",
            artifact_id=artifact_id,
            version=existing[1],
            idempotency_key=update.idempotency_key,
        )
        return existing[1]

    def _build_create(self, artifact_id: str, update: ArtifactUpdate) -> tuple[ArtifactRecord, ArtifactVersion]:
        if update.kind is None or update.content is None:
            raise ValidationError("아티팩트 생성에는 kind와 content가 필요해요.")
        now = self._clock()
        record = ArtifactRecord(
            artifact_id=artifact_id,
            chat_id=update.chat_id,
            kind=update.kind,
            title=update.title or artifact_id,
            current_version=1,
            content=update.content,
            created_at=now,
            updated_at=now,
        )
        version = ArtifactVersion(
            artifact_id=artifact_id,
            version=1,
            content=update.content,
            delta=None,
            created_at=now,
            idempotency_key=update.idempotency_key,
        )
        return record, version

    def _build_edit(self, current: ArtifactRecord, update: ArtifactUpdate) -> tuple[ArtifactRecord, ArtifactVersion]:
        if update.content is None and update.delta is None:
            raise ValidationError("아티팩트 수정에는 content 또는 delta가 필요해요.")
        if update.delta is not None and not current.kind.supports_delta:
            raise ValidationError(f"`{current.kind.value}` 아티팩트는 delta 수정을 지원하지 않아요.")

        if update.delta is not None:
            try:
                new_content = apply_delta(current.content, update.delta)
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
        else:
            new_content = update.content or ""

        now = self._clock()
        next_version = current.current_version + 1
        if current.kind.supports_delta:
            delta = update.delta if update.delta is not None else compute_delta(current.content, new_content)
            version = ArtifactVersion(
                artifact_id=current.artifact_id,
                version=next_version,
                content=None,
                delta=delta,
                created_at=now,
                idempotency_key=update.idempotency_key,
            )
        else:
            version = ArtifactVersion(
                artifact_id=current.artifact_id,
                version=next_version,
                content=new_content,
                delta=None,
                created_at=now,
                idempotency_key=update.idempotency_key,
            )

        record = dataclasses.replace(
            current,
            title=update.title or current.title,
            current_version=next_version,
            content=new_content,
            updated_at=now,
        )
        return record, version
