"""아티팩트(문서)를 만들고 고치는 도구예요.

두 도구 모두 도구 call id를 아티팩트 커밋의 멱등 키로 써서, 같은 호출이
다시 실행돼도 버전이 두 번 올라가지 않아요.
"""

from __future__ import annotations

import uuid
from typing import Any

from parley_service.app.artifacts import ArtifactUpdate
from parley_service.app.errors import VersionConflictError
from parley_service.app.store import ArtifactKind
from parley_service.app.tools.base import BaseTool, ToolContext, ToolResult
from libs.common.logging import get_logger
from libs.common.retry import retry_async

logger = get_logger("parley_service.tools.documents")

_ARTIFACT_NAMESPACE = uuid.UUID("6f1c2b9e-3d4a-4c8e-9b7f-2a5d8e1f0c3b")
_PROGRESS_CHUNK_CHARS = 400
_EDIT_RETRIES = 3


def artifact_id_for_call(chat_id: str, turn_id: str, call_id: str) -> str:
    """같은 턴의 같은 call id는 항상 같은 아티팩트 아이디가 돼요."""
    return str(uuid.uuid5(_ARTIFACT_NAMESPACE, f"{chat_id}:{turn_id}:{call_id}"))


async def _stream_content(context: ToolContext, artifact_id: str, content: str) -> None:
    for start in range(0, len(content), _PROGRESS_CHUNK_CHARS):
        await context.report_progress(
            {
                "type": "content-delta",
                "artifact_id": artifact_id,
                "text": content[start : start + _PROGRESS_CHUNK_CHARS],
            }
        )


class CreateDocumentTool(BaseTool):
    """새 아티팩트를 만들고 1번 버전을 커밋해요."""

    @property
    def name(self) -> str:
        return "createDocument"

    @property
    def description(self) -> str:
        return (
            "새 문서(아티팩트)를 만들어요. "
            "코드, 글, 스프레드시트처럼 대화 밖에서 계속 다듬을 결과물에 사용해요."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "title": {"type": "string", "minLength": 1, "description": "문서 제목(파일 이름)이에요."},
                "content": {"type": "string", "description": "문서의 전체 내용이에요."},
                "kind": {
                    "type": "string",
                    "enum": [kind.value for kind in ArtifactKind],
                    "default": ArtifactKind.TEXT.value,
                    "description": "문서 종류예요.",
                },
            },
            "required": ["title", "content"],
            "additionalProperties": False,
        }

    async def execute(self, arguments: dict[str, Any], context: ToolContext) -> ToolResult:
        title = arguments["title"].strip()
        content = arguments["content"]
        kind = ArtifactKind(arguments.get("kind", ArtifactKind.TEXT.value))
        artifact_id = artifact_id_for_call(context.chat_id, context.turn_id, context.call_id)

        await context.report_progress(
            {"type": "artifact-open", "artifact_id": artifact_id, "kind": kind.value, "title": title}
        )
        await _stream_content(context, artifact_id, content)

        version = await context.artifacts.apply_update(
            artifact_id,
            ArtifactUpdate.create(
                chat_id=context.chat_id,
                kind=kind,
                title=title,
                content=content,
                idempotency_key=context.idempotency_key,
            ),
        )
        return ToolResult(
            ok=True,
            output={"artifact_id": artifact_id, "version": version, "title": title, "kind": kind.value},
        )


class UpdateDocumentTool(BaseTool):
    """기존 아티팩트에 새 버전을 커밋해요.

    ``base_version``을 주면 그 버전 기준으로 한 번만 시도하고, 충돌하면 실패해요.
    생략하면 최신 버전을 기준으로 삼고 충돌 시 최신 버전을 다시 읽어 재시도해요.
    """

    @property
    def name(self) -> str:
        return "updateDocument"

    @property
    def description(self) -> str:
        return (
            "기존 문서(아티팩트)를 고쳐요. "
            "전체 내용(content) 또는 [시작, 끝, 대체 문자열] 목록(delta)을 보낼 수 있어요."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "artifact_id": {"type": "string", "minLength": 1},
                "content": {"type": "string"},
                "delta": {
                    "type": "array",
                    "items": {
                        "type": "array",
                        "items": [
                            {"type": "integer", "minimum": 0},
                            {"type": "integer", "minimum": 0},
                            {"type": "string"},
                        ],
                        "minItems": 3,
                        "maxItems": 3,
                    },
                },
                "base_version": {"type": "integer", "minimum": 1},
                "title": {"type": "string", "minLength": 1},
            },
            "required": ["artifact_id"],
            "anyOf": [{"required": ["content"]}, {"required": ["delta"]}],
            "additionalProperties": False,
        }

    async def execute(self, arguments: dict[str, Any], context: ToolContext) -> ToolResult:
        artifact_id = arguments["artifact_id"]
        raw_delta = arguments.get("delta")
        delta = tuple((int(item[0]), int(item[1]), str(item[2])) for item in raw_delta) if raw_delta else None
        pinned_base = arguments.get("base_version")

        async def _attempt() -> int:
            current = await context.artifacts.get(artifact_id)
            base_version = pinned_base if pinned_base is not None else current.current_version
            return await context.artifacts.apply_update(
                artifact_id,
                ArtifactUpdate.edit(
                    chat_id=context.chat_id,
                    base_version=base_version,
                    content=arguments.get("content"),
                    delta=delta,
                    title=arguments.get("title"),
                    idempotency_key=context.idempotency_key,
                ),
            )

        def _log_retry(attempt: int, exc: Exception) -> None:
            logger.info("document_update_retry", artifact_id=artifact_id, attempt=attempt, error=str(exc))

        await context.report_progress({"type": "artifact-edit", "artifact_id": artifact_id})
        version = await retry_async(
            _attempt,
            retries=0 if pinned_base is not None else _EDIT_RETRIES,
            base_delay_seconds=0.05,
            max_delay_seconds=0.5,
            retry_filter=lambda exc: isinstance(exc, VersionConflictError),
            on_retry=_log_retry,
        )
        record = await context.artifacts.get(artifact_id)
        await _stream_content(context, artifact_id, await context.artifacts.get_version_content(artifact_id, version))
        return ToolResult(
            ok=True,
            output={"artifact_id": artifact_id, "version": version, "title": record.title, "kind": record.kind.value},
        )
