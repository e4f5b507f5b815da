from __future__ import annotations

from typing import Any

import pytest

from parley_service.app.artifacts import ArtifactVersionController
from parley_service.app.errors import InvalidArgumentsError, ToolExecutionFailedError
from parley_service.app.tools import ToolContext, ToolInvocationEngine
from parley_service.app.tools.defaults import build_default_tool_registry
from parley_service.app.tools.documents import artifact_id_for_call


def _context(artifacts: ArtifactVersionController, call_id: str, progress: list[dict[str, Any]]) -> ToolContext:
    async def report(data: dict[str, Any]) -> None:
        progress.append(data)

    return ToolContext(chat_id="c1", turn_id="t1", call_id=call_id, artifacts=artifacts, report_progress=report)


@pytest.mark.asyncio
async def test_create_document_streams_progress_and_commits(artifacts: ArtifactVersionController) -> None:
    engine = ToolInvocationEngine(build_default_tool_registry(), timeout_seconds=5.0)
    progress: list[dict[str, Any]] = []
    content = "가" * 900

    result = await engine.invoke(
        "createDocument",
        {"title": "long.txt", "content": content},
        "call-1",
        _context(artifacts, "call-1", progress),
    )

    artifact_id = artifact_id_for_call("c1", "t1", "call-1")
    assert result.output == {"artifact_id": artifact_id, "version": 1, "title": "long.txt", "kind": "text"}
    assert progress[0]["type"] == "artifact-open"
    assert "".join(item["text"] for item in progress if item["type"] == "content-delta") == content
    assert (await artifacts.get(artifact_id)).content == content


@pytest.mark.asyncio
async def test_create_document_rejects_extra_fields(artifacts: ArtifactVersionController) -> None:
    engine = ToolInvocationEngine(build_default_tool_registry(), timeout_seconds=5.0)

    with pytest.raises(InvalidArgumentsError) as exc_info:
        await engine.invoke(
            "createDocument",
            {"title": "a", "content": "b", "owner": "me"},
            "call-1",
            _context(artifacts, "call-1", []),
        )

    assert exc_info.value.error_code == "INVALID_ARGUMENTS"


@pytest.mark.asyncio
async def test_update_document_with_delta_and_latest_base(artifacts: ArtifactVersionController) -> None:
    engine = ToolInvocationEngine(build_default_tool_registry(), timeout_seconds=5.0)
    created = await engine.invoke(
        "createDocument",
        {"title": "a.py", "content": "print('hi')\n", "kind": "code"},
        "call-1",
        _context(artifacts, "call-1", []),
    )
    artifact_id = created.output["artifact_id"]

    updated = await engine.invoke(
        "updateDocument",
        {"artifact_id": artifact_id, "delta": [[7, 9, "bye"]]},
        "call-2",
        _context(artifacts, "call-2", []),
    )

    assert updated.output["version"] == 2
    assert (await artifacts.get(artifact_id)).content == "print('bye')\n"


@pytest.mark.asyncio
async def test_update_document_with_stale_pinned_base_fails(artifacts: ArtifactVersionController) -> None:
    engine = ToolInvocationEngine(build_default_tool_registry(), timeout_seconds=5.0)
    created = await engine.invoke(
        "createDocument",
        {"title": "a.txt", "content": "v1"},
        "call-1",
        _context(artifacts, "call-1", []),
    )
    artifact_id = created.output["artifact_id"]
    await engine.invoke(
        "updateDocument",
        {"artifact_id": artifact_id, "content": "v2"},
        "call-2",
        _context(artifacts, "call-2", []),
    )

    with pytest.raises(ToolExecutionFailedError) as exc_info:
        await engine.invoke(
            "updateDocument",
            {"artifact_id": artifact_id, "content": "v3", "base_version": 1},
            "call-3",
            _context(artifacts, "call-3", []),
        )

    assert exc_info.value.to_payload()["cause"] == "VERSION_CONFLICT"
    assert (await artifacts.get(artifact_id)).current_version == 2


@pytest.mark.asyncio
async def test_update_document_requires_content_or_delta(artifacts: ArtifactVersionController) -> None:
    engine = ToolInvocationEngine(build_default_tool_registry(), timeout_seconds=5.0)

    with pytest.raises(InvalidArgumentsError) as exc_info:
        await engine.invoke(
            "updateDocument",
            {"artifact_id": "a1"},
            "call-1",
            _context(artifacts, "call-1", []),
        )

    assert exc_info.value.error_code == "INVALID_ARGUMENTS"
