from __future__ import annotations

import asyncio

import pytest

from parley_service.app.artifacts import (
    ArtifactUpdate,
    ArtifactVersionController,
    apply_delta,
    compute_delta,
)
from parley_service.app.errors import ArtifactNotFoundError, VersionConflictError
from parley_service.app.store import ArtifactKind
from libs.common.errors import ValidationError


async def _create(
    artifacts: ArtifactVersionController,
    artifact_id: str = "a1",
    *,
    kind: ArtifactKind = ArtifactKind.TEXT,
    content: str = "hello world",
) -> int:
    return await artifacts.apply_update(
        artifact_id,
        ArtifactUpdate.create(chat_id="c1", kind=kind, title="notes.txt", content=content, idempotency_key="call-0"),
    )


@pytest.mark.asyncio
async def test_create_commits_version_one(artifacts: ArtifactVersionController) -> None:
    version = await _create(artifacts)

    record = await artifacts.get("a1")
    assert version == 1
    assert record.current_version == 1
    assert record.content == "hello world"


@pytest.mark.asyncio
async def test_concurrent_edits_on_same_base_one_wins(artifacts: ArtifactVersionController) -> None:
    await _create(artifacts)

    results = await asyncio.gather(
        artifacts.apply_update("a1", ArtifactUpdate.edit(chat_id="c1", base_version=1, content="first edit")),
        artifacts.apply_update("a1", ArtifactUpdate.edit(chat_id="c1", base_version=1, content="second edit")),
        return_exceptions=True,
    )

    assert sorted(type(result).__name__ for result in results) == ["VersionConflictError", "int"]
    conflict = next(result for result in results if isinstance(result, VersionConflictError))
    assert conflict.details["current_version"] == 2
    assert (await artifacts.get("a1")).current_version == 2
    assert len(await artifacts.list_versions("a1")) == 2


@pytest.mark.asyncio
async def test_stale_base_version_conflicts(artifacts: ArtifactVersionController) -> None:
    await _create(artifacts)
    await artifacts.apply_update("a1", ArtifactUpdate.edit(chat_id="c1", base_version=1, content="v2"))

    with pytest.raises(VersionConflictError):
        await artifacts.apply_update("a1", ArtifactUpdate.edit(chat_id="c1", base_version=1, content="v3"))


@pytest.mark.asyncio
async def test_text_edits_are_stored_as_deltas_and_replayed(artifacts: ArtifactVersionController) -> None:
    await _create(artifacts)
    await artifacts.apply_update("a1", ArtifactUpdate.edit(chat_id="c1", base_version=1, content="hello there world"))
    await artifacts.apply_update(
        "a1",
        ArtifactUpdate.edit(chat_id="c1", base_version=2, delta=((0, 5, "goodbye"),)),
    )

    versions = await artifacts.list_versions("a1")
    assert [version.is_snapshot for version in versions] == [True, False, False]
    assert await artifacts.get_version_content("a1", 1) == "hello world"
    assert await artifacts.get_version_content("a1", 2) == "hello there world"
    assert await artifacts.get_version_content("a1", 3) == "goodbye there world"
    assert (await artifacts.get("a1")).content == "goodbye there world"


@pytest.mark.asyncio
async def test_snapshot_kinds_reject_deltas(artifacts: ArtifactVersionController) -> None:
    await _create(artifacts, kind=ArtifactKind.SHEET, content="a,b\n1,2")

    with pytest.raises(ValidationError):
        await artifacts.apply_update("a1", ArtifactUpdate.edit(chat_id="c1", base_version=1, delta=((0, 1, "x"),)))

    await artifacts.apply_update("a1", ArtifactUpdate.edit(chat_id="c1", base_version=1, content="a,b\n3,4"))
    versions = await artifacts.list_versions("a1")
    assert all(version.is_snapshot for version in versions)


@pytest.mark.asyncio
async def test_same_idempotency_key_does_not_bump_version(artifacts: ArtifactVersionController) -> None:
    await _create(artifacts)
    update = ArtifactUpdate.edit(chat_id="c1", base_version=1, content="v2", idempotency_key="call-7")

    first = await artifacts.apply_update("a1", update)
    second = await artifacts.apply_update("a1", update)

    assert first == second == 2
    assert len(await artifacts.list_versions("a1")) == 2


@pytest.mark.asyncio
async def test_edit_missing_artifact(artifacts: ArtifactVersionController) -> None:
    with pytest.raises(ArtifactNotFoundError):
        await artifacts.apply_update("nope", ArtifactUpdate.edit(chat_id="c1", base_version=1, content="x"))


def test_compute_delta_reproduces_target() -> None:
    before = "def add(a, b):\n    return a + b\n"
    after = "def add(a, b, c=0):\n    return a + b + c\n"

    assert apply_delta(before, compute_delta(before, after)) == after


def test_apply_delta_rejects_overlapping_ranges() -> None:
    with pytest.raises(ValueError):
        apply_delta("abcdef", ((0, 3, "x"), (2, 4, "y")))
