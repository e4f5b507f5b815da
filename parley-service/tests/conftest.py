from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import pytest

from parley_service.app.artifacts import ArtifactVersionController
from parley_service.app.settings import Settings
from parley_service.app.store import InMemoryChatStore
from parley_service.app.stream_store import ResumableStreamStore
from libs.contracts.models import Chunk

TEST_TOKEN = "test-token"


@pytest.fixture
def chat_store() -> InMemoryChatStore:
    """각 테스트용으로 새로 생성한 빈 InMemoryChatStore예요."""
    return InMemoryChatStore()


@pytest.fixture
def stream_store() -> ResumableStreamStore:
    return ResumableStreamStore(retention_seconds=60.0, max_lifetime_seconds=600.0)


@pytest.fixture
def artifacts(chat_store: InMemoryChatStore) -> ArtifactVersionController:
    return ArtifactVersionController(chat_store)


def make_settings(**overrides: Any) -> Settings:
    """테스트용 설정이에요. 환경변수와 무관하게 값을 고정해요."""
    values: dict[str, Any] = {
        "api_token": TEST_TOKEN,
        "default_provider_name": "scripted",
        "enabled_provider_names": ["scripted"],
        "default_model": "scripted-echo",
        "turn_worker_count": 2,
        "tool_timeout_seconds": 2.0,
        "part_flush_chars": 8,
        "stream_sweep_interval_seconds": 60.0,
    }
    values.update(overrides)
    return Settings(**values)


def make_chunk(stream_id: str, seq: int, kind: str = "text-delta", **payload: Any) -> Chunk:
    if kind == "text-delta" and not payload:
        payload = {"text": f"t{seq}"}
    return Chunk(stream_id=stream_id, seq=seq, kind=kind, payload=payload)  # type: ignore[arg-type]


async def wait_until(predicate: Callable[[], bool], *, timeout: float = 2.0) -> None:
    """조건이 참이 될 때까지 기다리는 헬퍼예요."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            raise AssertionError("조건이 시간 안에 충족되지 않았어요.")
        await asyncio.sleep(0.01)
