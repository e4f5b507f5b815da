from __future__ import annotations

from fastapi import HTTPException, Request, status

from parley_service.app.artifacts import ArtifactVersionController
from parley_service.app.settings import Settings, settings
from parley_service.app.store import InMemoryChatStore
from parley_service.modules.turns.service import TurnsService
from parley_service.modules.turns.worker import TurnWorkerPool


def get_settings(request: Request) -> Settings:
    configured = getattr(request.app.state, "settings", None)
    if isinstance(configured, Settings):
        return configured
    return settings


def require_auth(request: Request, authorization: str) -> None:
    if authorization != f"Bearer {get_settings(request).api_token}":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="인증에 실패했어요.")


def get_store(request: Request) -> InMemoryChatStore:
    return request.app.state.store  # type: ignore[no-any-return]


def get_artifacts(request: Request) -> ArtifactVersionController:
    return request.app.state.artifacts  # type: ignore[no-any-return]


def get_worker_pool(request: Request) -> TurnWorkerPool:
    worker_pool = getattr(request.app.state, "turn_worker_pool", None)
    if not isinstance(worker_pool, TurnWorkerPool) or not worker_pool.running:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="작업 워커를 사용할 수 없어요.")
    return worker_pool


def get_turns_service(request: Request) -> TurnsService:
    get_worker_pool(request)
    return request.app.state.turns_service  # type: ignore[no-any-return]
