from __future__ import annotations

from fastapi import APIRouter


def build_api_router() -> APIRouter:
    from parley_service.modules.artifacts.api import router as artifacts_router
    from parley_service.modules.chats.api import router as chats_router
    from parley_service.modules.health.api import router as health_router
    from parley_service.modules.turns.api import router as turns_router

    api_router = APIRouter(prefix="/v1")
    api_router.include_router(turns_router)
    api_router.include_router(chats_router)
    api_router.include_router(artifacts_router)
    api_router.include_router(health_router)
    return api_router


__all__ = ["build_api_router"]
