from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from parley_service.app.settings import Settings
from parley_service.bootstrap.container import build_runtime_components
from libs.common.logging import get_logger

logger = get_logger("parley_service.lifespan")


def create_lifespan(settings: Settings):
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        runtime = build_runtime_components(settings)
        await runtime.worker_pool.start()
        await runtime.stream_store.start_sweeper(settings.stream_sweep_interval_seconds)

        app.state.store = runtime.store
        app.state.artifacts = runtime.artifacts
        app.state.usage = runtime.usage
        app.state.turns_service = runtime.turns_service
        app.state.turn_worker_pool = runtime.worker_pool
        app.state.settings = settings
        logger.info(
            "service_started",
            providers=runtime.provider_manager.names(),
            worker_count=settings.turn_worker_count,
        )

        try:
            yield
        finally:
            await runtime.worker_pool.stop()
            await runtime.stream_store.stop_sweeper()
            logger.info("service_stopped")

    return lifespan
