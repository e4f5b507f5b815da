from __future__ import annotations

from fastapi import FastAPI

from parley_service.app.settings import Settings, settings
from parley_service.bootstrap.lifespan import create_lifespan
from parley_service.modules import build_api_router
from libs.common.http_handlers import register_exception_handlers
from libs.common.logging import configure_logging


def create_app(app_settings: Settings | None = None) -> FastAPI:
    resolved = app_settings or settings
    configure_logging(resolved.log_level)
    app = FastAPI(title=resolved.service_name, lifespan=create_lifespan(resolved))
    app.include_router(build_api_router())
    register_exception_handlers(app, "parley_service.errors")
    return app


app = create_app()
