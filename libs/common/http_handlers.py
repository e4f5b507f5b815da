from __future__ import annotations

import uuid
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from libs.common.errors import DomainError
from libs.common.logging import get_logger


def domain_error_body(exc: DomainError, trace_id: str) -> dict[str, Any]:
    body: dict[str, Any] = {
        "error_code": exc.error_code,
        "message": exc.message,
        "trace_id": trace_id,
        "retryable": exc.retryable,
    }
    if exc.details:
        body["details"] = exc.details
    return body


def register_exception_handlers(app: FastAPI, logger_name: str) -> None:
    logger = get_logger(logger_name)

    @app.exception_handler(DomainError)
    async def handle_domain_error(request: Request, exc: DomainError) -> JSONResponse:
        trace_id = str(uuid.uuid4())
        log = logger.error if exc.http_status >= 500 else logger.warning
        log(
            "domain_error",
            path=request.url.path,
            method=request.method,
            trace_id=trace_id,
            error_code=exc.error_code,
            message=exc.message,
            retryable=exc.retryable,
            http_status=exc.http_status,
        )
        headers = {"Retry-After": "1"} if exc.retryable and exc.http_status == 409 else None
        return JSONResponse(
            status_code=exc.http_status,
            content=domain_error_body(exc, trace_id),
            headers=headers,
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        trace_id = str(uuid.uuid4())
        logger.exception(
            "unhandled_error",
            path=request.url.path,
            method=request.method,
            trace_id=trace_id,
            error=str(exc),
        )
        return JSONResponse(
            status_code=500,
            content={
                "error_code": "INTERNAL_ERROR",
                "message": "예상하지 못한 내부 오류가 발생했어요.",
                "trace_id": trace_id,
                "retryable": True,
            },
        )
