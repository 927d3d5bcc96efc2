"""
API Gateway (FastAPI).

Функции:
- /health
- /metrics
- HTTP API создания/отмены встреч по изменению
"""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from apps.api_gateway.routers.meetings import router as meetings_router
from change_meetings.common.errors import AppError, StoreError
from change_meetings.common.logging import get_project_logger, setup_logging
from change_meetings.common.metrics import setup_metrics_endpoint

log = get_project_logger()


def _create_app() -> FastAPI:
    app = FastAPI(title="Change Meetings", version="0.1.0")

    setup_metrics_endpoint(app)

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        # ошибки сборки зависимостей (хранилище/резолвер) до входа в роут
        code = (
            status.HTTP_500_INTERNAL_SERVER_ERROR
            if isinstance(exc, StoreError)
            else status.HTTP_503_SERVICE_UNAVAILABLE
        )
        log.error(
            "request_failed",
            extra={"payload": {"path": request.url.path, "code": exc.code, "message": exc.message}},
        )
        return JSONResponse(status_code=code, content={"detail": exc.as_dict()})

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"ok": True}

    app.include_router(meetings_router, prefix="/v1")

    return app


setup_logging()

app = _create_app()
