from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from examengine.api.router import router
from examengine.errors import ExamEngineError, ForbiddenError
from examengine.observability import configure_logging, init_otel
from examengine.settings import settings
from examengine.storage.mongo import MongoAttemptRepository
from examengine.wiring import get_repo, get_scoring_queue

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    repo = get_repo()
    if isinstance(repo, MongoAttemptRepository):
        await repo.ensure_indexes()

    queue = None
    if settings.scoring_dispatch.lower() == "queue":
        queue = get_scoring_queue()
        queue.start()
        if settings.replay_unscored_on_startup:
            await queue.replay_pending()

    logger.info(f"{settings.app_name} started (storage={settings.storage_backend}, dispatch={settings.scoring_dispatch})")
    yield

    if queue is not None:
        await queue.stop()
    if isinstance(repo, MongoAttemptRepository):
        repo.close()
    logger.info(f"{settings.app_name} shut down")


def create_app() -> FastAPI:
    configure_logging(settings.log_level)
    app = FastAPI(title=settings.app_name, lifespan=lifespan)

    init_otel(
        app=app,
        enabled=settings.observability_enabled,
        service_name=settings.otel_service_name,
        environment=settings.env,
        otlp_endpoint=settings.otel_exporter_otlp_endpoint,
        console_exporter=settings.otel_exporter_console,
        sample_rate=settings.otel_sample_rate,
    )

    origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ExamEngineError)
    async def engine_error_handler(request: Request, exc: ExamEngineError) -> JSONResponse:
        if isinstance(exc, ForbiddenError):
            logger.warning(f"Forbidden: {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = [
            {"field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"), "message": err.get("msg")}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content={"error": "Validation failed", "code": "validation_error", "details": details},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unhandled exception on {request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=500, content={"error": "Internal server error", "code": "internal_error"})

    app.include_router(router)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "env": settings.env}

    return app


app = create_app()
