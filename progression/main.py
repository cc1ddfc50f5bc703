from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from progression.api.admin import router as admin_router
from progression.api.health import router as health_router
from progression.api.metrics_endpoint import router as metrics_router
from progression.api.profile import router as profile_router
from progression.api.progress import router as progress_router
from progression.api.ranking import router as ranking_router
from progression.core.config import SETTINGS
from progression.core.errors import (
    InvalidInputError,
    ModuleLockedError,
    NotFoundError,
    StoreError,
)
from progression.core.logging import setup_logging
from progression.db.engine import lifespan_db
from progression.db.redis import lifespan_redis
from progression.middleware.metrics import MetricsMiddleware
from progression.middleware.request_context import RequestContextMiddleware

# Configure logging before anything else runs.
setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    # Nested so teardown runs in reverse order.
    async with lifespan_db():
        async with lifespan_redis():
            yield


app = FastAPI(
    title="progression-service",
    lifespan=lifespan,
    docs_url="/docs" if SETTINGS.is_dev else None,
    redoc_url="/redoc" if SETTINGS.is_dev else None,
)

# Last-added runs first: RequestContext (outermost) → Metrics → route.
app.add_middleware(MetricsMiddleware)
app.add_middleware(RequestContextMiddleware)


# ---------------------------------------------------------------------------
# Domain errors → HTTP
# ---------------------------------------------------------------------------
# ModuleLockedError subclasses InvalidInputError; Starlette picks the
# handler registered for the most specific class in the MRO.


@app.exception_handler(NotFoundError)
async def _not_found(_request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)}
    )


@app.exception_handler(ModuleLockedError)
async def _module_locked(_request: Request, exc: ModuleLockedError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)}
    )


@app.exception_handler(InvalidInputError)
async def _invalid_input(_request: Request, exc: InvalidInputError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"detail": str(exc)}
    )


@app.exception_handler(StoreError)
async def _store_error(_request: Request, exc: StoreError) -> JSONResponse:
    logger.error("Store failure: %s", exc)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "progression store unavailable; retry later"},
    )


app.include_router(metrics_router)
app.include_router(health_router)
app.include_router(profile_router)
app.include_router(progress_router)
app.include_router(ranking_router)
app.include_router(admin_router)

logger.info(
    "progression-service started  env=%s log_level=%s port=%d store=%s docs=%s",
    SETTINGS.app_env,
    SETTINGS.log_level,
    SETTINGS.port,
    "postgres" if SETTINGS.database_url else "memory",
    "on" if SETTINGS.is_dev else "off",
)
