"""FastAPI application factory."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from subscription_engine.api.v1.router import api_router
from subscription_engine.core.config import settings
from subscription_engine.core.exceptions import SubscriptionEngineError
from subscription_engine.core.logging import setup_logging
from subscription_engine.db.session import dispose_engine

logger = logging.getLogger(__name__)


async def engine_error_handler(request: Request, exc: SubscriptionEngineError) -> JSONResponse:
    log_level = logging.ERROR if exc.status_code >= 500 else logging.INFO
    logger.log(
        log_level,
        "%s %s -> %s: %s",
        request.method,
        request.url.path,
        exc.error_code,
        exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Start the in-process scheduler when enabled; release the engine on exit."""

    scheduler = None
    if settings.scheduler.enabled:
        from subscription_engine.scheduler import build_scheduler

        scheduler = build_scheduler()
        scheduler.start()
        logger.info("Scheduler started with %d job(s)", len(scheduler.get_jobs()))
    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.shutdown(wait=False)
        await dispose_engine()


def create_application() -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)
    app.add_exception_handler(SubscriptionEngineError, engine_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.include_router(api_router, prefix=f"{settings.API_PREFIX}/v1")
    return app


app = create_application()

__all__ = ["create_application", "app"]
