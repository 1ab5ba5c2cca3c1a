from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from textexpense.api.router import router as api_router
from textexpense.core.config import settings
from textexpense.core.logging import RequestContextMiddleware, configure_logging, get_logger, log_event
from textexpense.modules.extraction.service import get_pipeline

logger = get_logger(__name__)


def create_app() -> FastAPI:
    @asynccontextmanager
    async def lifespan(_: FastAPI):
        configure_logging()
        log_event(
            logger,
            "app.startup",
            environment=settings.environment,
            **get_pipeline().service_status(),
        )
        yield
        get_pipeline().close()
        get_pipeline.cache_clear()

    app = FastAPI(title="TextExpense Extraction", version="0.1.0", lifespan=lifespan)
    app.add_middleware(RequestContextMiddleware)
    app.include_router(api_router)
    return app


app = create_app()
