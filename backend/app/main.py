"""CompounDefi API application.

Wires the v1 routers, CORS, and the lifecycle of the shared scheduler and
Redis connection.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app import __version__
from app.api.v1 import router as api_router
from app.core.config import get_settings
from app.core.redis import close_redis
from app.core.scheduler import start_scheduler, stop_scheduler
from app.schemas.common import ErrorResponse

logger = structlog.get_logger()

APP_NAME = "CompounDefi API"


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info(
        "Starting CompounDefi API",
        version=__version__,
        network=settings.aptos_network,
        environment=settings.environment,
    )

    # Delayed rebalances and drift monitors are added per wallet at runtime
    start_scheduler()

    try:
        yield
    finally:
        stop_scheduler()
        await close_redis()
        logger.info("CompounDefi API stopped")


def create_app() -> FastAPI:
    """Build the FastAPI application."""
    application = FastAPI(
        title=APP_NAME,
        description="AI-driven allocation and auto-rebalancing for Aptos DeFi wallets",
        version=__version__,
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=get_settings().cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(api_router)

    @application.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "Unhandled request error",
            method=request.method,
            path=request.url.path,
            error=str(exc),
            exc_info=True,
        )
        body = ErrorResponse(error="internal_error", detail=type(exc).__name__)
        return JSONResponse(status_code=500, content=body.model_dump(mode="json"))

    @application.get("/")
    async def root():
        return {
            "name": APP_NAME,
            "version": __version__,
            "network": get_settings().aptos_network,
            "docs": "/api/docs",
            "health": "/api/v1/health",
        }

    return application


app = create_app()
