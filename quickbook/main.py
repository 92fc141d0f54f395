"""
Quickbook API

FastAPI entry point: inbound messaging events in, reply descriptors out.

Run locally with:
    uvicorn quickbook.main:app --reload
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager, suppress
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from quickbook.config import settings
from quickbook.api.routes import health, webhook
from quickbook.core.conversation import get_event_router
from quickbook.core.conversation.dedup import run_ledger_purge
from quickbook.infra.claude import ClaudeClient
from quickbook.infra.database import init_db, close_db
from quickbook.infra.redis import RedisClient

logger = logging.getLogger(__name__)

# Requests slower than this are logged at WARNING
SLOW_REQUEST_MS = 2000

_NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "anthropic")


def setup_logging() -> None:
    """Configure root logging from settings."""
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.debug else logging.WARNING
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Connect backends on startup, run the ledger purge, tear down on shutdown."""
    setup_logging()
    logger.info(f"Starting {settings.app_name} ({settings.app_env})")
    health.set_start_time()

    # Production schemas come from migrations
    if settings.is_development:
        try:
            await init_db()
        except OSError as e:
            logger.warning(f"Could not create tables, database unreachable: {e}")

    if await RedisClient.get_client() is None:
        logger.warning("Starting without Redis: conversation state is per-process")

    event_router = await get_event_router()
    purge_task = asyncio.create_task(run_ledger_purge(event_router.gate))

    yield

    logger.info("Shutting down")
    purge_task.cancel()
    with suppress(asyncio.CancelledError):
        await purge_task

    if ClaudeClient._instance is not None:
        await ClaudeClient._instance.close()
        ClaudeClient.reset_instance()
    await RedisClient.close()
    await close_db()


async def malformed_event_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed events are rejected before they reach the dedup gate."""
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()
    ]
    logger.warning(f"Rejected malformed request to {request.url.path}: {errors}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"error": "malformed_event", "detail": errors},
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "internal_error",
            "detail": str(exc) if settings.is_development else None,
        },
    )


async def timing_middleware(request: Request, call_next):
    """Attach processing time to the response and flag slow requests."""
    start_time = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - start_time) * 1000
    response.headers["X-Process-Time-Ms"] = f"{elapsed_ms:.1f}"
    if elapsed_ms > SLOW_REQUEST_MS:
        logger.warning(f"Slow request: {request.method} {request.url.path} took {elapsed_ms:.0f}ms")
    return response


def create_app() -> FastAPI:
    """Build the FastAPI application."""
    docs_enabled = settings.is_development
    application = FastAPI(
        title="Quickbook API",
        description=(
            "Zero-typing appointment booking over messaging platforms: one free-form "
            "message, one tap to pick a slot, one tap to confirm."
        ),
        version=health.APP_VERSION,
        docs_url="/docs" if docs_enabled else None,
        redoc_url=None,
        openapi_url="/openapi.json" if docs_enabled else None,
        lifespan=lifespan,
    )

    application.add_exception_handler(RequestValidationError, malformed_event_handler)
    application.add_exception_handler(Exception, unhandled_error_handler)
    application.middleware("http")(timing_middleware)

    application.include_router(health.router)
    application.include_router(webhook.router)

    @application.get("/", tags=["Root"])
    async def root() -> dict:
        return {
            "name": settings.app_name,
            "version": health.APP_VERSION,
            "environment": settings.app_env,
        }

    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "quickbook.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_level="debug" if settings.debug else "info",
    )
