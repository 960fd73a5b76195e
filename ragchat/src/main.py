"""
RagChat - Application Entry Point
==================================
FastAPI application factory.

``create_app()`` registers the routes and the error handlers.  On
startup, the lifespan builds the services from ``Settings`` (unless
services were injected, as tests do) and, when ``INDEX_ON_STARTUP`` is
set, indexes the documents directory in the background.  On shutdown it
waits for running streams and releases the worker pool.

Usage:
    ragchat-serve                            # console script
    uvicorn --factory ragchat.src.main:create_app --port 8080
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ragchat.config.settings import Settings, get_settings
from ragchat.src.api.routes import router
from ragchat.src.api.schemas import ErrorResponse
from ragchat.src.core.container import Services, build_services
from ragchat.src.core.exceptions import ConfigurationError, RagChatError
from ragchat.src.utils.logger import get_logger

logger = get_logger(__name__)


def _error_response(status: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status, content=ErrorResponse(status=status, error=message).model_dump())


async def _index_on_startup(services: Services) -> None:
    try:
        summary = await services.indexer.index_directory()
    except Exception:
        logger.exception("Startup indexing failed.")
        return
    logger.info("Startup indexing finished: %s", summary.to_dict())


def create_app(services: Services | None = None, settings: Settings | None = None) -> FastAPI:
    """
    Build the FastAPI application.

    Parameters
    ----------
    services
        Pre-built services.  When given, nothing is built from settings
        and no startup indexing runs.
    settings
        Settings to build services from; defaults to ``get_settings()``.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = services is None
        indexing: asyncio.Task[None] | None = None

        if owned:
            cfg = settings or get_settings()
            app.state.services = build_services(cfg)
            if cfg.INDEX_ON_STARTUP:
                indexing = asyncio.create_task(_index_on_startup(app.state.services), name="ragchat-startup-index")
        else:
            app.state.services = services

        logger.info("RagChat API ready.")
        try:
            yield
        finally:
            if indexing is not None and not indexing.done():
                indexing.cancel()
                await asyncio.gather(indexing, return_exceptions=True)
            if owned:
                await app.state.services.aclose()
            else:
                await app.state.services.orchestrator.aclose()

    app = FastAPI(title="RagChat", lifespan=lifespan)
    if services is not None:
        app.state.services = services

    @app.exception_handler(RagChatError)
    async def _ragchat_error(request: Request, exc: RagChatError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return _error_response(exc.status_code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def _bad_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.warning("Malformed request to %s: %s", request.url.path, exc.errors())
        return _error_response(400, "Malformed request")

    app.include_router(router)
    return app


def run() -> None:
    """Console entry point: load settings, then serve with uvicorn."""
    import uvicorn

    try:
        settings = get_settings()
    except ConfigurationError as exc:
        print("\n[FATAL] Configuration error — check your .env file:\n")
        print(f"  {exc.message}")
        print()
        sys.exit(1)

    uvicorn.run(create_app(settings=settings), host=settings.HOST, port=settings.PORT)


if __name__ == "__main__":
    run()
