"""
FastAPI application entry point for the voice-answer backend.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from voiceqa.config import Settings, get_settings
from voiceqa.db import DbClient
from voiceqa.dependencies import build_db_client, build_storage_client
from voiceqa.errors import VoiceQAError
from voiceqa.routes import diagnostics_router, router
from voiceqa.storage import StorageClient

logger = logging.getLogger(__name__)


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "invalid request"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    if location:
        return f"{location}: {first.get('msg', 'invalid value')}"
    return first.get("msg", "invalid request")


def register_error_handlers(app: FastAPI) -> None:
    """Render every failure as ``{"error": message}``."""

    @app.exception_handler(VoiceQAError)
    async def handle_domain_error(request: Request, exc: VoiceQAError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"error": _validation_message(exc)})

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": "internal server error"})


def create_app(
    settings: Optional[Settings] = None,
    *,
    db: Optional[DbClient] = None,
    storage: Optional[StorageClient] = None,
) -> FastAPI:
    """
    Build the app with its store and storage clients ready before the first request.

    Pass ``db``/``storage`` to inject doubles; the store is closed on shutdown.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        app.state.db.close()

    app = FastAPI(title="Voice Answers Backend", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db if db is not None else build_db_client(settings)
    app.state.storage = storage if storage is not None else build_storage_client(settings)

    if settings.cors_origin:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=[settings.cors_origin],
            allow_methods=["*"],
            allow_headers=["*"],
        )

    register_error_handlers(app)
    app.include_router(router)
    app.include_router(diagnostics_router, prefix=settings.api_prefix)
    return app
