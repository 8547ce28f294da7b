# Crucible Community Edition
# Copyright (C) 2025 Roundtable Labs Pty Ltd
#
# Licensed under AGPL-3.0. See LICENSE file for details.
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from airelay.api.routers import api_router
from airelay.core.config import get_settings
from airelay.core.logging import configure_logging
from airelay.core.exceptions import APIError
from airelay.core.redis import get_redis_client
from airelay.db.session import get_engine, get_session_factory
from airelay.services.llm.engine import AIRelayEngine

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):  # type: ignore[override]
    settings = get_settings()
    configure_logging(settings.log_level)

    logger.info("[startup] Checking Redis connectivity...")
    if get_redis_client() is None:
        logger.warning("[startup] ⚠️ Redis is unavailable - rate-limit and usage counters are in-memory")
        logger.warning("[startup] Counters are not shared between workers. Check AIRELAY_REDIS_URL configuration.")

    if getattr(app.state, "relay_engine", None) is None:
        app.state.relay_engine = AIRelayEngine.from_settings(
            settings,
            session_factory=lambda: get_session_factory()(),
        )
        logger.info(
            f"[startup] Relay engine ready (cache_ttl={settings.provider_cache_ttl_seconds}s, "
            f"watchdog={settings.stream_watchdog_seconds}s, soft_failure_policy={settings.soft_failure_policy})"
        )

    try:
        yield
    finally:
        if get_engine.cache_info().currsize:
            await get_engine().dispose()
        logger.info("[shutdown] Application shutting down gracefully")


def create_app(relay_engine: AIRelayEngine | None = None) -> FastAPI:
    settings = get_settings()
    app = FastAPI(
        title=settings.api_name,
        description="Multi-provider AI assistant with fallback and streaming. Licensed under AGPL-3.0.",
        version="1.0.0",
        lifespan=lifespan,
        redirect_slashes=False,
        docs_url="/docs" if settings.environment != "production" else None,
        redoc_url="/redoc" if settings.environment != "production" else None,
    )
    if relay_engine is not None:
        app.state.relay_engine = relay_engine

    logger.info(f"[CORS] Configured origins: {settings.cors_origins_list}")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix="/api")

    # Global exception handlers for standardized error responses
    @app.exception_handler(APIError)
    async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
        """Handle APIError exceptions with standardized format."""
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "code": exc.detail.get("code", "API_ERROR"),
                "message": exc.detail.get("message", "An error occurred"),
                "details": exc.detail.get("details", {}),
                "error": True,
            },
            headers=exc.headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        """Handle request validation errors with standardized format."""
        errors = exc.errors()
        error_details = {
            "field_errors": {str(err["loc"][-1]): err["msg"] for err in errors if err["loc"]}
        }
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "code": "VALIDATION_ERROR",
                "message": "Invalid request data",
                "details": error_details,
                "error": True,
            }
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all handler for unhandled exceptions."""
        logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
        # Don't expose internal error details to users
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "code": "INTERNAL_ERROR",
                "message": "An internal error occurred. Please try again later.",
                "details": {},
                "error": True,
            }
        )

    return app


app = create_app()
