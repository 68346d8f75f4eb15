from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from keyward.api.error_handling import register_exception_handlers
from keyward.api.routes import router
from keyward.config import Settings, get_settings
from keyward.logging import get_logger, set_correlation_id
from keyward.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


def create_app(
    settings: Optional[Settings] = None, runtime: Optional[Runtime] = None
) -> FastAPI:
    """Build the API application.

    The runtime is created on startup from ``settings`` (or the environment)
    unless one is passed in, and is closed on shutdown either way. Serve with
    ``uvicorn --factory keyward.app:create_app``.
    """
    settings = settings or (runtime.settings if runtime else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        active = runtime or Runtime(settings)
        await active.init()
        app.state.runtime = active
        logger.info("app_started", version=__version__)
        try:
            yield
        finally:
            try:
                await active.close()
            except Exception as exc:
                logger.error("shutdown_failed", error=str(exc))

    app = FastAPI(title="Keyward", version=__version__, lifespan=lifespan)

    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=False,
            allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
            allow_headers=["Content-Type", "Authorization", "X-API-Key", "X-Request-ID"],
            expose_headers=["X-Request-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining"],
            max_age=3600,
        )

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag every log line of a request with the caller's X-Request-ID (or a fresh one)."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)
    return app
