"""
Credential Hub API gateway

Entry point for the FastAPI application. Routes translate HTTP requests into
RPC commands; the workflows run behind ``app.state.rpc``.
"""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from app.api.v1 import router as api_v1_router
from app.core.config import Settings, get_settings
from app.core.database import async_session_factory
from app.core.errors import PlatformError, ValidationError
from app.core.logging import configure_logging
from app.core.middleware import RequestContextMiddleware, SecurityHeadersMiddleware
from app.core.redis import close_redis, get_redis
from app.rpc.transport import build_rpc_client

log = structlog.get_logger()


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return ValidationError.default_message
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.log_format)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log.info("gateway.starting", transport=settings.rpc_transport, mode=settings.platform_profile_mode)
        redis_client = await get_redis(settings)
        if getattr(app.state, "rpc", None) is None:
            app.state.rpc = build_rpc_client(settings, async_session_factory, redis_client)
        try:
            yield
        finally:
            log.info("gateway.shutting_down")
            await app.state.rpc.close()
            await close_redis()

    app = FastAPI(
        title="Credential Hub",
        description="Multi-tenant identity and credentialing platform API.",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.rpc = None

    # Middleware (last added is outermost)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "PUT", "DELETE"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    )
    app.add_middleware(RequestContextMiddleware)

    @app.exception_handler(PlatformError)
    async def platform_error_handler(request: Request, exc: PlatformError):
        if exc.status_code >= 500:
            log.error("http.request_failed", status=exc.status_code, error=exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_envelope())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        err = ValidationError(_validation_message(exc))
        return JSONResponse(status_code=err.status_code, content=err.to_envelope())

    app.include_router(api_v1_router, prefix="/api/v1")

    @app.get("/health", tags=["System"])
    async def health_check():
        """Health check endpoint for liveness probes."""
        return {"status": "ok"}

    @app.get("/ready", tags=["System"])
    async def readiness_check():
        """Readiness: database reachable; Redis too when it carries the RPC traffic."""
        async with async_session_factory() as session:
            await session.execute(text("SELECT 1"))
        if settings.rpc_transport == "redis":
            redis_client = await get_redis(settings)
            await redis_client.ping()
        return {"status": "ready"}

    return app


app = create_app()
