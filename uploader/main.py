import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from uploader.api import auth, upload
from uploader.core.config import Settings, get_settings
from uploader.core.errors import InternalError, UploaderError, UpstreamRateLimitError, ValidationError
from uploader.core.limiter import configure_limits, limiter
from uploader.core.logging_config import init_application_logging
from uploader.core.security import (
    RequestContextMiddleware,
    SecurityHeadersMiddleware,
    generate_secure_secret_key,
    sanitize_error_message,
)
from uploader.core.utils.session_store import SessionStore, SessionSweeper

logger = logging.getLogger("uploader.main")


def _error_response(error: UploaderError, settings: Settings) -> JSONResponse:
    include_details = not settings.is_production
    body = error.to_dict(include_details=include_details)
    if "details" in body:
        body["details"] = sanitize_error_message(body["details"])

    headers = {}
    if isinstance(error, UpstreamRateLimitError) and error.retry_after is not None:
        headers["Retry-After"] = str(error.retry_after)

    return JSONResponse(status_code=error.status_code, content=body, headers=headers)


def _register_exception_handlers(app: FastAPI, settings: Settings) -> None:
    @app.exception_handler(UploaderError)
    async def uploader_error_handler(request: Request, exc: UploaderError):
        level = logging.WARNING if exc.status_code < 500 else logging.ERROR
        logger.log(level, f"{request.method} {request.url.path} failed: {exc.code} - {exc.message}")
        return _error_response(exc, settings)

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
        # Retry-After (RFC 6585) is the length of the exhausted window
        retry_after = exc.limit.limit.get_expiry()
        logger.warning(f"Rate limit exceeded on {request.url.path}: {exc.detail}")
        return JSONResponse(
            status_code=429,
            content={
                "success": False,
                "error": "TOO_MANY_REQUESTS",
                "message": "Too many requests. Please wait before retrying",
            },
            headers={"Retry-After": str(retry_after)},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return _error_response(ValidationError("Invalid request", details=str(exc.errors())), settings)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return _error_response(InternalError(details=str(exc)), settings)


def create_app(
    settings: Optional[Settings] = None,
    github_transport: Optional[httpx.AsyncBaseTransport] = None,
    session_store: Optional[SessionStore] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Application settings; defaults to the environment-derived settings
        github_transport: Optional httpx transport for all GitHub traffic (tests)
        session_store: Pre-built session store; one is created from settings if omitted
    """
    settings = settings or get_settings()

    if session_store is None:
        session_secret = settings.session_secret
        if not session_secret:
            logger.warning("SESSION_SECRET is not set; using an ephemeral secret for this process")
            session_secret = generate_secure_secret_key()
        session_store = SessionStore(session_secret, settings.session_max_age_seconds)

    sweeper = SessionSweeper(session_store, settings.session_sweep_interval_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        for problem in settings.validate_config():
            logger.warning(f"Configuration problem: {problem}")
        logger.info("Configuration loaded", extra={"config": settings.safe_summary()})

        Path(settings.temp_dir).mkdir(parents=True, exist_ok=True)
        sweeper.start()
        try:
            yield
        finally:
            await sweeper.stop()

    app = FastAPI(
        title=settings.app_name,
        description="Upload a tar.gz archive and publish it as a GitHub repository",
        version=settings.version,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.session_store = session_store
    app.state.session_sweeper = sweeper
    app.state.github_transport = github_transport

    # Attach limiter to app.state for access in route decorators
    app.state.limiter = limiter
    configure_limits(settings)

    _register_exception_handlers(app, settings)

    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestContextMiddleware)

    app.include_router(auth.router, prefix="/auth", tags=["Authentication"])
    app.include_router(auth.router, prefix="/api/auth", tags=["Authentication"])
    app.include_router(upload.router, prefix="/api/upload", tags=["Upload"])

    @app.get("/health")
    def health_check():
        """Basic health check endpoint."""
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": settings.version,
            "environment": settings.environment,
            "python_version": f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
            "sessions": session_store.get_session_stats(),
            "rate_limit_storage": "redis" if settings.redis_url else "memory",
        }

    @app.get("/api")
    def api_info():
        return {
            "name": "GitHub Uploader API",
            "version": settings.version,
            "description": "Upload tar.gz projects and publish them as GitHub repositories",
            "endpoints": {
                "auth": {
                    "GET /auth/github": "Start GitHub OAuth",
                    "GET /auth/github/callback": "GitHub OAuth callback",
                    "POST /api/auth/logout": "Log out",
                    "GET /api/auth/status": "Authentication status",
                    "GET /api/auth/profile": "User profile",
                },
                "upload": {
                    "POST /api/upload": "Upload an archive and create a repository",
                    "GET /api/upload/status/{upload_id}": "Upload progress",
                    "GET /api/upload/repositories": "List the user's repositories",
                },
                "system": {
                    "GET /health": "Health check",
                    "GET /api": "API information",
                },
            },
        }

    return app


# Initialize structured logging
init_application_logging(dev_mode=get_settings().dev_mode)

app = create_app()
