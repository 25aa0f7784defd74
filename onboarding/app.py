from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from onboarding.api.error_handling import register_exception_handlers
from onboarding.api.routes import router
from onboarding.config import Settings, get_settings
from onboarding.logging import configure_logging, get_logger, set_correlation_id
from onboarding.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 5


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime at startup and release the store at shutdown."""
    runtime = get_runtime()
    if runtime.settings.email_verify_on_startup:
        healthy = await asyncio.to_thread(runtime.email.verify_connection)
        if not healthy:
            # Registration will answer 503 until the transport recovers
            logger.warning("startup_email_transport_unhealthy")

    yield

    try:
        get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # Default to common local dev hosts
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


async def add_correlation_id(request, call_next):
    """Tag each request with a correlation ID for log tracing.

    Taken from the client's X-Request-ID header when present, otherwise
    generated, and echoed back in the response header.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


async def health() -> JSONResponse:
    """Liveness plus dependency checks for the account store and SMTP."""
    try:
        report: Dict[str, Any] = await asyncio.wait_for(
            get_runtime().check_health(), HEALTH_CHECK_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        logger.warning("health_check_timeout", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        report = {"status": "degraded", "checks": {"timeout": True}}
    report["version"] = __version__
    status_code = 200 if report["status"] == "healthy" else 503
    return JSONResponse(status_code=status_code, content=report)


def create_app(settings: Settings | None = None) -> FastAPI:
    configure_logging()
    settings = settings or get_settings()

    app = FastAPI(title="User Onboarding", version=__version__, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=False,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )
    app.middleware("http")(add_security_headers)
    app.middleware("http")(add_correlation_id)
    register_exception_handlers(app)
    app.include_router(router)
    app.add_api_route("/health", health, methods=["GET"], tags=["health"])
    return app


app = create_app()
