from __future__ import annotations

import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from taskboard.api.error_handling import register_exception_handlers
from taskboard.api.routes import router
from taskboard.api.schemas import HealthResponse
from taskboard.config import get_settings
from taskboard.logging import clear_request_context, get_logger, set_correlation_id
from taskboard.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

_settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime eagerly so configuration errors surface at startup."""
    runtime = get_runtime()
    logger.info(
        "server_started",
        environment=runtime.settings.environment.value,
        version=__version__,
    )
    yield
    logger.info("server_stopped", uptime_seconds=round(runtime.uptime_seconds(), 3))


app = FastAPI(title="Taskboard API", version=__version__, lifespan=lifespan)


app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    duration_ms = round((time.perf_counter() - started) * 1000, 2)
    log_fn = logger.warning if response.status_code >= 400 else logger.info
    log_fn(
        "http_request",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=duration_ms,
    )
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/"):
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault("API-Version", __version__)
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation ID for log tracing.

    The ID comes from the client's ``X-Request-ID`` header when present,
    otherwise a new UUID, and is echoed back in the response header.
    """
    clear_request_context()
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/health", response_model=HealthResponse, tags=["health"])
async def health() -> HealthResponse:
    runtime = get_runtime()
    runtime.store.verify_connection()
    return HealthResponse(
        message="Server is running",
        timestamp=datetime.now(timezone.utc),
        uptime=round(runtime.uptime_seconds(), 3),
        environment=runtime.settings.environment.value,
    )
