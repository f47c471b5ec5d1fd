"""
Stashbox API

Multi-tenant file storage: uploads under plan quotas, public and signed
private URLs, background reclamation of deleted and expired files.
"""
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.exceptions import HTTPException as StarletteHTTPException

from stashbox.api.v1 import api_router
from stashbox.core.config import settings
from stashbox.core.errors import BackendUnavailable, StashboxError
from stashbox.core.logging import configure_logging
from stashbox.db import check_db_connection
from stashbox.metrics import app_info, app_uptime_seconds
from stashbox.middleware import MetricsMiddleware
from stashbox.services import Services, SweepScheduler, build_services

configure_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)

logger = logging.getLogger(__name__)

_started_at = time.time()


def _prepare_store(services: Services) -> None:
    """Open the object store session and create missing buckets."""
    try:
        services.store.authenticate()
        ensure_buckets = getattr(services.store, "ensure_buckets", None)
        if ensure_buckets is not None:
            ensure_buckets([settings.PUBLIC_BUCKET, settings.PRIVATE_BUCKET])
        logger.info("Object store: OK")
    except BackendUnavailable as e:
        # Requests re-authenticate on demand
        logger.error(f"Object store: UNAVAILABLE ({e})")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the process-wide services, start the sweeps, stop them on exit."""
    logger.info(f"Starting {settings.APP_NAME} {settings.APP_VERSION}")
    app_info.labels(version=settings.APP_VERSION, environment="production").set(1)

    if not check_db_connection():
        logger.error("Metadata store unreachable at startup")

    if getattr(app.state, "services", None) is None:
        app.state.services = build_services()
    services = app.state.services
    _prepare_store(services)

    app.state.scheduler = None
    if settings.SCHEDULER_ENABLED:
        app.state.scheduler = SweepScheduler(services, services.session_factory)
        app.state.scheduler.start()

    yield

    logger.info(f"Stopping {settings.APP_NAME}")
    if app.state.scheduler is not None:
        app.state.scheduler.shutdown()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Multi-tenant file storage with plan quotas, signed private URLs "
                "and deferred deletion.",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(MetricsMiddleware)


def error_response(
    status_code: int,
    error: Any,
    code: str,
    details: Optional[Any] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """Uniform error body: {error, code, status_code[, details]}."""
    body = {"error": error, "code": code, "status_code": status_code}
    if details:
        body["details"] = details
    return JSONResponse(status_code=status_code, content=body, headers=headers)


@app.exception_handler(StashboxError)
async def stashbox_exception_handler(request: Request, exc: StashboxError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
    return error_response(
        exc.status_code,
        exc.message,
        exc.code,
        exc.details,
        headers={"Retry-After": "30"} if exc.retryable else None,
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return error_response(exc.status_code, exc.detail, "http_error")


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    details = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]
    return error_response(status.HTTP_422_UNPROCESSABLE_ENTITY, "Validation error", "validation_error", details)


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
    message = str(exc) if settings.LOG_LEVEL == "DEBUG" else "An unexpected error occurred"
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, message, "internal_error")


@app.get("/health", tags=["health"])
async def health_check(request: Request):
    """Metadata store reachability, plan catalog warmth and sweep scheduler state."""
    database_ok = check_db_connection()
    services = getattr(request.app.state, "services", None)
    scheduler = getattr(request.app.state, "scheduler", None)

    return {
        "status": "healthy" if database_ok else "degraded",
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "database": "healthy" if database_ok else "unhealthy",
        "plan_catalog": "warm" if services is not None and services.catalog.is_warm else "cold",
        "scheduler": "running" if scheduler is not None and scheduler.running else "stopped",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


app.include_router(api_router, prefix=settings.API_V1_PREFIX)


@app.get("/metrics", tags=["monitoring"])
async def metrics():
    """Prometheus exposition of request, upload, backend, sweep and storage metrics."""
    app_uptime_seconds.set(time.time() - _started_at)
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/", tags=["root"])
async def root():
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "upload": f"{settings.API_V1_PREFIX}/upload",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "stashbox.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )
