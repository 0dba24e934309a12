"""
Wardrobe Image Pipeline - Main Application

Production-ready FastAPI application with:
- API versioning (/api/v1/)
- Structured logging with structlog
- Prometheus metrics
- Global exception handling
- Static serving of stored originals and derived assets
"""

import time
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from fastapi.responses import JSONResponse
from sqlalchemy import text
from starlette.concurrency import run_in_threadpool
import redis.asyncio as redis

from src.core.config import settings
from src.core.database import create_db_and_tables, engine
from src.core.logging import LogContext, setup_logging, get_logger
from src.core.exceptions import register_exception_handlers
from src.core.metrics import set_app_info, http_requests_total, http_request_duration_seconds
from src.api.v1 import api_v1_router
from src.api.dependencies import shutdown_launcher


# =============================================================================
# Initialize Logging
# =============================================================================
setup_logging(
    log_level=settings.LOG_LEVEL,
    json_format=settings.LOG_FORMAT_JSON
)
logger = get_logger(__name__)

# Public URLs are STORAGE_ROOT-relative, e.g. /uploads/clothing/<owner>/thumbnail_<id>.webp
_public_prefix = Path(settings.UPLOAD_SUBDIR).parts[0]


# =============================================================================
# Lifespan Handler
# =============================================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler - startup and shutdown."""
    startup_start = time.time()

    logger.info(
        "application_starting",
        app_name=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        launcher=settings.PIPELINE_LAUNCHER
    )

    # Initialize database
    await run_in_threadpool(create_db_and_tables)
    logger.info("database_initialized")

    # Redis is the Celery broker; /ready checks it
    app.state.redis = redis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True
    )

    # Set Prometheus app info
    set_app_info(
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT
    )

    startup_time = time.time() - startup_start
    logger.info("application_ready", startup_time_seconds=startup_time)

    yield

    # Shutdown
    logger.info("application_shutting_down")
    shutdown_launcher()
    await app.state.redis.aclose()
    logger.info("application_shutdown_complete")


# =============================================================================
# Create FastAPI Application
# =============================================================================
app = FastAPI(
    title=settings.APP_NAME,
    description="""
    Background processing for uploaded clothing photos:

    - **Background Removal**: external tool, isolated process, hard timeout
    - **Optimization**: fit inside 1200x1200, lossless PNG
    - **Thumbnail**: 300x300 cover crop, WEBP
    - **Color Extraction**: dominant color and palette
    - **Observability**: Structured logging, Prometheus metrics

    Uploads return immediately with a `pending` record; poll
    `/api/v1/images/{id}/status` for the outcome and
    `/api/v1/images/{id}/retry` to re-run a failed image.
    """,
    version=settings.APP_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)


# =============================================================================
# Middleware
# =============================================================================

# CORS
cors_origins = settings.CORS_ORIGINS.split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _endpoint_label(request: Request) -> str:
    """Route template for metrics: /api/v1/images/{image_id}/status, /uploads, ..."""
    route = request.scope.get("route")
    if route is not None and hasattr(route, "path"):
        return route.path
    if request.url.path.startswith(f"/{_public_prefix}/"):
        return f"/{_public_prefix}"
    return "unmatched"


# Request timing middleware; the caller's owner id is attached to every event
@app.middleware("http")
async def add_request_timing(request: Request, call_next):
    """Time the request and scope its log events to the calling owner."""
    start_time = time.time()
    with LogContext(owner_id=request.headers.get("x-owner-id")):
        response = await call_next(request)
    duration = time.time() - start_time

    endpoint = _endpoint_label(request)

    http_request_duration_seconds.labels(
        method=request.method,
        endpoint=endpoint
    ).observe(duration)

    http_requests_total.labels(
        method=request.method,
        endpoint=endpoint,
        status=response.status_code
    ).inc()

    response.headers["X-Process-Time"] = str(duration)

    return response


# =============================================================================
# Register Exception Handlers
# =============================================================================
register_exception_handlers(app)


# =============================================================================
# Include API Routers
# =============================================================================
app.include_router(api_v1_router)


# =============================================================================
# Static Files
# =============================================================================

_public_dir = Path(settings.STORAGE_ROOT) / _public_prefix
if _public_dir.exists():
    app.mount(f"/{_public_prefix}", StaticFiles(directory=str(_public_dir)), name="uploads")


# =============================================================================
# Root Endpoints
# =============================================================================

@app.get("/", tags=["root"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "docs": "/api/docs",
        "api_v1": "/api/v1",
        "metrics": "/api/v1/metrics"
    }


@app.get("/health", tags=["health"])
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.APP_VERSION
    }


def _check_database() -> bool:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return True


@app.get("/ready", tags=["health"])
async def ready(request: Request):
    """Readiness check - verifies dependencies are available."""
    checks = {
        "database": False,
        "storage": False,
    }
    if settings.PIPELINE_LAUNCHER == "celery":
        checks["redis"] = False

    try:
        checks["database"] = await run_in_threadpool(_check_database)
    except Exception as e:
        logger.warning("readiness_database_failed", error=str(e))

    checks["storage"] = settings.upload_root.is_dir()

    if "redis" in checks:
        try:
            await request.app.state.redis.ping()
            checks["redis"] = True
        except Exception as e:
            logger.warning("readiness_redis_failed", error=str(e))

    all_ready = all(checks.values())

    return JSONResponse(
        status_code=200 if all_ready else 503,
        content={
            "ready": all_ready,
            "checks": checks
        }
    )


# =============================================================================
# Development Server
# =============================================================================
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "src.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
