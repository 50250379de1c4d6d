import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.api.v1.router import api_v1_router
from app.core.config import settings, validate_settings_for_production
from app.core.exceptions import AppError
from app.core.logging import setup_logging
from app.core.metrics import PrometheusMiddleware, metrics_response
from app.core.middleware import RequestLoggingMiddleware
from app.core.rate_limit import limiter
from app.core.sentry import init_sentry
from app.generation.errors import GENERIC_FAILURE_MESSAGE, GenerationError, safe_message
from app.services.container import build_default_services

# Configure logging before anything else
setup_logging()
init_sentry()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    validate_settings_for_production()
    logger.info(
        "Starting image generation gateway (persistence=%s, batch=%s)",
        settings.persistence_backend,
        settings.batch_backend,
    )
    app.state.services = build_default_services()

    yield

    # Shutdown
    await app.state.services.shutdown()
    if settings.persistence_backend == "postgres":
        from app.db.postgres import engine

        await engine.dispose()
    logger.info("Image generation gateway shut down")


app = FastAPI(
    title="Image Generation Gateway",
    description="Vendor-neutral AI image generation with immediate and deferred delivery",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.app_debug else None,
    redoc_url="/api/redoc" if settings.app_debug else None,
)


@app.exception_handler(AppError)
async def _app_error_handler(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.message})


@app.exception_handler(GenerationError)
async def _generation_error_handler(request: Request, exc: GenerationError):
    if not exc.user_safe:
        logger.error("Generation failed on %s %s: [%s] %s", request.method, request.url.path, exc.kind.value, exc.message)
    return JSONResponse(status_code=exc.http_status, content={"success": False, "error": safe_message(exc)})


# Log unhandled exceptions; the response never carries internals
@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
    logger.error("Unhandled %s on %s %s:\n%s", type(exc).__name__, request.method, request.url.path, "".join(tb))
    return JSONResponse(status_code=500, content={"success": False, "error": GENERIC_FAILURE_MESSAGE})


# Rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Request logging + metrics middleware
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(PrometheusMiddleware)

# CORS: parse allowed_origins from settings (comma-separated)
_origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API routes
app.include_router(api_v1_router)


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "persistence": settings.persistence_backend,
        "batchBackend": settings.batch_backend,
        "maintenance": settings.maintenance_mode,
    }


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return metrics_response()
