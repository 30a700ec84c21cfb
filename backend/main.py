"""
FastAPI Backend for the YouTube to MP3 converter
"""

import asyncio
import logging
import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from contextlib import asynccontextmanager, suppress
import time

from backend.config import settings

# Configure structured logging
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer()
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    ),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=False,
)

logger = structlog.get_logger()

from backend.routers import convert, download
from backend.services.artifact_store import get_artifact_store
from backend.services.audio_extractor import get_audio_extractor

SERVICE_NAME = "Fast YouTube to MP3 Converter API"
SERVICE_VERSION = "2.0.0"

AVAILABLE_ENDPOINTS = ["/", "/health", "/api/convert", "/download/:fileId"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    logger.info("application_startup", message="FastAPI application starting up", port=settings.PORT)

    # Validate configuration
    try:
        settings.validate()
        logger.info("config_validated", message="Configuration validated successfully")
    except ValueError as e:
        logger.error("config_validation_failed", error=str(e))
        raise

    # Temp directory must exist and be writable before serving anything
    store = get_artifact_store()
    store.initialize()
    store.sweep_expired()

    sweep_task = None
    if settings.SWEEP_INTERVAL_MINUTES > 0:
        sweep_task = asyncio.create_task(
            store.run_periodic_sweep(settings.SWEEP_INTERVAL_MINUTES * 60)
        )
        logger.info("artifact_sweep_scheduled", interval_minutes=settings.SWEEP_INTERVAL_MINUTES)

    # Build the extractor eagerly so FFmpeg checks are logged at startup
    get_audio_extractor()

    yield

    if sweep_task is not None:
        sweep_task.cancel()
        with suppress(asyncio.CancelledError):
            await sweep_task
    store.cancel_pending()

    logger.info("application_shutdown", message="FastAPI application shutting down")


# Initialize FastAPI app
app = FastAPI(
    title=SERVICE_NAME,
    description="Converts YouTube videos to downloadable MP3 files",
    version=SERVICE_VERSION,
    lifespan=lifespan,
)

# CORS middleware configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list or ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition"],
)


# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all incoming requests"""
    start_time = time.time()

    # Log request
    logger.info(
        "request_started",
        method=request.method,
        path=request.url.path,
        client_host=request.client.host if request.client else None
    )

    try:
        response = await call_next(request)
        process_time = time.time() - start_time

        # Log response
        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            process_time=f"{process_time:.3f}s"
        )

        return response
    except Exception as e:
        process_time = time.time() - start_time
        logger.error(
            "request_failed",
            method=request.method,
            path=request.url.path,
            error=str(e),
            process_time=f"{process_time:.3f}s"
        )
        raise


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Render HTTP errors as the flat JSON error envelope"""
    if exc.status_code == 404 and exc.detail == "Not Found":
        # No route matched
        return JSONResponse(
            status_code=404,
            content={"error": "Endpoint not found", "available": AVAILABLE_ENDPOINTS}
        )

    if isinstance(exc.detail, dict):
        content = exc.detail
    else:
        content = {"success": False, "error": str(exc.detail)}

    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Render request validation errors as 400s"""
    logger.warning("request_validation_failed", path=request.url.path, errors=str(exc.errors())[:200])
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "Invalid request", "details": str(exc.errors())[:200]}
    )


# Global error handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle all unhandled exceptions"""
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        exc_type=type(exc).__name__
    )

    content = {
        "success": False,
        "error": "Internal server error",
        "message": "Something went wrong on the server",
    }
    if settings.DEBUG:
        content["details"] = str(exc)[:200]

    return JSONResponse(status_code=500, content=content)


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint

    Returns:
        dict: Health status of the API
    """
    return {
        "status": "healthy",
        "service": "youtube-mp3-converter",
        "version": SERVICE_VERSION
    }


# Include routers
app.include_router(convert.router)
app.include_router(download.router)


# Root endpoint
@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information"""
    return {
        "name": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "status": "running",
        "extractionMethod": settings.EXTRACTION_METHOD,
        "endpoints": {
            "convert": "/api/convert?url={youtube_url}",
            "download": "/download/{fileId}",
            "health": "/health",
            "docs": "/docs"
        }
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "backend.main:app",
        host=settings.API_HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower()
    )
