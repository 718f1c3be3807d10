"""Main FastAPI application for the clinic sync engine.

This module sets up the FastAPI application with its routes, the process
lifespan (schema, snapshot preload, periodic sync) and the error handler.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from clinisync.api.dependencies import get_services
from clinisync.api.models import ErrorResponse
from clinisync.api.routes import health, patients, sync
from clinisync.infrastructure.logging_config import setup_logging
from clinisync.infrastructure.settings import APP_VERSION, settings
from clinisync.main import shutdown, startup

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    log_config = settings.config.logging
    setup_logging(use_json=log_config.json_format, log_level=log_config.level, log_file=log_config.file)

    logger.info("ClinicSync API starting up...")
    services = get_services()
    startup(services, start_scheduler=True)
    logger.info("API documentation available at /api/docs")
    yield
    logger.info("ClinicSync API shutting down...")
    shutdown(services)


app = FastAPI(
    title="ClinicSync API",
    description="Patient snapshot and eligibility queries over the legacy clinic data",
    version=APP_VERSION,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    lifespan=lifespan
)

app.include_router(health.router)
app.include_router(patients.router)
app.include_router(sync.router)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled error on {request.url.path}: {str(exc)}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(error=str(exc), error_type=type(exc).__name__).model_dump(),
    )


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "ClinicSync API",
        "version": APP_VERSION,
        "docs": "/api/docs",
        "health": "/api/health"
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "clinisync.api.main:app",
        host="127.0.0.1",
        port=8000,
        log_level="info"
    )
