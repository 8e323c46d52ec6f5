"""Main FastAPI application for the xolo daemon.

This module creates and configures the FastAPI application that exposes
xolo_library via a REST API with streamed progress.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from xolo_library import __version__
from xolo_library.config.loader import load_config
from xolo_library.exceptions import XoloError
from xolo_library.logs import setup_logging
from xolo_library.progress.channel import STREAM_URL_PATH

from .routers import lookups_router
from .routers import maint_router
from .routers import progress_router
from .routers import status_router
from .routers import titles_router
from .routers import versions_router
from .services.container import build_services
from .services.maintenance_scheduler import MaintenanceScheduler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    Builds the services and starts the maintenance scheduler on startup;
    stops them on shutdown.

    Args:
        app: FastAPI application instance
    """
    # Startup
    config = load_config()
    log_file = setup_logging(config.log_level, days_to_keep=config.log_days_to_keep)
    logger.info(f"Starting xolod {__version__} on {config.host}:{config.port}, logging to {log_file}")

    services = build_services(config)
    app.state.services = services
    app.state.shutting_down = False
    app.state.restart_requested = False

    scheduler = MaintenanceScheduler(services.maintenance, config)
    scheduler.start()
    app.state.scheduler = scheduler

    yield

    # Shutdown
    logger.info("Shutting down xolod")
    if scheduler.running:
        scheduler.stop()
    services.close()


# Create FastAPI application
app = FastAPI(
    title="xolod",
    description="Title and version lifecycle server for Jamf Pro and the Title Editor",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def refuse_while_shutting_down(request: Request, call_next):
    """Answer 503 to everything but progress streams once shutdown has begun."""
    if getattr(request.app.state, "shutting_down", False) and not request.url.path.startswith(
        STREAM_URL_PATH.rstrip("/")
    ):
        return JSONResponse(status_code=503, content={"status": 503, "error": "The server is shutting down"})
    return await call_next(request)


# --- Error handlers: every error body is {"status": <int>, "error": <message>} ---


@app.exception_handler(XoloError)
async def xolo_error_handler(request: Request, exc: XoloError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    content = exc.to_dict()
    approval_url = getattr(exc, "approval_url", None)
    if approval_url:
        content["approval_url"] = approval_url
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"status": exc.status_code, "error": str(exc.detail)})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    messages = []
    for error in exc.errors():
        loc = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        messages.append(f"{loc}: {error.get('msg')}" if loc else str(error.get("msg")))
    return JSONResponse(status_code=400, content={"status": 400, "error": "; ".join(messages)})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error in {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"status": 500, "error": f"{type(exc).__name__}: {exc}"})


# Include routers
app.include_router(status_router)
app.include_router(titles_router)
app.include_router(versions_router)
app.include_router(progress_router)
app.include_router(maint_router)
app.include_router(lookups_router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint.

    Returns:
        Server name and version
    """
    return {
        "name": "xolod",
        "version": __version__,
        "docs": "/docs",
        "openapi": "/openapi.json",
    }
