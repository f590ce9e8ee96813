"""FastAPI application for LabCare."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from labcare import __version__
from labcare.api.middleware import APIKeyMiddleware, RequestLoggingMiddleware
from labcare.api.routes import encounters, extraction, health
from labcare.config import Settings, get_settings
from labcare.core.errors import (
    ConflictError,
    EncounterNotFoundError,
    NetworkError,
    TerminalStateError,
    ValidationError,
    WorkflowError,
)
from labcare.core.gateway import BillingGateway, HttpBillingGateway, InMemoryBillingGateway
from labcare.core.http_repository import HttpEncounterRepository
from labcare.core.repository import EncounterRepository, InMemoryEncounterRepository
from labcare.encounter.machine import EncounterStateMachine
from labcare.extraction.allocator import ResourceAllocator, ResourcePool
from labcare.extraction.poller import QueuePoller
from labcare.observability import ObservabilityLogger

logger = logging.getLogger(__name__)

# Most specific first: EncounterNotFoundError is a ConflictError.
ERROR_STATUS: list[tuple[type[WorkflowError], int]] = [
    (EncounterNotFoundError, 404),
    (ValidationError, 422),
    (ConflictError, 409),
    (NetworkError, 502),
    (TerminalStateError, 423),
]


def status_for(exc: WorkflowError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status
    return 500


def build_repository(settings: Settings) -> EncounterRepository:
    if settings.uses_remote_repository:
        return HttpEncounterRepository(
            settings.repository_base_url,
            timeout=settings.request_timeout,
            max_retries=settings.max_retries,
        )
    logger.info("No repository URL configured; using the in-memory encounter store")
    return InMemoryEncounterRepository(branch_id=settings.branch_id)


def build_gateway(settings: Settings) -> BillingGateway:
    if settings.has_gateway:
        return HttpBillingGateway(settings.gateway_base_url, timeout=settings.request_timeout)
    logger.info("No gateway URL configured; using the in-memory billing gateway")
    return InMemoryBillingGateway()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting LabCare API")
    app.state.poller.start()

    yield

    logger.info("Shutting down LabCare API")
    await app.state.poller.stop()
    await app.state.repository.close()
    await app.state.gateway.close()


def create_app(
    settings: Optional[Settings] = None,
    repository: Optional[EncounterRepository] = None,
    gateway: Optional[BillingGateway] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()

    ObservabilityLogger.configure(
        log_dir=settings.observability_log_dir,
        enabled=settings.observability_enabled,
    )

    app = FastAPI(
        title="LabCare API",
        description="Encounter workflow for diagnostic laboratory visits",
        version=__version__,
        lifespan=lifespan,
    )

    # Components live in app state
    repository = repository or build_repository(settings)
    gateway = gateway or build_gateway(settings)
    pool = ResourcePool.from_count(settings.extraction_box_count)
    allocator = ResourceAllocator(repository, pool)

    app.state.settings = settings
    app.state.repository = repository
    app.state.gateway = gateway
    app.state.allocator = allocator
    app.state.machine = EncounterStateMachine(
        repository, gateway=gateway, allocator=allocator, settings=settings
    )
    app.state.poller = QueuePoller(allocator, interval=settings.queue_poll_interval_seconds)
    app.state.sessions = {}
    app.state.worksheets = {}

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    if settings.api_key:
        app.add_middleware(APIKeyMiddleware, api_key=settings.api_key)

    # Include routers
    app.include_router(health.router, tags=["health"])
    app.include_router(encounters.router, prefix="/api/v1", tags=["encounters"])
    app.include_router(extraction.router, prefix="/api/v1", tags=["extraction"])

    # Exception handlers
    @app.exception_handler(WorkflowError)
    async def workflow_exception_handler(request: Request, exc: WorkflowError):
        status = status_for(exc)
        if status >= 500:
            logger.warning(f"{request.method} {request.url.path}: {exc}")
        return JSONResponse(
            status_code=status,
            content={
                "error": type(exc).__name__,
                "detail": exc.message,
                "encounter_id": exc.encounter_id,
                "requires_resync": exc.requires_resync,
            },
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled exception: {exc}")
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "detail": str(exc) if settings.debug_mode else None,
            },
        )

    return app
