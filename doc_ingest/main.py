# =============================================================================
# Application Entry Point — FastAPI App and Process Lifecycle
# =============================================================================
#
# STARTUP (lifespan):
#   1. Configure logging from settings.log_level
#   2. Build the container: upload repository, object storage, chunk store,
#      pipeline builder, ingestion service, upload queue, worker
#   3. Start the ingestion worker
#
# SHUTDOWN:
#   1. Stop the worker (in-flight upload finishes or is cancelled after
#      worker_shutdown_timeout; queued uploads stay PENDING)
#   2. Dispose the database engine
#
# Run with:  uvicorn doc_ingest.main:app
# =============================================================================

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from doc_ingest.api.deps import IngestionContainer, get_container
from doc_ingest.api.uploads import router as uploads_router
from doc_ingest.config import Settings, get_settings
from doc_ingest.db.engine import dispose_engine
from doc_ingest.errors import (
    ConfigurationError,
    IngestionError,
    IntegrationError,
    NotFoundError,
    PersistenceError,
    UnsupportedFormatError,
)
from doc_ingest.models.responses import HealthResponse
from doc_ingest.services.chunk_store import get_chunk_store
from doc_ingest.services.ingestion import IngestionService
from doc_ingest.services.pipeline_builder import DefaultPipelineBuilder
from doc_ingest.services.storage import LocalFileStorage
from doc_ingest.services.uploads import SqlUploadRepository
from doc_ingest.workers.ingestion_worker import IngestionWorker
from doc_ingest.workers.queue import UploadQueue

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger once for the process."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def build_container(config: Settings) -> IngestionContainer:
    """
    Wire the production components.

    Raises:
        ConfigurationError: If the chunk store or pipeline is misconfigured.
            Failing here stops startup instead of failing every upload.
    """
    pipeline_builder = DefaultPipelineBuilder(config)
    pipeline_builder.validate()

    uploads = SqlUploadRepository()
    service = IngestionService(
        uploads=uploads,
        storage=LocalFileStorage(config.storage_root),
        pipeline_builder=pipeline_builder,
        chunk_store=get_chunk_store(config),
        config=config,
    )
    queue = UploadQueue(capacity=config.upload_queue_capacity)
    worker = IngestionWorker(
        queue=queue,
        service=service,
        uploads=uploads,
        max_attempts=config.ingestion_max_attempts,
        retry_base_delay=config.ingestion_retry_base_delay,
        retry_max_delay=config.ingestion_retry_max_delay,
        shutdown_timeout=config.worker_shutdown_timeout,
    )
    return IngestionContainer(uploads=uploads, service=service, queue=queue, worker=worker)


# ---------------------------------------------------------------------------
# Error → HTTP status mapping
# ---------------------------------------------------------------------------

_STATUS_CODES: list[tuple[type[IngestionError], int]] = [
    (NotFoundError, 404),
    (UnsupportedFormatError, 415),
    (ConfigurationError, 500),
    (PersistenceError, 503),
    (IntegrationError, 503),
]


def _status_for(exc: IngestionError) -> int:
    for error_type, status_code in _STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 500


async def _ingestion_error_handler(request: Request, exc: IngestionError) -> JSONResponse:
    status_code = _status_for(exc)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "error": type(exc).__name__},
    )


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(
    container: IngestionContainer | None = None,
    config: Settings | None = None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        container: Pre-built components (tests). When omitted, production
            components are built from settings at startup.
        config: Settings override; defaults to the cached settings.
    """
    config = config or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(config.log_level)
        owns_engine = container is None
        app.state.container = container or build_container(config)
        app.state.container.worker.start()
        logger.info("%s %s started", config.app_name, config.app_version)

        yield

        await app.state.container.worker.stop()
        if owns_engine:
            await dispose_engine()
        logger.info("%s stopped", config.app_name)

    app = FastAPI(
        title=config.app_name,
        version=config.app_version,
        description=(
            "Turns uploaded documents into embedded, retrievable chunks and "
            "keeps them consistent with their upload's metadata."
        ),
        lifespan=lifespan,
    )
    app.add_exception_handler(IngestionError, _ingestion_error_handler)
    app.include_router(uploads_router)

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health(request: Request) -> HealthResponse:
        components = get_container(request)
        return HealthResponse(
            version=config.app_version,
            service=config.app_name,
            worker_state=components.worker.state.value,
            queue_pending=components.queue.pending,
        )

    return app


app = create_app()
