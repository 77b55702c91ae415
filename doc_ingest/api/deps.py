# =============================================================================
# API Dependencies — Component Container
# =============================================================================
#
# The application lifespan builds one IngestionContainer and stores it on
# `app.state.container`. Route handlers receive its parts through the
# dependencies below, so tests can build the app around a container of
# in-memory fakes.
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request

from doc_ingest.services.ingestion import IngestionService
from doc_ingest.services.uploads import UploadRepository
from doc_ingest.workers.ingestion_worker import IngestionWorker
from doc_ingest.workers.queue import UploadQueue


@dataclass
class IngestionContainer:
    """Process-wide components, created at startup and closed at shutdown."""

    uploads: UploadRepository
    service: IngestionService
    queue: UploadQueue
    worker: IngestionWorker


def get_container(request: Request) -> IngestionContainer:
    return request.app.state.container


def get_upload_repository(request: Request) -> UploadRepository:
    return get_container(request).uploads


def get_ingestion_service(request: Request) -> IngestionService:
    return get_container(request).service


def get_upload_queue(request: Request) -> UploadQueue:
    return get_container(request).queue
