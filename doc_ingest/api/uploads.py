# =============================================================================
# Upload Ingestion API — Enqueue, Inspect, Patch, Delete
# =============================================================================
#
# ENDPOINTS:
#   POST   /uploads/{upload_id}/ingest            — queue the upload (202)
#   GET    /uploads/{upload_id}/ingestion/status  — pending/processing/...
#   GET    /uploads/{upload_id}/ingestion         — summary + ordered chunks
#   PATCH  /uploads/{upload_id}/metadata          — store + re-merge metadata
#   DELETE /uploads/{upload_id}/ingestion         — drop all chunks (204)
#
# POST returns 202 Accepted: ingestion happens later in the background
# worker. When the queue is full the request waits for capacity instead of
# failing, which throttles clients to the worker's pace.
#
# Ingestion errors raised by the service are mapped to HTTP status codes by
# the exception handlers registered in doc_ingest/main.py.
# =============================================================================

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Response

from doc_ingest.api.deps import (
    get_ingestion_service,
    get_upload_queue,
    get_upload_repository,
)
from doc_ingest.db.models import IngestionStatus
from doc_ingest.models.requests import MetadataPatchRequest
from doc_ingest.models.responses import (
    ChunkResponse,
    IngestAcceptedResponse,
    IngestionStatusResponse,
    MetadataPatchResponse,
    UploadIngestionResponse,
)
from doc_ingest.services.chunk_store import ChunkRecord
from doc_ingest.services.ingestion import IngestionService
from doc_ingest.services.metadata import parse_chunk_metadata
from doc_ingest.services.uploads import UploadRepository
from doc_ingest.workers.queue import UploadQueue, UploadToProcess

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/uploads", tags=["Ingestion"])


def _not_found(upload_id: str) -> HTTPException:
    return HTTPException(status_code=404, detail=f"Upload {upload_id} not found.")


# ---------------------------------------------------------------------------
# POST /uploads/{upload_id}/ingest — Queue an upload
# ---------------------------------------------------------------------------


@router.post(
    "/{upload_id}/ingest",
    response_model=IngestAcceptedResponse,
    status_code=202,
    summary="Queue an upload for ingestion",
)
async def enqueue_upload(
    upload_id: str,
    uploads: UploadRepository = Depends(get_upload_repository),
    queue: UploadQueue = Depends(get_upload_queue),
) -> IngestAcceptedResponse:
    """
    Mark the upload PENDING and hand it to the ingestion worker.

    Called after the raw file has been written to storage. Re-posting an
    already ingested upload re-ingests it (its chunks are replaced when
    incremental ingestion is enabled).
    """
    upload = await uploads.get_by_id(upload_id)
    if upload is None:
        raise _not_found(upload_id)

    await uploads.set_ingestion_status(upload.id, IngestionStatus.PENDING)
    await queue.enqueue(UploadToProcess(upload_id=upload.id))

    logger.info("Queued upload %s for ingestion (%d pending)", upload.id, queue.pending)
    return IngestAcceptedResponse(upload_id=upload.id)


# ---------------------------------------------------------------------------
# GET /uploads/{upload_id}/ingestion/status — Poll ingestion status
# ---------------------------------------------------------------------------


@router.get(
    "/{upload_id}/ingestion/status",
    response_model=IngestionStatusResponse,
    summary="Check an upload's ingestion status",
)
async def get_ingestion_status(
    upload_id: str,
    uploads: UploadRepository = Depends(get_upload_repository),
) -> IngestionStatusResponse:
    upload = await uploads.get_by_id(upload_id)
    if upload is None:
        raise _not_found(upload_id)

    return IngestionStatusResponse(
        upload_id=upload.id,
        status=upload.ingestion_status.value if upload.ingestion_status else "not_requested",
        attempts=upload.ingestion_attempts,
        error=upload.ingestion_error,
        ingested_at=upload.ingested_at,
    )


# ---------------------------------------------------------------------------
# GET /uploads/{upload_id}/ingestion — Ingested chunks
# ---------------------------------------------------------------------------


@router.get(
    "/{upload_id}/ingestion",
    response_model=UploadIngestionResponse,
    summary="Get an upload's ingested chunks and summary",
)
async def get_upload_ingestion(
    upload_id: str,
    service: IngestionService = Depends(get_ingestion_service),
) -> UploadIngestionResponse:
    """Chunks oldest first; 404 when the upload has no chunks at all."""
    ingestion = await service.get_by_upload_id(upload_id)
    if ingestion is None:
        raise HTTPException(
            status_code=404,
            detail=f"No ingested content for upload {upload_id}.",
        )

    return UploadIngestionResponse(
        upload_id=upload_id,
        summary=ingestion.summary,
        chunk_count=len(ingestion.chunks),
        chunks=[_chunk_response(c) for c in ingestion.chunks],
    )


def _chunk_response(chunk: ChunkRecord) -> ChunkResponse:
    return ChunkResponse(
        id=chunk.id,
        document_id=chunk.document_id,
        content=chunk.content,
        context=chunk.context,
        summary=chunk.summary,
        metadata=parse_chunk_metadata(chunk.metadata) if chunk.metadata else None,
        has_embedding=chunk.embedding is not None,
        created_at=chunk.created_at,
    )


# ---------------------------------------------------------------------------
# PATCH /uploads/{upload_id}/metadata — Update upload metadata
# ---------------------------------------------------------------------------


@router.patch(
    "/{upload_id}/metadata",
    response_model=MetadataPatchResponse,
    summary="Replace an upload's metadata and patch its chunks",
)
async def patch_upload_metadata(
    upload_id: str,
    body: MetadataPatchRequest,
    uploads: UploadRepository = Depends(get_upload_repository),
    service: IngestionService = Depends(get_ingestion_service),
) -> MetadataPatchResponse:
    """
    Store the new metadata on the upload, then merge it into every existing
    chunk. Nothing is re-chunked or re-embedded.
    """
    raw = None if body.metadata is None else json.dumps(body.metadata, ensure_ascii=False)

    if not await uploads.update_metadata(upload_id, raw):
        raise _not_found(upload_id)

    updated = await service.update_metadata(upload_id, raw)
    return MetadataPatchResponse(upload_id=upload_id, chunks_updated=updated)


# ---------------------------------------------------------------------------
# DELETE /uploads/{upload_id}/ingestion — Remove ingested chunks
# ---------------------------------------------------------------------------


@router.delete(
    "/{upload_id}/ingestion",
    status_code=204,
    summary="Delete an upload's ingested chunks",
)
async def delete_upload_ingestion(
    upload_id: str,
    service: IngestionService = Depends(get_ingestion_service),
) -> Response:
    """Idempotent: deleting an upload without chunks succeeds."""
    deleted = await service.delete_by_upload_id(upload_id)
    logger.info("Deleted %d chunks of upload %s", deleted, upload_id)
    return Response(status_code=204)
