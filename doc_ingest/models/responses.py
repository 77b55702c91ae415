# =============================================================================
# API Response Models — Pydantic V2 Schemas
# =============================================================================
#
# Chunk embeddings are stored but never serialized: a 3072-float vector per
# chunk is large and useless to a client. `has_embedding` reports presence.
# =============================================================================

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Response for GET /health — confirms the API and worker are running."""

    status: str = "ok"
    version: str
    service: str
    worker_state: str
    queue_pending: int


class IngestAcceptedResponse(BaseModel):
    """
    Response for POST /uploads/{upload_id}/ingest.

    The upload is queued, not yet ingested. Poll the status endpoint.
    """

    upload_id: str
    status: str = Field(default="pending", description="Ingestion status after enqueue")
    message: str = "Upload queued for ingestion."


class IngestionStatusResponse(BaseModel):
    """Response for GET /uploads/{upload_id}/ingestion/status."""

    upload_id: str
    status: str = Field(
        description="not_requested, pending, processing, completed or failed",
    )
    attempts: int = 0
    error: str | None = None
    ingested_at: datetime | None = None


class ChunkResponse(BaseModel):
    """One ingested chunk (without its embedding)."""

    id: str
    document_id: str
    content: str
    context: str | None = None
    summary: str | None = None
    metadata: dict[str, Any] | None = None
    has_embedding: bool
    created_at: datetime


class UploadIngestionResponse(BaseModel):
    """Response for GET /uploads/{upload_id}/ingestion."""

    upload_id: str
    summary: str | None = Field(
        default=None,
        description="First non-blank chunk summary, in chunk order",
    )
    chunk_count: int
    chunks: list[ChunkResponse]


class MetadataPatchResponse(BaseModel):
    """Response for PATCH /uploads/{upload_id}/metadata."""

    upload_id: str
    chunks_updated: int
