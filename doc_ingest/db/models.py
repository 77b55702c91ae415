# =============================================================================
# Database Models — SQLAlchemy ORM
# =============================================================================
#
# SCHEMA OVERVIEW:
#
# ┌─────────────────────┐        ┌──────────────────────────────────┐
# │  uploads            │        │  ingestion_embeddings            │
# ├─────────────────────┤        ├──────────────────────────────────┤
# │ id (PK, uuid)       │─ 1:N ─▶│ key (PK, uuid)                   │
# │ file_name           │        │ sourceid (upload id as text)     │
# │ storage_path        │        │ documentid                       │
# │ content_type        │        │ content (text)                   │
# │ metadata (text)     │        │ embedding (vector(dim))          │
# │ ingestion_status    │        │ context / summary (text)         │
# │ ingestion_attempts  │        │ metadata (text, JSON object)     │
# │ ingestion_error     │        │ createdat                        │
# │ ingested_at         │        └──────────────────────────────────┘
# └─────────────────────┘
#
# NOTES:
#
# 1. Chunks reference their upload by `sourceid` (a string), not a foreign
#    key. The chunk table is the vector store's collection and is owned by
#    the ingestion pipeline; deletes are always issued by sourceid.
#
# 2. Chunk `metadata` is stored as TEXT holding a JSON object (or NULL), the
#    same representation the orchestrator merges and patches. It is never a
#    bare scalar or malformed JSON.
#
# 3. `embedding` has no ANN index: pgvector's HNSW/IVFFlat indexes cap at
#    2000 dimensions and the default embedding width is 3072.
# =============================================================================

import enum
import uuid
from datetime import datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    BigInteger,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from doc_ingest.config import settings


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class."""

    pass


class IngestionStatus(str, enum.Enum):
    """
    Tracks the ingestion state of an upload.

    State machine:
        PENDING → PROCESSING → COMPLETED
                     ↑   │
                     └───┴──→ FAILED   (retries go back to PROCESSING)
    """

    PENDING = "pending"          # Enqueued, waiting for the worker
    PROCESSING = "processing"    # Worker is reading/chunking/embedding
    COMPLETED = "completed"      # All chunks written
    FAILED = "failed"            # Gave up (see ingestion_error)


class Upload(Base):
    """
    A file accepted by the upload flow.

    Only the columns the ingestion pipeline reads or writes are mapped here;
    ownership and folder placement belong to the wider application schema.
    """

    __tablename__ = "uploads"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    file_name: Mapped[str] = mapped_column(String(500), nullable=False)

    # Path relative to the object storage root
    storage_path: Mapped[str] = mapped_column(String(1000), nullable=False)
    file_size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    content_type: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # User-supplied JSON string. May be invalid JSON; the pipeline treats
    # invalid JSON as absent.
    metadata_: Mapped[str | None] = mapped_column("metadata", Text, nullable=True)

    date_uploaded: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    ingestion_status: Mapped[IngestionStatus | None] = mapped_column(
        Enum(IngestionStatus, name="ingestion_status"),
        nullable=True,
    )
    ingestion_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ingestion_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    ingested_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return (
            f"<Upload(id={self.id}, file_name='{self.file_name}', "
            f"status={self.ingestion_status})>"
        )


class ChunkRow(Base):
    """
    One ingested chunk of an upload, with its embedding.

    Column names match the vector-store collection layout so the same table
    can be read by similarity-search code outside this service.
    """

    __tablename__ = settings.collection_name

    id: Mapped[uuid.UUID] = mapped_column("key", Uuid, primary_key=True, default=uuid.uuid4)
    document_id: Mapped[str] = mapped_column("documentid", String(128), nullable=False)
    source_id: Mapped[str] = mapped_column("sourceid", String(128), nullable=False)
    content: Mapped[str] = mapped_column("content", Text, nullable=False)
    embedding: Mapped[list[float] | None] = mapped_column(
        "embedding",
        Vector(settings.embedding_dimensions),
        nullable=True,
    )
    context: Mapped[str | None] = mapped_column("context", Text, nullable=True)
    summary: Mapped[str | None] = mapped_column("summary", Text, nullable=True)
    metadata_: Mapped[str | None] = mapped_column("metadata", Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        "createdat",
        DateTime(timezone=True),
        nullable=False,
    )

    __table_args__ = (
        Index(f"ix_{settings.collection_name}_sourceid", "sourceid"),
        Index(f"ix_{settings.collection_name}_documentid", "documentid"),
    )

    def __repr__(self) -> str:
        return f"<ChunkRow(id={self.id}, source_id={self.source_id})>"
