# =============================================================================
# Test Fakes — In-Memory Collaborators for the Ingestion Pipeline
# =============================================================================
#
# Lightweight stand-ins for the database, object storage, vendor models and
# pipeline builder. No API keys, databases, or network calls needed.
# =============================================================================

from __future__ import annotations

import asyncio
import dataclasses
import io
from collections.abc import AsyncIterable, AsyncIterator, Iterator, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone

from doc_ingest.config import Settings
from doc_ingest.db.models import IngestionStatus
from doc_ingest.errors import NotFoundError, PersistenceError
from doc_ingest.services.chunk_store import ChunkRecord, check_dimensions
from doc_ingest.services.chunker import IngestionChunk
from doc_ingest.services.llm import LLMResponse
from doc_ingest.services.pipeline_builder import IngestionPipeline
from doc_ingest.services.readers import Document, MediaTypeDocumentReader
from doc_ingest.services.uploads import UploadInfo


def _run(coro):
    """Run a coroutine to completion in a fresh event loop."""
    return asyncio.run(coro)


def make_settings(**overrides) -> Settings:
    values = {
        "embedding_dimensions": 3,
        "embedding_batch_size": 2,
        "max_tokens_per_chunk": 32,
        "overlap_tokens": 4,
        "ingestion_retry_base_delay": 0.0,
        "ingestion_retry_max_delay": 0.0,
        "worker_shutdown_timeout": 1.0,
        "llm_api_key": "test-key",
    }
    values.update(overrides)
    return Settings(**values)


# ---------------------------------------------------------------------------
# Uploads & storage
# ---------------------------------------------------------------------------


@dataclass
class FakeUploadRepository:
    uploads: dict[str, UploadInfo] = field(default_factory=dict)
    status_history: list[tuple[str, IngestionStatus, str | None]] = field(
        default_factory=list,
    )
    get_calls: int = 0

    def add(
        self,
        upload_id: str,
        metadata: str | None = None,
        content_type: str | None = "text/plain",
        storage_path: str | None = None,
    ) -> UploadInfo:
        upload = UploadInfo(
            id=upload_id,
            storage_path=storage_path or f"{upload_id}.txt",
            content_type=content_type,
            metadata=metadata,
        )
        self.uploads[upload_id] = upload
        return upload

    async def get_by_id(self, upload_id: str) -> UploadInfo | None:
        self.get_calls += 1
        upload = self.uploads.get(upload_id)
        return dataclasses.replace(upload) if upload else None

    async def update_metadata(self, upload_id: str, metadata: str | None) -> bool:
        if upload_id not in self.uploads:
            return False
        self.uploads[upload_id].metadata = metadata
        return True

    async def set_ingestion_status(
        self,
        upload_id: str,
        status: IngestionStatus,
        error: str | None = None,
    ) -> bool:
        self.status_history.append((upload_id, status, error))
        upload = self.uploads.get(upload_id)
        if upload is None:
            return False
        upload.ingestion_status = status
        if status is IngestionStatus.PENDING:
            upload.ingestion_attempts = 0
            upload.ingestion_error = None
        elif status is IngestionStatus.PROCESSING:
            upload.ingestion_attempts += 1
        elif status is IngestionStatus.COMPLETED:
            upload.ingestion_error = None
            upload.ingested_at = datetime.now(timezone.utc)
        elif status is IngestionStatus.FAILED:
            upload.ingestion_error = error
        return True

    def statuses(self, upload_id: str) -> list[IngestionStatus]:
        return [s for uid, s, _ in self.status_history if uid == upload_id]


@dataclass
class FakeStorage:
    files: dict[str, bytes] = field(default_factory=dict)

    async def download(self, path: str):
        if path not in self.files:
            raise NotFoundError(f"No stored file at '{path}'")
        return io.BytesIO(self.files[path])


# ---------------------------------------------------------------------------
# Chunk store
# ---------------------------------------------------------------------------


@dataclass
class InMemoryChunkStore:
    """Chunk store that commits a write only after the whole stream is read."""

    records: dict[str, ChunkRecord] = field(default_factory=dict)
    write_calls: int = 0
    update_calls: int = 0
    fail_writes: bool = False

    async def write(
        self,
        source_id: str,
        chunks: AsyncIterable[ChunkRecord],
        embedding_dimensions: int,
        incremental: bool,
    ) -> int:
        self.write_calls += 1
        staged = []
        async for record in chunks:
            check_dimensions(record, embedding_dimensions)
            staged.append(record)
        if self.fail_writes:
            raise PersistenceError("Simulated store failure")

        if incremental:
            await self.delete_by(source_id)
        for record in staged:
            self.records[record.id] = record
        return len(staged)

    async def query(self, source_id: str) -> list[ChunkRecord]:
        found = [r for r in self.records.values() if r.source_id == source_id]
        return sorted(found, key=lambda r: r.created_at)

    async def delete_by(self, source_id: str) -> int:
        ids = [i for i, r in self.records.items() if r.source_id == source_id]
        for chunk_id in ids:
            del self.records[chunk_id]
        return len(ids)

    async def update(self, chunks: Sequence[ChunkRecord]) -> int:
        self.update_calls += 1
        updated = 0
        for record in chunks:
            if record.id in self.records:
                self.records[record.id] = dataclasses.replace(
                    self.records[record.id], metadata=record.metadata,
                )
                updated += 1
        return updated


# ---------------------------------------------------------------------------
# Pipeline components
# ---------------------------------------------------------------------------


class ParagraphChunker:
    """One chunk per blank-line separated paragraph."""

    def chunk(self, document: Document) -> Iterator[IngestionChunk]:
        for index, paragraph in enumerate(document.text.split("\n\n")):
            if paragraph.strip():
                yield IngestionChunk(
                    content=paragraph,
                    document_id=document.id,
                    metadata={"chunk_index": index},
                )


@dataclass
class FakeEmbeddingGenerator:
    dimensions: int = 3
    calls: int = 0
    texts: list[str] = field(default_factory=list)
    fail_with: Exception | None = None

    async def embed(self, text: str) -> list[float]:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        self.calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        self.texts.extend(texts)
        return [[float(len(t)), 1.0, 0.5][: self.dimensions] for t in texts]


@dataclass
class MetadataChunkEnricher:
    """Writes a fixed value under a metadata key on every chunk."""

    key: str
    value: object

    async def process(
        self,
        chunks: AsyncIterator[IngestionChunk],
    ) -> AsyncIterator[IngestionChunk]:
        async for chunk in chunks:
            chunk.metadata[self.key] = self.value
            yield chunk


@dataclass
class FailingDocumentEnricher:
    error: Exception

    async def process(self, document: Document) -> Document:
        raise self.error


@dataclass
class FakePipelineBuilder:
    embedding_generator: FakeEmbeddingGenerator = field(
        default_factory=FakeEmbeddingGenerator,
    )
    chunker: object = field(default_factory=ParagraphChunker)
    document_enrichers: list = field(default_factory=list)
    chunk_enrichers: list = field(default_factory=list)
    build_error: Exception | None = None
    builds: int = 0

    def build(self, upload: UploadInfo) -> IngestionPipeline:
        self.builds += 1
        if self.build_error is not None:
            raise self.build_error
        return IngestionPipeline(
            reader=MediaTypeDocumentReader(),
            chunker=self.chunker,
            embedding_generator=self.embedding_generator,
            document_enrichers=list(self.document_enrichers),
            chunk_enrichers=list(self.chunk_enrichers),
        )


@dataclass
class FakeLLM:
    reply: str = "A short summary."
    calls: list[dict] = field(default_factory=list)
    fail_with: Exception | None = None

    async def complete(self, messages, system=None, temperature=None, max_tokens=None):
        self.calls.append({"kind": "complete", "messages": messages, "system": system,
                           "max_tokens": max_tokens})
        if self.fail_with is not None:
            raise self.fail_with
        return LLMResponse(content=self.reply, model="fake", input_tokens=1, output_tokens=1)

    async def describe_image(self, image_data, media_type, prompt, max_tokens=None):
        self.calls.append({"kind": "image", "media_type": media_type, "size": len(image_data)})
        if self.fail_with is not None:
            raise self.fail_with
        return LLMResponse(content=self.reply, model="fake", input_tokens=1, output_tokens=1)
