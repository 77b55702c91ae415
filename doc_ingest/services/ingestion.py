# =============================================================================
# Ingestion Orchestrator — Upload → Chunks, and Keeping Chunks in Sync
# =============================================================================
#
# INGEST PIPELINE (one upload):
#   1. Load the upload record                       → NotFoundError
#   2. Build the pipeline for it                    → ConfigurationError
#   3. Download the raw bytes and read a Document   → UnsupportedFormatError
#   4. Run document enrichers in order (e.g. image alt text)
#   5. Chunk the document into token windows (lazy)
#   6. Stamp each chunk with source_id and a created_at timestamp
#   7. Run chunk enrichers in order over the stream (e.g. summaries)
#   8. Merge the upload's CURRENT metadata into each chunk's metadata
#   9. Promote any "*summary*" metadata value into the chunk's summary
#  10. Embed in batches and write the whole stream to the chunk store
#
# Steps 5–10 are one lazy async stream consumed by the chunk store write,
# so a large document never has all its chunks in memory at once. The store
# write is atomic per upload: a failure anywhere in the stream rolls back.
#
# OTHER OPERATIONS:
#   update_metadata()    — re-run step 8 only, persisting metadata only
#   delete_by_upload_id()— remove all chunks of an upload (idempotent)
#   get_by_upload_id()   — chunks oldest first plus a document summary
#
# CONCURRENCY:
# ingest, update_metadata and delete_by_upload_id hold a per-upload asyncio
# lock, so within this process two of them never touch the same upload's
# chunks at the same time. get_by_upload_id reads without the lock.
# =============================================================================

from __future__ import annotations

import asyncio
import dataclasses
import logging
import uuid
from collections.abc import AsyncGenerator, AsyncIterator, Iterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from doc_ingest.config import Settings
from doc_ingest.errors import IngestionError, NotFoundError
from doc_ingest.services.chunk_store import ChunkRecord, ChunkStore
from doc_ingest.services.chunker import IngestionChunk
from doc_ingest.services.embedder import EmbeddingGenerator
from doc_ingest.services.metadata import (
    merge_upload_metadata,
    parse_upload_metadata,
    promote_summary,
)
from doc_ingest.services.pipeline_builder import PipelineBuilder
from doc_ingest.services.readers import DEFAULT_MEDIA_TYPE
from doc_ingest.services.storage import ObjectStorage
from doc_ingest.services.uploads import UploadRepository

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class UploadIngestion:
    """The ingested content of one upload."""

    summary: str | None
    chunks: list[ChunkRecord]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class KeyedLock:
    """One asyncio.Lock per key, dropped once nobody holds or waits for it."""

    def __init__(self) -> None:
        self._locks: dict[str, tuple[asyncio.Lock, list[int]]] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncGenerator[None, None]:
        lock, users = self._locks.setdefault(key, (asyncio.Lock(), [0]))
        users[0] += 1
        try:
            async with lock:
                yield
        finally:
            users[0] -= 1
            if users[0] == 0:
                del self._locks[key]

    def __contains__(self, key: str) -> bool:
        return key in self._locks


class BatchClock:
    """UTC timestamps strictly increasing within one ingestion batch."""

    def __init__(self) -> None:
        self._last: datetime | None = None

    def now(self) -> datetime:
        current = datetime.now(timezone.utc)
        if self._last is not None and current <= self._last:
            current = self._last + timedelta(microseconds=1)
        self._last = current
        return current


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class IngestionService:
    """Runs uploads through the pipeline and keeps their chunks consistent."""

    def __init__(
        self,
        uploads: UploadRepository,
        storage: ObjectStorage,
        pipeline_builder: PipelineBuilder,
        chunk_store: ChunkStore,
        config: Settings,
    ) -> None:
        self._uploads = uploads
        self._storage = storage
        self._pipeline_builder = pipeline_builder
        self._store = chunk_store
        self._config = config
        self._locks = KeyedLock()

    @asynccontextmanager
    async def _operation(
        self,
        upload_id: str,
        exclusive: bool = True,
    ) -> AsyncGenerator[None, None]:
        """Tag every failure with the upload id; mutations also serialize per upload."""
        try:
            if exclusive:
                async with self._locks.hold(upload_id):
                    yield
            else:
                yield
        except IngestionError as exc:
            if exc.upload_id is None:
                exc.upload_id = upload_id
            raise
        except Exception as exc:
            raise IngestionError(
                f"Unexpected {type(exc).__name__}: {exc}", upload_id=upload_id,
            ) from exc

    # -------------------------------------------------------------------------
    # Ingest
    # -------------------------------------------------------------------------

    async def ingest(self, upload_id: str) -> int:
        """
        Run one upload through the full pipeline.

        Returns:
            Number of chunks written.

        Raises:
            IngestionError: (or a subclass) with `upload_id` set, for any
                failure. Nothing is committed for the upload in that case.
        """
        async with self._operation(upload_id):
            return await self._ingest(upload_id)

    async def _ingest(self, upload_id: str) -> int:
        upload = await self._uploads.get_by_id(upload_id)
        if upload is None:
            raise NotFoundError(f"Upload {upload_id} not found")

        pipeline = self._pipeline_builder.build(upload)

        logger.info("Reading upload %s (content_type=%s)", upload_id, upload.content_type)
        stream = await self._storage.download(upload.storage_path)
        try:
            document = await pipeline.reader.read(
                stream, upload.id, upload.content_type or DEFAULT_MEDIA_TYPE,
            )
        finally:
            stream.close()

        for enricher in pipeline.document_enrichers:
            document = await enricher.process(document)
        logger.info(
            "Document %s ready: %d elements after %d document enrichers",
            document.id, len(document.elements), len(pipeline.document_enrichers),
        )

        chunks: AsyncIterator[IngestionChunk] = _stamp(
            pipeline.chunker.chunk(document), upload.id, BatchClock(),
        )
        for chunk_enricher in pipeline.chunk_enrichers:
            chunks = chunk_enricher.process(chunks)

        # Re-read so a metadata edit made while the document was being read
        # and enriched is the one merged into the chunks.
        current = await self._uploads.get_by_id(upload_id)
        if current is None:
            raise NotFoundError(f"Upload {upload_id} was deleted during ingestion")
        upload_metadata = parse_upload_metadata(current.metadata)

        records = self._embed(
            _to_records(chunks, upload_metadata),
            pipeline.embedding_generator,
        )
        written = await self._store.write(
            upload.id,
            records,
            embedding_dimensions=self._config.embedding_dimensions,
            incremental=self._config.incremental_ingestion,
        )

        if written == 0:
            logger.warning("Upload %s produced no chunks", upload_id)
        logger.info("Ingested upload %s: %d chunks", upload_id, written)
        return written

    async def _embed(
        self,
        records: AsyncIterator[ChunkRecord],
        generator: EmbeddingGenerator,
    ) -> AsyncIterator[ChunkRecord]:
        """Fill in embeddings in batches of embedding_batch_size."""
        batch_size = max(self._config.embedding_batch_size, 1)
        batch: list[ChunkRecord] = []

        async for record in records:
            batch.append(record)
            if len(batch) >= batch_size:
                for embedded in await _embed_batch(batch, generator):
                    yield embedded
                batch = []

        if batch:
            for embedded in await _embed_batch(batch, generator):
                yield embedded

    # -------------------------------------------------------------------------
    # Metadata patch
    # -------------------------------------------------------------------------

    async def update_metadata(self, upload_id: str, upload_metadata: str | None) -> int:
        """
        Re-merge new upload metadata into every chunk of the upload.

        Only the chunks' metadata field is rewritten: nothing is re-read,
        re-chunked, re-embedded or re-summarized. No chunks is a no-op.

        Returns:
            Number of chunks whose metadata changed.
        """
        async with self._operation(upload_id):
            chunks = await self._store.query(upload_id)
            if not chunks:
                logger.debug("No chunks to patch for upload %s", upload_id)
                return 0

            parsed = parse_upload_metadata(upload_metadata)
            changed = []
            for chunk in chunks:
                merged = merge_upload_metadata(chunk.metadata, parsed)
                if merged != chunk.metadata:
                    changed.append(dataclasses.replace(chunk, metadata=merged))

            if changed:
                await self._store.update(changed)
            logger.info(
                "Patched metadata of %d/%d chunks for upload %s",
                len(changed), len(chunks), upload_id,
            )
            return len(changed)

    # -------------------------------------------------------------------------
    # Delete / read
    # -------------------------------------------------------------------------

    async def delete_by_upload_id(self, upload_id: str) -> int:
        """Delete all chunks of an upload. Safe to call repeatedly."""
        async with self._operation(upload_id):
            return await self._store.delete_by(upload_id)

    async def get_by_upload_id(self, upload_id: str) -> UploadIngestion | None:
        """
        Chunks of an upload, oldest first, with the first non-blank chunk
        summary as the document summary. None when there are no chunks.
        """
        # Reads do not wait for an in-flight ingest; they see the last commit.
        async with self._operation(upload_id, exclusive=False):
            chunks = await self._store.query(upload_id)

        if not chunks:
            return None
        summary = next(
            (c.summary for c in chunks if c.summary is not None and c.summary.strip()),
            None,
        )
        return UploadIngestion(summary=summary, chunks=chunks)


# ---------------------------------------------------------------------------
# Stream stages
# ---------------------------------------------------------------------------


async def _stamp(
    chunks: Iterator[IngestionChunk],
    source_id: str,
    clock: BatchClock,
) -> AsyncIterator[IngestionChunk]:
    for chunk in chunks:
        chunk.source_id = source_id
        chunk.created_at = clock.now()
        yield chunk
        # Chunking is CPU-bound; let other tasks run between windows.
        await asyncio.sleep(0)


async def _to_records(
    chunks: AsyncIterator[IngestionChunk],
    upload_metadata: object | None,
) -> AsyncIterator[ChunkRecord]:
    """Metadata merge, then summary promotion, per chunk."""
    async for chunk in chunks:
        metadata = merge_upload_metadata(chunk.metadata, upload_metadata)
        yield ChunkRecord(
            id=str(uuid.uuid4()),
            source_id=chunk.source_id or "",
            document_id=chunk.document_id,
            content=chunk.content,
            embedding=None,
            context=chunk.context,
            summary=promote_summary(chunk.summary, metadata),
            metadata=metadata,
            created_at=chunk.created_at or datetime.now(timezone.utc),
        )


async def _embed_batch(
    batch: list[ChunkRecord],
    generator: EmbeddingGenerator,
) -> list[ChunkRecord]:
    embeddings = await generator.embed_batch([r.content for r in batch])
    return [
        dataclasses.replace(record, embedding=embedding)
        for record, embedding in zip(batch, embeddings, strict=True)
    ]
