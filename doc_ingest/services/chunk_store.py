# =============================================================================
# Chunk Store — Durable Chunk Storage Keyed by Upload
# =============================================================================
#
# Every operation is scoped by `source_id` (the owning upload's id):
#   write()     — persist a chunk stream; incremental mode replaces the
#                 upload's previous chunks, otherwise appends
#   query()     — all chunks of an upload, oldest first
#   delete_by() — remove all chunks of an upload (idempotent)
#   update()    — rewrite the metadata field of existing chunks
#
# ARCHITECTURE:
#   ChunkStore (Protocol)
#   ├── PgVectorChunkStore — PostgreSQL + pgvector, one transaction per call
#   └── ChromaChunkStore   — ChromaDB (in-process, persistent or HTTP)
#   get_chunk_store()      — factory, reads vector_store_provider
#
# ATOMICITY:
# pgvector: the delete-old + insert-new of an incremental write share one
# transaction; any exception (including cancellation) rolls both back.
# Chroma has no transactions: the new set is added first and the old ids
# removed afterwards; if adding fails, the partially added ids are removed
# and the previous set is left as it was.
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import AsyncIterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

import chromadb
from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from doc_ingest.db.engine import session_scope
from doc_ingest.db.models import ChunkRow
from doc_ingest.errors import ConfigurationError, PersistenceError

if TYPE_CHECKING:
    from doc_ingest.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class ChunkRecord:
    """A chunk as persisted in the store."""

    id: str
    source_id: str
    document_id: str
    content: str
    embedding: list[float] | None
    context: str | None
    summary: str | None
    metadata: str | None  # JSON object string or None
    created_at: datetime


def check_dimensions(record: ChunkRecord, embedding_dimensions: int) -> None:
    """Reject an embedding whose width does not match the configured one."""
    if record.embedding is not None and len(record.embedding) != embedding_dimensions:
        raise ConfigurationError(
            f"Embedding for chunk {record.id} has {len(record.embedding)} "
            f"dimensions, expected {embedding_dimensions}"
        )


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class ChunkStore(Protocol):
    """Storage contract the ingestion orchestrator depends on."""

    async def write(
        self,
        source_id: str,
        chunks: AsyncIterable[ChunkRecord],
        embedding_dimensions: int,
        incremental: bool,
    ) -> int:
        """
        Persist a chunk stream for one upload, all or nothing.

        Returns:
            Number of chunks written.

        Raises:
            ConfigurationError: An embedding has the wrong dimension.
            PersistenceError: The store rejected the write.
        """
        ...

    async def query(self, source_id: str) -> list[ChunkRecord]:
        """All chunks of an upload ordered by created_at ascending."""
        ...

    async def delete_by(self, source_id: str) -> int:
        """Delete every chunk of an upload; returns the number removed."""
        ...

    async def update(self, chunks: Sequence[ChunkRecord]) -> int:
        """Persist the `metadata` field of existing chunks only."""
        ...


# ---------------------------------------------------------------------------
# Implementation 1: pgvector (PostgreSQL)
# ---------------------------------------------------------------------------


class PgVectorChunkStore:
    """
    pgvector-backed chunk store over the `ChunkRow` table.

    Chunks are inserted as they arrive from the stream (with a periodic
    flush), so a long document never sits in memory twice; the commit only
    happens after the last chunk.
    """

    FLUSH_EVERY = 200

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self._session_factory = session_factory

    async def write(
        self,
        source_id: str,
        chunks: AsyncIterable[ChunkRecord],
        embedding_dimensions: int,
        incremental: bool,
    ) -> int:
        written = 0
        try:
            async with session_scope(self._session_factory) as session:
                if incremental:
                    result = await session.execute(
                        delete(ChunkRow).where(ChunkRow.source_id == source_id)
                    )
                    logger.debug(
                        "Replacing %d existing chunks for source_id=%s",
                        result.rowcount, source_id,
                    )

                async for record in chunks:
                    check_dimensions(record, embedding_dimensions)
                    session.add(_to_row(record))
                    written += 1
                    if written % self.FLUSH_EVERY == 0:
                        await session.flush()
        except SQLAlchemyError as exc:
            raise PersistenceError(
                f"Chunk write failed for source_id={source_id}: {exc}"
            ) from exc

        logger.info("Stored %d chunks for source_id=%s in pgvector", written, source_id)
        return written

    async def query(self, source_id: str) -> list[ChunkRecord]:
        stmt = (
            select(ChunkRow)
            .where(ChunkRow.source_id == source_id)
            .order_by(ChunkRow.created_at, ChunkRow.id)
        )
        try:
            async with session_scope(self._session_factory) as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as exc:
            raise PersistenceError(
                f"Chunk query failed for source_id={source_id}: {exc}"
            ) from exc
        return [_from_row(row) for row in rows]

    async def delete_by(self, source_id: str) -> int:
        try:
            async with session_scope(self._session_factory) as session:
                result = await session.execute(
                    delete(ChunkRow).where(ChunkRow.source_id == source_id)
                )
        except SQLAlchemyError as exc:
            raise PersistenceError(
                f"Chunk delete failed for source_id={source_id}: {exc}"
            ) from exc

        logger.info("Deleted %d chunks for source_id=%s", result.rowcount, source_id)
        return result.rowcount

    async def update(self, chunks: Sequence[ChunkRecord]) -> int:
        if not chunks:
            return 0
        updated = 0
        try:
            async with session_scope(self._session_factory) as session:
                for record in chunks:
                    result = await session.execute(
                        update(ChunkRow)
                        .where(ChunkRow.id == uuid.UUID(record.id))
                        .values({ChunkRow.metadata_: record.metadata})
                    )
                    updated += result.rowcount
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Chunk metadata update failed: {exc}") from exc
        return updated


def _to_row(record: ChunkRecord) -> ChunkRow:
    return ChunkRow(
        id=uuid.UUID(record.id),
        source_id=record.source_id,
        document_id=record.document_id,
        content=record.content,
        embedding=record.embedding,
        context=record.context,
        summary=record.summary,
        metadata_=record.metadata,
        created_at=record.created_at,
    )


def _from_row(row: ChunkRow) -> ChunkRecord:
    # pgvector returns numpy arrays; expose plain floats.
    embedding = [float(x) for x in row.embedding] if row.embedding is not None else None
    return ChunkRecord(
        id=str(row.id),
        source_id=row.source_id,
        document_id=row.document_id,
        content=row.content,
        embedding=embedding,
        context=row.context,
        summary=row.summary,
        metadata=row.metadata_,
        created_at=row.created_at,
    )


# ---------------------------------------------------------------------------
# Implementation 2: ChromaDB
# ---------------------------------------------------------------------------


class ChromaChunkStore:
    """
    ChromaDB-backed chunk store.

    ChromaDB supports three client modes:
    - In-process (default): data kept in memory
    - Persistent: set CHROMA_PERSIST_DIR
    - Client/server: set CHROMA_URL

    Chroma metadata values must be str/int/float/bool, so None is stored as
    "" and mapped back on read, and the chunk's JSON metadata is kept as a
    string under `chunk_metadata`. The Python client is synchronous; every
    call runs in a worker thread.
    """

    ADD_BATCH_SIZE = 500

    def __init__(
        self,
        collection_name: str,
        client: Any | None = None,
        chroma_url: str | None = None,
        persist_dir: str | None = None,
    ) -> None:
        if client is not None:
            self._client = client
        elif chroma_url:
            self._client = chromadb.HttpClient(host=chroma_url)
        elif persist_dir:
            self._client = chromadb.PersistentClient(path=persist_dir)
        else:
            self._client = chromadb.Client()

        self._collection = self._client.get_or_create_collection(
            name=collection_name,
            metadata={"hnsw:space": "cosine"},
        )

    async def write(
        self,
        source_id: str,
        chunks: AsyncIterable[ChunkRecord],
        embedding_dimensions: int,
        incremental: bool,
    ) -> int:
        # No transactions in Chroma: buffer the stream so nothing is added
        # before every chunk has been produced and validated.
        records: list[ChunkRecord] = []
        async for record in chunks:
            check_dimensions(record, embedding_dimensions)
            records.append(record)

        await asyncio.to_thread(
            self._write_sync, source_id, records, embedding_dimensions, incremental,
        )
        logger.info("Stored %d chunks for source_id=%s in ChromaDB", len(records), source_id)
        return len(records)

    def _write_sync(
        self,
        source_id: str,
        records: list[ChunkRecord],
        embedding_dimensions: int,
        incremental: bool,
    ) -> None:
        # Replace order: snapshot the previous set, remove it, add the new
        # set. A failed add restores the snapshot, so a failed write leaves
        # exactly the chunks that were there before.
        try:
            previous = self._snapshot(source_id) if incremental else None
            if previous and previous["ids"]:
                self._collection.delete(ids=previous["ids"])
        except Exception as exc:
            raise PersistenceError(
                f"Chroma failed to replace chunks for source_id={source_id}: {exc}"
            ) from exc

        added: list[str] = []
        try:
            for i in range(0, len(records), self.ADD_BATCH_SIZE):
                batch = records[i : i + self.ADD_BATCH_SIZE]
                self._collection.add(
                    ids=[r.id for r in batch],
                    documents=[r.content for r in batch],
                    embeddings=[
                        r.embedding if r.embedding is not None
                        else [0.0] * embedding_dimensions
                        for r in batch
                    ],
                    metadatas=[_to_chroma_metadata(r) for r in batch],
                )
                added.extend(r.id for r in batch)
        except Exception as exc:
            self._restore(source_id, added, previous)
            raise PersistenceError(
                f"Chroma write failed for source_id={source_id}: {exc}"
            ) from exc

    def _snapshot(self, source_id: str) -> dict:
        result = self._collection.get(
            where={"source_id": source_id},
            include=["documents", "metadatas", "embeddings"],
        )
        embeddings = result.get("embeddings")
        return {
            "ids": list(result["ids"]),
            "documents": list(result["documents"] or []),
            "metadatas": list(result["metadatas"] or []),
            "embeddings": [
                [float(x) for x in embedding] for embedding in embeddings
            ] if embeddings is not None else [],
        }

    def _restore(self, source_id: str, added: list[str], previous: dict | None) -> None:
        """Undo a partial add and put the previous chunks back (best effort)."""
        try:
            if added:
                self._collection.delete(ids=added)
            if previous and previous["ids"]:
                self._collection.add(**previous)
        except Exception:
            logger.exception(
                "Could not restore previous chunks for source_id=%s", source_id,
            )

    async def query(self, source_id: str) -> list[ChunkRecord]:
        return await asyncio.to_thread(self._query_sync, source_id)

    def _query_sync(self, source_id: str) -> list[ChunkRecord]:
        try:
            result = self._collection.get(
                where={"source_id": source_id},
                include=["documents", "metadatas", "embeddings"],
            )
        except Exception as exc:
            raise PersistenceError(
                f"Chroma query failed for source_id={source_id}: {exc}"
            ) from exc

        embeddings = result.get("embeddings")
        records = [
            _from_chroma(
                chunk_id,
                result["documents"][i],
                result["metadatas"][i],
                embeddings[i] if embeddings is not None else None,
            )
            for i, chunk_id in enumerate(result["ids"])
        ]
        records.sort(key=lambda r: (r.created_at, r.id))
        return records

    async def delete_by(self, source_id: str) -> int:
        return await asyncio.to_thread(self._delete_sync, source_id)

    def _delete_sync(self, source_id: str) -> int:
        try:
            ids = self._ids_for(source_id)
            if ids:
                self._collection.delete(ids=ids)
        except Exception as exc:
            raise PersistenceError(
                f"Chroma delete failed for source_id={source_id}: {exc}"
            ) from exc
        logger.info("Deleted %d chunks for source_id=%s", len(ids), source_id)
        return len(ids)

    async def update(self, chunks: Sequence[ChunkRecord]) -> int:
        if not chunks:
            return 0
        return await asyncio.to_thread(self._update_sync, list(chunks))

    def _update_sync(self, chunks: list[ChunkRecord]) -> int:
        try:
            current = self._collection.get(
                ids=[c.id for c in chunks], include=["metadatas"],
            )
            existing = dict(zip(current["ids"], current["metadatas"], strict=True))
            ids: list[str] = []
            metadatas: list[dict] = []
            for record in chunks:
                if record.id not in existing:
                    continue
                metadata = dict(existing[record.id])
                metadata["chunk_metadata"] = record.metadata or ""
                ids.append(record.id)
                metadatas.append(metadata)
            if ids:
                self._collection.update(ids=ids, metadatas=metadatas)
        except Exception as exc:
            raise PersistenceError(f"Chroma metadata update failed: {exc}") from exc
        return len(ids)

    def _ids_for(self, source_id: str) -> list[str]:
        return list(self._collection.get(where={"source_id": source_id}, include=[])["ids"])


def _to_chroma_metadata(record: ChunkRecord) -> dict:
    return {
        "source_id": record.source_id,
        "document_id": record.document_id,
        "context": record.context or "",
        "summary": record.summary or "",
        "chunk_metadata": record.metadata or "",
        "created_at": record.created_at.isoformat(),
        "has_embedding": record.embedding is not None,
    }


def _from_chroma(
    chunk_id: str,
    document: str,
    metadata: dict,
    embedding: Any | None,
) -> ChunkRecord:
    has_embedding = bool(metadata.get("has_embedding")) and embedding is not None
    return ChunkRecord(
        id=chunk_id,
        source_id=metadata["source_id"],
        document_id=metadata.get("document_id") or "",
        content=document,
        embedding=[float(x) for x in embedding] if has_embedding else None,
        context=metadata.get("context") or None,
        summary=metadata.get("summary") or None,
        metadata=metadata.get("chunk_metadata") or None,
        created_at=datetime.fromisoformat(metadata["created_at"]),
    )


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

KNOWN_VECTOR_STORES = {"pgvector", "chroma"}


def get_chunk_store(config: Settings) -> ChunkStore:
    """
    Build the chunk store selected by `vector_store_provider`.

    - "pgvector" → PgVectorChunkStore (table named by collection_name)
    - "chroma"   → ChromaChunkStore

    Raises:
        ConfigurationError: For any other provider.
    """
    provider = config.vector_store_provider.strip().lower()
    if provider == "pgvector":
        if config.collection_name != ChunkRow.__tablename__:
            raise ConfigurationError(
                f"Chunk table is mapped as '{ChunkRow.__tablename__}' but "
                f"collection_name is '{config.collection_name}'"
            )
        logger.info("Using pgvector chunk store (table=%s)", config.collection_name)
        return PgVectorChunkStore()
    if provider == "chroma":
        logger.info("Using ChromaDB chunk store (collection=%s)", config.collection_name)
        return ChromaChunkStore(
            config.collection_name,
            chroma_url=config.chroma_url,
            persist_dir=config.chroma_persist_dir,
        )
    raise ConfigurationError(
        f"Unsupported vector store provider '{config.vector_store_provider}'. "
        f"Supported: {sorted(KNOWN_VECTOR_STORES)}"
    )
