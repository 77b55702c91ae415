# =============================================================================
# Upload Repository — The Ingestion Pipeline's View of Upload Records
# =============================================================================
#
# Reads the fields ingestion needs (storage path, content type, metadata)
# and writes the two things ingestion owns on an upload: its metadata (via
# the metadata patch flow) and its ingestion status.
#
# STATUS TRANSITIONS written through set_ingestion_status():
#   PENDING     — attempts and error reset (a new ingestion request)
#   PROCESSING  — attempts incremented (one per try, retries included)
#   COMPLETED   — error cleared, ingested_at stamped
#   FAILED      — error message stored (truncated)
# =============================================================================

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from doc_ingest.db.engine import session_scope
from doc_ingest.db.models import IngestionStatus, Upload
from doc_ingest.errors import PersistenceError

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 1000


@dataclass
class UploadInfo:
    """Snapshot of an upload record."""

    id: str
    storage_path: str
    content_type: str | None
    metadata: str | None
    file_name: str = ""
    ingestion_status: IngestionStatus | None = None
    ingestion_attempts: int = 0
    ingestion_error: str | None = None
    ingested_at: datetime | None = None


class UploadRepository(Protocol):
    async def get_by_id(self, upload_id: str) -> UploadInfo | None:
        ...

    async def update_metadata(self, upload_id: str, metadata: str | None) -> bool:
        """Store new upload metadata; False if the upload does not exist."""
        ...

    async def set_ingestion_status(
        self,
        upload_id: str,
        status: IngestionStatus,
        error: str | None = None,
    ) -> bool:
        ...


def _parse_id(upload_id: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(upload_id))
    except ValueError:
        return None


class SqlUploadRepository:
    """Upload repository over the `uploads` table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self._session_factory = session_factory

    async def get_by_id(self, upload_id: str) -> UploadInfo | None:
        key = _parse_id(upload_id)
        if key is None:
            return None
        try:
            async with session_scope(self._session_factory) as session:
                upload = await session.get(Upload, key)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to load upload {upload_id}: {exc}") from exc

        if upload is None:
            return None
        return UploadInfo(
            id=str(upload.id),
            storage_path=upload.storage_path,
            content_type=upload.content_type,
            metadata=upload.metadata_,
            file_name=upload.file_name,
            ingestion_status=upload.ingestion_status,
            ingestion_attempts=upload.ingestion_attempts,
            ingestion_error=upload.ingestion_error,
            ingested_at=upload.ingested_at,
        )

    async def update_metadata(self, upload_id: str, metadata: str | None) -> bool:
        return await self._update(upload_id, {Upload.metadata_: metadata})

    async def set_ingestion_status(
        self,
        upload_id: str,
        status: IngestionStatus,
        error: str | None = None,
    ) -> bool:
        values: dict = {Upload.ingestion_status: status}
        if status is IngestionStatus.PENDING:
            values[Upload.ingestion_attempts] = 0
            values[Upload.ingestion_error] = None
        elif status is IngestionStatus.PROCESSING:
            values[Upload.ingestion_attempts] = Upload.ingestion_attempts + 1
        elif status is IngestionStatus.COMPLETED:
            values[Upload.ingestion_error] = None
            values[Upload.ingested_at] = datetime.now(timezone.utc)
        elif status is IngestionStatus.FAILED:
            values[Upload.ingestion_error] = (error or "")[:MAX_ERROR_LENGTH] or None

        found = await self._update(upload_id, values)
        logger.debug("Upload %s ingestion status → %s", upload_id, status.value)
        return found

    async def _update(self, upload_id: str, values: dict) -> bool:
        key = _parse_id(upload_id)
        if key is None:
            return False
        try:
            async with session_scope(self._session_factory) as session:
                result = await session.execute(
                    update(Upload).where(Upload.id == key).values(values)
                )
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to update upload {upload_id}: {exc}") from exc
        return result.rowcount > 0
