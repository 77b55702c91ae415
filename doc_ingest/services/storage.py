# =============================================================================
# Object Storage — Raw Upload Bytes
# =============================================================================
# The upload flow writes raw files; the ingestion pipeline only reads them.
# Upload records store a path relative to the storage root.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import BinaryIO, Protocol

from doc_ingest.errors import NotFoundError, PersistenceError

logger = logging.getLogger(__name__)


class ObjectStorage(Protocol):
    async def download(self, path: str) -> BinaryIO:
        """
        Open the stored file for reading. The caller closes the stream.

        Raises:
            NotFoundError: If nothing is stored at `path`.
        """
        ...


class LocalFileStorage:
    """Object storage backed by a directory on the local filesystem."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()

    def _resolve(self, path: str) -> Path:
        candidate = (self.root / path.lstrip("/")).resolve()
        if not candidate.is_relative_to(self.root):
            raise NotFoundError(f"Storage path escapes the storage root: {path}")
        return candidate

    async def download(self, path: str) -> BinaryIO:
        target = self._resolve(path)
        try:
            stream = await asyncio.to_thread(target.open, "rb")
        except FileNotFoundError as exc:
            raise NotFoundError(f"No stored file at '{path}'") from exc
        except OSError as exc:
            raise PersistenceError(f"Cannot read stored file '{path}': {exc}") from exc

        logger.debug("Opened stored file %s", target)
        return stream
