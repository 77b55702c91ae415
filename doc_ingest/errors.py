"""Exception hierarchy for the ingestion pipeline.

All pipeline exceptions inherit from :class:`IngestionError`, which carries
an optional ``upload_id`` so the worker can report which upload failed.

    IngestionError  (base -- any failure while handling one upload)
    +-- NotFoundError              (unknown upload or chunk set)
    +-- ConfigurationError         (bad pipeline configuration)
    +-- UnsupportedFormatError     (reader cannot parse the content type)
    +-- IntegrationError           (vendor call failed, not worth retrying)
    |   +-- TransientIntegrationError  (network / rate limit / 5xx, retry)
    +-- PersistenceError           (chunk store or upload table failure)

Adapters translate SDK and driver exceptions into this taxonomy at the
boundary, so the orchestrator and worker only ever branch on these types.
"""

from __future__ import annotations


class IngestionError(Exception):
    """Base exception for all ingestion failures."""

    def __init__(
        self,
        message: str = "Ingestion failed",
        upload_id: str | None = None,
    ) -> None:
        self._message = message
        self.upload_id = upload_id
        super().__init__(self._message)

    @property
    def message(self) -> str:
        return self._message

    def __str__(self) -> str:
        if self.upload_id:
            return f"[upload {self.upload_id}] {self._message}"
        return self._message


class NotFoundError(IngestionError):
    """Raised when an upload (or its stored file) does not exist."""

    def __init__(
        self,
        message: str = "Upload not found",
        upload_id: str | None = None,
    ) -> None:
        super().__init__(message=message, upload_id=upload_id)


class ConfigurationError(IngestionError):
    """Raised when the pipeline configuration is invalid or incomplete."""

    def __init__(
        self,
        message: str = "Invalid or missing pipeline configuration",
        upload_id: str | None = None,
    ) -> None:
        super().__init__(message=message, upload_id=upload_id)


class UnsupportedFormatError(IngestionError):
    """Raised when no reader can parse the upload's content type."""

    def __init__(
        self,
        message: str = "Unsupported document format",
        upload_id: str | None = None,
    ) -> None:
        super().__init__(message=message, upload_id=upload_id)


class IntegrationError(IngestionError):
    """Raised when a vendor call (LLM, embeddings, storage) fails permanently."""

    def __init__(
        self,
        message: str = "External integration failed",
        upload_id: str | None = None,
    ) -> None:
        super().__init__(message=message, upload_id=upload_id)


class TransientIntegrationError(IntegrationError):
    """Raised for vendor failures that may succeed on retry.

    The ingestion worker retries uploads failing with this error using
    exponential backoff.
    """

    def __init__(
        self,
        message: str = "External integration temporarily unavailable",
        upload_id: str | None = None,
    ) -> None:
        super().__init__(message=message, upload_id=upload_id)


class PersistenceError(IngestionError):
    """Raised when a chunk store or upload table operation fails."""

    def __init__(
        self,
        message: str = "Persistence operation failed",
        upload_id: str | None = None,
    ) -> None:
        super().__init__(message=message, upload_id=upload_id)
