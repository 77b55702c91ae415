# =============================================================================
# API Request Models — Pydantic V2 Schemas
# =============================================================================

from typing import Any

from pydantic import BaseModel, Field


class MetadataPatchRequest(BaseModel):
    """
    Request body for PATCH /uploads/{upload_id}/metadata.

    `metadata` is any JSON value. It is stored on the upload as a JSON string
    and merged into every ingested chunk under `upload_metadata`; `null`
    clears it and removes `upload_metadata` from the chunks.

    Example:
        {"metadata": {"category": "invoice", "year": 2024}}
    """

    metadata: Any = Field(
        default=None,
        description="New upload metadata (any JSON value), or null to clear it",
        examples=[{"category": "invoice"}],
    )
