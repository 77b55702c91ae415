# =============================================================================
# Chunk Metadata — Upload Metadata Merge & Summary Promotion
# =============================================================================
#
# Two pure functions shared by the ingest path and the metadata-patch path:
#
#   merge_upload_metadata()  — attach (or remove) the owning upload's metadata
#                              under the `upload_metadata` key of a chunk's
#                              JSON object metadata.
#   promote_summary()        — surface a summary an enricher stored under any
#                              "*summary*" metadata key as the chunk's
#                              canonical `summary`.
#
# GUARANTEES:
# - Parsing never raises. Invalid upload metadata is treated as absent;
#   invalid or non-object chunk metadata is treated as `{}`.
# - The stored result is either None or a JSON object string. An empty
#   object is stored as None, never "{}".
# - Key order of the chunk metadata is preserved (json round-trips dicts in
#   insertion order), so promotion scans keys in the order enrichers wrote them.
# =============================================================================

from __future__ import annotations

import json
import logging
from typing import Any

logger = logging.getLogger(__name__)

UPLOAD_METADATA_KEY = "upload_metadata"


def parse_upload_metadata(raw: str | None) -> Any | None:
    """
    Parse an upload's metadata JSON.

    Returns the parsed value, or None when the input is missing, blank,
    invalid JSON, or JSON `null`. Never raises.
    """
    if raw is None or not raw.strip():
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        logger.debug("Ignoring invalid upload metadata JSON")
        return None


def parse_chunk_metadata(raw: str | dict | None) -> dict[str, Any]:
    """
    Parse a chunk's metadata into a dict.

    Accepts the stored JSON string or an in-flight dict. Anything that is not
    a JSON object (absent, unparsable, list, scalar) becomes `{}`.
    """
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return dict(raw)
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def serialize_chunk_metadata(metadata: dict[str, Any]) -> str | None:
    """Serialize chunk metadata; an empty object is stored as None."""
    if not metadata:
        return None
    return json.dumps(metadata, ensure_ascii=False, default=str)


def merge_upload_metadata(
    chunk_metadata: str | dict | None,
    upload_metadata: Any | None,
) -> str | None:
    """
    Merge the upload's parsed metadata into one chunk's metadata.

    Args:
        chunk_metadata: The chunk's current metadata (JSON string or dict).
        upload_metadata: Already-parsed upload metadata (see
            parse_upload_metadata), or None when the upload has none.

    Returns:
        The chunk's new metadata as a JSON object string, or None if empty.
    """
    merged = parse_chunk_metadata(chunk_metadata)
    if upload_metadata is not None:
        merged[UPLOAD_METADATA_KEY] = upload_metadata
    else:
        merged.pop(UPLOAD_METADATA_KEY, None)
    return serialize_chunk_metadata(merged)


def promote_summary(
    summary: str | None,
    chunk_metadata: str | dict | None,
) -> str | None:
    """
    Pick the canonical summary for a chunk.

    A non-blank existing summary always wins. Otherwise the metadata keys are
    scanned in insertion order; the first key whose name contains "summary"
    (any case) and whose value converts to a non-blank string supplies it.
    Keys with blank values are skipped.

    Returns:
        The summary to store, or None if no candidate exists.
    """
    if summary is not None and summary.strip():
        return summary

    for key, value in parse_chunk_metadata(chunk_metadata).items():
        if "summary" not in key.lower():
            continue
        text = _value_to_text(value)
        if text is not None and text.strip():
            return text

    return None


def _value_to_text(value: Any) -> str | None:
    """Convert a metadata value to text; containers are rendered as JSON."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)
