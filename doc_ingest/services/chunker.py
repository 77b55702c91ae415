# =============================================================================
# Token-Window Chunker — tiktoken
# =============================================================================
#
# Splits a Document into token-bounded windows with a fixed overlap between
# consecutive windows. Each chunk carries the exact character span it covers,
# so overlaps can be removed to reconstruct the document text.
#
# ALGORITHM:
# 1. Render the document text (elements joined by blank lines), remembering
#    the character span of every element
# 2. Encode the text with tiktoken and decode it back with per-token
#    character offsets (decode_with_offsets)
# 3. Slide a window of max_tokens with step (max_tokens - overlap_tokens)
# 4. Slice the window's text straight from the document by character offset
#    (never strip: slicing keeps the text byte-for-byte)
# 5. Annotate each chunk from the elements its span touches
#
# The generator is lazy: windows are produced as the orchestrator pulls them.
# =============================================================================

from __future__ import annotations

import bisect
import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import tiktoken

from doc_ingest.errors import ConfigurationError
from doc_ingest.services.readers import Document, DocumentElement

logger = logging.getLogger(__name__)

SEPARATOR = "\n\n"


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class IngestionChunk:
    """
    A chunk flowing through the pipeline, before it is persisted.

    `source_id` and `created_at` are stamped by the orchestrator; enrichers
    may add keys to `metadata` or fill in `summary`.
    """

    content: str
    document_id: str
    context: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    summary: str | None = None
    source_id: str | None = None
    created_at: datetime | None = None
    # metadata keys written by the chunker:
    #   chunk_index: int — 0-indexed window position
    #   token_count: int — tokens in this window
    #   char_start / char_end: int — span in the document text
    #   section_title: str | None — first section header in the span
    #   contains_table: bool
    #   source_pages: list[int]
    #   element_types: list[str]


# ---------------------------------------------------------------------------
# Tiktoken Encoders — Cached per encoding name
# ---------------------------------------------------------------------------

_encoders: dict[str, tiktoken.Encoding] = {}


def _get_encoder(encoding_name: str) -> tiktoken.Encoding:
    """Lazily initialize and cache a tiktoken encoder."""
    if encoding_name not in _encoders:
        _encoders[encoding_name] = tiktoken.get_encoding(encoding_name)
    return _encoders[encoding_name]


# ---------------------------------------------------------------------------
# Chunker
# ---------------------------------------------------------------------------


class TokenChunker:
    """Sliding token-window chunker."""

    def __init__(
        self,
        max_tokens: int = 2000,
        overlap_tokens: int = 100,
        encoding_name: str = "cl100k_base",
    ) -> None:
        if max_tokens <= 0:
            raise ConfigurationError("max_tokens_per_chunk must be positive")
        if not 0 <= overlap_tokens < max_tokens:
            raise ConfigurationError(
                "overlap_tokens must be >= 0 and smaller than max_tokens_per_chunk"
            )
        self.max_tokens = max_tokens
        self.overlap_tokens = overlap_tokens
        self.encoding_name = encoding_name

    def chunk(self, document: Document) -> Iterator[IngestionChunk]:
        """
        Yield the document's chunks in order.

        Consecutive chunks share exactly `overlap_tokens` tokens; the last
        window may be shorter than `max_tokens`. A document with no
        non-whitespace text yields nothing.
        """
        text, spans = _render_with_spans(document.elements)
        if not text.strip():
            logger.warning("No text to chunk in document %s", document.id)
            return

        encoder = _get_encoder(self.encoding_name)
        tokens = encoder.encode(text, disallowed_special=())
        decoded, offsets = encoder.decode_with_offsets(tokens)
        total_tokens = len(tokens)

        logger.info(
            "Chunking document %s: %d tokens total, max_tokens=%d, overlap=%d",
            document.id, total_tokens, self.max_tokens, self.overlap_tokens,
        )

        step = self.max_tokens - self.overlap_tokens
        span_starts = [start for start, _, _ in spans]
        produced = 0

        for chunk_idx, start in enumerate(range(0, total_tokens, step)):
            end = min(start + self.max_tokens, total_tokens)
            char_start = offsets[start]
            char_end = offsets[end] if end < total_tokens else len(decoded)
            content = decoded[char_start:char_end]

            # Whitespace-only windows are kept so the chunks still cover the
            # whole text; only a zero-width window is skipped.
            if content:
                elements = _elements_in_range(spans, span_starts, char_start, char_end)
                section_title = next(
                    (e.section_title for e in elements if e.section_title), None,
                )
                produced += 1
                yield IngestionChunk(
                    content=content,
                    document_id=document.id,
                    context=section_title,
                    metadata={
                        "chunk_index": chunk_idx,
                        "token_count": end - start,
                        "char_start": char_start,
                        "char_end": char_end,
                        "section_title": section_title,
                        "contains_table": any(e.element_type == "table" for e in elements),
                        "source_pages": sorted(
                            {e.page_number for e in elements if e.page_number > 0}
                        ),
                        "element_types": sorted({e.element_type for e in elements}),
                    },
                )

            if end >= total_tokens:
                break

        logger.info("Chunked document %s into %d chunks", document.id, produced)


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _render_with_spans(
    elements: list[DocumentElement],
) -> tuple[str, list[tuple[int, int, DocumentElement]]]:
    """
    Join rendered elements exactly like Document.text and record the
    character span each element occupies.
    """
    parts: list[str] = []
    spans: list[tuple[int, int, DocumentElement]] = []
    position = 0

    for element in elements:
        rendered = element.render()
        if not rendered:
            continue
        if parts:
            parts.append(SEPARATOR)
            position += len(SEPARATOR)
        parts.append(rendered)
        spans.append((position, position + len(rendered), element))
        position += len(rendered)

    return "".join(parts), spans


def _elements_in_range(
    spans: list[tuple[int, int, DocumentElement]],
    span_starts: list[int],
    char_start: int,
    char_end: int,
) -> list[DocumentElement]:
    """Elements whose span overlaps [char_start, char_end)."""
    first = max(bisect.bisect_right(span_starts, char_start) - 1, 0)
    found: list[DocumentElement] = []
    for start, end, element in spans[first:]:
        if start >= char_end:
            break
        if end > char_start:
            found.append(element)
    return found
