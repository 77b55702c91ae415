# =============================================================================
# Enrichers — Document- and Chunk-Level Pipeline Stages
# =============================================================================
#
# Document enrichers transform a whole Document before chunking:
#   ImageAltTextEnricher — asks the chat model to describe each embedded
#                          image so the description lands in the chunk text
#
# Chunk enrichers transform the chunk stream after chunking. They are async
# generators: each chunk is pulled, enriched and yielded before the next one
# is read, so a large document is never held in memory twice.
#   SummaryEnricher      — writes a word-bounded summary under the "summary"
#                          metadata key (promoted to the chunk's summary
#                          column by the orchestrator)
#
# A failing chat call aborts the upload: errors are not swallowed here.
# =============================================================================

from __future__ import annotations

import dataclasses
import logging
from collections.abc import AsyncIterator
from typing import Protocol

from doc_ingest.services.chunker import IngestionChunk
from doc_ingest.services.llm import LLMProvider
from doc_ingest.services.readers import Document

logger = logging.getLogger(__name__)


class DocumentEnricher(Protocol):
    async def process(self, document: Document) -> Document:
        ...


class ChunkEnricher(Protocol):
    def process(
        self,
        chunks: AsyncIterator[IngestionChunk],
    ) -> AsyncIterator[IngestionChunk]:
        ...


# ---------------------------------------------------------------------------
# Image Alternative Text
# ---------------------------------------------------------------------------

ALT_TEXT_PROMPT = (
    "Write concise alternative text for this image as it appears in a "
    "document. Describe what it shows and any text, numbers or labels it "
    "contains. Reply with the description only."
)


class ImageAltTextEnricher:
    """Fills in `alt_text` for image elements that carry image bytes."""

    def __init__(self, llm: LLMProvider, max_tokens: int = 300) -> None:
        self._llm = llm
        self._max_tokens = max_tokens

    async def process(self, document: Document) -> Document:
        elements = []
        described = 0

        for element in document.elements:
            if (
                element.element_type == "image"
                and element.image_data
                and not element.alt_text
            ):
                response = await self._llm.describe_image(
                    element.image_data,
                    element.image_media_type or "image/png",
                    ALT_TEXT_PROMPT,
                    max_tokens=self._max_tokens,
                )
                alt_text = response.content.strip() or None
                element = dataclasses.replace(element, alt_text=alt_text)
                described += 1
            elements.append(element)

        if described:
            logger.info("Generated alt text for %d images in document %s",
                        described, document.id)
        return dataclasses.replace(document, elements=elements)


# ---------------------------------------------------------------------------
# Chunk Summary
# ---------------------------------------------------------------------------

SUMMARY_METADATA_KEY = "summary"

SUMMARY_SYSTEM_PROMPT = (
    "You summarize excerpts of documents. Reply with the summary only, "
    "in plain prose, using at most {max_words} words."
)


class SummaryEnricher:
    """
    Adds a summary of at most `max_words` words to each chunk.

    Chunks that already carry a summary key (from an earlier enricher) are
    passed through untouched.
    """

    def __init__(self, llm: LLMProvider, max_words: int = 100) -> None:
        self._llm = llm
        self.max_words = max_words

    async def process(
        self,
        chunks: AsyncIterator[IngestionChunk],
    ) -> AsyncIterator[IngestionChunk]:
        async for chunk in chunks:
            if not chunk.metadata.get(SUMMARY_METADATA_KEY):
                response = await self._llm.complete(
                    messages=[{"role": "user", "content": chunk.content}],
                    system=SUMMARY_SYSTEM_PROMPT.format(max_words=self.max_words),
                    # ~2 tokens per word leaves room for punctuation.
                    max_tokens=self.max_words * 2 + 16,
                )
                summary = truncate_words(response.content, self.max_words)
                if summary:
                    chunk.metadata[SUMMARY_METADATA_KEY] = summary
            yield chunk


def truncate_words(text: str, max_words: int) -> str:
    """Collapse whitespace and keep at most `max_words` words."""
    return " ".join(text.split()[:max_words])
