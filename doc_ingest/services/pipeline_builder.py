# =============================================================================
# Pipeline Builder — Assembles the Per-Upload Ingestion Pipeline
# =============================================================================
#
# Given an upload, returns the capabilities the orchestrator runs:
#
#   reader              — MediaTypeDocumentReader (Docling / plain text)
#   chunker             — TokenChunker (tiktoken windows)
#   document_enrichers  — [ImageAltTextEnricher]   if enable_image_alt_text
#   chunk_enrichers     — [SummaryEnricher]        if enable_summary
#   embedding_generator — OpenAIEmbeddingGenerator
#
# Each capability is a small Protocol, so a deployment can swap any of them
# (another reader, another embedding vendor) without touching the
# orchestrator. Vendor clients and the Docling converter are created once
# per builder and shared by every upload it builds for.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Protocol

from doc_ingest.config import Settings
from doc_ingest.errors import ConfigurationError
from doc_ingest.services.chunk_store import KNOWN_VECTOR_STORES
from doc_ingest.services.chunker import IngestionChunk, TokenChunker
from doc_ingest.services.embedder import EmbeddingGenerator, OpenAIEmbeddingGenerator
from doc_ingest.services.enrichers import (
    ChunkEnricher,
    DocumentEnricher,
    ImageAltTextEnricher,
    SummaryEnricher,
)
from doc_ingest.services.llm import KNOWN_LLM_PROVIDERS, LLMProvider, create_llm_provider
from doc_ingest.services.readers import (
    DoclingDocumentReader,
    Document,
    DocumentReader,
    MediaTypeDocumentReader,
)
from doc_ingest.services.uploads import UploadInfo

logger = logging.getLogger(__name__)


class Chunker(Protocol):
    def chunk(self, document: Document) -> Iterator[IngestionChunk]:
        ...


@dataclass
class IngestionPipeline:
    """The components that process one upload, in the order they run."""

    reader: DocumentReader
    chunker: Chunker
    embedding_generator: EmbeddingGenerator
    document_enrichers: list[DocumentEnricher] = field(default_factory=list)
    chunk_enrichers: list[ChunkEnricher] = field(default_factory=list)


class PipelineBuilder(Protocol):
    def build(self, upload: UploadInfo) -> IngestionPipeline:
        """
        Raises:
            ConfigurationError: If the configured pipeline cannot be built.
        """
        ...


class DefaultPipelineBuilder:
    """Builds pipelines from Settings."""

    def __init__(
        self,
        config: Settings,
        llm: LLMProvider | None = None,
        embedding_generator: EmbeddingGenerator | None = None,
        reader: DocumentReader | None = None,
    ) -> None:
        self._config = config
        self._llm = llm
        self._embedding_generator = embedding_generator
        self._reader = reader

    def validate(self) -> None:
        """Check the configuration without creating any client."""
        config = self._config
        if config.vector_store_provider.strip().lower() not in KNOWN_VECTOR_STORES:
            raise ConfigurationError(
                f"Unsupported vector store provider '{config.vector_store_provider}'"
            )
        if config.llm_provider not in KNOWN_LLM_PROVIDERS:
            raise ConfigurationError(f"Unknown LLM provider '{config.llm_provider}'")
        if config.max_tokens_per_chunk <= 0:
            raise ConfigurationError("max_tokens_per_chunk must be positive")
        if not 0 <= config.overlap_tokens < config.max_tokens_per_chunk:
            raise ConfigurationError(
                f"overlap_tokens ({config.overlap_tokens}) must be >= 0 and smaller "
                f"than max_tokens_per_chunk ({config.max_tokens_per_chunk})"
            )
        if config.embedding_dimensions <= 0:
            raise ConfigurationError("embedding_dimensions must be positive")
        if config.enable_summary and config.summary_max_word_count <= 0:
            raise ConfigurationError("summary_max_word_count must be positive")

    def build(self, upload: UploadInfo) -> IngestionPipeline:
        self.validate()
        config = self._config

        document_enrichers: list[DocumentEnricher] = []
        if config.enable_image_alt_text:
            document_enrichers.append(ImageAltTextEnricher(self._get_llm()))

        chunk_enrichers: list[ChunkEnricher] = []
        if config.enable_summary:
            chunk_enrichers.append(
                SummaryEnricher(self._get_llm(), max_words=config.summary_max_word_count)
            )

        pipeline = IngestionPipeline(
            reader=self._get_reader(),
            chunker=TokenChunker(
                max_tokens=config.max_tokens_per_chunk,
                overlap_tokens=config.overlap_tokens,
                encoding_name=config.tokenizer_encoding,
            ),
            embedding_generator=self._get_embedding_generator(),
            document_enrichers=document_enrichers,
            chunk_enrichers=chunk_enrichers,
        )
        logger.debug(
            "Built pipeline for upload %s (content_type=%s, %d document enrichers, "
            "%d chunk enrichers)",
            upload.id, upload.content_type,
            len(document_enrichers), len(chunk_enrichers),
        )
        return pipeline

    # -- lazily created, shared components ----------------------------------

    def _get_llm(self) -> LLMProvider:
        if self._llm is None:
            self._llm = create_llm_provider(self._config)
        return self._llm

    def _get_reader(self) -> DocumentReader:
        if self._reader is None:
            self._reader = MediaTypeDocumentReader(
                docling_reader=DoclingDocumentReader(
                    extract_images=self._config.enable_image_alt_text,
                ),
            )
        return self._reader

    def _get_embedding_generator(self) -> EmbeddingGenerator:
        if self._embedding_generator is None:
            config = self._config
            self._embedding_generator = OpenAIEmbeddingGenerator(
                model=config.embedding_model,
                dimensions=config.embedding_dimensions,
                api_key=config.openai_api_key or config.llm_api_key,
                base_url=config.embedding_base_url,
                batch_size=config.embedding_batch_size,
            )
        return self._embedding_generator
