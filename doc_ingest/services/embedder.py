# =============================================================================
# Embedding Generator — Batch Vector Generation (Provider-Agnostic)
# =============================================================================
#
# Generates vector embeddings using any OpenAI-compatible embedding API
# (OpenAI, OpenRouter, Alibaba DashScope, ...), selected by base_url.
#
# API key resolution order:
#   1. OPENAI_API_KEY (explicit embedding key)
#   2. LLM_API_KEY (shared key — one OpenRouter key for chat + embeddings)
#
# Retries are NOT done here: a transient vendor failure is raised as
# TransientIntegrationError and the ingestion worker retries the whole upload
# with backoff. Nested retry loops would multiply the wait.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Protocol

from openai import AsyncOpenAI

from doc_ingest.errors import ConfigurationError, IntegrationError
from doc_ingest.services.llm import VENDOR_ERRORS, translate_vendor_error

logger = logging.getLogger(__name__)


class EmbeddingGenerator(Protocol):
    """Turns text into fixed-length vectors."""

    dimensions: int

    async def embed(self, text: str) -> list[float]:
        ...

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        """Embeddings in the same order as `texts`."""
        ...


class OpenAIEmbeddingGenerator:
    """Embedding generator backed by the OpenAI embeddings endpoint."""

    def __init__(
        self,
        model: str,
        dimensions: int,
        api_key: str | None,
        base_url: str | None = None,
        batch_size: int = 100,
        client: AsyncOpenAI | None = None,
    ) -> None:
        if client is None:
            if not api_key:
                raise ConfigurationError(
                    "No API key configured for embeddings. "
                    "Set OPENAI_API_KEY or LLM_API_KEY in .env"
                )
            client_kwargs: dict = {"api_key": api_key}
            if base_url:
                client_kwargs["base_url"] = base_url
            client = AsyncOpenAI(**client_kwargs)

            logger.info(
                "Initialized embedding client (model=%s, base_url=%s)",
                model, base_url or "https://api.openai.com/v1",
            )

        self._client = client
        self.model = model
        self.dimensions = dimensions
        self.batch_size = max(batch_size, 1)

    async def embed(self, text: str) -> list[float]:
        """Embed a single text."""
        result = await self.embed_batch([text])
        return result[0]

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        """
        Embed texts in sub-batches of `batch_size`.

        Raises:
            TransientIntegrationError: Network, rate-limit or 5xx failure.
            IntegrationError: Any other API failure, or a malformed response.
        """
        if not texts:
            return []

        all_embeddings: list[list[float]] = [[] for _ in texts]

        for i in range(0, len(texts), self.batch_size):
            batch = list(texts[i : i + self.batch_size])
            logger.debug(
                "Embedding batch %d-%d of %d texts (model=%s)",
                i + 1, i + len(batch), len(texts), self.model,
            )

            try:
                response = await self._client.embeddings.create(
                    model=self.model,
                    input=batch,
                    dimensions=self.dimensions,
                )
            except VENDOR_ERRORS as exc:
                raise translate_vendor_error(exc, "Embedding request") from exc

            if len(response.data) != len(batch):
                raise IntegrationError(
                    f"Embedding response has {len(response.data)} vectors "
                    f"for {len(batch)} inputs"
                )

            # Items carry their input index; sort so output order matches input.
            for item in sorted(response.data, key=lambda x: x.index):
                all_embeddings[i + item.index] = list(item.embedding)

        logger.info(
            "Generated %d embeddings (model=%s, dimensions=%d)",
            len(texts), self.model, self.dimensions,
        )
        return all_embeddings
