# =============================================================================
# Unit Tests — OpenAI Embedding Generator
# =============================================================================
#
# The AsyncOpenAI client is replaced with an AsyncMock; no API key or
# network access is needed.
# =============================================================================

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from doc_ingest.errors import ConfigurationError, IntegrationError, TransientIntegrationError
from doc_ingest.services.embedder import OpenAIEmbeddingGenerator
from tests.fakes import _run


def _mock_client(responder):
    client = MagicMock()
    client.embeddings.create = AsyncMock(side_effect=responder)
    return client


def _reversed_response(model, input, dimensions):
    """Returns items out of order, as the API is allowed to."""
    items = [
        SimpleNamespace(index=i, embedding=[float(len(text))] * dimensions)
        for i, text in enumerate(input)
    ]
    return SimpleNamespace(data=list(reversed(items)))


def _generator(client, batch_size=100):
    return OpenAIEmbeddingGenerator(
        model="text-embedding-3-large", dimensions=2, api_key=None,
        batch_size=batch_size, client=client,
    )


class TestOpenAIEmbeddingGenerator:
    def test_output_order_matches_input(self):
        generator = _generator(_mock_client(_reversed_response))
        vectors = _run(generator.embed_batch(["a", "bbb", "cc"]))
        assert vectors == [[1.0, 1.0], [3.0, 3.0], [2.0, 2.0]]

    def test_requests_are_split_into_batches(self):
        client = _mock_client(_reversed_response)
        vectors = _run(_generator(client, batch_size=2).embed_batch(["a", "bb", "ccc"]))
        assert client.embeddings.create.await_count == 2
        assert vectors[2] == [3.0, 3.0]
        assert client.embeddings.create.await_args.kwargs["dimensions"] == 2

    def test_empty_input_makes_no_request(self):
        client = _mock_client(_reversed_response)
        assert _run(_generator(client).embed_batch([])) == []
        client.embeddings.create.assert_not_awaited()

    def test_single_embed(self):
        assert _run(_generator(_mock_client(_reversed_response)).embed("abcd")) == [4.0, 4.0]

    def test_count_mismatch_is_integration_error(self):
        client = _mock_client(lambda **kwargs: SimpleNamespace(data=[]))
        with pytest.raises(IntegrationError):
            _run(_generator(client).embed_batch(["a"]))

    def test_rate_limit_is_transient(self):
        request = httpx.Request("POST", "https://api.openai.com/v1/embeddings")
        error = openai.RateLimitError(
            "slow down", response=httpx.Response(429, request=request), body=None,
        )
        client = _mock_client(error)
        with pytest.raises(TransientIntegrationError):
            _run(_generator(client).embed_batch(["a"]))

    def test_missing_api_key_without_client(self):
        with pytest.raises(ConfigurationError):
            OpenAIEmbeddingGenerator(model="m", dimensions=2, api_key=None)
