# =============================================================================
# Unit Tests — Token-Window Chunker
# =============================================================================
#
# Tests the tiktoken windowing without external services (tiktoken's BPE
# file is the only downloaded artifact).
# =============================================================================

import pytest

from doc_ingest.errors import ConfigurationError
from doc_ingest.services.chunker import TokenChunker
from doc_ingest.services.readers import Document, DocumentElement


def _make_doc(
    texts: list[str],
    page_numbers: list[int] | None = None,
    element_types: list[str] | None = None,
    section_titles: list[str | None] | None = None,
) -> Document:
    """Helper to build a Document from simple text lists."""
    pages = page_numbers or [1] * len(texts)
    types = element_types or ["text"] * len(texts)
    sections = section_titles or [None] * len(texts)
    elements = [
        DocumentElement(text=text, element_type=etype, page_number=page, section_title=section)
        for text, page, etype, section in zip(texts, pages, types, sections, strict=True)
    ]
    return Document(id="upload-1", media_type="text/plain", elements=elements)


def _reconstruct(chunks) -> str:
    """Concatenate chunks, dropping each chunk's overlap with the previous one."""
    text = ""
    covered = 0
    for chunk in chunks:
        start = chunk.metadata["char_start"]
        text += chunk.content[covered - start:] if covered > start else chunk.content
        covered = chunk.metadata["char_end"]
    return text


class TestTokenChunker:
    def test_empty_document_yields_no_chunks(self):
        chunks = list(TokenChunker(64, 8).chunk(_make_doc([])))
        assert chunks == []

    def test_whitespace_document_yields_no_chunks(self):
        chunks = list(TokenChunker(64, 8).chunk(_make_doc(["   \n  "])))
        assert chunks == []

    def test_short_document_is_one_chunk(self):
        chunks = list(TokenChunker(64, 8).chunk(_make_doc(["This is a short sentence."])))
        assert len(chunks) == 1
        assert chunks[0].content == "This is a short sentence."
        assert chunks[0].document_id == "upload-1"
        assert chunks[0].metadata["chunk_index"] == 0

    def test_token_count_respects_max_tokens(self):
        doc = _make_doc(["Revenue grew by 15% year over year. " * 100])
        chunks = list(TokenChunker(64, 10).chunk(doc))
        assert len(chunks) > 1
        for chunk in chunks:
            assert chunk.metadata["token_count"] <= 64

    def test_chunk_indices_are_sequential(self):
        chunks = list(TokenChunker(32, 5).chunk(_make_doc(["word " * 200])))
        assert [c.metadata["chunk_index"] for c in chunks] == list(range(len(chunks)))

    def test_consecutive_chunks_overlap(self):
        chunks = list(TokenChunker(32, 8).chunk(_make_doc(["alpha beta gamma " * 60])))
        for previous, current in zip(chunks, chunks[1:]):
            assert current.metadata["char_start"] < previous.metadata["char_end"]

    @pytest.mark.parametrize("max_tokens,overlap", [(16, 0), (16, 4), (50, 49)])
    def test_overlaps_removed_reconstruct_the_text(self, max_tokens, overlap):
        text = (
            "ABC quarterly report.\nRevenue: 1,204 units; margin 12.5%.\n"
            "Naïve café owners signed 3 contracts — 日本語 text too. "
        ) * 12
        chunks = list(TokenChunker(max_tokens, overlap).chunk(_make_doc([text])))
        assert _reconstruct(chunks) == text

    def test_multi_element_document_reconstructs_joined_text(self):
        doc = _make_doc(["First paragraph here.", "Second one follows.", "Third."])
        chunks = list(TokenChunker(6, 2).chunk(doc))
        assert _reconstruct(chunks) == doc.text

    def test_long_whitespace_runs_are_not_lost(self):
        text = "Intro paragraph." + " \n\t " * 400 + "Closing paragraph."
        chunks = list(TokenChunker(4, 1).chunk(_make_doc([text])))
        assert _reconstruct(chunks) == text
        assert [c.metadata["chunk_index"] for c in chunks] == list(range(len(chunks)))
        assert any(not c.content.strip() for c in chunks)

    def test_table_and_page_metadata(self):
        doc = _make_doc(
            texts=["Intro text.", "| a | b |\n|---|---|\n| 1 | 2 |"],
            page_numbers=[1, 2],
            element_types=["text", "table"],
            section_titles=["Results", "Results"],
        )
        chunks = list(TokenChunker(512, 0).chunk(doc))
        assert len(chunks) == 1
        metadata = chunks[0].metadata
        assert metadata["contains_table"] is True
        assert metadata["source_pages"] == [1, 2]
        assert metadata["element_types"] == ["table", "text"]
        assert chunks[0].context == "Results"

    def test_image_alt_text_is_part_of_the_text(self):
        doc = _make_doc(["Chart below."])
        doc.elements.append(DocumentElement(
            text="", element_type="image", alt_text="Bar chart of revenue by year",
        ))
        chunks = list(TokenChunker(512, 0).chunk(doc))
        assert "[Image: Bar chart of revenue by year]" in chunks[0].content

    def test_chunking_is_lazy(self):
        chunker = TokenChunker(8, 0)
        iterator = chunker.chunk(_make_doc(["token " * 100]))
        first = next(iterator)
        assert first.metadata["chunk_index"] == 0

    @pytest.mark.parametrize("max_tokens,overlap", [(0, 0), (10, 10), (10, -1)])
    def test_invalid_window_configuration(self, max_tokens, overlap):
        with pytest.raises(ConfigurationError):
            TokenChunker(max_tokens, overlap)
