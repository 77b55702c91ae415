# =============================================================================
# Unit Tests — Ingestion Orchestrator
# =============================================================================
#
# Runs IngestionService against in-memory fakes: no database, no storage
# service, no vendor APIs.
# =============================================================================

import asyncio
import json

import pytest

from doc_ingest.errors import (
    ConfigurationError,
    IngestionError,
    IntegrationError,
    NotFoundError,
    PersistenceError,
    TransientIntegrationError,
    UnsupportedFormatError,
)
from doc_ingest.services.chunker import TokenChunker
from doc_ingest.services.ingestion import BatchClock, IngestionService, KeyedLock
from tests.fakes import (
    FailingDocumentEnricher,
    FakePipelineBuilder,
    FakeStorage,
    FakeUploadRepository,
    InMemoryChunkStore,
    MetadataChunkEnricher,
    _run,
    make_settings,
)

THREE_PARAGRAPHS = "First paragraph.\n\nSecond paragraph.\n\nThird paragraph."


def _make_service(text=THREE_PARAGRAPHS, metadata=None, upload_id="u1", **settings_overrides):
    uploads = FakeUploadRepository()
    storage = FakeStorage()
    if text is not None:
        upload = uploads.add(upload_id, metadata=metadata)
        storage.files[upload.storage_path] = text.encode()
    builder = FakePipelineBuilder()
    store = InMemoryChunkStore()
    service = IngestionService(
        uploads=uploads,
        storage=storage,
        pipeline_builder=builder,
        chunk_store=store,
        config=make_settings(**settings_overrides),
    )
    return service, uploads, builder, store


class TestIngest:
    def test_ingest_writes_one_chunk_per_paragraph(self):
        service, _, _, store = _make_service()
        written = _run(service.ingest("u1"))
        chunks = _run(store.query("u1"))
        assert written == 3
        assert [c.content for c in chunks] == [
            "First paragraph.", "Second paragraph.", "Third paragraph.",
        ]
        assert all(c.source_id == "u1" and c.document_id == "u1" for c in chunks)

    def test_chunks_are_embedded_in_batches(self):
        service, _, builder, store = _make_service(embedding_batch_size=2)
        _run(service.ingest("u1"))
        assert builder.embedding_generator.calls == 2
        assert all(len(c.embedding) == 3 for c in _run(store.query("u1")))

    def test_created_at_strictly_increases_within_a_batch(self):
        service, _, _, store = _make_service()
        _run(service.ingest("u1"))
        stamps = [c.created_at for c in _run(store.query("u1"))]
        assert all(a < b for a, b in zip(stamps, stamps[1:]))

    def test_upload_metadata_is_merged(self):
        service, _, _, store = _make_service(metadata='{"category": "invoice"}')
        _run(service.ingest("u1"))
        for chunk in _run(store.query("u1")):
            assert json.loads(chunk.metadata)["upload_metadata"] == {"category": "invoice"}

    @pytest.mark.parametrize("metadata", [None, "", "{not json", "null"])
    def test_no_upload_metadata_key_without_valid_upload_metadata(self, metadata):
        service, _, _, store = _make_service(metadata=metadata)
        _run(service.ingest("u1"))
        for chunk in _run(store.query("u1")):
            assert "upload_metadata" not in json.loads(chunk.metadata or "{}")

    def test_current_upload_metadata_is_read_at_ingest_time(self):
        service, uploads, builder, store = _make_service(metadata='{"v": 1}')

        class EditingEnricher:
            async def process(self, document):
                uploads.uploads["u1"].metadata = '{"v": 2}'
                return document

        builder.document_enrichers.append(EditingEnricher())
        _run(service.ingest("u1"))
        for chunk in _run(store.query("u1")):
            assert json.loads(chunk.metadata)["upload_metadata"] == {"v": 2}

    def test_summary_promoted_from_enricher_metadata_key(self):
        service, _, builder, store = _make_service()
        builder.chunk_enrichers.append(MetadataChunkEnricher("custom_summary", "X"))
        _run(service.ingest("u1"))
        assert [c.summary for c in _run(store.query("u1"))] == ["X", "X", "X"]

    def test_chunk_enrichers_run_in_order(self):
        service, _, builder, store = _make_service()
        builder.chunk_enrichers.append(MetadataChunkEnricher("stage", "first"))
        builder.chunk_enrichers.append(MetadataChunkEnricher("stage", "second"))
        _run(service.ingest("u1"))
        for chunk in _run(store.query("u1")):
            assert json.loads(chunk.metadata)["stage"] == "second"

    def test_incremental_reingest_replaces_chunks(self):
        service, _, _, store = _make_service(incremental_ingestion=True)
        _run(service.ingest("u1"))
        _run(service.ingest("u1"))
        assert len(_run(store.query("u1"))) == 3

    def test_non_incremental_reingest_appends(self):
        service, _, _, store = _make_service(incremental_ingestion=False)
        _run(service.ingest("u1"))
        _run(service.ingest("u1"))
        assert len(_run(store.query("u1"))) == 6

    def test_round_trip_with_token_chunker(self):
        text = "ABCDEFGHIJ alpha beta gamma delta. " * 40
        service, _, builder, store = _make_service(text=text)
        builder.chunker = TokenChunker(max_tokens=24, overlap_tokens=6)
        _run(service.ingest("u1"))

        chunks = _run(store.query("u1"))
        rebuilt, covered = "", 0
        for chunk in chunks:
            metadata = json.loads(chunk.metadata)
            start = metadata["char_start"]
            rebuilt += chunk.content[covered - start:] if covered > start else chunk.content
            covered = metadata["char_end"]
        assert rebuilt == text
        assert all(c.source_id == "u1" for c in chunks)


class TestIngestFailures:
    def test_unknown_upload_is_not_found(self):
        service, _, _, _ = _make_service(text=None)
        with pytest.raises(NotFoundError) as excinfo:
            _run(service.ingest("missing"))
        assert excinfo.value.upload_id == "missing"

    def test_configuration_error_is_reported_with_upload_id(self):
        service, _, builder, _ = _make_service()
        builder.build_error = ConfigurationError("bad provider")
        with pytest.raises(ConfigurationError) as excinfo:
            _run(service.ingest("u1"))
        assert excinfo.value.upload_id == "u1"
        assert "[upload u1]" in str(excinfo.value)

    def test_unsupported_format(self):
        service, uploads, _, _ = _make_service()
        uploads.uploads["u1"].content_type = "application/zip"
        with pytest.raises(UnsupportedFormatError):
            _run(service.ingest("u1"))

    def test_failed_reingest_keeps_previous_chunks(self):
        service, _, builder, store = _make_service()
        _run(service.ingest("u1"))
        before = {c.id for c in _run(store.query("u1"))}

        builder.document_enrichers.append(FailingDocumentEnricher(IntegrationError("boom")))
        with pytest.raises(IntegrationError):
            _run(service.ingest("u1"))
        assert {c.id for c in _run(store.query("u1"))} == before

    def test_embedding_failure_commits_nothing(self):
        service, _, builder, store = _make_service()
        builder.embedding_generator.fail_with = TransientIntegrationError("rate limited")
        with pytest.raises(TransientIntegrationError):
            _run(service.ingest("u1"))
        assert _run(store.query("u1")) == []

    def test_store_failure_is_persistence_error(self):
        service, _, _, store = _make_service()
        store.fail_writes = True
        with pytest.raises(PersistenceError):
            _run(service.ingest("u1"))

    def test_wrong_embedding_dimension_is_rejected(self):
        service, _, builder, store = _make_service(embedding_dimensions=4)
        with pytest.raises(ConfigurationError):
            _run(service.ingest("u1"))
        assert _run(store.query("u1")) == []

    def test_unexpected_errors_are_wrapped(self):
        service, _, builder, _ = _make_service()
        builder.document_enrichers.append(FailingDocumentEnricher(KeyError("x")))
        with pytest.raises(IngestionError) as excinfo:
            _run(service.ingest("u1"))
        assert excinfo.value.upload_id == "u1"
        assert isinstance(excinfo.value.__cause__, KeyError)


class TestUpdateMetadata:
    def test_example_three_chunks_metadata_cleared(self):
        service, _, _, store = _make_service(metadata='{"category":"invoice"}')
        _run(service.ingest("u1"))
        before = _run(store.query("u1"))
        assert len(before) == 3

        changed = _run(service.update_metadata("u1", None))
        after = _run(store.query("u1"))
        assert changed == 3
        for old, new in zip(before, after):
            assert "upload_metadata" not in json.loads(new.metadata or "{}")
            assert new.content == old.content

    def test_update_is_idempotent_and_never_reembeds(self):
        service, _, builder, store = _make_service()
        builder.chunk_enrichers.append(MetadataChunkEnricher("custom_summary", "S"))
        _run(service.ingest("u1"))
        embed_calls = builder.embedding_generator.calls
        builds = builder.builds

        _run(service.update_metadata("u1", '{"tag": "a"}'))
        first = _run(store.query("u1"))
        _run(service.update_metadata("u1", '{"tag": "a"}'))
        second = _run(store.query("u1"))

        assert [c.metadata for c in first] == [c.metadata for c in second]
        assert [(c.content, c.embedding, c.summary) for c in first] == [
            (c.content, c.embedding, c.summary) for c in second
        ]
        assert builder.embedding_generator.calls == embed_calls
        assert builder.builds == builds

    def test_summary_is_not_recomputed_by_patch(self):
        service, _, _, store = _make_service()
        _run(service.ingest("u1"))
        chunk = _run(store.query("u1"))[0]
        store.records[chunk.id].metadata = '{"late_summary": "should stay in metadata"}'

        _run(service.update_metadata("u1", '{"k": 1}'))
        assert _run(store.query("u1"))[0].summary is None

    def test_no_chunks_is_a_noop(self):
        service, _, _, store = _make_service()
        assert _run(service.update_metadata("u1", '{"k": 1}')) == 0
        assert store.update_calls == 0

    def test_invalid_new_metadata_removes_key(self):
        service, _, _, store = _make_service(metadata='{"k": 1}')
        _run(service.ingest("u1"))
        _run(service.update_metadata("u1", "{oops"))
        for chunk in _run(store.query("u1")):
            assert "upload_metadata" not in json.loads(chunk.metadata or "{}")


class TestDeleteAndGet:
    def test_delete_then_get_is_not_found_and_delete_is_idempotent(self):
        service, _, _, _ = _make_service()
        _run(service.ingest("u1"))
        assert _run(service.delete_by_upload_id("u1")) == 3
        assert _run(service.get_by_upload_id("u1")) is None
        assert _run(service.delete_by_upload_id("u1")) == 0

    def test_delete_is_scoped_to_one_upload(self):
        service, uploads, _, store = _make_service()
        other = uploads.add("u2")
        service._storage.files[other.storage_path] = b"Other upload."
        _run(service.ingest("u1"))
        _run(service.ingest("u2"))
        _run(service.delete_by_upload_id("u1"))
        assert len(_run(store.query("u2"))) == 1

    def test_get_returns_chunks_in_order_with_first_summary(self):
        service, _, _, store = _make_service()
        _run(service.ingest("u1"))
        chunks = _run(store.query("u1"))
        store.records[chunks[1].id].summary = "Second summary"
        store.records[chunks[2].id].summary = "Third summary"
        store.records[chunks[0].id].summary = "   "

        result = _run(service.get_by_upload_id("u1"))
        assert result.summary == "Second summary"
        assert [c.content for c in result.chunks] == [c.content for c in chunks]

    def test_get_without_summaries(self):
        service, _, _, _ = _make_service()
        _run(service.ingest("u1"))
        result = _run(service.get_by_upload_id("u1"))
        assert result.summary is None
        assert len(result.chunks) == 3


class TestReadsDuringIngest:
    def test_get_does_not_wait_for_in_flight_ingest(self):
        async def main():
            service, _, builder, _ = _make_service()
            gate = asyncio.Event()

            class GatedEnricher:
                async def process(self, document):
                    await gate.wait()
                    return document

            builder.document_enrichers.append(GatedEnricher())
            ingest = asyncio.create_task(service.ingest("u1"))
            await asyncio.sleep(0.01)

            during = await asyncio.wait_for(service.get_by_upload_id("u1"), timeout=0.5)
            gate.set()
            await ingest
            after = await service.get_by_upload_id("u1")
            return during, after

        during, after = _run(main())
        assert during is None
        assert len(after.chunks) == 3

    def test_delete_waits_for_in_flight_ingest(self):
        async def main():
            service, _, builder, store = _make_service()
            gate = asyncio.Event()

            class GatedEnricher:
                async def process(self, document):
                    await gate.wait()
                    return document

            builder.document_enrichers.append(GatedEnricher())
            ingest = asyncio.create_task(service.ingest("u1"))
            await asyncio.sleep(0.01)
            delete = asyncio.create_task(service.delete_by_upload_id("u1"))
            await asyncio.sleep(0.01)
            assert not delete.done()

            gate.set()
            await ingest
            return await delete, store

        deleted, store = _run(main())
        assert deleted == 3
        assert store.records == {}


class TestConcurrencyHelpers:
    def test_keyed_lock_serializes_same_key(self):
        locks = KeyedLock()
        events = []

        async def worker(name):
            async with locks.hold("u1"):
                events.append(f"{name}-start")
                await asyncio.sleep(0.01)
                events.append(f"{name}-end")

        async def main():
            await asyncio.gather(worker("a"), worker("b"))

        _run(main())
        assert events == ["a-start", "a-end", "b-start", "b-end"]
        assert "u1" not in locks

    def test_batch_clock_is_strictly_increasing(self):
        clock = BatchClock()
        stamps = [clock.now() for _ in range(1000)]
        assert all(a < b for a, b in zip(stamps, stamps[1:]))
