# =============================================================================
# Services Package — Ingestion Pipeline
# =============================================================================
#   - readers.py: bytes → Document (Docling for layout formats, plain text)
#   - chunker.py: token-window chunking with tiktoken
#   - llm.py: chat providers (Anthropic, OpenAI-compatible) + vendor errors
#   - enrichers.py: image alt text (document) and summaries (chunk stream)
#   - embedder.py: batched OpenAI-compatible embeddings
#   - pipeline_builder.py: assembles the above per upload from Settings
#   - metadata.py: upload-metadata merge and summary promotion
#   - chunk_store.py: pgvector / ChromaDB chunk storage keyed by upload
#   - uploads.py / storage.py: upload records and raw file bytes
#   - ingestion.py: the orchestrator (ingest, patch, delete, read)
# =============================================================================
