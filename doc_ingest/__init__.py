# =============================================================================
# Document Ingestion Service
# =============================================================================
# Turns uploaded files into retrievable, embedded chunks and keeps those chunks
# consistent with their owning upload as metadata changes or the upload is
# deleted.
#
# Package structure:
#   doc_ingest/
#   ├── api/          → FastAPI route handlers (enqueue, status, patch, delete)
#   ├── db/           → Async database engine, sessions, and ORM models
#   ├── models/       → Pydantic V2 request/response schemas
#   ├── services/     → Pipeline pieces (readers, chunker, enrichers, embedder,
#   │                    chunk stores, pipeline builder, orchestrator)
#   └── workers/      → Bounded upload queue and the ingestion worker loop
# =============================================================================
