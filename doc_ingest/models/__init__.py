# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
# Request/response schemas for the HTTP surface. These are separate from the
# ORM models in doc_ingest/db/models.py so that stored-only fields (chunk
# embeddings) never reach a client.
# =============================================================================
