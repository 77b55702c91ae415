# =============================================================================
# Database Package
# =============================================================================
# Provides the async SQLAlchemy engine, session helpers, and ORM models.
#
# Key exports:
#   - async_session_factory / session_scope: session lifecycle helpers
#   - Base: SQLAlchemy declarative base for ORM models
#   - Upload, ChunkRow: ORM models for uploads and their ingested chunks
# =============================================================================
