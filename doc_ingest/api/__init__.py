# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
#   - deps.py: the component container and its FastAPI dependencies
#   - uploads.py: ingestion endpoints for one upload (enqueue, status,
#     read chunks, patch metadata, delete chunks)
# =============================================================================
