# =============================================================================
# Workers Package — Background Ingestion
# =============================================================================
#   - queue.py: bounded in-process FIFO of uploads awaiting ingestion
#   - ingestion_worker.py: the single consumer loop (retry, status, shutdown)
#
# Ingestion is slow (parsing, chat-model enrichment, embedding calls), so the
# upload flow only enqueues and returns; the worker does the rest.
# =============================================================================
