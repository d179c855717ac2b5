# =============================================================================
# Workers Package — Celery Background Tasks
# =============================================================================
#   - celery_app.py: Celery configuration and beat schedule
#   - tasks.py: Queued analysis, re-index, stale sweep, reconciliation
#
# Extraction and summarization can take minutes. Bulk callers queue
# analyses here instead of holding an HTTP request open, and the periodic
# jobs keep document status, blobs and the index consistent.
# =============================================================================
