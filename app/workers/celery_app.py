# =============================================================================
# Celery Application Configuration
# =============================================================================
#
# Celery runs the work that must not block or outlive an HTTP request:
#   - queued analyses (POST /documents/{id}/analysis?wait=false)
#   - background re-index of documents whose index write failed
#   - the periodic stale-processing sweep
#   - the periodic storage reconciliation
#
# ARCHITECTURE:
# ┌──────────┐     ┌───────┐     ┌──────────────┐     ┌───────┐
# │ FastAPI  │────▶│ Redis │────▶│ Celery Worker│────▶│ Redis │
# │(producer)│     │(broker)│    │  (consumer)  │     │(result)│
# └──────────┘     └───────┘     └──────────────┘     └───────┘
#                      ▲
#                ┌─────┴──────┐
#                │ Celery Beat│  sweep every stale_sweep_interval_seconds
#                └────────────┘  reconcile every reconcile_interval_seconds
# =============================================================================

from celery import Celery

from app.config import settings

celery_app = Celery(
    "app.workers",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    # --- Serialization ---
    # JSON only: pickle can execute arbitrary code during deserialization.
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # --- Reliability ---
    # Acknowledge after completion so a crashed worker's task is re-queued.
    # A re-delivered analysis is safe: the claim rejects a document that is
    # still `processing`, and the sweep reclaims it once it is stale.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # Analyses are long-running; one prefetched task per worker keeps
    # distribution fair.
    worker_prefetch_multiplier=1,

    # --- Timeouts ---
    # The hard limit sits above max_processing_seconds so the sweep, not
    # SIGKILL, decides when a document has timed out.
    task_soft_time_limit=settings.max_processing_seconds,
    task_time_limit=settings.max_processing_seconds + 120,

    # --- Results ---
    result_expires=3600,

    include=["app.workers.tasks"],
)

# ---------------------------------------------------------------------------
# Periodic Jobs (celery beat)
# ---------------------------------------------------------------------------
celery_app.conf.beat_schedule = {
    "sweep-stale-documents": {
        "task": "sweep_stale_documents",
        "schedule": float(settings.stale_sweep_interval_seconds),
    },
    "reconcile-storage": {
        "task": "reconcile_storage",
        "schedule": float(settings.reconcile_interval_seconds),
    },
}
