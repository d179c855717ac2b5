# =============================================================================
# Celery Task Definitions — Analysis, Re-index & Maintenance Jobs
# =============================================================================
#
# Thin synchronous wrappers around the async services. Each task builds
# its services on the worker session factory and runs the coroutine with
# asyncio.run(), i.e. in a fresh event loop per task.
#
# IMPORTANT: Celery task bodies are SYNCHRONOUS.
# - Never share the API's pooled async engine with a worker (its
#   connections belong to another event loop). See db/engine.py.
# - Do NOT call FastAPI dependencies from a task.
#
# RETRY STRATEGY:
# - analyze_document: no retries. The orchestrator already records the
#   failure on the document (status error + stage); the user retries.
# - reindex_document: up to 3 retries with exponential backoff. Index
#   failures are transient by nature and the reconciler is the backstop.
# =============================================================================

import asyncio
import logging
from dataclasses import asdict

from app.config import settings
from app.db.engine import worker_session_factory
from app.errors import IndexDegraded, IndexUnavailable, PipelineError
from app.services.auth import Actor
from app.services.container import Services, build_services
from app.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


def _services() -> Services:
    return build_services(settings, worker_session_factory())


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------


@celery_app.task(bind=True, name="analyze_document")
def analyze_document(self, document_id: str, user_id: str, is_admin: bool = False) -> dict:
    """
    Run a queued analysis on behalf of the user who triggered it.

    Returns:
        dict with the final status, or the error code and stage.
    """
    task_id = self.request.id
    actor = Actor(user_id=user_id, is_admin=is_admin)
    logger.info("[%s] Analysis task: document_id=%s actor=%s", task_id, document_id, user_id)

    try:
        result = asyncio.run(_services().orchestrator.analyze(document_id, actor))
    except PipelineError as exc:
        logger.warning("[%s] Analysis of %s ended in %s: %s", task_id, document_id, exc.code, exc.message)
        return {
            "document_id": document_id,
            "status": "error",
            "error": exc.code,
            "stage": exc.stage,
        }

    logger.info("[%s] Analysis complete: document_id=%s result=%s", task_id, document_id, result.id)
    return {
        "document_id": document_id,
        "status": "analyzed",
        "analysis_id": result.id,
        "extraction_degraded": result.extraction_degraded,
    }


# ---------------------------------------------------------------------------
# Background Re-index
# ---------------------------------------------------------------------------


@celery_app.task(
    bind=True,
    name="reindex_document",
    max_retries=3,
    # 30s, then 60s, then 120s
    default_retry_delay=30,
)
def reindex_document(self, document_id: str) -> dict:
    """Rewrite a document's index entry from its active analysis result."""
    try:
        done = asyncio.run(_services().orchestrator.reindex(document_id))
    except (IndexDegraded, IndexUnavailable) as exc:
        logger.warning(
            "Re-index of %s failed (attempt %d): %s",
            document_id, self.request.retries + 1, exc.message,
        )
        raise self.retry(exc=exc, countdown=30 * 2 ** self.request.retries)

    return {"document_id": document_id, "reindexed": done}


# ---------------------------------------------------------------------------
# Periodic Maintenance
# ---------------------------------------------------------------------------


@celery_app.task(name="sweep_stale_documents")
def sweep_stale_documents() -> dict:
    """Reclaim documents stuck in `processing` past the configured limit."""
    reclaimed = asyncio.run(_services().orchestrator.sweep_stale())
    if reclaimed:
        logger.warning("Stale sweep reclaimed %d document(s): %s", len(reclaimed), reclaimed)
    return {"reclaimed": reclaimed}


@celery_app.task(name="reconcile_storage")
def reconcile_storage() -> dict:
    """Remove orphan blobs, flag missing blobs and re-index degraded documents."""
    report = asyncio.run(_services().orchestrator.reconcile_storage())
    logger.info(
        "Reconciliation: %d orphan blob(s), %d stale part(s), %d missing blob(s), "
        "%d re-indexed, %d orphan index entries",
        len(report.orphan_blobs_removed),
        len(report.stale_parts_removed),
        len(report.missing_blobs),
        len(report.reindexed),
        len(report.orphan_index_entries_removed),
    )
    return asdict(report)
