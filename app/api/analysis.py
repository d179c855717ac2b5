# =============================================================================
# Analysis API — Trigger & Read Document Analyses
# =============================================================================
#
# ENDPOINTS:
#   POST /documents/{document_id}/analysis?wait=true  — run now, return result
#   POST /documents/{document_id}/analysis?wait=false — queue on Celery (202)
#   GET  /documents/{document_id}/analysis            — active result
#
# DESIGN DECISION: Synchronous by default.
# A single analysis is bounded by the per-stage timeouts, so the caller
# can usually wait for it. Bulk callers pass wait=false and poll the
# document status instead. Either way the orchestrator's claim guarantees
# that at most one run per document is in flight.
# =============================================================================

import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from app.api.deps import get_actor, get_services
from app.models.responses import AnalysisQueuedResponse, AnalysisResponse
from app.services.auth import Actor
from app.services.container import Services

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Analysis"])


@router.post(
    "/documents/{document_id}/analysis",
    response_model=AnalysisResponse,
    summary="Analyze a document",
    responses={202: {"model": AnalysisQueuedResponse}},
    description=(
        "Extract, summarize and index the document. Returns 409 when an "
        "analysis of the same document is already running."
    ),
)
async def trigger_analysis(
    document_id: str,
    wait: bool = Query(default=True, description="Run synchronously (false queues a task)"),
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    if wait:
        result = await services.orchestrator.analyze(document_id, actor)
        return AnalysisResponse.model_validate(result)

    document = await services.orchestrator.authorize(document_id, actor)

    # Imported lazily so the API does not need a broker to import routers
    from app.workers.tasks import analyze_document

    task = analyze_document.delay(document_id, actor.user_id, actor.is_admin)
    await services.orchestrator.record_task(document, task.id, actor)
    logger.info("Queued analysis: document_id=%s task_id=%s", document_id, task.id)
    queued = AnalysisQueuedResponse(document_id=document_id, task_id=task.id)
    return JSONResponse(status_code=202, content=queued.model_dump())


@router.get(
    "/documents/{document_id}/analysis",
    response_model=AnalysisResponse,
    summary="Get the active analysis of a document",
)
async def get_analysis(
    document_id: str,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> AnalysisResponse:
    result = await services.orchestrator.get_active_result(document_id, actor)
    return AnalysisResponse.model_validate(result)
