# =============================================================================
# Reports & Health API
# =============================================================================
#
# ENDPOINTS:
#   GET /projects/{project_id}/report — aggregate audit statistics
#   GET /health                       — liveness + capability flags
# =============================================================================

import logging

from fastapi import APIRouter, Depends

from app.api.deps import get_actor, get_services
from app.config import settings
from app.models.responses import HealthResponse, ProjectReport
from app.services.auth import Actor
from app.services.container import Services
from app.services.reports import build_project_report

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Reports"])


@router.get(
    "/projects/{project_id}/report",
    response_model=ProjectReport,
    summary="Project-level audit report",
    description=(
        "Counts, average confidence, red-flag and highlight totals, a "
        "document-type breakdown and per-document findings, computed from "
        "the active analysis of every non-archived document."
    ),
)
async def project_report(
    project_id: str,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> ProjectReport:
    async with services.session_factory() as session:
        await services.ingestion.authorizer.check(session, project_id, actor, "view")
        return await build_project_report(session, project_id)


@router.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="Service health",
)
async def health(services: Services = Depends(get_services)) -> HealthResponse:
    return HealthResponse(
        version=settings.app_version,
        service=settings.app_name,
        capabilities=services.capabilities(),
    )
