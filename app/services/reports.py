# =============================================================================
# Report Aggregator — Project-Level Audit Statistics
# =============================================================================
#
# A fold over the active analysis results of a project's documents:
# document counts, average confidence, red-flag and highlight totals,
# a document-type histogram, total processing time and per-document
# findings. Read-only; no model calls.
# =============================================================================

from __future__ import annotations

from collections import Counter
from datetime import UTC, datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import AnalysisResult, Document, Project
from app.errors import NotFound
from app.models.responses import DocumentFinding, ProjectReport


def aggregate_findings(
    project: Project,
    total_documents: int,
    rows: list[tuple[Document, AnalysisResult]],
) -> ProjectReport:
    findings: list[DocumentFinding] = []
    histogram: Counter[str] = Counter()
    confidence_sum = 0.0
    red_flags = highlights = processing_ms = 0

    for document, result in rows:
        histogram[result.document_category] += 1
        confidence_sum += result.confidence_score
        red_flags += len(result.red_flags or [])
        highlights += len(result.highlights or [])
        processing_ms += result.processing_time_ms
        findings.append(DocumentFinding(
            document_id=document.id,
            filename=document.filename,
            document_category=result.document_category,
            summary=result.summary,
            red_flags=list(result.red_flags or []),
            highlights=list(result.highlights or []),
            confidence_score=result.confidence_score,
            extraction_degraded=result.extraction_degraded,
        ))

    return ProjectReport(
        project_id=project.id,
        project_name=project.name,
        client_name=project.client_name,
        total_documents=total_documents,
        analyzed_documents=len(rows),
        average_confidence=round(confidence_sum / len(rows), 4) if rows else 0.0,
        total_red_flags=red_flags,
        total_highlights=highlights,
        document_types=dict(histogram),
        total_processing_time_ms=processing_ms,
        findings=findings,
        generated_at=datetime.now(UTC),
    )


async def build_project_report(session: AsyncSession, project_id: str) -> ProjectReport:
    """Aggregate the active analyses of a project's non-archived documents."""
    project = await session.get(Project, project_id)
    if project is None:
        raise NotFound(f"Project {project_id} not found")

    total_documents = (
        await session.execute(
            select(func.count(Document.id)).where(
                Document.project_id == project_id,
                Document.deleted_at.is_(None),
            )
        )
    ).scalar_one()

    rows = (
        await session.execute(
            select(Document, AnalysisResult)
            .join(AnalysisResult, AnalysisResult.document_id == Document.id)
            .where(
                Document.project_id == project_id,
                Document.deleted_at.is_(None),
                AnalysisResult.is_active.is_(True),
            )
            .order_by(Document.created_at, Document.id)
        )
    ).all()

    return aggregate_findings(project, total_documents, [tuple(row) for row in rows])
