# =============================================================================
# Documents API — Upload, Listing, Download, Archive & Delete
# =============================================================================
#
# ENDPOINTS:
#   POST   /projects/{project_id}/documents  — upload one file (201)
#   GET    /projects/{project_id}/documents  — list documents with status
#   GET    /documents/{document_id}/download — short-lived signed URL
#   DELETE /documents/{document_id}?hard=    — archive, or hard delete
#   POST   /documents/{document_id}/restore  — un-archive
#
# DESIGN DECISION: Uploads are streamed into the ingestion service.
# FastAPI's UploadFile is a SpooledTemporaryFile; the service reads it in
# fixed-size blocks, so large files never sit in memory twice. Analysis is
# NOT started here; it is triggered separately via /analysis.
# =============================================================================

import logging

from fastapi import APIRouter, Depends, File, Query, UploadFile

from app.api.deps import get_actor, get_services
from app.models.responses import (
    DocumentListResponse,
    DocumentResponse,
    DownloadResponse,
    UploadResponse,
)
from app.services.auth import Actor
from app.services.container import Services

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Documents"])


def _upload_size(file: UploadFile) -> int:
    if file.size is not None:
        return file.size
    # Older multipart parsers do not record the size
    position = file.file.tell()
    file.file.seek(0, 2)
    size = file.file.tell()
    file.file.seek(position)
    return size


# ---------------------------------------------------------------------------
# POST /projects/{project_id}/documents — Upload a document
# ---------------------------------------------------------------------------


@router.post(
    "/projects/{project_id}/documents",
    response_model=UploadResponse,
    status_code=201,
    summary="Upload a document into a project",
    description=(
        "Store one file (PDF, Word, Excel or CSV) and "
        "register it with status 'uploaded'. Files above the chunked-upload "
        "threshold are written in parts and reassembled atomically."
    ),
)
async def upload_document(
    project_id: str,
    file: UploadFile = File(..., description="Audit document to upload"),
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> UploadResponse:
    document = await services.ingestion.ingest(
        project_id,
        actor,
        filename=file.filename or "",
        mime_type=file.content_type or "application/octet-stream",
        stream=file,
        declared_size=_upload_size(file),
    )
    return UploadResponse(
        document_id=document.id,
        status=document.status,
        upload_method=document.upload_method,
    )


# ---------------------------------------------------------------------------
# GET /projects/{project_id}/documents — List documents
# ---------------------------------------------------------------------------


@router.get(
    "/projects/{project_id}/documents",
    response_model=DocumentListResponse,
    summary="List a project's documents",
)
async def list_documents(
    project_id: str,
    include_archived: bool = Query(default=False, description="Include archived documents"),
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> DocumentListResponse:
    documents = await services.ingestion.list_documents(project_id, actor, include_archived)
    return DocumentListResponse(
        documents=[DocumentResponse.model_validate(d) for d in documents],
        total=len(documents),
    )


# ---------------------------------------------------------------------------
# Single-document operations
# ---------------------------------------------------------------------------


@router.get(
    "/documents/{document_id}/download",
    response_model=DownloadResponse,
    summary="Get a short-lived download URL",
)
async def download_document(
    document_id: str,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> DownloadResponse:
    url = await services.ingestion.download_url(document_id, actor)
    return DownloadResponse(document_id=document_id, url=url)


@router.delete(
    "/documents/{document_id}",
    status_code=204,
    summary="Archive or permanently delete a document",
    description=(
        "By default the document is archived (soft delete) and can be "
        "restored. With hard=true the row, its analyses, the stored file "
        "and the index entry are removed."
    ),
)
async def delete_document(
    document_id: str,
    hard: bool = Query(default=False),
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> None:
    await services.ingestion.delete_document(document_id, actor, hard=hard)


@router.post(
    "/documents/{document_id}/restore",
    response_model=DocumentResponse,
    summary="Restore an archived document",
)
async def restore_document(
    document_id: str,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> DocumentResponse:
    document = await services.ingestion.restore_document(document_id, actor)
    return DocumentResponse.model_validate(document)
