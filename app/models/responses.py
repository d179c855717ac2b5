# =============================================================================
# API Response Models — Pydantic V2 Schemas
# =============================================================================
#
# Shapes of data coming OUT of the API. Response models control exactly
# what is exposed: processing tokens and storage paths stay internal.
# =============================================================================

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from app.db.models import DocumentStatus


class HealthResponse(BaseModel):
    """Response for GET /health, with capability availability flags."""

    status: str = "ok"
    version: str
    service: str
    capabilities: dict[str, bool] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    error: str = Field(description="Machine-readable error code")
    message: str
    stage: str | None = None


class DocumentResponse(BaseModel):
    """Document metadata, returned after upload and in listings."""

    id: str
    project_id: str
    uploaded_by: str
    filename: str
    file_size: int
    mime_type: str
    upload_method: str
    status: DocumentStatus
    error_stage: str | None = None
    error_message: str | None = None
    index_degraded: bool = False
    created_at: datetime
    analyzed_at: datetime | None = None
    deleted_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class UploadResponse(BaseModel):
    """Response for POST /projects/{project_id}/documents."""

    document_id: str
    status: DocumentStatus
    upload_method: str


class DocumentListResponse(BaseModel):
    documents: list[DocumentResponse]
    total: int


class DownloadResponse(BaseModel):
    document_id: str
    url: str


class AnalysisResponse(BaseModel):
    """The active AnalysisResult of a document."""

    id: str
    document_id: str
    template: str
    document_category: str
    extraction_degraded: bool
    summary: str
    red_flags: list[str]
    highlights: list[str]
    confidence_score: float
    processing_time_ms: int
    model: str | None = None
    extracted_data: dict[str, Any]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AnalysisQueuedResponse(BaseModel):
    """Response for POST /documents/{id}/analysis?wait=false (202)."""

    document_id: str
    task_id: str
    status: str = "queued"


class CitationResponse(BaseModel):
    document_id: str
    snippet: str
    score: float


class AskResponse(BaseModel):
    """Response for POST /projects/{project_id}/ask."""

    answer: str
    citations: list[CitationResponse]
    chat_turn_id: str | None = None
    retrieval_degraded: bool = Field(
        default=False,
        description="True when the search index could not be consulted",
    )
    model: str | None = None


class ChatTurnResponse(BaseModel):
    id: str
    user_id: str
    question: str
    answer: str
    citations: list[CitationResponse]
    retrieval_degraded: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ChatHistoryResponse(BaseModel):
    turns: list[ChatTurnResponse]


class SuggestedQuestionsResponse(BaseModel):
    suggested_questions: list[str]


class DocumentFinding(BaseModel):
    document_id: str
    filename: str
    document_category: str
    summary: str
    red_flags: list[str]
    highlights: list[str]
    confidence_score: float
    extraction_degraded: bool


class ProjectReport(BaseModel):
    """Aggregate statistics over a project's active analysis results."""

    project_id: str
    project_name: str
    client_name: str | None = None
    total_documents: int
    analyzed_documents: int
    average_confidence: float
    total_red_flags: int
    total_highlights: int
    document_types: dict[str, int]
    total_processing_time_ms: int
    findings: list[DocumentFinding]
    generated_at: datetime
