# =============================================================================
# Database Models — SQLAlchemy ORM
# =============================================================================
#
# SCHEMA OVERVIEW:
#
# ┌──────────────┐     ┌──────────────────┐     ┌────────────────────────┐
# │  projects    │     │  documents       │     │  analysis_results      │
# ├──────────────┤     ├──────────────────┤     ├────────────────────────┤
# │ id (PK)      │─1:N▶│ id (PK)          │─1:N▶│ id (PK)                │
# │ created_by   │     │ project_id (FK)  │     │ document_id (FK)       │
# │ assigned_to  │     │ storage_path (U) │     │ extracted_data (json)  │
# └──────────────┘     │ status           │     │ summary, red_flags,    │
#        │             │ processing_token │     │ highlights, confidence │
#        │             │ index_degraded   │     │ is_active              │
#        │             │ deleted_at       │     └────────────────────────┘
#        │             └──────────────────┘
#        │ 1:N   ┌──────────────┐   ┌──────────────┐   ┌───────────────┐
#        └──────▶│ chat_turns   │   │ audit_events │   │ index_entries │
#                └──────────────┘   └──────────────┘   └───────────────┘
#
# DESIGN DECISIONS:
#
# 1. Opaque string ids (uuid4 hex). Document ids double as search index
#    ids, so they must be stable across stores.
#
# 2. `status` is the only field mutated concurrently. The orchestrator
#    flips it with conditional UPDATEs keyed on the previous status and on
#    `processing_token`, so no row locks are needed.
#
# 3. Re-analysis keeps history: older AnalysisResult rows are flagged
#    inactive in the same commit that inserts the new one. At most one
#    row per document has `is_active = True`.
#
# 4. JSON columns use JSONB on PostgreSQL and plain JSON elsewhere, which
#    keeps the schema usable from the SQLite test database.
# =============================================================================

import enum
import uuid
from datetime import UTC, datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from app.config import settings

JSONType = JSON().with_variant(JSONB(), "postgresql")


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class for all ORM models."""

    pass


class DocumentStatus(str, enum.Enum):
    """
    Analysis state of a document.

    State machine:
        UPLOADED → PROCESSING → ANALYZED
                              → ERROR
        ANALYZED | ERROR → PROCESSING   (re-analysis / retry)
    """

    UPLOADED = "uploaded"
    PROCESSING = "processing"
    ANALYZED = "analyzed"
    ERROR = "error"


# Statuses from which an analyze request may claim the document
CLAIMABLE_STATUSES = (
    DocumentStatus.UPLOADED,
    DocumentStatus.ANALYZED,
    DocumentStatus.ERROR,
)


class Project(Base):
    """
    Minimal project projection used for authorization.

    Project CRUD lives elsewhere; the pipeline only needs to know who
    created the project and who is assigned to it.
    """

    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    client_name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)

    # User ids assigned to the project (JSON list of strings)
    assigned_to: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Project(id={self.id}, name='{self.name}')>"


class Document(Base):
    """
    One uploaded file: metadata plus a reference to its stored blob.

    `storage_path` is unique and never changes after creation. Status is
    mutated only by the analysis orchestrator.
    """

    __tablename__ = "documents"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)

    project_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
    )
    uploaded_by: Mapped[str] = mapped_column(String(64), nullable=False)

    filename: Mapped[str] = mapped_column(String(500), nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(200), nullable=False)
    storage_path: Mapped[str] = mapped_column(String(1000), nullable=False, unique=True)

    # Access descriptor returned by the blob store at upload time
    # (public URL for public buckets, a storage URI otherwise)
    access_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    # "standard" or "chunked"
    upload_method: Mapped[str] = mapped_column(
        String(20), nullable=False, default="standard",
    )

    status: Mapped[DocumentStatus] = mapped_column(
        Enum(
            DocumentStatus,
            name="document_status",
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=DocumentStatus.UPLOADED,
    )

    # --- Processing bookkeeping (owned by the orchestrator) ---
    # Random token written when a run claims the document. The final
    # commit is conditional on it, so a run reclaimed by the stale sweep
    # can never advance the status.
    processing_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    processing_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    # Failure record (null unless status == ERROR)
    # error_stage: "extraction", "summarization", "storage", "timeout"
    error_stage: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # True when the last run could not write the search index entry.
    # Cleared by a successful background re-index.
    index_degraded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    celery_task_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )
    analyzed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    # Soft-delete (archive) marker
    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    analysis_results: Mapped[list["AnalysisResult"]] = relationship(
        "AnalysisResult",
        back_populates="document",
        cascade="all, delete-orphan",
        # Loaded explicitly by query; rows go with the FK ON DELETE CASCADE
        lazy="raise",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<Document(id={self.id}, filename='{self.filename}', status={self.status})>"


class AnalysisResult(Base):
    """
    Output of one extraction + summarization run over a Document.

    Never updated in place except for the `is_active` / `superseded_at`
    pair, which re-analysis flips when a newer result replaces this one.
    """

    __tablename__ = "analysis_results"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)

    document_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )

    # Serialised ExtractedData (see app/models/extraction.py)
    extracted_data: Mapped[dict] = mapped_column(JSONType, nullable=False)

    # "invoice", "receipt" or "general"
    template: Mapped[str] = mapped_column(String(50), nullable=False)

    # "financial", "spreadsheet", "document", "data" or "general"
    document_category: Mapped[str] = mapped_column(String(50), nullable=False)

    # True when extraction fell back to filename/MIME-only content
    extraction_degraded: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False,
    )

    summary: Mapped[str] = mapped_column(Text, nullable=False, default="")
    red_flags: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    highlights: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    confidence_score: Mapped[float] = mapped_column(Float, nullable=False)

    processing_time_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    model: Mapped[str | None] = mapped_column(String(200), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    superseded_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    document: Mapped["Document"] = relationship(
        "Document", back_populates="analysis_results",
    )

    def __repr__(self) -> str:
        return (
            f"<AnalysisResult(id={self.id}, doc_id={self.document_id}, "
            f"active={self.is_active}, confidence={self.confidence_score})>"
        )


class ChatTurn(Base):
    """
    One question/answer exchange in a project's conversation log.

    Append-only. Citations are a JSON list of
    {"document_id", "snippet", "score"} and only ever reference documents
    of the same project.
    """

    __tablename__ = "chat_turns"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)

    project_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)

    question: Mapped[str] = mapped_column(Text, nullable=False)
    answer: Mapped[str] = mapped_column(Text, nullable=False)
    citations: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    # True when the search index could not be consulted for this turn
    retrieval_degraded: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False,
    )
    model: Mapped[str | None] = mapped_column(String(200), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<ChatTurn(id={self.id}, project_id={self.project_id})>"


class AuditEvent(Base):
    """
    Immutable audit trail for ingestion, analysis-trigger and deletion events.

    Records who did what to which resource and how it ended.
    """

    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # e.g. "document.upload", "document.analyze", "document.delete"
    action: Mapped[str] = mapped_column(String(100), nullable=False)

    resource_type: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    project_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # "success", "failure", "denied", "conflict", "degraded"
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    detail: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )


class ApiKey(Base):
    """
    Bearer credential for an API caller.

    Each key belongs to a user id; keys carrying the "admin" scope act as
    administrators for project authorization. Only the SHA-256 hash of the
    key is stored.
    """

    __tablename__ = "api_keys"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    key_prefix: Mapped[str] = mapped_column(String(20), nullable=False)
    key_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    scopes: Mapped[list | None] = mapped_column(JSONType, nullable=True, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    last_used_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<ApiKey(id={self.id}, prefix='{self.key_prefix}', user={self.user_id})>"


class IndexEntry(Base):
    """
    Search index row for the pgvector backend.

    id equals the Document id; re-indexing overwrites the row (upsert).
    Only created when INDEX_BACKEND=pgvector.
    """

    __tablename__ = "index_entries"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    project_id: Mapped[str] = mapped_column(String(64), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    metadata_: Mapped[dict | None] = mapped_column(JSONB, nullable=True, default=dict)
    embedding: Mapped[list[float]] = mapped_column(
        Vector(settings.embedding_dimensions), nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )


# =============================================================================
# Indexes
# =============================================================================

document_project_idx = Index(
    "idx_document_project_created",
    Document.project_id,
    Document.created_at,
)

# Supports the stale-processing sweep
document_status_idx = Index(
    "idx_document_status_started",
    Document.status,
    Document.processing_started_at,
)

analysis_document_active_idx = Index(
    "idx_analysis_document_active",
    AnalysisResult.document_id,
    AnalysisResult.is_active,
)

chat_turn_project_idx = Index(
    "idx_chat_turn_project_created",
    ChatTurn.project_id,
    ChatTurn.created_at,
)

audit_event_resource_idx = Index(
    "idx_audit_event_resource_created",
    AuditEvent.resource_id,
    AuditEvent.created_at,
)

index_entry_project_idx = Index(
    "idx_index_entry_project",
    IndexEntry.project_id,
)

index_entry_embedding_idx = Index(
    "idx_index_entry_embedding_hnsw",
    IndexEntry.embedding,
    postgresql_using="hnsw",
    postgresql_with={"m": 16, "ef_construction": 64},
    postgresql_ops={"embedding": "vector_cosine_ops"},
)

# Tables every backend needs. `index_entries` is created only when the
# pgvector index backend is in use.
CORE_TABLES = [
    Project.__table__,
    Document.__table__,
    AnalysisResult.__table__,
    ChatTurn.__table__,
    AuditEvent.__table__,
    ApiKey.__table__,
]
