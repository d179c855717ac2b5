# =============================================================================
# Service Container — Wiring Adapters Into the Pipeline Services
# =============================================================================
#
# One place that turns Settings into the object graph:
#
#   Settings ──▶ BlobStore, Extractor, LLMProvider, SearchIndex
#                      │
#                      ▼
#   IngestionService, AnalysisOrchestrator, ProjectAssistant, AuditTrail
#
# The API builds one container per process (pooled session factory). Each
# Celery task builds its own on the worker session factory, because the
# task runs in a fresh event loop.
#
# DESIGN DECISION: Adapters are constructed even when their credentials
# are missing. Availability is reported by `capabilities()` and by the
# services raising *Unavailable errors, so the API still starts.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.agents.assistant import ProjectAssistant
from app.config import Settings
from app.services.analysis import AnalysisOrchestrator
from app.services.audit_trail import AuditTrail
from app.services.auth import ProjectAuthorizer
from app.services.extraction import DoclingExtractor, Extractor
from app.services.ingestion import IngestionService
from app.services.llm import create_llm_provider
from app.services.search_index import SearchIndex, create_search_index
from app.services.storage import BlobStore, create_blob_store
from app.services.summarizer import Summarizer

logger = logging.getLogger(__name__)


@dataclass
class Services:
    session_factory: async_sessionmaker[AsyncSession]
    blob_store: BlobStore
    extractor: Extractor
    summarizer: Summarizer
    search_index: SearchIndex
    audit: AuditTrail
    ingestion: IngestionService
    orchestrator: AnalysisOrchestrator
    assistant: ProjectAssistant

    def capabilities(self) -> dict[str, bool]:
        return {
            "extraction": self.extractor.available,
            "summarization": self.summarizer.available,
            "search_index": self.search_index.available,
        }


def schedule_reindex_task(document_id: str) -> None:
    """Queue a background re-index of one document."""
    from app.workers.tasks import reindex_document

    reindex_document.delay(document_id)


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    blob_store: BlobStore | None = None,
    extractor: Extractor | None = None,
    summarizer: Summarizer | None = None,
    search_index: SearchIndex | None = None,
    schedule_reindex: Callable[[str], None] | None = schedule_reindex_task,
) -> Services:
    """
    Assemble every pipeline service from `settings`.

    Keyword arguments replace individual adapters (tests pass fakes).
    """
    blob_store = blob_store or create_blob_store(settings.storage_config())
    extractor = extractor or DoclingExtractor(settings.extraction_config())
    summarizer = summarizer or Summarizer(
        create_llm_provider(settings.llm_config()),
        input_chars=settings.summarization_input_chars,
    )
    search_index = search_index or create_search_index(settings.index_config(), session_factory)
    audit = AuditTrail(session_factory, enabled=settings.audit_logging_enabled)
    authorizer = ProjectAuthorizer()

    ingestion = IngestionService(
        session_factory,
        blob_store,
        search_index,
        audit,
        authorizer,
        max_upload_bytes=settings.max_upload_bytes,
        chunked_threshold=settings.chunked_upload_threshold,
        chunk_size=settings.upload_chunk_size,
    )
    orchestrator = AnalysisOrchestrator(
        session_factory,
        blob_store,
        extractor,
        summarizer,
        search_index,
        audit,
        authorizer,
        extraction_timeout=settings.extraction_timeout_seconds,
        summarization_timeout=settings.summarization_timeout_seconds,
        index_timeout=settings.index_timeout_seconds,
        fallback_enabled=settings.extraction_fallback_enabled,
        max_processing_seconds=settings.max_processing_seconds,
        orphan_grace_seconds=settings.orphan_upload_part_seconds,
        schedule_reindex=schedule_reindex,
    )
    assistant = ProjectAssistant(
        session_factory,
        search_index,
        summarizer,
        authorizer,
        top_k=settings.retrieval_top_k,
        snippet_chars=settings.snippet_chars,
        history_turns=settings.chat_history_turns,
        max_context_analyses=settings.max_context_analyses,
        max_suggested_questions=settings.max_suggested_questions,
        index_timeout=settings.index_timeout_seconds,
        completion_timeout=settings.summarization_timeout_seconds,
    )

    services = Services(
        session_factory=session_factory,
        blob_store=blob_store,
        extractor=extractor,
        summarizer=summarizer,
        search_index=search_index,
        audit=audit,
        ingestion=ingestion,
        orchestrator=orchestrator,
        assistant=assistant,
    )
    logger.info("Services ready: %s", services.capabilities())
    return services
