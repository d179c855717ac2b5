# =============================================================================
# Analysis Orchestrator — Document Status State Machine
# =============================================================================
#
# Drives one document through extraction → summarization → indexing and
# owns every write to `documents.status`.
#
# STATE MACHINE:
#
#   uploaded ──claim──▶ processing ──commit──▶ analyzed ─┐
#                          │    ▲                         │ re-analysis
#                          │    └────────claim────────────┤
#                          ▼                              │
#                        error ◀── sweep (timeout) ───────┘
#                          │
#                          └──claim (retry)──▶ processing
#
# PER RUN:
#   1. claim         conditional UPDATE keyed on previous status
#   2. read handle   short-lived blob access (path or signed URL)
#   3. classify      filename/MIME → extraction template
#   4. extract       bounded timeout; failure → degraded minimal extraction
#   5. summarize     bounded timeout; failure → error (stage summarization)
#   6. index upsert  bounded timeout; failure → index_degraded + re-index
#   7. commit        supersede old result, insert new, status analyzed
#
# DESIGN DECISION: Conditional updates instead of row locks.
# The claim is a single `UPDATE ... WHERE status IN (claimable)`; exactly
# one concurrent caller sees rowcount == 1. The claim writes a random
# `processing_token`, and the final commit and the failure path are both
# conditional on that token. A run that the stale sweep reclaimed (or
# that a hard delete removed) therefore cannot advance the document.
#
# DESIGN DECISION: Extraction and summarization are the only hard-failure
# stages. Index failures never fail the run: the index is rebuildable
# from persisted results.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.models import (
    CLAIMABLE_STATUSES,
    AnalysisResult,
    Document,
    DocumentStatus,
)
from app.errors import (
    AlreadyInProgress,
    AnalysisTimedOut,
    ExtractionFailed,
    ExtractionUnavailable,
    IndexDegraded,
    NotFound,
    PipelineError,
    StorageError,
    StorageInconsistency,
    SummarizationFailed,
)
from app.models.extraction import ExtractedData
from app.services.audit_trail import AuditTrail
from app.services.auth import Actor, ProjectAuthorizer
from app.services.extraction import (
    Extractor,
    classify_document,
    document_category,
    minimal_extraction,
)
from app.services.search_index import SearchIndex
from app.services.storage import UPLOAD_PARTS_PREFIX, BlobStore
from app.services.summarizer import Summarizer, SummaryResult

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = Actor(user_id="system", is_admin=True)


@dataclass
class ReconcileReport:
    orphan_blobs_removed: list[str] = field(default_factory=list)
    stale_parts_removed: list[str] = field(default_factory=list)
    missing_blobs: list[str] = field(default_factory=list)
    reindexed: list[str] = field(default_factory=list)
    reindex_failed: list[str] = field(default_factory=list)
    orphan_index_entries_removed: list[str] = field(default_factory=list)


def index_content(extracted: ExtractedData, summary: str) -> str:
    """Text stored in the search index for one document."""
    return f"{extracted.full_text()} {summary}".strip()


def index_metadata(document: Document) -> dict:
    return {
        "project_id": document.project_id,
        "document_id": document.id,
        "filename": document.filename,
        "mime_type": document.mime_type,
    }


class AnalysisOrchestrator:
    """
    Runs analyses and the maintenance jobs that keep documents consistent.

    `schedule_reindex` is called with a document id after a commit that
    left the index degraded. The application wires it to the Celery
    re-index task.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        blob_store: BlobStore,
        extractor: Extractor,
        summarizer: Summarizer,
        search_index: SearchIndex,
        audit: AuditTrail,
        authorizer: ProjectAuthorizer | None = None,
        *,
        extraction_timeout: float = 120.0,
        summarization_timeout: float = 90.0,
        index_timeout: float = 30.0,
        fallback_enabled: bool = True,
        max_processing_seconds: int = 600,
        orphan_grace_seconds: int = 3600,
        schedule_reindex: Callable[[str], None] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.blob_store = blob_store
        self.extractor = extractor
        self.summarizer = summarizer
        self.search_index = search_index
        self.audit = audit
        self.authorizer = authorizer or ProjectAuthorizer()
        self.extraction_timeout = extraction_timeout
        self.summarization_timeout = summarization_timeout
        self.index_timeout = index_timeout
        self.fallback_enabled = fallback_enabled
        self.max_processing_seconds = max_processing_seconds
        self.orphan_grace_seconds = orphan_grace_seconds
        self._schedule_reindex = schedule_reindex

    # -------------------------------------------------------------------------
    # analyze
    # -------------------------------------------------------------------------

    async def analyze(self, document_id: str, actor: Actor) -> AnalysisResult:
        """
        Run one full analysis of a document.

        Raises:
            NotFound / AccessDenied: Unknown document or no permission.
            AlreadyInProgress: Another run holds the document.
            ExtractionFailed / ExtractionUnavailable: Extraction failed and
                the fallback is disabled.
            SummarizationFailed / SummarizationUnavailable
            StorageError: The blob could not be opened.
            AnalysisTimedOut: The stale sweep reclaimed the run before commit.
        """
        document = await self.authorize(document_id, actor)

        try:
            token = await self.claim(document_id)
        except AlreadyInProgress:
            await self.audit.record(
                actor, "document.analyze", outcome="conflict",
                resource_id=document_id, project_id=document.project_id,
            )
            raise

        logger.info("Document %s: %s → processing", document_id, document.status.value)
        started = time.monotonic()
        stage = "storage"
        try:
            handle = await self.blob_store.read_handle(document.storage_path)

            stage = "extraction"
            template = classify_document(document.filename, document.mime_type)
            category = document_category(document.mime_type)
            logger.info(
                "Document %s: template=%s category=%s", document_id, template, category,
            )
            extracted = await self._extract(document, handle, template)

            stage = "summarization"
            summary = await self._summarize(extracted, category)

            stage = "indexing"
            degraded = not await self._index(document, extracted, summary)

            stage = "commit"
            elapsed_ms = int((time.monotonic() - started) * 1000)
            result = await self._commit(
                document, token,
                extracted=extracted,
                summary=summary,
                template=template,
                category=category,
                elapsed_ms=elapsed_ms,
                index_degraded=degraded,
            )
        except AnalysisTimedOut:
            logger.warning("Document %s: run lost its claim before commit", document_id)
            await self.audit.record(
                actor, "document.analyze", outcome="failure",
                resource_id=document_id, project_id=document.project_id,
                detail={"stage": "timeout"},
            )
            raise
        except Exception as exc:
            message = exc.message if isinstance(exc, PipelineError) else str(exc)
            await self._fail(document_id, token, stage, message or type(exc).__name__)
            await self.audit.record(
                actor, "document.analyze", outcome="failure",
                resource_id=document_id, project_id=document.project_id,
                detail={"stage": stage, "error": message},
            )
            raise

        if degraded:
            self._request_reindex(document_id)

        logger.info(
            "Document %s: processing → analyzed (%d ms, index_degraded=%s)",
            document_id, result.processing_time_ms, degraded,
        )
        await self.audit.record(
            actor, "document.analyze",
            outcome="degraded" if degraded or extracted.degraded else "success",
            resource_id=document_id,
            project_id=document.project_id,
            detail={
                "analysis_id": result.id,
                "extraction_degraded": extracted.degraded,
                "index_degraded": degraded,
            },
        )
        return result

    async def claim(self, document_id: str) -> str:
        """
        Atomically move a document into `processing`; return the run token.

        Raises NotFound or AlreadyInProgress when no row was updated.
        """
        token = uuid.uuid4().hex
        async with self._session_factory() as session:
            result = await session.execute(
                update(Document)
                .where(
                    Document.id == document_id,
                    Document.status.in_(CLAIMABLE_STATUSES),
                    Document.deleted_at.is_(None),
                )
                .values(
                    status=DocumentStatus.PROCESSING,
                    processing_token=token,
                    processing_started_at=datetime.now(UTC),
                    error_stage=None,
                    error_message=None,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if result.rowcount == 1:
                return token

            document = await session.get(Document, document_id)
        if document is None or document.deleted_at is not None:
            raise NotFound(f"Document {document_id} not found")
        raise AlreadyInProgress(f"Document {document_id} is already being analyzed")

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    async def _extract(self, document: Document, handle, template: str) -> ExtractedData:
        try:
            if not self.extractor.available:
                raise ExtractionUnavailable("Extraction capability is not configured")
            return await asyncio.wait_for(
                self.extractor.extract(handle, template),
                timeout=self.extraction_timeout,
            )
        except (ExtractionFailed, ExtractionUnavailable, TimeoutError) as exc:
            if isinstance(exc, TimeoutError):
                exc = ExtractionFailed(
                    f"Extraction timed out after {self.extraction_timeout:.0f}s",
                    stage="extraction",
                )
            if not self.fallback_enabled:
                raise exc
            logger.warning(
                "Document %s: extraction failed (%s); using minimal extraction",
                document.id, exc.message,
            )
            return minimal_extraction(document.filename, document.mime_type, exc.message)

    async def _summarize(self, extracted: ExtractedData, category: str) -> SummaryResult:
        try:
            return await asyncio.wait_for(
                self.summarizer.summarize(extracted, category),
                timeout=self.summarization_timeout,
            )
        except TimeoutError as exc:
            raise SummarizationFailed(
                f"Summarization timed out after {self.summarization_timeout:.0f}s",
                stage="summarization",
            ) from exc

    async def _index(self, document: Document, extracted: ExtractedData, summary: SummaryResult) -> bool:
        """Upsert the index entry. Returns False when the index was not written."""
        if not self.search_index.available:
            logger.warning("Document %s: search index unavailable, marking degraded", document.id)
            return False
        try:
            await asyncio.wait_for(
                self.search_index.upsert(
                    document.id,
                    index_content(extracted, summary.summary),
                    index_metadata(document),
                ),
                timeout=self.index_timeout,
            )
        except (PipelineError, TimeoutError) as exc:
            logger.warning("Document %s: index upsert failed (%s)", document.id, exc)
            return False
        return True

    async def _commit(
        self,
        document: Document,
        token: str,
        *,
        extracted: ExtractedData,
        summary: SummaryResult,
        template: str,
        category: str,
        elapsed_ms: int,
        index_degraded: bool,
    ) -> AnalysisResult:
        now = datetime.now(UTC)
        async with self._session_factory() as session:
            advanced = await session.execute(
                update(Document)
                .where(
                    Document.id == document.id,
                    Document.processing_token == token,
                    Document.status == DocumentStatus.PROCESSING,
                )
                .values(
                    status=DocumentStatus.ANALYZED,
                    analyzed_at=now,
                    processing_token=None,
                    processing_started_at=None,
                    index_degraded=index_degraded,
                )
                .execution_options(synchronize_session=False)
            )
            if advanced.rowcount != 1:
                await session.rollback()
                raise AnalysisTimedOut(
                    f"Document {document.id} was reclaimed before the run finished",
                    stage="timeout",
                )

            await session.execute(
                update(AnalysisResult)
                .where(
                    AnalysisResult.document_id == document.id,
                    AnalysisResult.is_active.is_(True),
                )
                .values(is_active=False, superseded_at=now)
                .execution_options(synchronize_session=False)
            )
            result = AnalysisResult(
                document_id=document.id,
                extracted_data=extracted.model_dump(mode="json"),
                template=template,
                document_category=category,
                extraction_degraded=extracted.degraded,
                summary=summary.summary,
                red_flags=list(summary.red_flags),
                highlights=list(summary.highlights),
                confidence_score=summary.confidence_score,
                processing_time_ms=elapsed_ms,
                model=self.summarizer.model,
                is_active=True,
            )
            session.add(result)
            await session.commit()
        return result

    async def _fail(self, document_id: str, token: str, stage: str, message: str) -> None:
        async with self._session_factory() as session:
            result = await session.execute(
                update(Document)
                .where(
                    Document.id == document_id,
                    Document.processing_token == token,
                    Document.status == DocumentStatus.PROCESSING,
                )
                .values(
                    status=DocumentStatus.ERROR,
                    error_stage=stage,
                    error_message=message[:2000],
                    processing_token=None,
                    processing_started_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount == 1:
            logger.error("Document %s: processing → error (stage=%s): %s", document_id, stage, message)
        else:
            logger.warning(
                "Document %s: failure at stage %s after claim was lost: %s",
                document_id, stage, message,
            )

    def _request_reindex(self, document_id: str) -> None:
        if self._schedule_reindex is None:
            logger.warning("Document %s: index degraded, no re-index scheduler configured", document_id)
            return
        try:
            self._schedule_reindex(document_id)
            logger.info("Document %s: background re-index scheduled", document_id)
        except Exception:
            logger.exception(
                "Document %s: could not schedule re-index; reconciliation will retry",
                document_id,
            )

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def authorize(self, document_id: str, actor: Actor) -> Document:
        """
        Return the live document if `actor` may analyze it.

        Rejected triggers are audited as `denied` (no permission) or
        `failure` (unknown or archived document).
        """
        project_id = None
        try:
            async with self._session_factory() as session:
                document = await session.get(Document, document_id)
                if document is None or document.deleted_at is not None:
                    raise NotFound(f"Document {document_id} not found")
                project_id = document.project_id
                await self.authorizer.check(session, project_id, actor, "analyze")
        except PipelineError as exc:
            await self.audit.record(
                actor, "document.analyze",
                outcome="denied" if exc.status_code == 403 else "failure",
                resource_id=document_id,
                project_id=project_id,
                detail={"error": exc.code},
            )
            raise
        return document

    async def record_task(self, document: Document, task_id: str, actor: Actor) -> None:
        """Remember the Celery task that will run a queued analysis."""
        async with self._session_factory() as session:
            await session.execute(
                update(Document)
                .where(Document.id == document.id)
                .values(celery_task_id=task_id)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        await self.audit.record(
            actor, "document.analyze", outcome="queued",
            resource_id=document.id,
            project_id=document.project_id,
            detail={"task_id": task_id},
        )

    async def get_active_result(self, document_id: str, actor: Actor) -> AnalysisResult:
        """The active analysis of a document, or NotFound if it has none."""
        async with self._session_factory() as session:
            document = await session.get(Document, document_id)
            if document is None:
                raise NotFound(f"Document {document_id} not found")
            await self.authorizer.check(session, document.project_id, actor, "view")
            result = (
                await session.execute(
                    select(AnalysisResult).where(
                        AnalysisResult.document_id == document_id,
                        AnalysisResult.is_active.is_(True),
                    )
                )
            ).scalar_one_or_none()
        if result is None:
            raise NotFound(f"Document {document_id} has no analysis")
        return result

    # -------------------------------------------------------------------------
    # Maintenance: stale sweep, re-index, storage reconciliation
    # -------------------------------------------------------------------------

    async def sweep_stale(self, max_age_seconds: int | None = None) -> list[str]:
        """
        Move documents stuck in `processing` past the limit to `error`.

        A single UPDATE ... RETURNING, so each stuck document is reclaimed
        exactly once even with overlapping sweeps.
        """
        max_age = self.max_processing_seconds if max_age_seconds is None else max_age_seconds
        cutoff = datetime.now(UTC) - timedelta(seconds=max_age)
        async with self._session_factory() as session:
            result = await session.execute(
                update(Document)
                .where(
                    Document.status == DocumentStatus.PROCESSING,
                    Document.processing_started_at < cutoff,
                )
                .values(
                    status=DocumentStatus.ERROR,
                    error_stage="timeout",
                    error_message=f"Processing exceeded {max_age} seconds",
                    processing_token=None,
                    processing_started_at=None,
                )
                .returning(Document.id, Document.project_id)
                .execution_options(synchronize_session=False)
            )
            reclaimed = result.all()
            await session.commit()

        for document_id, project_id in reclaimed:
            logger.warning("Document %s: processing → error (timeout)", document_id)
            await self.audit.record(
                SYSTEM_ACTOR, "document.timeout", outcome="failure",
                resource_id=document_id, project_id=project_id,
                detail={"max_processing_seconds": max_age},
            )
        return [document_id for document_id, _ in reclaimed]

    async def reindex(self, document_id: str) -> bool:
        """
        Rewrite the index entry from the active analysis result.

        Returns False when there is nothing to index (no active result or
        archived document). Raises IndexDegraded / IndexUnavailable on failure.
        """
        async with self._session_factory() as session:
            document = await session.get(Document, document_id)
            if document is None or document.deleted_at is not None:
                return False
            result = (
                await session.execute(
                    select(AnalysisResult).where(
                        AnalysisResult.document_id == document_id,
                        AnalysisResult.is_active.is_(True),
                    )
                )
            ).scalar_one_or_none()
        if result is None:
            return False

        extracted = ExtractedData.model_validate(result.extracted_data)
        try:
            await asyncio.wait_for(
                self.search_index.upsert(
                    document_id,
                    index_content(extracted, result.summary),
                    index_metadata(document),
                ),
                timeout=self.index_timeout,
            )
        except TimeoutError as exc:
            raise IndexDegraded(f"Re-index of {document_id} timed out") from exc

        async with self._session_factory() as session:
            await session.execute(
                update(Document)
                .where(Document.id == document_id)
                .values(index_degraded=False)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        logger.info("Document %s: re-indexed", document_id)
        return True

    async def reconcile_storage(self) -> ReconcileReport:
        """
        Bring blob storage, metadata and the index back in line.

        Metadata is authoritative:
          - blobs without a row (older than the grace period) are deleted
          - leftover upload parts older than the grace period are deleted
          - rows whose blob is missing are marked error (stage "storage")
          - analyzed documents flagged index_degraded are re-indexed
          - index entries whose document row is gone are deleted
        """
        report = ReconcileReport()
        grace_cutoff = datetime.now(UTC) - timedelta(seconds=self.orphan_grace_seconds)

        # Rows first: any row seen here had its blob stored before listing
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(
                        Document.id,
                        Document.storage_path,
                        Document.status,
                        Document.error_stage,
                        Document.project_id,
                    )
                )
            ).all()
        known_paths = {row.storage_path for row in rows}

        blobs = await self.blob_store.list_paths("")
        blob_paths = {blob.path for blob in blobs}

        for blob in blobs:
            if blob.path in known_paths:
                continue
            if blob.modified_at is not None and blob.modified_at > grace_cutoff:
                continue
            try:
                await self.blob_store.delete(blob.path)
            except StorageError as exc:
                logger.warning("Could not remove orphan blob %s: %s", blob.path, exc.message)
                continue
            if blob.path.startswith(UPLOAD_PARTS_PREFIX):
                report.stale_parts_removed.append(blob.path)
            else:
                logger.warning("Removed orphan blob %s (no metadata row)", blob.path)
                report.orphan_blobs_removed.append(blob.path)

        for row in rows:
            if row.storage_path in blob_paths or row.status == DocumentStatus.PROCESSING:
                continue
            if row.status == DocumentStatus.ERROR and row.error_stage == "storage":
                continue
            problem = StorageInconsistency(f"Blob {row.storage_path} is missing")
            async with self._session_factory() as session:
                await session.execute(
                    update(Document)
                    .where(Document.id == row.id, Document.status != DocumentStatus.PROCESSING)
                    .values(
                        status=DocumentStatus.ERROR,
                        error_stage="storage",
                        error_message=problem.message,
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
            logger.error("Document %s: %s; marked error", row.id, problem.message)
            report.missing_blobs.append(row.id)
            await self.audit.record(
                SYSTEM_ACTOR, "document.reconcile", outcome="failure",
                resource_id=row.id, project_id=row.project_id,
                detail={"error": problem.code},
            )

        async with self._session_factory() as session:
            degraded_ids = (
                await session.execute(
                    select(Document.id).where(
                        Document.index_degraded.is_(True),
                        Document.status == DocumentStatus.ANALYZED,
                        Document.deleted_at.is_(None),
                    )
                )
            ).scalars().all()
        for document_id in degraded_ids:
            try:
                if await self.reindex(document_id):
                    report.reindexed.append(document_id)
            except PipelineError as exc:
                logger.warning("Re-index of %s failed: %s", document_id, exc.message)
                report.reindex_failed.append(document_id)

        await self._remove_orphan_index_entries(report)

        logger.info(
            "Reconciliation: %d orphan blobs, %d stale parts, %d missing blobs, "
            "%d re-indexed, %d re-index failures, %d orphan index entries",
            len(report.orphan_blobs_removed), len(report.stale_parts_removed),
            len(report.missing_blobs), len(report.reindexed), len(report.reindex_failed),
            len(report.orphan_index_entries_removed),
        )
        return report

    async def _remove_orphan_index_entries(self, report: ReconcileReport) -> None:
        """Delete index entries left behind by a hard delete whose index cleanup failed."""
        if not self.search_index.available:
            return
        try:
            entry_ids = await self.search_index.list_ids()
        except PipelineError as exc:
            logger.warning("Could not list index entries: %s", exc.message)
            return
        if not entry_ids:
            return

        # Checked after listing, so an entry written for a new document meanwhile is kept
        async with self._session_factory() as session:
            existing = set(
                (
                    await session.execute(
                        select(Document.id).where(Document.id.in_(entry_ids))
                    )
                ).scalars().all()
            )
        for entry_id in entry_ids:
            if entry_id in existing:
                continue
            try:
                await self.search_index.delete(entry_id)
            except PipelineError as exc:
                logger.warning("Could not remove orphan index entry %s: %s", entry_id, exc.message)
                continue
            logger.warning("Removed orphan index entry %s (no metadata row)", entry_id)
            report.orphan_index_entries_removed.append(entry_id)
