# =============================================================================
# Ingestion Service — Upload, Archive, Restore & Delete Documents
# =============================================================================
#
# Receives an upload, stores the bytes in the blob store and records a
# Document row with status `uploaded`. Analysis is NOT triggered here;
# callers trigger it explicitly through the orchestrator.
#
# UPLOAD FLOW:
#
#   validate (size, MIME) ─▶ authorize ─▶ transfer ─▶ insert Document row
#                                            │              │
#                                            │         on failure:
#                                            │         delete blob
#            ┌───────────────────────────────┴───────────────┐
#            │ ≤ 5 MiB: single put() to the canonical key    │
#            │ > 5 MiB: 1 MiB parts under                    │
#            │   _uploads/{upload_id}/part-00000 ...         │
#            │   compose() into the canonical key            │
#            │   then delete the parts                       │
#            └───────────────────────────────────────────────┘
#
# DESIGN DECISION: The canonical key only ever holds a complete object.
# Parts live under a per-upload prefix, so concurrent uploads never
# contend, and compose() is atomic per backend (see storage.py). A failure
# on any part removes the parts written so far and leaves nothing at the
# canonical key. Parts that survive a crash are removed by the storage
# reconciliation job.
#
# DESIGN DECISION: The declared size picks the strategy, the actual bytes
# decide validity. Streams longer than the limit or empty streams are
# rejected even if the declared size looked fine.
# =============================================================================

from __future__ import annotations

import logging
import mimetypes
import uuid
from datetime import UTC, datetime
from pathlib import PurePosixPath
from typing import Protocol

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import ALLOWED_MIME_TYPES, MiB
from app.db.models import AnalysisResult, Document, DocumentStatus
from app.errors import InvalidFile, NotFound, PipelineError
from app.services.audit_trail import AuditTrail
from app.services.auth import Actor, ProjectAuthorizer
from app.services.search_index import SearchIndex
from app.services.storage import UPLOAD_PARTS_PREFIX, BlobStore

logger = logging.getLogger(__name__)

_EXTENSION_BY_MIME = {
    "application/pdf": ".pdf",
    "application/msword": ".doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": ".docx",
    "application/vnd.ms-excel": ".xls",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": ".xlsx",
    "text/csv": ".csv",
}


class ByteStream(Protocol):
    """Anything with an async read(size), e.g. FastAPI's UploadFile."""

    async def read(self, size: int = -1) -> bytes: ...


async def read_up_to(stream: ByteStream, size: int) -> bytes:
    """Read until `size` bytes or EOF; a single read() may return less."""
    buffer = bytearray()
    while len(buffer) < size:
        block = await stream.read(size - len(buffer))
        if not block:
            break
        buffer.extend(block)
    return bytes(buffer)


def storage_path_for(project_id: str, filename: str, mime_type: str) -> str:
    suffix = PurePosixPath(filename).suffix.lower()
    if not suffix or len(suffix) > 10:
        suffix = _EXTENSION_BY_MIME.get(mime_type) or mimetypes.guess_extension(mime_type) or ""
    return f"{project_id}/{uuid.uuid4().hex}{suffix}"


class IngestionService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        blob_store: BlobStore,
        search_index: SearchIndex,
        audit: AuditTrail,
        authorizer: ProjectAuthorizer | None = None,
        *,
        max_upload_bytes: int = 50 * MiB,
        chunked_threshold: int = 5 * MiB,
        chunk_size: int = 1 * MiB,
    ) -> None:
        self._session_factory = session_factory
        self.blob_store = blob_store
        self.search_index = search_index
        self.audit = audit
        self.authorizer = authorizer or ProjectAuthorizer()
        self.max_upload_bytes = max_upload_bytes
        self.chunked_threshold = chunked_threshold
        self.chunk_size = chunk_size

    # -------------------------------------------------------------------------
    # Upload
    # -------------------------------------------------------------------------

    async def ingest(
        self,
        project_id: str,
        actor: Actor,
        filename: str,
        mime_type: str,
        stream: ByteStream,
        declared_size: int,
    ) -> Document:
        """
        Validate, authorize, store and register one uploaded file.

        Raises:
            InvalidFile: Bad size, empty file or disallowed MIME type.
            NotFound / AccessDenied: From project authorization.
            StorageError: The blob store failed.
        """
        audit_detail = {"filename": filename, "mime_type": mime_type, "size": declared_size}
        try:
            self._validate(filename, mime_type, declared_size)
            async with self._session_factory() as session:
                await self.authorizer.check(session, project_id, actor, "upload")

            path = storage_path_for(project_id, filename, mime_type)
            if declared_size <= self.chunked_threshold:
                method = "standard"
                access_url, actual_size = await self._put_single(path, mime_type, stream, declared_size)
            else:
                method = "chunked"
                access_url, actual_size = await self._put_chunked(path, mime_type, stream)

            document = await self._insert_document(
                project_id=project_id,
                actor=actor,
                filename=filename,
                mime_type=mime_type,
                path=path,
                size=actual_size,
                access_url=access_url,
                method=method,
            )
        except PipelineError as exc:
            await self.audit.record(
                actor, "document.upload",
                outcome="denied" if exc.status_code == 403 else "failure",
                project_id=project_id,
                detail={**audit_detail, "error": exc.code},
            )
            raise

        logger.info(
            "Ingested document %s (%s, %d bytes, %s) into project %s",
            document.id, filename, document.file_size, method, project_id,
        )
        await self.audit.record(
            actor, "document.upload",
            outcome="success",
            resource_id=document.id,
            project_id=project_id,
            detail={**audit_detail, "upload_method": method},
        )
        return document

    def _validate(self, filename: str, mime_type: str, declared_size: int) -> None:
        if not filename or not filename.strip():
            raise InvalidFile("Filename is required")
        if mime_type not in ALLOWED_MIME_TYPES:
            raise InvalidFile(f"File type '{mime_type}' is not allowed")
        if declared_size <= 0:
            raise InvalidFile("Uploaded file is empty")
        if declared_size > self.max_upload_bytes:
            raise InvalidFile(
                f"File exceeds the {self.max_upload_bytes // MiB} MiB upload limit"
            )

    def _check_actual_size(self, size: int) -> None:
        if size == 0:
            raise InvalidFile("Uploaded file is empty")
        if size > self.max_upload_bytes:
            raise InvalidFile(
                f"File exceeds the {self.max_upload_bytes // MiB} MiB upload limit"
            )

    async def _put_single(
        self, path: str, mime_type: str, stream: ByteStream, declared_size: int,
    ) -> tuple[str, int]:
        # Buffered in memory, so never read past what the client declared
        data = await read_up_to(stream, declared_size + 1)
        if len(data) > declared_size:
            raise InvalidFile("Uploaded file is larger than its declared size")
        self._check_actual_size(len(data))
        access_url = await self.blob_store.put(path, data, mime_type)
        return access_url, len(data)

    async def _put_chunked(self, path: str, mime_type: str, stream: ByteStream) -> tuple[str, int]:
        upload_id = uuid.uuid4().hex
        part_paths: list[str] = []
        total = 0
        try:
            while True:
                block = await read_up_to(stream, self.chunk_size)
                if not block:
                    break
                total += len(block)
                self._check_actual_size(total)
                part_path = f"{UPLOAD_PARTS_PREFIX}{upload_id}/part-{len(part_paths):05d}"
                await self.blob_store.put(part_path, block, "application/octet-stream")
                part_paths.append(part_path)
            self._check_actual_size(total)

            logger.debug("Upload %s: %d parts written, composing %s", upload_id, len(part_paths), path)
            access_url = await self.blob_store.compose(part_paths, path, mime_type)
        finally:
            await self._remove_parts(upload_id, part_paths)
        return access_url, total

    async def _remove_parts(self, upload_id: str, part_paths: list[str]) -> None:
        for part_path in part_paths:
            try:
                await self.blob_store.delete(part_path)
            except PipelineError:
                logger.warning(
                    "Could not remove upload part %s; reconciliation will retry",
                    part_path,
                )

    async def _insert_document(
        self,
        *,
        project_id: str,
        actor: Actor,
        filename: str,
        mime_type: str,
        path: str,
        size: int,
        access_url: str,
        method: str,
    ) -> Document:
        try:
            async with self._session_factory() as session:
                document = Document(
                    project_id=project_id,
                    uploaded_by=actor.user_id,
                    filename=filename,
                    file_size=size,
                    mime_type=mime_type,
                    storage_path=path,
                    access_url=access_url,
                    upload_method=method,
                    status=DocumentStatus.UPLOADED,
                )
                session.add(document)
                await session.commit()
                return document
        except Exception:
            logger.exception("Document row insert failed; removing blob %s", path)
            try:
                await self.blob_store.delete(path)
            except PipelineError:
                logger.warning("Could not remove blob %s; reconciliation will retry", path)
            raise

    # -------------------------------------------------------------------------
    # Listing, download, archive, restore, delete
    # -------------------------------------------------------------------------

    async def list_documents(
        self,
        project_id: str,
        actor: Actor,
        include_archived: bool = False,
    ) -> list[Document]:
        async with self._session_factory() as session:
            await self.authorizer.check(session, project_id, actor, "view")
            stmt = (
                select(Document)
                .where(Document.project_id == project_id)
                .order_by(Document.created_at.desc(), Document.id)
            )
            if not include_archived:
                stmt = stmt.where(Document.deleted_at.is_(None))
            return list((await session.execute(stmt)).scalars().all())

    async def get_document(self, document_id: str, actor: Actor, action: str = "view") -> Document:
        async with self._session_factory() as session:
            document = await _load_document(session, document_id)
            await self.authorizer.check(session, document.project_id, actor, action)
            return document

    async def download_url(self, document_id: str, actor: Actor) -> str:
        document = await self.get_document(document_id, actor)
        return await self.blob_store.signed_url(document.storage_path)

    async def delete_document(self, document_id: str, actor: Actor, hard: bool = False) -> None:
        """
        Archive (soft delete) or hard delete a document.

        Hard delete removes the metadata row first, then the blob and the
        index entry on a best-effort basis. Leftover blobs are orphans that
        the reconciliation job removes.
        """
        action = "document.delete" if hard else "document.archive"
        project_id = None
        try:
            async with self._session_factory() as session:
                document = await _load_document(session, document_id)
                project_id = document.project_id
                await self.authorizer.check(session, project_id, actor, "delete")
                storage_path = document.storage_path
                if hard:
                    await session.execute(
                        delete(AnalysisResult).where(AnalysisResult.document_id == document_id)
                    )
                    await session.delete(document)
                elif document.deleted_at is None:
                    document.deleted_at = datetime.now(UTC)
                await session.commit()
        except PipelineError as exc:
            await self.audit.record(
                actor, action,
                outcome="denied" if exc.status_code == 403 else "failure",
                resource_id=document_id,
                project_id=project_id,
                detail={"error": exc.code},
            )
            raise

        outcome = "success"
        if hard:
            outcome = await self._purge_artifacts(document_id, storage_path)

        logger.info("%s document %s", "Deleted" if hard else "Archived", document_id)
        await self.audit.record(
            actor, action, outcome=outcome, resource_id=document_id, project_id=project_id,
        )

    async def _purge_artifacts(self, document_id: str, storage_path: str) -> str:
        outcome = "success"
        try:
            await self.blob_store.delete(storage_path)
        except PipelineError:
            logger.warning("Blob %s left behind after delete; reconciliation will remove it", storage_path)
            outcome = "degraded"
        try:
            await self.search_index.delete(document_id)
        except PipelineError as exc:
            logger.warning("Index entry %s not removed: %s", document_id, exc.message)
        return outcome

    async def restore_document(self, document_id: str, actor: Actor) -> Document:
        async with self._session_factory() as session:
            document = await _load_document(session, document_id)
            await self.authorizer.check(session, document.project_id, actor, "delete")
            document.deleted_at = None
            await session.commit()
        await self.audit.record(
            actor, "document.restore",
            outcome="success",
            resource_id=document_id,
            project_id=document.project_id,
        )
        return document


async def _load_document(session: AsyncSession, document_id: str) -> Document:
    document = await session.get(Document, document_id)
    if document is None:
        raise NotFound(f"Document {document_id} not found")
    return document
