# =============================================================================
# Integration Tests — Ingestion Service
# =============================================================================
#
# SQLite database + LocalBlobStore under tmp_path. The `services` fixture
# uses a 64-byte chunked-upload threshold and 16-byte parts, so small
# payloads exercise both upload paths.
#
# Test groups:
#   1. Validation (MIME allow-list, size limits, empty files)
#   2. Standard and chunked uploads
#   3. Failure cleanup during chunked uploads
#   4. Authorization & audit events
#   5. Archive, restore, hard delete
# =============================================================================

from __future__ import annotations

import asyncio

import pytest
from conftest import BytesStream, make_project
from sqlalchemy import func, select
from sqlalchemy.exc import InvalidRequestError

from app.db.models import AnalysisResult, AuditEvent, Document, DocumentStatus
from app.errors import AccessDenied, InvalidFile, NotFound, StorageError
from app.services.auth import Actor
from app.services.storage import UPLOAD_PARTS_PREFIX

PDF = "application/pdf"
ALICE = Actor("alice")
BOB = Actor("bob")
MALLORY = Actor("mallory")


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _upload(services, project_id, data: bytes, *, actor=ALICE, filename="invoice_march.pdf", mime=PDF):
    return _run(services.ingestion.ingest(
        project_id, actor, filename, mime, BytesStream(data, max_read=7), len(data),
    ))


def _count(session_factory, model) -> int:
    async def _q():
        async with session_factory() as session:
            return (await session.execute(select(func.count()).select_from(model))).scalar_one()
    return _run(_q())


def _audit_actions(session_factory) -> list[tuple[str, str]]:
    async def _q():
        async with session_factory() as session:
            rows = (await session.execute(
                select(AuditEvent.action, AuditEvent.outcome).order_by(AuditEvent.id)
            )).all()
            return [tuple(r) for r in rows]
    return _run(_q())


@pytest.fixture
def project_id(session_factory):
    return make_project(session_factory, created_by="alice", assigned_to=["bob"])


# ---------------------------------------------------------------------------
# 1. Validation
# ---------------------------------------------------------------------------


class TestValidation:
    def test_rejects_disallowed_mime(self, services, project_id):
        with pytest.raises(InvalidFile):
            _upload(services, project_id, b"MZ\x90", filename="tool.exe", mime="application/x-msdownload")

    def test_rejects_empty_file(self, services, project_id):
        with pytest.raises(InvalidFile):
            _upload(services, project_id, b"")

    def test_rejects_oversize_declared(self, services, project_id):
        with pytest.raises(InvalidFile):
            _upload(services, project_id, b"x" * 5000)

    def test_rejects_stream_longer_than_declared_limit(self, services, project_id):
        """A client that under-declares its size is still capped."""
        data = b"x" * 5000
        with pytest.raises(InvalidFile):
            _run(services.ingestion.ingest(project_id, ALICE, "big.pdf", PDF, BytesStream(data), 10))
        assert _count(services.session_factory, Document) == 0

    def test_single_upload_reads_no_more_than_declared(self, services, project_id, blob_store):
        data = b"x" * 40
        stream = BytesStream(data)
        with pytest.raises(InvalidFile, match="declared size"):
            _run(services.ingestion.ingest(project_id, ALICE, "short.pdf", PDF, stream, 10))
        assert stream._pos <= 11
        assert _run(blob_store.list_paths("")) == []
        assert _count(services.session_factory, Document) == 0

    def test_validation_failure_writes_nothing(self, services, project_id, blob_store):
        with pytest.raises(InvalidFile):
            _upload(services, project_id, b"", filename="empty.pdf")
        assert _run(blob_store.list_paths("")) == []


# ---------------------------------------------------------------------------
# 2. Uploads
# ---------------------------------------------------------------------------


class TestUploads:
    def test_standard_upload(self, services, project_id, blob_store):
        document = _upload(services, project_id, b"%PDF small")
        assert document.status == DocumentStatus.UPLOADED
        assert document.upload_method == "standard"
        assert document.file_size == 10
        assert document.storage_path.startswith(f"{project_id}/")
        assert document.storage_path.endswith(".pdf")
        assert _run(blob_store.get(document.storage_path)) == b"%PDF small"

    def test_chunked_upload_is_byte_identical(self, services, project_id, blob_store):
        payload = bytes(range(256)) * 3 + b"tail"
        document = _upload(services, project_id, payload)
        assert document.upload_method == "chunked"
        assert _run(blob_store.get(document.storage_path)) == payload

    def test_chunked_upload_removes_parts(self, services, project_id, blob_store):
        _upload(services, project_id, b"y" * 200)
        assert _run(blob_store.list_paths(UPLOAD_PARTS_PREFIX)) == []

    def test_same_filename_gets_distinct_paths(self, services, project_id):
        first = _upload(services, project_id, b"one")
        second = _upload(services, project_id, b"two")
        assert first.storage_path != second.storage_path


# ---------------------------------------------------------------------------
# 3. Chunked upload failure cleanup
# ---------------------------------------------------------------------------


class _FailingPartStore:
    """Wraps a blob store and fails the Nth put()."""

    def __init__(self, inner, fail_on: int):
        self._inner = inner
        self._fail_on = fail_on
        self._puts = 0
        self.backend_name = inner.backend_name

    async def put(self, path, data, content_type):
        self._puts += 1
        if self._puts == self._fail_on:
            raise StorageError("simulated outage")
        return await self._inner.put(path, data, content_type)

    def __getattr__(self, name):
        return getattr(self._inner, name)


class TestChunkedFailure:
    def test_failure_on_third_part_leaves_nothing(self, services, project_id, blob_store):
        services.ingestion.blob_store = _FailingPartStore(blob_store, fail_on=3)
        with pytest.raises(StorageError):
            _upload(services, project_id, b"z" * 200)

        assert _run(blob_store.list_paths("")) == []
        assert _count(services.session_factory, Document) == 0
        assert ("document.upload", "failure") in _audit_actions(services.session_factory)


# ---------------------------------------------------------------------------
# 4. Authorization
# ---------------------------------------------------------------------------


class TestAuthorization:
    def test_assignee_may_upload(self, services, project_id):
        document = _upload(services, project_id, b"data", actor=BOB)
        assert document.uploaded_by == "bob"

    def test_outsider_denied_and_audited(self, services, project_id):
        with pytest.raises(AccessDenied):
            _upload(services, project_id, b"data", actor=MALLORY)
        assert ("document.upload", "denied") in _audit_actions(services.session_factory)

    def test_unknown_project(self, services):
        with pytest.raises(NotFound):
            _upload(services, "no-such-project", b"data")

    def test_success_is_audited(self, services, project_id):
        _upload(services, project_id, b"data")
        assert ("document.upload", "success") in _audit_actions(services.session_factory)


# ---------------------------------------------------------------------------
# 5. Archive, restore, hard delete
# ---------------------------------------------------------------------------


class TestLifecycle:
    def test_archive_hides_from_listing(self, services, project_id):
        document = _upload(services, project_id, b"data")
        _run(services.ingestion.delete_document(document.id, ALICE))

        listed = _run(services.ingestion.list_documents(project_id, ALICE))
        assert listed == []
        archived = _run(services.ingestion.list_documents(project_id, ALICE, include_archived=True))
        assert [d.id for d in archived] == [document.id]
        assert archived[0].deleted_at is not None

    def test_restore(self, services, project_id):
        document = _upload(services, project_id, b"data")
        _run(services.ingestion.delete_document(document.id, ALICE))
        restored = _run(services.ingestion.restore_document(document.id, ALICE))
        assert restored.deleted_at is None
        assert len(_run(services.ingestion.list_documents(project_id, ALICE))) == 1

    def test_assignee_cannot_delete(self, services, project_id):
        document = _upload(services, project_id, b"data")
        with pytest.raises(AccessDenied):
            _run(services.ingestion.delete_document(document.id, BOB))
        assert ("document.archive", "denied") in _audit_actions(services.session_factory)

    def test_hard_delete_removes_row_blob_and_index_entry(self, services, project_id, blob_store, search_index):
        document = _upload(services, project_id, b"data")
        _run(services.ingestion.delete_document(document.id, ALICE, hard=True))

        assert _count(services.session_factory, Document) == 0
        assert _run(blob_store.exists(document.storage_path)) is False
        assert search_index.deleted == [document.id]
        with pytest.raises(NotFound):
            _run(services.ingestion.get_document(document.id, ALICE))

    def test_hard_delete_removes_analyses(self, services, project_id):
        document = _upload(services, project_id, b"data")
        _run(services.orchestrator.analyze(document.id, ALICE))
        assert _count(services.session_factory, AnalysisResult) == 1

        _run(services.ingestion.delete_document(document.id, ALICE, hard=True))

        assert _count(services.session_factory, AnalysisResult) == 0

    def test_analysis_results_are_never_lazy_loaded(self, services, project_id):
        document = _upload(services, project_id, b"data")
        with pytest.raises(InvalidRequestError):
            document.analysis_results

    def test_download_url(self, services, project_id):
        document = _upload(services, project_id, b"data")
        url = _run(services.ingestion.download_url(document.id, BOB))
        assert url.startswith("file://")
