# =============================================================================
# Integration Tests — Analysis Orchestrator
# =============================================================================
#
# Runs the full state machine against SQLite with fake extractor, LLM
# provider and search index (see conftest.py).
#
# Test groups:
#   1. Happy path
#   2. Concurrent claims
#   3. Stage failures (extraction, summarization, index)
#   4. Re-analysis
#   5. Stale sweep & late finish
#   6. Re-index & storage reconciliation
# =============================================================================

from __future__ import annotations

import asyncio
import os
import time
from datetime import UTC, datetime, timedelta

import pytest
from conftest import BytesStream, FakeExtractor, FakeProvider, make_project
from sqlalchemy import select, update

from app.db.models import AnalysisResult, AuditEvent, Document, DocumentStatus
from app.errors import (
    AccessDenied,
    AlreadyInProgress,
    AnalysisTimedOut,
    ExtractionFailed,
    NotFound,
    SummarizationFailed,
    SummarizationUnavailable,
)
from app.services.auth import Actor
from app.services.summarizer import Summarizer

ALICE = Actor("alice")

ANALYSIS_JSON = (
    '{"summary": "Invoice INV-42 for $1,250.00 from Globex.", '
    '"redFlags": ["Payment is 30 days overdue"], '
    '"highlights": ["Vendor matches approved list"], '
    '"confidenceScore": 0.92}'
)


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


@pytest.fixture
def project_id(session_factory):
    return make_project(session_factory, created_by="alice")


@pytest.fixture
def document(services, project_id):
    data = b"%PDF-1.7 invoice"
    return _run(services.ingestion.ingest(
        project_id, ALICE, "invoice_march.pdf", "application/pdf", BytesStream(data), len(data),
    ))


def _reload(session_factory, document_id: str) -> Document:
    async def _q():
        async with session_factory() as session:
            return await session.get(Document, document_id)
    return _run(_q())


def _results(session_factory, document_id: str) -> list[AnalysisResult]:
    async def _q():
        async with session_factory() as session:
            return list((await session.execute(
                select(AnalysisResult)
                .where(AnalysisResult.document_id == document_id)
                .order_by(AnalysisResult.created_at)
            )).scalars().all())
    return _run(_q())


def _backdate_processing(session_factory, document_id: str, seconds: int) -> None:
    async def _q():
        async with session_factory() as session:
            await session.execute(
                update(Document)
                .where(Document.id == document_id)
                .values(processing_started_at=datetime.now(UTC) - timedelta(seconds=seconds))
            )
            await session.commit()
    _run(_q())


# ---------------------------------------------------------------------------
# 1. Happy path
# ---------------------------------------------------------------------------


class TestAnalyze:
    def test_full_run(self, services, document, provider, extractor, search_index):
        provider.responses = [ANALYSIS_JSON]
        result = _run(services.orchestrator.analyze(document.id, ALICE))

        assert result.template == "invoice"
        assert result.document_category == "financial"
        assert result.summary.startswith("Invoice INV-42")
        assert result.red_flags == ["Payment is 30 days overdue"]
        assert result.highlights == ["Vendor matches approved list"]
        assert result.confidence_score == pytest.approx(0.92)
        assert result.extraction_degraded is False
        assert result.model == "fake-model"
        assert result.extracted_data["fields"]["invoice_id"] == "INV-42"

        reloaded = _reload(services.session_factory, document.id)
        assert reloaded.status == DocumentStatus.ANALYZED
        assert reloaded.processing_token is None
        assert reloaded.analyzed_at is not None
        assert reloaded.index_degraded is False

        assert extractor.calls == [(document.storage_path, "invoice")]
        content, metadata = search_index.entries[document.id]
        assert "INV-42" in content
        assert metadata["project_id"] == document.project_id

    def test_unknown_document(self, services):
        with pytest.raises(NotFound):
            _run(services.orchestrator.analyze("missing", ALICE))

    def test_archived_document_cannot_be_analyzed(self, services, document):
        _run(services.ingestion.delete_document(document.id, ALICE))
        with pytest.raises(NotFound):
            _run(services.orchestrator.analyze(document.id, ALICE))

    def test_get_active_result_before_analysis(self, services, document):
        with pytest.raises(NotFound):
            _run(services.orchestrator.get_active_result(document.id, ALICE))


# ---------------------------------------------------------------------------
# 2. Concurrent claims
# ---------------------------------------------------------------------------


class TestConcurrency:
    def test_exactly_one_concurrent_run_wins(self, services, document, extractor):
        extractor.delay = 0.3

        async def _both():
            return await asyncio.gather(
                services.orchestrator.analyze(document.id, ALICE),
                services.orchestrator.analyze(document.id, ALICE),
                return_exceptions=True,
            )

        outcomes = _run(_both())
        conflicts = [o for o in outcomes if isinstance(o, AlreadyInProgress)]
        successes = [o for o in outcomes if isinstance(o, AnalysisResult)]
        assert len(conflicts) == 1
        assert len(successes) == 1
        assert len(_results(services.session_factory, document.id)) == 1
        assert _reload(services.session_factory, document.id).status == DocumentStatus.ANALYZED

    def test_claim_rejects_processing_document(self, services, document):
        _run(services.orchestrator.claim(document.id))
        with pytest.raises(AlreadyInProgress):
            _run(services.orchestrator.claim(document.id))


# ---------------------------------------------------------------------------
# 3. Stage failures
# ---------------------------------------------------------------------------


class TestStageFailures:
    def test_extraction_failure_falls_back_to_minimal(self, services, document, extractor, provider):
        extractor.error = "corrupt file"
        result = _run(services.orchestrator.analyze(document.id, ALICE))

        assert result.extraction_degraded is True
        assert result.extracted_data["degraded_reason"] == "corrupt file"
        assert "invoice_march.pdf" in result.extracted_data["content"]
        assert _reload(services.session_factory, document.id).status == DocumentStatus.ANALYZED

    def test_extraction_failure_without_fallback_is_an_error(self, services, document, extractor):
        extractor.error = "corrupt file"
        services.orchestrator.fallback_enabled = False
        with pytest.raises(ExtractionFailed):
            _run(services.orchestrator.analyze(document.id, ALICE))

        reloaded = _reload(services.session_factory, document.id)
        assert reloaded.status == DocumentStatus.ERROR
        assert reloaded.error_stage == "extraction"
        assert _results(services.session_factory, document.id) == []

    def test_unavailable_extractor_falls_back_to_minimal(self, services, document, extractor):
        extractor.available = False
        result = _run(services.orchestrator.analyze(document.id, ALICE))

        assert result.extraction_degraded is True
        assert extractor.calls == []
        assert _reload(services.session_factory, document.id).status == DocumentStatus.ANALYZED

    def test_extraction_timeout_uses_fallback(self, services, document, extractor):
        extractor.delay = 0.5
        services.orchestrator.extraction_timeout = 0.05
        result = _run(services.orchestrator.analyze(document.id, ALICE))
        assert result.extraction_degraded is True
        assert "timed out" in result.extracted_data["degraded_reason"]

    def test_summarization_failure_is_an_error(self, services, document, provider):
        provider.error = RuntimeError("rate limited")
        with pytest.raises(SummarizationFailed):
            _run(services.orchestrator.analyze(document.id, ALICE))

        reloaded = _reload(services.session_factory, document.id)
        assert reloaded.status == DocumentStatus.ERROR
        assert reloaded.error_stage == "summarization"
        assert "rate limited" in reloaded.error_message

    def test_summarizer_without_model_is_unavailable(self, services, document):
        services.orchestrator.summarizer = Summarizer(None)
        with pytest.raises(SummarizationUnavailable):
            _run(services.orchestrator.analyze(document.id, ALICE))
        assert _reload(services.session_factory, document.id).error_stage == "summarization"

    def test_error_document_can_be_retried(self, services, document, provider):
        provider.error = RuntimeError("rate limited")
        with pytest.raises(SummarizationFailed):
            _run(services.orchestrator.analyze(document.id, ALICE))

        provider.error = None
        _run(services.orchestrator.analyze(document.id, ALICE))
        reloaded = _reload(services.session_factory, document.id)
        assert reloaded.status == DocumentStatus.ANALYZED
        assert reloaded.error_stage is None

    def test_index_failure_degrades_and_schedules_reindex(
        self, services, document, search_index, reindex_scheduler,
    ):
        search_index.fail_upsert = True
        result = _run(services.orchestrator.analyze(document.id, ALICE))

        assert result.id
        reloaded = _reload(services.session_factory, document.id)
        assert reloaded.status == DocumentStatus.ANALYZED
        assert reloaded.index_degraded is True
        reindex_scheduler.assert_called_once_with(document.id)

    def test_unavailable_index_still_analyzes(self, services, document, search_index, reindex_scheduler):
        search_index.available = False
        _run(services.orchestrator.analyze(document.id, ALICE))

        reloaded = _reload(services.session_factory, document.id)
        assert reloaded.status == DocumentStatus.ANALYZED
        assert reloaded.index_degraded is True
        assert search_index.entries == {}
        reindex_scheduler.assert_called_once_with(document.id)

    def test_scheduler_failure_does_not_fail_the_run(self, services, document, search_index, reindex_scheduler):
        search_index.fail_upsert = True
        reindex_scheduler.side_effect = ConnectionError("broker down")
        _run(services.orchestrator.analyze(document.id, ALICE))
        assert _reload(services.session_factory, document.id).status == DocumentStatus.ANALYZED

    def test_failures_are_audited(self, services, document, provider):
        provider.error = RuntimeError("boom")
        with pytest.raises(SummarizationFailed):
            _run(services.orchestrator.analyze(document.id, ALICE))

        async def _q():
            async with services.session_factory() as session:
                return (await session.execute(
                    select(AuditEvent).where(AuditEvent.action == "document.analyze")
                )).scalars().all()

        events = _run(_q())
        assert [(e.outcome, e.detail["stage"]) for e in events] == [("failure", "summarization")]


def _analyze_events(session_factory) -> list[AuditEvent]:
    async def _q():
        async with session_factory() as session:
            return list((await session.execute(
                select(AuditEvent)
                .where(AuditEvent.action == "document.analyze")
                .order_by(AuditEvent.id)
            )).scalars().all())
    return _run(_q())


class TestTriggerAudit:
    def test_denied_trigger_is_audited(self, services, document):
        with pytest.raises(AccessDenied):
            _run(services.orchestrator.analyze(document.id, Actor("mallory")))

        events = _analyze_events(services.session_factory)
        assert [(e.actor_id, e.outcome, e.resource_id) for e in events] == [
            ("mallory", "denied", document.id),
        ]
        assert events[0].project_id == document.project_id
        assert _reload(services.session_factory, document.id).status == DocumentStatus.UPLOADED

    def test_unknown_document_trigger_is_audited(self, services):
        with pytest.raises(NotFound):
            _run(services.orchestrator.analyze("no-such-document", ALICE))

        events = _analyze_events(services.session_factory)
        assert [(e.outcome, e.resource_id, e.detail["error"]) for e in events] == [
            ("failure", "no-such-document", "not_found"),
        ]

    def test_queued_trigger_is_audited(self, services, document):
        _run(services.orchestrator.record_task(document, "task-7", ALICE))

        events = _analyze_events(services.session_factory)
        assert [(e.outcome, e.detail["task_id"]) for e in events] == [("queued", "task-7")]
        assert _reload(services.session_factory, document.id).celery_task_id == "task-7"


# ---------------------------------------------------------------------------
# 4. Re-analysis
# ---------------------------------------------------------------------------


class TestReanalysis:
    def test_new_result_supersedes_old(self, services, document, provider):
        provider.responses = [ANALYSIS_JSON, '{"summary": "Second pass.", "confidenceScore": 0.5}']
        first = _run(services.orchestrator.analyze(document.id, ALICE))
        second = _run(services.orchestrator.analyze(document.id, ALICE))

        results = {r.id: r for r in _results(services.session_factory, document.id)}
        assert len(results) == 2
        assert results[first.id].is_active is False
        assert results[first.id].superseded_at is not None
        assert results[second.id].is_active is True

        active = _run(services.orchestrator.get_active_result(document.id, ALICE))
        assert active.id == second.id
        assert active.summary == "Second pass."


# ---------------------------------------------------------------------------
# 5. Stale sweep & late finish
# ---------------------------------------------------------------------------


class TestStaleSweep:
    def test_sweep_reclaims_exactly_once(self, services, document):
        _run(services.orchestrator.claim(document.id))
        _backdate_processing(services.session_factory, document.id, 3600)

        assert _run(services.orchestrator.sweep_stale(600)) == [document.id]
        assert _run(services.orchestrator.sweep_stale(600)) == []

        reloaded = _reload(services.session_factory, document.id)
        assert reloaded.status == DocumentStatus.ERROR
        assert reloaded.error_stage == "timeout"
        assert reloaded.processing_token is None

    def test_sweep_ignores_recent_runs(self, services, document):
        _run(services.orchestrator.claim(document.id))
        assert _run(services.orchestrator.sweep_stale(600)) == []
        assert _reload(services.session_factory, document.id).status == DocumentStatus.PROCESSING

    def test_late_finish_cannot_overwrite_timeout(self, services, document):
        orchestrator = services.orchestrator

        class SweepingExtractor(FakeExtractor):
            """Lets the sweep reclaim the document while extraction is running."""

            async def extract(self, handle, template):
                await orchestrator.sweep_stale(max_age_seconds=-1)
                return await super().extract(handle, template)

        orchestrator.extractor = SweepingExtractor()
        with pytest.raises(AnalysisTimedOut):
            _run(orchestrator.analyze(document.id, ALICE))

        reloaded = _reload(services.session_factory, document.id)
        assert reloaded.status == DocumentStatus.ERROR
        assert reloaded.error_stage == "timeout"
        assert _results(services.session_factory, document.id) == []

    def test_timed_out_document_can_be_retried(self, services, document):
        _run(services.orchestrator.claim(document.id))
        _backdate_processing(services.session_factory, document.id, 3600)
        _run(services.orchestrator.sweep_stale(600))

        _run(services.orchestrator.analyze(document.id, ALICE))
        assert _reload(services.session_factory, document.id).status == DocumentStatus.ANALYZED


# ---------------------------------------------------------------------------
# 6. Re-index & reconciliation
# ---------------------------------------------------------------------------


def _age_blob(blob_store, path: str, seconds: int) -> None:
    old = time.time() - seconds
    os.utime(blob_store.root / path, (old, old))


class TestMaintenance:
    def test_reindex_clears_degraded_flag(self, services, document, search_index):
        search_index.fail_upsert = True
        _run(services.orchestrator.analyze(document.id, ALICE))
        search_index.fail_upsert = False

        assert _run(services.orchestrator.reindex(document.id)) is True
        assert _reload(services.session_factory, document.id).index_degraded is False
        assert document.id in search_index.entries

    def test_reindex_without_result_is_noop(self, services, document):
        assert _run(services.orchestrator.reindex(document.id)) is False

    def test_reconcile(self, services, document, blob_store, search_index, project_id):
        # Degraded index entry
        search_index.fail_upsert = True
        _run(services.orchestrator.analyze(document.id, ALICE))
        search_index.fail_upsert = False

        # Old orphan blob, fresh orphan blob, stale upload part
        _run(blob_store.put(f"{project_id}/orphan.pdf", b"x", "application/pdf"))
        _age_blob(blob_store, f"{project_id}/orphan.pdf", 7200)
        _run(blob_store.put(f"{project_id}/fresh.pdf", b"x", "application/pdf"))
        _run(blob_store.put("_uploads/dead/part-00000", b"x", "application/octet-stream"))
        _age_blob(blob_store, "_uploads/dead/part-00000", 7200)

        # A second document whose blob has gone missing
        data = b"ledger"
        missing = _run(services.ingestion.ingest(
            project_id, ALICE, "ledger.csv", "text/csv", BytesStream(data), len(data),
        ))
        _run(blob_store.delete(missing.storage_path))

        report = _run(services.orchestrator.reconcile_storage())

        assert report.orphan_blobs_removed == [f"{project_id}/orphan.pdf"]
        assert report.stale_parts_removed == ["_uploads/dead/part-00000"]
        assert report.missing_blobs == [missing.id]
        assert report.reindexed == [document.id]

        assert _run(blob_store.exists(f"{project_id}/fresh.pdf")) is True
        assert _run(blob_store.exists(document.storage_path)) is True
        broken = _reload(services.session_factory, missing.id)
        assert broken.status == DocumentStatus.ERROR
        assert broken.error_stage == "storage"
        assert _reload(services.session_factory, document.id).index_degraded is False

    def test_reconcile_removes_orphan_index_entries(self, services, document, search_index, project_id):
        _run(services.orchestrator.analyze(document.id, ALICE))
        data = b"ledger"
        removed = _run(services.ingestion.ingest(
            project_id, ALICE, "ledger.csv", "text/csv", BytesStream(data), len(data),
        ))
        _run(services.orchestrator.analyze(removed.id, ALICE))

        # Hard delete whose index cleanup fails leaves the entry behind
        search_index.fail_delete = True
        _run(services.ingestion.delete_document(removed.id, ALICE, hard=True))
        assert removed.id in search_index.entries
        search_index.fail_delete = False

        report = _run(services.orchestrator.reconcile_storage())

        assert report.orphan_index_entries_removed == [removed.id]
        assert set(search_index.entries) == {document.id}

    def test_reconcile_skips_unavailable_index(self, services, document, search_index):
        search_index.entries["gone"] = ("text", {"project_id": "p"})
        search_index.available = False
        report = _run(services.orchestrator.reconcile_storage())
        assert report.orphan_index_entries_removed == []
        assert "gone" in search_index.entries

    def test_reconcile_is_idempotent(self, services, document, blob_store):
        _run(blob_store.delete(document.storage_path))
        first = _run(services.orchestrator.reconcile_storage())
        second = _run(services.orchestrator.reconcile_storage())
        assert first.missing_blobs == [document.id]
        assert second.missing_blobs == []


def test_fake_provider_default_response_parses():
    """Sanity check of the shared fake used throughout these tests."""
    response = _run(FakeProvider().complete([{"role": "user", "content": "hi"}]))
    assert '"summary"' in response.content
