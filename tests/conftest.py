# =============================================================================
# Shared Test Fixtures — SQLite Database & Fake Adapters
# =============================================================================
#
# Tests run without PostgreSQL, Redis, Docling or any model API:
#   - database: a file-backed SQLite database per test (aiosqlite), NullPool
#     so each asyncio.run() gets fresh connections
#   - blob store: the real LocalBlobStore under tmp_path
#   - extractor / LLM provider / search index: in-memory fakes below
# =============================================================================

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.config import Settings, StorageConfig
from app.db.models import CORE_TABLES, Base, Project
from app.errors import ExtractionFailed, IndexDegraded
from app.models.extraction import ExtractedData, GenericFields, InvoiceFields
from app.services.container import build_services
from app.services.llm import LLMResponse
from app.services.search_index import IndexHit
from app.services.storage import LocalBlobStore
from app.services.summarizer import Summarizer


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeExtractor:
    """Returns a canned ExtractedData, or raises ExtractionFailed."""

    def __init__(self, data: ExtractedData | None = None, error: str | None = None, delay: float = 0.0):
        self.data = data or ExtractedData(
            content="Invoice No: INV-42\nTotal: $1,250.00",
            pages=1,
            key_value_pairs={"Invoice No": "INV-42", "Total": "$1,250.00"},
            fields=InvoiceFields(invoice_id="INV-42", invoice_total="$1,250.00"),
        )
        self.error = error
        self.delay = delay
        self.available = True
        self.calls: list[tuple[str, str]] = []

    async def extract(self, handle, template: str) -> ExtractedData:
        self.calls.append((handle.path, template))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise ExtractionFailed(self.error, stage="extraction")
        return self.data


class FakeProvider:
    """LLM provider returning scripted responses, oldest first."""

    def __init__(self, responses: list[str] | None = None, error: Exception | None = None):
        self.model = "fake-model"
        self.responses = list(responses or [])
        self.error = error
        self.calls: list[dict] = []

    async def complete(self, messages, system=None, temperature=None, max_tokens=None) -> LLMResponse:
        self.calls.append({"messages": messages, "system": system})
        if self.error is not None:
            raise self.error
        content = self.responses.pop(0) if self.responses else (
            '{"summary": "Looks fine.", "redFlags": [], "highlights": [], "confidenceScore": 0.9}'
        )
        return LLMResponse(content=content, model=self.model, input_tokens=10, output_tokens=5)


class FakeSearchIndex:
    """In-memory index; search returns every entry of the project with score 0.8."""

    backend_name = "fake"

    def __init__(self):
        self.entries: dict[str, tuple[str, dict]] = {}
        self.available = True
        self.fail_upsert = False
        self.fail_search = False
        self.fail_delete = False
        self.extra_hits: list[IndexHit] = []
        self.deleted: list[str] = []

    async def upsert(self, entry_id: str, content: str, metadata: dict) -> None:
        if self.fail_upsert:
            raise IndexDegraded("index write failed")
        self.entries[entry_id] = (content, dict(metadata))

    async def search(self, query: str, project_id: str, top_k: int = 5) -> list[IndexHit]:
        if self.fail_search:
            raise IndexDegraded("index search failed")
        hits = [
            IndexHit(id=entry_id, content=content, score=0.8, metadata=metadata)
            for entry_id, (content, metadata) in self.entries.items()
            if metadata.get("project_id") == project_id
        ]
        return (hits + list(self.extra_hits))[:top_k]

    async def delete(self, entry_id: str) -> None:
        if self.fail_delete:
            raise IndexDegraded("index delete failed")
        self.deleted.append(entry_id)
        self.entries.pop(entry_id, None)

    async def list_ids(self) -> list[str]:
        return list(self.entries)


class BytesStream:
    """Async byte stream over an in-memory payload (stands in for UploadFile)."""

    def __init__(self, data: bytes, max_read: int | None = None):
        self._data = data
        self._pos = 0
        self._max_read = max_read

    async def read(self, size: int = -1) -> bytes:
        if size < 0:
            size = len(self._data) - self._pos
        if self._max_read is not None:
            size = min(size, self._max_read)
        block = self._data[self._pos:self._pos + size]
        self._pos += len(block)
        return block


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
def session_factory(tmp_path) -> async_sessionmaker[AsyncSession]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)

    async def _create() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all, tables=CORE_TABLES)

    _run(_create())
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    _run(engine.dispose())


def make_project(
    session_factory,
    *,
    created_by: str = "alice",
    assigned_to: list[str] | None = None,
    name: str = "FY24 Audit",
    client_name: str | None = "Acme Ltd",
) -> str:
    async def _create() -> str:
        async with session_factory() as session:
            project = Project(
                name=name,
                client_name=client_name,
                created_by=created_by,
                assigned_to=assigned_to or [],
            )
            session.add(project)
            await session.commit()
            return project.id

    return _run(_create())


# ---------------------------------------------------------------------------
# Adapters & services
# ---------------------------------------------------------------------------


@pytest.fixture
def blob_store(tmp_path) -> LocalBlobStore:
    return LocalBlobStore(StorageConfig(root_dir=str(tmp_path / "blobs")))


@pytest.fixture
def extractor() -> FakeExtractor:
    return FakeExtractor()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def search_index() -> FakeSearchIndex:
    return FakeSearchIndex()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        debug=False,
        index_backend="none",
        chunked_upload_threshold=64,
        upload_chunk_size=16,
        max_upload_bytes=4096,
    )


@pytest.fixture
def reindex_scheduler() -> MagicMock:
    return MagicMock()


@pytest.fixture
def services(test_settings, session_factory, blob_store, extractor, provider, search_index, reindex_scheduler):
    return build_services(
        test_settings,
        session_factory,
        blob_store=blob_store,
        extractor=extractor,
        summarizer=Summarizer(provider, input_chars=test_settings.summarization_input_chars),
        search_index=search_index,
        schedule_reindex=reindex_scheduler,
    )


@pytest.fixture
def generic_extraction() -> ExtractedData:
    return ExtractedData(content="Balance sheet as of 31 Dec", pages=2, fields=GenericFields())
