# =============================================================================
# Unit Tests — Search Index (ChromaDB backend, disabled backend, factory)
# =============================================================================
#
# Uses ChromaDB's in-process mode (no external services needed) with a fake
# embedder that maps keywords onto fixed 3-d vectors.
# pgvector is not covered here; it requires a running PostgreSQL instance.
# =============================================================================

from __future__ import annotations

import asyncio
import itertools
from types import SimpleNamespace
from unittest.mock import MagicMock

import chromadb
import pytest

from app.config import EmbeddingConfig, IndexConfig, Settings
from app.errors import IndexUnavailable
from app.services.embedder import Embedder, _get_encoder, truncate_to_tokens
from app.services.search_index import (
    ChromaSearchIndex,
    DisabledSearchIndex,
    SearchIndex,
    _sanitise_chroma_metadata,
    create_search_index,
)

_collection_ids = itertools.count()


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


class KeywordEmbedder:
    """Deterministic embedder: revenue → x axis, expenses → y axis, else z."""

    def __init__(self, available: bool = True):
        self.available = available

    def embed_query(self, text: str) -> list[float]:
        text = text.lower()
        if "revenue" in text:
            return [1.0, 0.0, 0.0]
        if "expense" in text:
            return [0.0, 1.0, 0.0]
        return [0.0, 0.0, 1.0]


def _make_index(embedder=None) -> ChromaSearchIndex:
    """Fresh index with a unique collection per test."""
    config = IndexConfig(backend="chroma", collection=f"test_index_{next(_collection_ids)}")
    return ChromaSearchIndex(config, embedder or KeywordEmbedder(), client=chromadb.EphemeralClient())


def _meta(project_id: str, document_id: str) -> dict:
    return {"project_id": project_id, "document_id": document_id}


class TestChromaSearchIndex:
    def test_implements_protocol(self):
        assert isinstance(_make_index(), SearchIndex)

    def test_search_ranks_closest_first(self):
        index = _make_index()
        _run(index.upsert("d1", "Revenue increased by 15%", _meta("p1", "d1")))
        _run(index.upsert("d2", "Expenses decreased by 5%", _meta("p1", "d2")))

        hits = _run(index.search("revenue growth", "p1", top_k=2))

        assert [h.id for h in hits] == ["d1", "d2"]
        assert hits[0].score == pytest.approx(1.0)
        assert hits[0].metadata["document_id"] == "d1"
        assert hits[0].content == "Revenue increased by 15%"

    def test_search_is_restricted_to_project(self):
        index = _make_index()
        _run(index.upsert("d1", "Revenue for project one", _meta("p1", "d1")))
        _run(index.upsert("d2", "Revenue for project two", _meta("p2", "d2")))

        hits = _run(index.search("revenue", "p2"))

        assert [h.id for h in hits] == ["d2"]

    def test_upsert_overwrites_by_id(self):
        index = _make_index()
        _run(index.upsert("d1", "Revenue draft", _meta("p1", "d1")))
        _run(index.upsert("d1", "Expenses final", _meta("p1", "d1")))

        hits = _run(index.search("expenses", "p1"))

        assert len(hits) == 1
        assert hits[0].content == "Expenses final"

    def test_delete(self):
        index = _make_index()
        _run(index.upsert("d1", "Revenue", _meta("p1", "d1")))
        _run(index.delete("d1"))
        assert _run(index.search("revenue", "p1")) == []

    def test_list_ids(self):
        index = _make_index()
        _run(index.upsert("d1", "Revenue", _meta("p1", "d1")))
        _run(index.upsert("d2", "Expenses", _meta("p2", "d2")))
        assert sorted(_run(index.list_ids())) == ["d1", "d2"]

    def test_unavailable_embedder(self):
        index = _make_index(KeywordEmbedder(available=False))
        assert index.available is False
        with pytest.raises(IndexUnavailable):
            _run(index.upsert("d1", "Revenue", _meta("p1", "d1")))
        with pytest.raises(IndexUnavailable):
            _run(index.search("revenue", "p1"))


class TestDisabledSearchIndex:
    def test_always_unavailable(self):
        index = DisabledSearchIndex()
        assert index.available is False
        with pytest.raises(IndexUnavailable):
            _run(index.upsert("d1", "x", {}))
        with pytest.raises(IndexUnavailable):
            _run(index.search("x", "p1"))
        with pytest.raises(IndexUnavailable):
            _run(index.delete("d1"))
        with pytest.raises(IndexUnavailable):
            _run(index.list_ids())


class TestFactory:
    def test_none_backend(self):
        assert isinstance(create_search_index(IndexConfig(backend="none")), DisabledSearchIndex)

    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="Unknown index backend"):
            create_search_index(IndexConfig(backend="elastic"))

    def test_pgvector_requires_session_factory(self):
        with pytest.raises(ValueError, match="session factory"):
            create_search_index(IndexConfig(backend="pgvector"))

    def test_chroma_without_key_is_unavailable(self, tmp_path):
        index = create_search_index(IndexConfig(
            backend="chroma",
            chroma_path=str(tmp_path),
            collection=f"test_index_{next(_collection_ids)}",
            embedding=EmbeddingConfig(api_key=None),
        ))
        assert index.backend_name == "chroma"
        assert index.available is False


class TestSanitiseMetadata:
    def test_values_are_coerced(self):
        sanitised = _sanitise_chroma_metadata({
            "project_id": "p1",
            "red_flags": ["late", "no PO"],
            "client": None,
            "confidence": 0.9,
            "page_count": 3,
            "archived": False,
            "other": {"nested": True},
        })
        assert sanitised == {
            "project_id": "p1",
            "red_flags": "late,no PO",
            "client": "",
            "confidence": 0.9,
            "page_count": 3,
            "archived": False,
            "other": "{'nested': True}",
        }


class TestIndexDefaults:
    def test_default_backend_is_pgvector(self):
        assert Settings(_env_file=None).index_backend == "pgvector"

    def test_chroma_without_url_persists_to_disk(self, tmp_path):
        index = create_search_index(IndexConfig(
            backend="chroma",
            chroma_path=str(tmp_path / "chroma"),
            collection=f"test_index_{next(_collection_ids)}",
        ))
        assert index._client.get_settings().is_persistent is True
        assert (tmp_path / "chroma").exists()


# ---------------------------------------------------------------------------
# Embedding input limit
# ---------------------------------------------------------------------------


def _recording_client() -> MagicMock:
    """OpenAI client stand-in that records every embeddings input."""
    client = MagicMock()

    def _create(model, input, **kwargs):
        client.inputs.extend(input)
        return SimpleNamespace(
            data=[SimpleNamespace(index=i, embedding=[0.0, 0.0, 1.0]) for i in range(len(input))],
            usage=None,
        )

    client.inputs = []
    client.embeddings.create.side_effect = _create
    return client


class TestEmbeddingInputLimit:
    def test_short_text_is_unchanged(self):
        assert truncate_to_tokens("Invoice INV-42 totals $1,250.00", 50) == "Invoice INV-42 totals $1,250.00"

    def test_long_text_is_cut_to_budget(self):
        long_text = "audit evidence line. " * 20000
        cut = truncate_to_tokens(long_text, 100)
        assert long_text.startswith(cut)
        assert len(_get_encoder().encode(cut)) <= 100

    def test_embedder_sends_bounded_inputs(self):
        client = _recording_client()
        embedder = Embedder(EmbeddingConfig(api_key="k", max_input_tokens=8000), client=client)

        embedder.embed_batch(["short", "audit evidence line. " * 20000])

        assert client.inputs[0] == "short"
        assert len(_get_encoder().encode(client.inputs[1])) <= 8000

    def test_long_document_is_indexed_in_full(self):
        client = _recording_client()
        embedder = Embedder(EmbeddingConfig(api_key="k", max_input_tokens=8000), client=client)
        index = _make_index(embedder)
        content = "audit evidence line. " * 20000

        _run(index.upsert("d1", content, _meta("p1", "d1")))

        assert len(client.inputs[0]) < len(content)
        hits = _run(index.search("audit evidence", "p1"))
        assert [h.id for h in hits] == ["d1"]
        assert hits[0].content == content
