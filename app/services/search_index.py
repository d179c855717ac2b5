# =============================================================================
# Search Index — Pluggable Semantic Search Backend
# =============================================================================
#
# One index entry per document: id = Document.id, content = extracted text
# plus the AI summary, metadata carries project_id and document_id for
# filtering. Re-indexing overwrites by id (idempotent upsert).
#
# ARCHITECTURE:
#   SearchIndex (Protocol)
#   ├── ChromaSearchIndex    — ChromaDB (on-disk or client/server)
#   ├── PgVectorSearchIndex  — PostgreSQL + pgvector (index_entries table)
#   └── DisabledSearchIndex  — INDEX_BACKEND=none, always unavailable
#
# DESIGN DECISION: The index is a derived, rebuildable artifact.
# Callers treat every failure here as non-fatal: the orchestrator marks the
# document index-degraded and schedules a re-index; the assistant falls
# back to persisted analysis summaries. This module only has to report
# failures precisely:
#   IndexUnavailable — the backend cannot be used at all (not configured,
#                      no embedding credentials)
#   IndexDegraded    — a call was attempted and failed
#
# DESIGN DECISION: Without CHROMA_URL, Chroma persists under CHROMA_PATH.
# The API and every Celery worker must see the same index, so the
# in-memory client is never used outside tests.
#
# DESIGN DECISION: ChromaDB's client and the embedder are synchronous and
# run in asyncio.to_thread(), so the event loop never blocks on them.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

import chromadb
from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import IndexConfig
from app.db.models import IndexEntry
from app.errors import IndexDegraded, IndexUnavailable
from app.services.embedder import Embedder

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class IndexHit:
    """One search result. `score` is cosine similarity (higher = closer)."""

    id: str
    content: str
    score: float
    metadata: dict = field(default_factory=dict)


@runtime_checkable
class SearchIndex(Protocol):
    """Interface every search backend implements."""

    backend_name: str

    @property
    def available(self) -> bool: ...

    async def upsert(self, entry_id: str, content: str, metadata: dict) -> None: ...

    async def search(self, query: str, project_id: str, top_k: int = 5) -> list[IndexHit]:
        """Return up to `top_k` hits restricted to `project_id`, best first."""
        ...

    async def delete(self, entry_id: str) -> None: ...

    async def list_ids(self) -> list[str]:
        """Ids of every entry in the index (used by reconciliation)."""
        ...


# ---------------------------------------------------------------------------
# Implementation 1: ChromaDB
# ---------------------------------------------------------------------------


class ChromaSearchIndex:
    """
    ChromaDB-backed search index.

    Single collection; project filtering uses Chroma's metadata where
    clause. Cosine distance, matching the pgvector backend.
    """

    backend_name = "chroma"

    def __init__(
        self,
        config: IndexConfig,
        embedder: Embedder,
        client: chromadb.ClientAPI | None = None,
    ) -> None:
        self.config = config
        self.embedder = embedder
        if client is not None:
            self._client = client
        elif config.chroma_url:
            self._client = chromadb.HttpClient(host=config.chroma_url)
        else:
            self._client = chromadb.PersistentClient(path=config.chroma_path)
        self._collection = self._client.get_or_create_collection(
            name=config.collection,
            metadata={"hnsw:space": "cosine"},
        )

    @property
    def available(self) -> bool:
        return self.embedder.available

    def _require(self) -> None:
        if not self.available:
            raise IndexUnavailable("No embedding credentials configured")

    async def upsert(self, entry_id: str, content: str, metadata: dict) -> None:
        self._require()

        def _sync_upsert() -> None:
            embedding = self.embedder.embed_query(content)
            self._collection.upsert(
                ids=[entry_id],
                documents=[content],
                embeddings=[embedding],
                metadatas=[_sanitise_chroma_metadata(metadata)],
            )

        try:
            await asyncio.to_thread(_sync_upsert)
        except Exception as exc:
            raise IndexDegraded(f"Chroma upsert failed: {exc}") from exc
        logger.info("Indexed document %s in ChromaDB", entry_id)

    async def search(self, query: str, project_id: str, top_k: int = 5) -> list[IndexHit]:
        self._require()

        def _sync_search() -> list[IndexHit]:
            embedding = self.embedder.embed_query(query)
            results = self._collection.query(
                query_embeddings=[embedding],
                n_results=top_k,
                where={"project_id": project_id},
                include=["documents", "metadatas", "distances"],
            )
            hits: list[IndexHit] = []
            if results and results["ids"] and results["ids"][0]:
                for i, chroma_id in enumerate(results["ids"][0]):
                    distance = results["distances"][0][i] if results["distances"] else 0.0
                    hits.append(IndexHit(
                        id=chroma_id,
                        content=results["documents"][0][i] if results["documents"] else "",
                        # Chroma cosine distance is in [0, 2]
                        score=round(1.0 - distance, 4),
                        metadata=results["metadatas"][0][i] if results["metadatas"] else {},
                    ))
            return hits

        try:
            return await asyncio.to_thread(_sync_search)
        except Exception as exc:
            raise IndexDegraded(f"Chroma search failed: {exc}") from exc

    async def delete(self, entry_id: str) -> None:
        try:
            await asyncio.to_thread(self._collection.delete, ids=[entry_id])
        except Exception as exc:
            raise IndexDegraded(f"Chroma delete failed: {exc}") from exc

    async def list_ids(self) -> list[str]:
        try:
            result = await asyncio.to_thread(self._collection.get, include=[])
        except Exception as exc:
            raise IndexDegraded(f"Chroma listing failed: {exc}") from exc
        return list(result["ids"])


# ---------------------------------------------------------------------------
# Implementation 2: pgvector
# ---------------------------------------------------------------------------


class PgVectorSearchIndex:
    """
    pgvector-backed search index stored in the `index_entries` table.

    Upserts use INSERT ... ON CONFLICT (id) DO UPDATE.
    """

    backend_name = "pgvector"

    def __init__(
        self,
        config: IndexConfig,
        embedder: Embedder,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        self.config = config
        self.embedder = embedder
        self._session_factory = session_factory

    @property
    def available(self) -> bool:
        return self.embedder.available

    def _require(self) -> None:
        if not self.available:
            raise IndexUnavailable("No embedding credentials configured")

    async def upsert(self, entry_id: str, content: str, metadata: dict) -> None:
        self._require()
        try:
            embedding = await asyncio.to_thread(self.embedder.embed_query, content)
            stmt = pg_insert(IndexEntry).values(
                id=entry_id,
                project_id=metadata["project_id"],
                content=content,
                metadata_=metadata,
                embedding=embedding,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[IndexEntry.id],
                set_={
                    "project_id": stmt.excluded.project_id,
                    "content": stmt.excluded.content,
                    "metadata_": stmt.excluded.metadata_,
                    "embedding": stmt.excluded.embedding,
                },
            )
            async with self._session_factory() as session:
                await session.execute(stmt)
                await session.commit()
        except Exception as exc:
            raise IndexDegraded(f"pgvector upsert failed: {exc}") from exc
        logger.info("Indexed document %s in pgvector", entry_id)

    async def search(self, query: str, project_id: str, top_k: int = 5) -> list[IndexHit]:
        self._require()
        try:
            embedding = await asyncio.to_thread(self.embedder.embed_query, query)
            distance = IndexEntry.embedding.cosine_distance(embedding)
            stmt = (
                select(IndexEntry, distance.label("distance"))
                .where(IndexEntry.project_id == project_id)
                .order_by(distance)
                .limit(top_k)
            )
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).all()
        except Exception as exc:
            raise IndexDegraded(f"pgvector search failed: {exc}") from exc

        return [
            IndexHit(
                id=entry.id,
                content=entry.content,
                score=round(1.0 - dist, 4),
                metadata=entry.metadata_ or {},
            )
            for entry, dist in rows
        ]

    async def delete(self, entry_id: str) -> None:
        try:
            async with self._session_factory() as session:
                await session.execute(delete(IndexEntry).where(IndexEntry.id == entry_id))
                await session.commit()
        except Exception as exc:
            raise IndexDegraded(f"pgvector delete failed: {exc}") from exc

    async def list_ids(self) -> list[str]:
        try:
            async with self._session_factory() as session:
                return list((await session.execute(select(IndexEntry.id))).scalars().all())
        except Exception as exc:
            raise IndexDegraded(f"pgvector listing failed: {exc}") from exc


# ---------------------------------------------------------------------------
# Implementation 3: disabled
# ---------------------------------------------------------------------------


class DisabledSearchIndex:
    """Stand-in when no index backend is configured."""

    backend_name = "none"

    @property
    def available(self) -> bool:
        return False

    async def upsert(self, entry_id: str, content: str, metadata: dict) -> None:
        raise IndexUnavailable("Search index is disabled")

    async def search(self, query: str, project_id: str, top_k: int = 5) -> list[IndexHit]:
        raise IndexUnavailable("Search index is disabled")

    async def delete(self, entry_id: str) -> None:
        raise IndexUnavailable("Search index is disabled")

    async def list_ids(self) -> list[str]:
        raise IndexUnavailable("Search index is disabled")


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_search_index(
    config: IndexConfig,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> SearchIndex:
    """
    Build the search index selected by `config.backend`.

    - "chroma"   → ChromaSearchIndex (default)
    - "pgvector" → PgVectorSearchIndex (needs a session factory)
    - "none"     → DisabledSearchIndex
    """
    if config.backend == "none":
        return DisabledSearchIndex()
    embedder = Embedder(config.embedding)
    if config.backend == "chroma":
        logger.info("Using ChromaDB search index")
        return ChromaSearchIndex(config, embedder)
    if config.backend == "pgvector":
        if session_factory is None:
            raise ValueError("pgvector index backend requires a session factory")
        logger.info("Using pgvector search index")
        return PgVectorSearchIndex(config, embedder, session_factory)
    raise ValueError(
        f"Unknown index backend: '{config.backend}'. "
        "Supported: 'chroma', 'pgvector', 'none'"
    )


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _sanitise_chroma_metadata(metadata: dict) -> dict:
    """
    ChromaDB metadata values must be str, int, float or bool.

    - list → comma-separated string
    - None → empty string
    """
    sanitised = {}
    for key, value in metadata.items():
        if value is None:
            sanitised[key] = ""
        elif isinstance(value, list):
            sanitised[key] = ",".join(str(v) for v in value)
        elif isinstance(value, (str, int, float, bool)):
            sanitised[key] = value
        else:
            sanitised[key] = str(value)
    return sanitised
