# =============================================================================
# Unit Tests — Blob Stores
# =============================================================================
#
# LocalBlobStore runs against tmp_path. SupabaseBlobStore runs against an
# httpx.MockTransport, so no network is touched.
# =============================================================================

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from app.config import Settings, StorageConfig
from app.errors import StorageError
from app.services.storage import LocalBlobStore, SupabaseBlobStore, create_blob_store


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Local filesystem
# ---------------------------------------------------------------------------


class TestLocalBlobStore:
    @pytest.fixture
    def store(self, tmp_path):
        return LocalBlobStore(StorageConfig(root_dir=str(tmp_path / "blobs")))

    def test_put_then_get(self, store):
        uri = _run(store.put("p1/a.pdf", b"%PDF-1.7", "application/pdf"))
        assert uri.startswith("file://")
        assert _run(store.get("p1/a.pdf")) == b"%PDF-1.7"
        assert _run(store.exists("p1/a.pdf")) is True

    def test_delete_missing_is_not_an_error(self, store):
        _run(store.delete("p1/never-written.pdf"))

    def test_path_escape_rejected(self, store):
        with pytest.raises(StorageError):
            _run(store.put("../outside.txt", b"x", "text/plain"))

    def test_compose_concatenates_in_order(self, store):
        _run(store.put("_uploads/u1/part-00000", b"abc", "application/octet-stream"))
        _run(store.put("_uploads/u1/part-00001", b"def", "application/octet-stream"))
        _run(store.compose(
            ["_uploads/u1/part-00000", "_uploads/u1/part-00001"], "p1/doc.csv", "text/csv",
        ))
        assert _run(store.get("p1/doc.csv")) == b"abcdef"

    def test_compose_with_missing_part_leaves_no_destination(self, store):
        _run(store.put("_uploads/u2/part-00000", b"abc", "application/octet-stream"))
        with pytest.raises(StorageError):
            _run(store.compose(
                ["_uploads/u2/part-00000", "_uploads/u2/part-00001"], "p1/doc.csv", "text/csv",
            ))
        assert _run(store.exists("p1/doc.csv")) is False

    def test_list_paths_filters_prefix(self, store):
        _run(store.put("p1/a.pdf", b"1", "application/pdf"))
        _run(store.put("p2/b.pdf", b"22", "application/pdf"))
        listed = _run(store.list_paths("p2/"))
        assert [b.path for b in listed] == ["p2/b.pdf"]
        assert listed[0].size == 2
        assert listed[0].modified_at is not None

    def test_read_handle_missing_raises(self, store):
        with pytest.raises(StorageError):
            _run(store.read_handle("p1/missing.pdf"))

    def test_read_handle_points_at_file(self, store):
        _run(store.put("p1/a.pdf", b"1", "application/pdf"))
        handle = _run(store.read_handle("p1/a.pdf"))
        assert handle.local_path is not None
        assert handle.source.endswith("a.pdf")


# ---------------------------------------------------------------------------
# Supabase
# ---------------------------------------------------------------------------


def _supabase(handler) -> SupabaseBlobStore:
    store = SupabaseBlobStore(StorageConfig(
        backend="supabase",
        supabase_url="https://example.supabase.co",
        supabase_service_role_key="service-key",
        bucket="documents",
    ))
    transport = httpx.MockTransport(handler)
    store._client = lambda: httpx.AsyncClient(transport=transport, headers=store.headers)
    return store


class TestSupabaseBlobStore:
    def test_requires_credentials(self):
        with pytest.raises(StorageError):
            SupabaseBlobStore(StorageConfig(backend="supabase"))

    def test_put_sends_upsert_with_service_key(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["authorization"]
            seen["upsert"] = request.headers["x-upsert"]
            return httpx.Response(200, json={"Key": "documents/p1/a.pdf"})

        store = _supabase(handler)
        url = _run(store.put("p1/a.pdf", b"data", "application/pdf"))
        assert seen["url"] == "https://example.supabase.co/storage/v1/object/documents/p1/a.pdf"
        assert seen["auth"] == "Bearer service-key"
        assert seen["upsert"] == "true"
        assert url == seen["url"]

    def test_put_http_error_raises_storage_error(self):
        store = _supabase(lambda request: httpx.Response(500, text="boom"))
        with pytest.raises(StorageError):
            _run(store.put("p1/a.pdf", b"data", "application/pdf"))

    def test_signed_url_is_absolute(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert json.loads(request.content) == {"expiresIn": 60}
            return httpx.Response(200, json={"signedURL": "/object/sign/documents/p1/a.pdf?token=t"})

        store = _supabase(handler)
        url = _run(store.signed_url("p1/a.pdf"))
        assert url == "https://example.supabase.co/storage/v1/object/sign/documents/p1/a.pdf?token=t"

    def test_list_paths_descends_into_folders(self):
        def handler(request: httpx.Request) -> httpx.Response:
            prefix = json.loads(request.content)["prefix"]
            if prefix == "":
                return httpx.Response(200, json=[{"name": "p1", "id": None}])
            return httpx.Response(200, json=[{
                "name": "a.pdf",
                "id": "obj-1",
                "metadata": {"size": 12},
                "updated_at": "2024-03-01T10:00:00Z",
            }])

        store = _supabase(handler)
        listed = _run(store.list_paths(""))
        assert [b.path for b in listed] == ["p1/a.pdf"]
        assert listed[0].size == 12
        assert listed[0].modified_at.year == 2024

    def test_delete_tolerates_missing(self):
        store = _supabase(lambda request: httpx.Response(404))
        _run(store.delete("p1/gone.pdf"))


class TestFactory:
    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_blob_store(StorageConfig(backend="s3"))

    def test_local_backend(self, tmp_path):
        store = create_blob_store(StorageConfig(backend="local", root_dir=str(tmp_path)))
        assert store.backend_name == "local"

    def test_built_from_settings(self, tmp_path):
        settings = Settings(_env_file=None, storage_backend="local", upload_dir=str(tmp_path / "blobs"))
        store = create_blob_store(settings.storage_config())
        assert isinstance(store, LocalBlobStore)
        _run(store.put("p1/a.csv", b"a,b", "text/csv"))
        assert (tmp_path / "blobs" / "p1" / "a.csv").read_bytes() == b"a,b"
