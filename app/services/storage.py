# =============================================================================
# Object Storage — Pluggable Blob Store
# =============================================================================
#
# Stores the original bytes of every uploaded document. The database row
# only references the blob by its storage path.
#
# ARCHITECTURE:
#   BlobStore (Protocol)
#   ├── LocalBlobStore     — filesystem under `root_dir` (development, tests)
#   └── SupabaseBlobStore  — Supabase Storage REST API over httpx
#
# DESIGN DECISION: `compose()` is part of the interface.
# Large uploads are written as parts under temporary keys and then
# reassembled into the canonical key. Both backends guarantee that the
# canonical key only ever appears complete:
#   - local: parts are concatenated into a temp file in the destination
#     directory, then os.replace() moves it into place (atomic rename)
#   - supabase: parts are spooled to a local temp file, then uploaded to
#     the canonical key in a single request
#
# DESIGN DECISION: Every backend failure surfaces as StorageError.
# Callers never see OSError or httpx exceptions from this module.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Protocol, runtime_checkable

import httpx

from app.config import StorageConfig
from app.errors import StorageError

logger = logging.getLogger(__name__)

# Prefix under which chunked uploads keep their temporary parts
UPLOAD_PARTS_PREFIX = "_uploads/"

_COPY_BUFFER = 1024 * 1024


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class BlobInfo:
    """One stored object, as returned by list_paths()."""

    path: str
    size: int
    modified_at: datetime | None = None


@dataclass
class BlobHandle:
    """
    Short-lived read access to one stored object.

    Exactly one of `local_path` / `url` is set. Extractors accept either.
    """

    path: str
    local_path: str | None = None
    url: str | None = None
    expires_at: datetime | None = None

    @property
    def source(self) -> str:
        return self.local_path or self.url or ""


@runtime_checkable
class BlobStore(Protocol):
    """Interface every object storage backend implements."""

    backend_name: str

    async def put(self, path: str, data: bytes, content_type: str) -> str:
        """Store `data` at `path`; return an access descriptor (URL or URI)."""
        ...

    async def get(self, path: str) -> bytes: ...

    async def delete(self, path: str) -> None:
        """Remove `path`. Deleting a missing object is not an error."""
        ...

    async def exists(self, path: str) -> bool: ...

    async def list_paths(self, prefix: str = "") -> list[BlobInfo]: ...

    async def compose(self, part_paths: list[str], dest: str, content_type: str) -> str:
        """Concatenate parts, in order, into `dest`; return its access descriptor."""
        ...

    async def read_handle(self, path: str) -> BlobHandle: ...

    async def signed_url(self, path: str, ttl_seconds: int | None = None) -> str: ...


# ---------------------------------------------------------------------------
# Local filesystem backend
# ---------------------------------------------------------------------------


class LocalBlobStore:
    """
    Blob store on the local filesystem.

    Blocking file I/O runs in a worker thread via asyncio.to_thread().
    `signed_url()` returns a file:// URI; there is nothing to sign locally.
    """

    backend_name = "local"

    def __init__(self, config: StorageConfig) -> None:
        self.config = config
        self.root = Path(config.root_dir).resolve()

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if self.root not in target.parents:
            raise StorageError(f"Path escapes storage root: {path}")
        return target

    def _uri(self, target: Path) -> str:
        return target.as_uri()

    async def put(self, path: str, data: bytes, content_type: str) -> str:
        target = self._resolve(path)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=target.parent, prefix=".tmp-")
            try:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(data)
                os.replace(tmp, target)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise

        try:
            await asyncio.to_thread(_write)
        except OSError as exc:
            raise StorageError(f"Failed to write {path}: {exc}") from exc
        return self._uri(target)

    async def get(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return await asyncio.to_thread(target.read_bytes)
        except OSError as exc:
            raise StorageError(f"Failed to read {path}: {exc}") from exc

    async def delete(self, path: str) -> None:
        target = self._resolve(path)
        try:
            await asyncio.to_thread(target.unlink, True)
        except OSError as exc:
            raise StorageError(f"Failed to delete {path}: {exc}") from exc

    async def exists(self, path: str) -> bool:
        return await asyncio.to_thread(self._resolve(path).is_file)

    async def list_paths(self, prefix: str = "") -> list[BlobInfo]:
        def _walk() -> list[BlobInfo]:
            if not self.root.exists():
                return []
            found = []
            for file in self.root.rglob("*"):
                if not file.is_file() or file.name.startswith(".tmp-"):
                    continue
                rel = file.relative_to(self.root).as_posix()
                if not rel.startswith(prefix):
                    continue
                stat = file.stat()
                found.append(BlobInfo(
                    path=rel,
                    size=stat.st_size,
                    modified_at=datetime.fromtimestamp(stat.st_mtime, tz=UTC),
                ))
            return sorted(found, key=lambda b: b.path)

        try:
            return await asyncio.to_thread(_walk)
        except OSError as exc:
            raise StorageError(f"Failed to list {prefix!r}: {exc}") from exc

    async def compose(self, part_paths: list[str], dest: str, content_type: str) -> str:
        target = self._resolve(dest)
        parts = [self._resolve(p) for p in part_paths]

        def _concat() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=target.parent, prefix=".tmp-")
            try:
                with os.fdopen(fd, "wb") as out:
                    for part in parts:
                        with part.open("rb") as src:
                            shutil.copyfileobj(src, out, _COPY_BUFFER)
                os.replace(tmp, target)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise

        try:
            await asyncio.to_thread(_concat)
        except OSError as exc:
            raise StorageError(f"Failed to compose {dest}: {exc}") from exc
        return self._uri(target)

    async def read_handle(self, path: str) -> BlobHandle:
        target = self._resolve(path)
        if not await asyncio.to_thread(target.is_file):
            raise StorageError(f"Blob not found: {path}")
        return BlobHandle(path=path, local_path=str(target))

    async def signed_url(self, path: str, ttl_seconds: int | None = None) -> str:
        target = self._resolve(path)
        if not await asyncio.to_thread(target.is_file):
            raise StorageError(f"Blob not found: {path}")
        return self._uri(target)


# ---------------------------------------------------------------------------
# Supabase Storage backend
# ---------------------------------------------------------------------------


class SupabaseBlobStore:
    """
    Blob store backed by the Supabase Storage REST API.

    Authenticates with the service-role key. Every call uses a short-lived
    httpx.AsyncClient with the configured timeout.
    """

    backend_name = "supabase"

    def __init__(self, config: StorageConfig) -> None:
        if not config.supabase_url or not config.supabase_service_role_key:
            raise StorageError(
                "Supabase storage requires SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY"
            )
        self.config = config
        self.url = config.supabase_url.rstrip("/")
        self.bucket = config.bucket
        self.base_api_url = f"{self.url}/storage/v1"
        self.headers = {
            "Authorization": f"Bearer {config.supabase_service_role_key}",
            "apikey": config.supabase_service_role_key,
        }

    def _object_url(self, path: str) -> str:
        return f"{self.base_api_url}/object/{self.bucket}/{path}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers=self.headers, timeout=self.config.http_timeout_seconds,
        )

    async def _upload(self, path: str, content, content_type: str) -> str:
        try:
            async with self._client() as client:
                response = await client.post(
                    self._object_url(path),
                    headers={"Content-Type": content_type, "x-upsert": "true"},
                    content=content,
                )
        except httpx.HTTPError as exc:
            raise StorageError(f"Upload of {path} failed: {exc}") from exc
        if response.status_code not in (200, 201):
            logger.error(
                "Supabase upload failed: path=%s status=%d body=%s",
                path, response.status_code, response.text,
            )
            raise StorageError(f"Upload of {path} failed: HTTP {response.status_code}")
        return self._object_url(path)

    async def put(self, path: str, data: bytes, content_type: str) -> str:
        return await self._upload(path, data, content_type)

    async def get(self, path: str) -> bytes:
        try:
            async with self._client() as client:
                response = await client.get(self._object_url(path))
        except httpx.HTTPError as exc:
            raise StorageError(f"Download of {path} failed: {exc}") from exc
        if response.status_code != 200:
            raise StorageError(f"Download of {path} failed: HTTP {response.status_code}")
        return response.content

    async def delete(self, path: str) -> None:
        try:
            async with self._client() as client:
                response = await client.request(
                    "DELETE",
                    f"{self.base_api_url}/object/{self.bucket}",
                    json={"prefixes": [path]},
                )
        except httpx.HTTPError as exc:
            raise StorageError(f"Delete of {path} failed: {exc}") from exc
        if response.status_code not in (200, 204, 404):
            raise StorageError(f"Delete of {path} failed: HTTP {response.status_code}")

    async def exists(self, path: str) -> bool:
        try:
            async with self._client() as client:
                response = await client.head(self._object_url(path))
        except httpx.HTTPError as exc:
            raise StorageError(f"Existence check of {path} failed: {exc}") from exc
        if response.status_code == 200:
            return True
        if response.status_code in (400, 404):
            return False
        raise StorageError(f"Existence check of {path} failed: HTTP {response.status_code}")

    async def list_paths(self, prefix: str = "") -> list[BlobInfo]:
        """
        Recursively list objects under `prefix`.

        The list endpoint returns one directory level at a time; entries
        without an `id` are folders and are descended into.
        """
        found: list[BlobInfo] = []
        folder = prefix.rstrip("/")
        pending = [folder]
        try:
            async with self._client() as client:
                while pending:
                    current = pending.pop()
                    offset = 0
                    while True:
                        response = await client.post(
                            f"{self.base_api_url}/object/list/{self.bucket}",
                            json={"prefix": current, "limit": 1000, "offset": offset},
                        )
                        if response.status_code != 200:
                            raise StorageError(
                                f"Listing {current!r} failed: HTTP {response.status_code}"
                            )
                        entries = response.json()
                        for entry in entries:
                            full = f"{current}/{entry['name']}" if current else entry["name"]
                            if entry.get("id") is None:
                                pending.append(full)
                                continue
                            meta = entry.get("metadata") or {}
                            updated = entry.get("updated_at")
                            found.append(BlobInfo(
                                path=full,
                                size=int(meta.get("size", 0)),
                                modified_at=datetime.fromisoformat(
                                    updated.replace("Z", "+00:00")
                                ) if updated else None,
                            ))
                        if len(entries) < 1000:
                            break
                        offset += 1000
        except httpx.HTTPError as exc:
            raise StorageError(f"Listing {prefix!r} failed: {exc}") from exc
        return sorted(found, key=lambda b: b.path)

    async def compose(self, part_paths: list[str], dest: str, content_type: str) -> str:
        with tempfile.TemporaryFile() as spool:
            try:
                async with self._client() as client:
                    for part in part_paths:
                        async with client.stream("GET", self._object_url(part)) as response:
                            if response.status_code != 200:
                                raise StorageError(
                                    f"Reading part {part} failed: HTTP {response.status_code}"
                                )
                            async for block in response.aiter_bytes(_COPY_BUFFER):
                                spool.write(block)
            except httpx.HTTPError as exc:
                raise StorageError(f"Reading parts for {dest} failed: {exc}") from exc

            spool.seek(0)

            async def _body() -> AsyncIterator[bytes]:
                while block := spool.read(_COPY_BUFFER):
                    yield block

            return await self._upload(dest, _body(), content_type)

    async def signed_url(self, path: str, ttl_seconds: int | None = None) -> str:
        expires_in = ttl_seconds or self.config.signed_url_ttl_seconds
        try:
            async with self._client() as client:
                response = await client.post(
                    f"{self.base_api_url}/object/sign/{self.bucket}/{path}",
                    json={"expiresIn": expires_in},
                )
        except httpx.HTTPError as exc:
            raise StorageError(f"Signing {path} failed: {exc}") from exc
        if response.status_code != 200:
            raise StorageError(f"Signing {path} failed: HTTP {response.status_code}")

        signed_path = response.json().get("signedURL")
        if not signed_path:
            raise StorageError("Supabase response did not contain signedURL")
        # Supabase returns a path relative to /storage/v1
        if signed_path.startswith("/"):
            return f"{self.base_api_url}{signed_path}"
        return signed_path

    async def read_handle(self, path: str) -> BlobHandle:
        ttl = self.config.signed_url_ttl_seconds
        url = await self.signed_url(path, ttl)
        return BlobHandle(
            path=path,
            url=url,
            expires_at=datetime.now(UTC) + timedelta(seconds=ttl),
        )


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_blob_store(config: StorageConfig) -> BlobStore:
    """Build the blob store selected by `config.backend`."""
    if config.backend == "local":
        return LocalBlobStore(config)
    if config.backend == "supabase":
        return SupabaseBlobStore(config)
    raise ValueError(
        f"Unknown storage backend: '{config.backend}'. Supported: 'local', 'supabase'"
    )

