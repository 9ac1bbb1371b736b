from __future__ import annotations

import asyncio
import json
from pathlib import Path
from uuid import uuid4

from printvault.core.errors import NotFoundError, ProviderConfigError
from printvault.providers.storage.base import ObjectHead
from printvault.services.resilience import bounded_call


_META_SUFFIX = ".meta.json"


class LocalObjectStore:
    """Filesystem-backed object store for local development and tests."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    def _path(self, key: str) -> Path:
        # Keys are relative paths; reject anything that would escape the root.
        candidate = (self._root / key).resolve()
        root = self._root.resolve()
        if candidate != root and root not in candidate.parents:
            raise ProviderConfigError(f"Object key escapes store root: {key}")
        return candidate

    def _write(self, key: str, data: bytes, content_type: str) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        # Write then rename so readers never observe a partial object.
        tmp = path.with_name(f"{path.name}.{uuid4().hex}.tmp")
        tmp.write_bytes(data)
        tmp.replace(path)
        meta = path.with_name(path.name + _META_SUFFIX)
        meta.write_text(json.dumps({"content_type": content_type}), encoding="utf-8")

    def _read(self, key: str) -> bytes:
        path = self._path(key)
        if not path.is_file():
            raise NotFoundError(f"Object not found: {key}", key=key)
        return path.read_bytes()

    def _head(self, key: str) -> ObjectHead:
        path = self._path(key)
        if not path.is_file():
            raise NotFoundError(f"Object not found: {key}", key=key)
        meta = path.with_name(path.name + _META_SUFFIX)
        content_type = None
        if meta.is_file():
            content_type = json.loads(meta.read_text(encoding="utf-8")).get("content_type")
        return ObjectHead(key=key, size=path.stat().st_size, content_type=content_type)

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        await bounded_call(
            "object_store.local.put", lambda: asyncio.to_thread(self._write, key, data, content_type)
        )
        return key

    async def get(self, key: str) -> bytes:
        return await bounded_call("object_store.local.get", lambda: asyncio.to_thread(self._read, key))

    async def head(self, key: str) -> ObjectHead:
        return await bounded_call("object_store.local.head", lambda: asyncio.to_thread(self._head, key))
