from __future__ import annotations

import pytest

from printvault.core.errors import NotFoundError, ProviderConfigError
from printvault.providers.storage.local import LocalObjectStore


@pytest.mark.asyncio
async def test_put_get_head(tmp_path) -> None:
    store = LocalObjectStore(tmp_path)
    key = await store.put("generated/pages/job-1/00000.pdf", b"%PDF-1.4 test", "application/pdf")
    assert key == "generated/pages/job-1/00000.pdf"
    assert await store.get(key) == b"%PDF-1.4 test"
    head = await store.head(key)
    assert head.size == len(b"%PDF-1.4 test")
    assert head.content_type == "application/pdf"


@pytest.mark.asyncio
async def test_missing_object_raises_not_found(tmp_path) -> None:
    store = LocalObjectStore(tmp_path)
    with pytest.raises(NotFoundError):
        await store.get("nope.pdf")
    with pytest.raises(NotFoundError):
        await store.head("nope.pdf")


@pytest.mark.asyncio
async def test_keys_cannot_escape_root(tmp_path) -> None:
    store = LocalObjectStore(tmp_path / "objects")
    with pytest.raises(ProviderConfigError):
        await store.put("../outside.pdf", b"x", "application/pdf")
