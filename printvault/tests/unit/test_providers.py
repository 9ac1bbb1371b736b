from __future__ import annotations

import io
import json

import httpx
import pytest
from botocore.exceptions import ClientError

from printvault.core.errors import NotFoundError, ProviderConfigError, RasterizationError
from printvault.providers.rasterizer.http_renderer import HttpRasterizer
from printvault.providers.storage.s3 import S3ObjectStore


@pytest.mark.asyncio
async def test_http_rasterizer_posts_page_layout() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, content=b"%PDF-1.4 page")

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    rasterizer = HttpRasterizer(base_url="http://renderer", client=client)
    layout = {"page": {"widthMm": 210, "heightMm": 297}, "items": []}
    assert await rasterizer.rasterize(layout) == b"%PDF-1.4 page"
    assert seen["path"] == "/render-page"
    assert seen["body"] == {"pageLayout": layout}
    await client.aclose()


@pytest.mark.asyncio
async def test_http_rasterizer_maps_failures() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(422, json={"message": "bad layout"})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    rasterizer = HttpRasterizer(base_url="http://renderer", client=client)
    with pytest.raises(RasterizationError):
        await rasterizer.rasterize({"page": {"widthMm": 1, "heightMm": 1}})
    await client.aclose()


class FakeS3Client:
    def __init__(self) -> None:
        self.objects: dict[str, tuple[bytes, str]] = {}

    def put_object(self, *, Bucket: str, Key: str, Body: bytes, ContentType: str) -> dict:
        self.objects[Key] = (Body, ContentType)
        return {}

    def _missing(self, operation: str) -> ClientError:
        return ClientError({"Error": {"Code": "NoSuchKey", "Message": "missing"}}, operation)

    def get_object(self, *, Bucket: str, Key: str) -> dict:
        if Key not in self.objects:
            raise self._missing("GetObject")
        return {"Body": io.BytesIO(self.objects[Key][0])}

    def head_object(self, *, Bucket: str, Key: str) -> dict:
        if Key not in self.objects:
            raise self._missing("HeadObject")
        data, content_type = self.objects[Key]
        return {"ContentLength": len(data), "ContentType": content_type}


@pytest.mark.asyncio
async def test_s3_store_round_trip_and_missing_keys() -> None:
    store = S3ObjectStore("bucket", "us-east-1", client=FakeS3Client())
    await store.put("source/doc.pdf", b"pdf-bytes", "application/pdf")
    assert await store.get("source/doc.pdf") == b"pdf-bytes"
    head = await store.head("source/doc.pdf")
    assert head.size == 9
    assert head.content_type == "application/pdf"
    with pytest.raises(NotFoundError):
        await store.get("source/other.pdf")


def test_s3_store_requires_bucket_and_region() -> None:
    with pytest.raises(ProviderConfigError):
        S3ObjectStore(None, "us-east-1")
