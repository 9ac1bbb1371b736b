from __future__ import annotations

import asyncio
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from printvault.core.errors import NotFoundError, ProviderConfigError
from printvault.providers.storage.base import ObjectHead
from printvault.services.resilience import bounded_call


_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


def _retryable(exc: Exception) -> bool:
    if isinstance(exc, (asyncio.TimeoutError, ConnectionError, TimeoutError)):
        return True
    if isinstance(exc, (BotoCoreError, ClientError)):
        status = getattr(exc, "response", {}).get("ResponseMetadata", {}).get("HTTPStatusCode")
        return isinstance(status, int) and status >= 500
    return False


def _is_missing(exc: ClientError) -> bool:
    return str(exc.response.get("Error", {}).get("Code")) in _MISSING_CODES


class S3ObjectStore:
    def __init__(
        self,
        bucket: str | None,
        region: str | None,
        *,
        endpoint_url: str | None = None,
        client: Any | None = None,
    ) -> None:
        if not bucket or not region:
            raise ProviderConfigError("s3_bucket and s3_region are required for the s3 object store")
        self._bucket = bucket
        self._region = region
        self._endpoint_url = endpoint_url
        self._client = client

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        import boto3

        self._client = boto3.client("s3", region_name=self._region, endpoint_url=self._endpoint_url)
        return self._client

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        client = self._get_client()

        async def _call() -> Any:
            return await asyncio.to_thread(
                client.put_object,
                Bucket=self._bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )

        await bounded_call("object_store.s3.put", _call, retryable=_retryable)
        return key

    async def get(self, key: str) -> bytes:
        client = self._get_client()

        async def _call() -> bytes:
            try:
                response = await asyncio.to_thread(client.get_object, Bucket=self._bucket, Key=key)
            except ClientError as exc:
                if _is_missing(exc):
                    raise NotFoundError(f"Object not found: {key}", key=key) from exc
                raise
            body = response["Body"]
            try:
                return await asyncio.to_thread(body.read)
            finally:
                body.close()

        return await bounded_call("object_store.s3.get", _call, retryable=_retryable)

    async def head(self, key: str) -> ObjectHead:
        client = self._get_client()

        async def _call() -> ObjectHead:
            try:
                response = await asyncio.to_thread(client.head_object, Bucket=self._bucket, Key=key)
            except ClientError as exc:
                if _is_missing(exc):
                    raise NotFoundError(f"Object not found: {key}", key=key) from exc
                raise
            return ObjectHead(
                key=key,
                size=int(response.get("ContentLength") or 0),
                content_type=response.get("ContentType"),
            )

        return await bounded_call("object_store.s3.head", _call, retryable=_retryable)
