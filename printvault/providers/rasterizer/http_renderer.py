from __future__ import annotations

from typing import Any

import httpx

from printvault.core.config import get_settings
from printvault.core.errors import RasterizationError, UpstreamFailureError
from printvault.services.resilience import RetryPolicy, bounded_call, default_retry_policy


class HttpRasterizer:
    def __init__(self, base_url: str | None = None, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._base_url = (base_url or self._settings.rasterizer_url).rstrip("/")
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per rasterizer for connection pooling.
        self._client = httpx.AsyncClient(timeout=self._settings.rasterizer_timeout_ms / 1000.0)
        return self._client

    def _policy(self) -> RetryPolicy:
        # Rendering is slow; widen the per-call timeout beyond the generic budget.
        base = default_retry_policy()
        return base.with_timeout(max(base.timeout_ms, self._settings.rasterizer_timeout_ms))

    async def rasterize(self, page_layout: dict[str, Any]) -> bytes:
        client = self._get_client()

        async def _call() -> httpx.Response:
            response = await client.post(
                f"{self._base_url}/render-page",
                json={"pageLayout": page_layout},
                headers={"Accept": "application/pdf"},
            )
            response.raise_for_status()
            return response

        def _retryable(exc: Exception) -> bool:
            if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError)):
                return True
            if isinstance(exc, httpx.HTTPStatusError):
                return exc.response.status_code >= 500
            return False

        try:
            response = await bounded_call("rasterizer.http", _call, policy=self._policy(), retryable=_retryable)
        except UpstreamFailureError as exc:
            raise RasterizationError("Page rasterization failed") from exc
        if not response.content:
            raise RasterizationError("Rasterizer returned an empty document")
        return response.content
