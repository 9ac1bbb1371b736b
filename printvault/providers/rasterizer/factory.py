from __future__ import annotations

from printvault.core.config import get_settings
from printvault.core.errors import ProviderConfigError
from printvault.providers.rasterizer.base import PageRasterizer
from printvault.providers.rasterizer.blank import BlankPageRasterizer
from printvault.providers.rasterizer.http_renderer import HttpRasterizer


def get_rasterizer() -> PageRasterizer:
    settings = get_settings()
    backend = (settings.rasterizer_backend or "blank").lower()

    if backend == "blank":
        return BlankPageRasterizer()
    if backend == "http":
        return HttpRasterizer()

    raise ProviderConfigError(f"Unsupported rasterizer backend: {backend}")
