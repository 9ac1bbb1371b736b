from __future__ import annotations

from typing import Any, Protocol


MM_TO_PT = 72.0 / 25.4


class PageRasterizer(Protocol):
    async def rasterize(self, page_layout: dict[str, Any]) -> bytes:
        ...


def page_size_points(page_layout: dict[str, Any]) -> tuple[float, float]:
    # Layouts are millimetre-based; PDF user space is 1/72 inch.
    page = page_layout.get("page") or {}
    return float(page["widthMm"]) * MM_TO_PT, float(page["heightMm"]) * MM_TO_PT
