from __future__ import annotations

import io
from typing import Any

from pypdf import PdfWriter

from printvault.core.errors import RasterizationError
from printvault.providers.rasterizer.base import page_size_points


class BlankPageRasterizer:
    """Deterministic stand-in that emits one empty page at the layout's size.

    Used for local runs and tests where no render service is available.
    """

    async def rasterize(self, page_layout: dict[str, Any]) -> bytes:
        try:
            width, height = page_size_points(page_layout)
        except (KeyError, TypeError, ValueError) as exc:
            raise RasterizationError("Page layout has no usable page size") from exc
        writer = PdfWriter()
        writer.add_blank_page(width=width, height=height)
        buffer = io.BytesIO()
        writer.write(buffer)
        return buffer.getvalue()
