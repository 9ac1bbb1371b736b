from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from printvault.core.errors import InvalidLayoutError


# Layout JSON is camelCase and millimetre based; models accept either spelling.
_MODEL_CONFIG = ConfigDict(populate_by_name=True, extra="ignore")


def _positive_or_none(value: Any) -> float | None:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number or number <= 0:
        return None
    return number


class PageSize(BaseModel):
    model_config = _MODEL_CONFIG

    width_mm: float = Field(alias="widthMm", gt=0, allow_inf_nan=False)
    height_mm: float = Field(alias="heightMm", gt=0, allow_inf_nan=False)


class ImageItem(BaseModel):
    model_config = _MODEL_CONFIG

    type: Literal["image"] = "image"
    src: str
    x_mm: float = Field(default=0.0, alias="xMm")
    y_mm: float = Field(default=0.0, alias="yMm")
    width_mm: float | None = Field(default=None, alias="widthMm")
    height_mm: float | None = Field(default=None, alias="heightMm")
    aspect_ratio: float | None = Field(default=None, alias="aspectRatio")
    rotation_deg: float | None = Field(default=None, alias="rotationDeg")

    @field_validator("width_mm", "height_mm", "aspect_ratio", mode="before")
    @classmethod
    def _drop_non_positive(cls, value: Any) -> float | None:
        return _positive_or_none(value)

    @field_validator("src")
    @classmethod
    def _reject_inline_data(cls, value: str) -> str:
        # Pages travel through the queue; images must be storage references.
        if value.startswith("data:"):
            raise ValueError("image src must reference stored content, not a data URL")
        return value

    @model_validator(mode="after")
    def _check_sizing(self) -> "ImageItem":
        if self.width_mm is None and self.height_mm is None:
            raise ValueError("image item needs widthMm or heightMm")
        if (self.width_mm is None or self.height_mm is None) and self.aspect_ratio is None:
            raise ValueError("image item with one dimension needs aspectRatio")
        return self


class TextItem(BaseModel):
    model_config = _MODEL_CONFIG

    type: Literal["text"] = "text"
    text: str = ""
    x_mm: float = Field(default=0.0, alias="xMm")
    y_mm: float = Field(default=0.0, alias="yMm")
    font_size_mm: float | None = Field(default=None, alias="fontSizeMm")
    rotation_deg: float | None = Field(default=None, alias="rotationDeg")
    font_family: str | None = Field(default=None, alias="fontFamily")
    color: str | None = None
    letter_font_sizes_mm: list[float] | None = Field(default=None, alias="letterFontSizesMm")
    offset_y_mm: list[float] | None = Field(default=None, alias="offsetYmm")
    letter_spacing_mm: list[float] | None = Field(default=None, alias="letterSpacingMm")


class PageLayout(BaseModel):
    model_config = _MODEL_CONFIG

    layout_mode: str = Field(default="raster", alias="layoutMode")
    page: PageSize
    items: list[Any] = Field(default_factory=list)


_ITEM_MODELS: dict[str, type[BaseModel]] = {"image": ImageItem, "text": TextItem}


def _sanitize_item(item: Any) -> Any:
    # Unknown item types pass through untouched for the rasterizer to interpret.
    if not isinstance(item, dict):
        return item
    model = _ITEM_MODELS.get(str(item.get("type")))
    if model is None:
        return item
    return model.model_validate(item).model_dump(by_alias=True, exclude_none=True)


def sanitize_page(page: Any) -> dict[str, Any]:
    layout = PageLayout.model_validate(page)
    return {
        "layoutMode": layout.layout_mode,
        "page": layout.page.model_dump(by_alias=True),
        "items": [_sanitize_item(item) for item in layout.items],
    }


def sanitize_layout_pages(layout_pages: Any) -> list[dict[str, Any]]:
    """Validate and normalize page layouts before a job is created.

    Every page needs a positive `page.widthMm` and `page.heightMm`. Image
    items must reference stored content and carry enough sizing data to be
    placed; `layoutMode` defaults to `raster`.
    """
    if not isinstance(layout_pages, list) or not layout_pages:
        raise InvalidLayoutError("layout_pages must be a non-empty list")
    sanitized: list[dict[str, Any]] = []
    for index, page in enumerate(layout_pages):
        try:
            sanitized.append(sanitize_page(page))
        except ValidationError as exc:
            errors = "; ".join(error["msg"] for error in exc.errors())
            raise InvalidLayoutError(f"Invalid layout for page {index}: {errors}", page_index=index) from exc
    return sanitized
