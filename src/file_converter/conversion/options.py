"""Conversion settings payload.

Field names on the wire are camelCase to match what the web client already
sends (``resizeMode``, ``backgroundColor`` ...).
"""

from typing import Any, Literal, Mapping

from PIL import ImageColor
from pydantic import BaseModel, ConfigDict, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from ..errors import InvalidSettings
from .formats import FormatCategory

MIN_DIMENSION = 1
MAX_DIMENSION = 50000
MIN_PERCENTAGE = 1
MAX_PERCENTAGE = 10000


def _clamp(value: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, value))


class ImageOptions(BaseModel):
    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    resize_mode: Literal["original", "custom", "percentage"] = "original"
    width: int = 1920
    height: int = 1080
    percentage: int = 100
    background_color: str = "#FFFFFF"
    compress: bool = False
    auto_orient: bool = True
    strip_metadata: bool = True

    @field_validator("width", "height")
    @classmethod
    def _clamp_dimension(cls, v: int) -> int:
        return _clamp(v, MIN_DIMENSION, MAX_DIMENSION)

    @field_validator("percentage")
    @classmethod
    def _clamp_percentage(cls, v: int) -> int:
        return _clamp(v, MIN_PERCENTAGE, MAX_PERCENTAGE)

    @field_validator("background_color")
    @classmethod
    def _check_color(cls, v: str) -> str:
        try:
            ImageColor.getrgb(v)
        except ValueError:
            raise ValueError(f"unrecognised color {v!r}") from None
        return v

    @property
    def background_rgb(self) -> tuple[int, int, int]:
        rgb = ImageColor.getrgb(self.background_color)
        return rgb[0], rgb[1], rgb[2]

    def target_size(self, width: int, height: int) -> tuple[int, int]:
        """Output size for a source of ``width`` x ``height`` pixels."""
        if self.resize_mode == "custom":
            return self.width, self.height
        if self.resize_mode == "percentage":
            scale = self.percentage / 100.0
            return max(1, round(width * scale)), max(1, round(height * scale))
        return width, height


def parse_options(category: FormatCategory, payload: Mapping[str, Any] | None) -> ImageOptions | None:
    """Validate a settings payload against the target format's category."""
    if category is FormatCategory.DOCUMENT:
        if payload:
            raise InvalidSettings("settings are only supported for image targets")
        return None
    try:
        return ImageOptions.model_validate(dict(payload or {}))
    except PydanticValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'settings'}: {err['msg']}" for err in e.errors()
        )
        raise InvalidSettings(f"invalid settings: {problems}") from None
