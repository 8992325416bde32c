"""
Converter backends, selected by the target format's category.
"""

from typing import Callable, Mapping
from pathlib import Path

from ...errors import UnsupportedConversion
from ..formats import FormatCategory
from ..interfaces import ConverterBackend
from .document import DocumentBackend
from .image import ImageBackend

BackendTable = Mapping[FormatCategory, ConverterBackend]


def default_backends(
    *,
    max_output_pixels: int = 400_000_000,
    pdf_extractor: Callable[[Path], str] | None = None,
) -> dict[FormatCategory, ConverterBackend]:
    return {
        FormatCategory.IMAGE: ImageBackend(max_output_pixels=max_output_pixels),
        FormatCategory.DOCUMENT: DocumentBackend(pdf_extractor=pdf_extractor),
    }


def select_backend(table: BackendTable, category: FormatCategory) -> ConverterBackend:
    backend = table.get(category)
    if backend is None:
        raise UnsupportedConversion(f"no backend registered for {category.value} formats")
    return backend


__all__ = ["BackendTable", "DocumentBackend", "ImageBackend", "default_backends", "select_backend"]
