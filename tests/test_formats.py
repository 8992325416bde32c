"""Tests for the format registry."""

import pytest

from file_converter.conversion.formats import DOCX_MIME, Format, FormatCategory, FormatRegistry
from file_converter.errors import UnsupportedType


@pytest.fixture
def registry() -> FormatRegistry:
    return FormatRegistry()


def test_list_formats_is_ordered_and_unique(registry: FormatRegistry) -> None:
    codes = [f.code for f in registry.list_formats()]
    assert codes[:4] == ["DOCX", "PDF", "TXT", "MD"]
    assert len(codes) == len(set(codes))


def test_image_sources_only_target_images(registry: FormatRegistry) -> None:
    compatible = registry.compatible_formats("image/png")
    assert compatible
    assert all(f.category is FormatCategory.IMAGE for f in compatible)


@pytest.mark.parametrize("source_type", ["text/plain", "application/pdf", DOCX_MIME, "text/markdown"])
def test_document_sources_only_target_documents(registry: FormatRegistry, source_type: str) -> None:
    codes = {f.code for f in registry.compatible_formats(source_type)}
    assert codes == {"DOCX", "PDF", "TXT", "MD"}


def test_text_cannot_become_an_image(registry: FormatRegistry) -> None:
    assert not registry.is_compatible("text/plain", "PNG")
    assert registry.is_compatible("text/plain", "pdf")


def test_matching_is_case_insensitive(registry: FormatRegistry) -> None:
    assert registry.is_compatible("IMAGE/JPEG", registry.get("png"))


def test_unknown_source_has_no_formats(registry: FormatRegistry) -> None:
    assert registry.compatible_formats("application/x-msdownload") == frozenset()
    assert not registry.is_supported_source("")


def test_get_unknown_code_raises(registry: FormatRegistry) -> None:
    with pytest.raises(UnsupportedType):
        registry.get("PSD")


def test_duplicate_codes_are_rejected() -> None:
    fmt = Format("PNG", "PNG", FormatCategory.IMAGE, "png", "image/png", ("image/",))
    with pytest.raises(ValueError):
        FormatRegistry([fmt, fmt])
