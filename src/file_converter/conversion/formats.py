"""Static registry of supported output formats and their source compatibility."""

from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from ..errors import UnsupportedType


class FormatCategory(str, Enum):
    IMAGE = "Image"
    DOCUMENT = "Document"


DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
PDF_MIME = "application/pdf"

_DOCUMENT_SOURCES = ("text/", PDF_MIME, DOCX_MIME)
_IMAGE_SOURCES = ("image/",)


@dataclass(frozen=True)
class Format:
    code: str
    label: str
    category: FormatCategory
    extension: str
    media_type: str
    source_prefixes: tuple[str, ...]

    def accepts(self, source_type: str) -> bool:
        st = (source_type or "").strip().lower()
        if not st:
            return False
        return any(st.startswith(prefix) for prefix in self.source_prefixes)

    def to_dict(self) -> dict[str, object]:
        return {
            "code": self.code,
            "label": self.label,
            "category": self.category.value,
            "extension": self.extension,
            "mediaType": self.media_type,
        }


DEFAULT_FORMATS: tuple[Format, ...] = (
    # Document formats
    Format("DOCX", "Word Document (.docx)", FormatCategory.DOCUMENT, "docx", DOCX_MIME, _DOCUMENT_SOURCES),
    Format("PDF", "PDF Document (.pdf)", FormatCategory.DOCUMENT, "pdf", PDF_MIME, _DOCUMENT_SOURCES),
    Format("TXT", "Text File (.txt)", FormatCategory.DOCUMENT, "txt", "text/plain", _DOCUMENT_SOURCES),
    Format("MD", "Markdown (.md)", FormatCategory.DOCUMENT, "md", "text/markdown", _DOCUMENT_SOURCES),
    # Image formats
    Format("JPG", "JPEG Image (.jpg)", FormatCategory.IMAGE, "jpg", "image/jpeg", _IMAGE_SOURCES),
    Format("PNG", "PNG Image (.png)", FormatCategory.IMAGE, "png", "image/png", _IMAGE_SOURCES),
    Format("WEBP", "WebP Image (.webp)", FormatCategory.IMAGE, "webp", "image/webp", _IMAGE_SOURCES),
    Format("BMP", "Bitmap Image (.bmp)", FormatCategory.IMAGE, "bmp", "image/bmp", _IMAGE_SOURCES),
    Format("GIF", "GIF Image (.gif)", FormatCategory.IMAGE, "gif", "image/gif", _IMAGE_SOURCES),
    Format("TIFF", "TIFF Image (.tiff)", FormatCategory.IMAGE, "tiff", "image/tiff", _IMAGE_SOURCES),
    Format("ICO", "Icon (.ico)", FormatCategory.IMAGE, "ico", "image/x-icon", _IMAGE_SOURCES),
    Format("EPS", "EPS Image (.eps)", FormatCategory.IMAGE, "eps", "application/postscript", _IMAGE_SOURCES),
)


class FormatRegistry:
    """Immutable lookup table of formats.

    Built once at startup and only read afterwards, so it is shared freely
    between request handlers and worker threads.
    """

    def __init__(self, formats: Iterable[Format] = DEFAULT_FORMATS) -> None:
        ordered = tuple(formats)
        by_code: dict[str, Format] = {}
        for fmt in ordered:
            code = fmt.code.upper()
            if code in by_code:
                raise ValueError(f"duplicate format code {code}")
            by_code[code] = fmt
        self._formats = ordered
        self._by_code = by_code

    def list_formats(self) -> tuple[Format, ...]:
        return self._formats

    def get(self, code: str) -> Format:
        fmt = self._by_code.get((code or "").strip().upper())
        if fmt is None:
            raise UnsupportedType(f"unknown target format {code!r}")
        return fmt

    def compatible_formats(self, source_type: str) -> frozenset[Format]:
        return frozenset(f for f in self._formats if f.accepts(source_type))

    def is_compatible(self, source_type: str, target: Format | str) -> bool:
        fmt = target if isinstance(target, Format) else self._by_code.get(target.strip().upper())
        return fmt is not None and fmt.accepts(source_type)

    def is_supported_source(self, source_type: str) -> bool:
        return any(f.accepts(source_type) for f in self._formats)
