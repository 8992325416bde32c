"""Document conversion between plain text, Markdown, DOCX and PDF.

Sources are reduced to a flat list of blocks (headings and paragraphs) and
re-rendered for the target. Converting a file to its own format copies the
bytes unchanged.
"""

import io
import re
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import docx
from docx.opc.exceptions import PackageNotFoundError
from fpdf import FPDF
from fpdf.enums import XPos, YPos

from ...errors import ConversionCancelled, ConverterError, CorruptInput, ResourceExhausted, UnsupportedConversion
from ..formats import DOCX_MIME, PDF_MIME, Format, FormatCategory
from ..interfaces import StopCheck
from ..options import ImageOptions

MARKDOWN_TYPES = frozenset({"text/markdown", "text/x-markdown"})

_HEADING = re.compile(r"^(#{1,6})\s+(.*)$")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")


@dataclass(frozen=True)
class Block:
    text: str
    heading: int = 0


def parse_blocks(text: str, *, markdown: bool = False) -> list[Block]:
    """Split text into paragraphs on blank lines; ``#`` lines become headings when ``markdown``."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    blocks: list[Block] = []
    for chunk in re.split(r"\n[ \t]*\n", text):
        chunk = chunk.strip("\n").rstrip()
        if not chunk.strip():
            continue
        if markdown:
            lines: list[str] = []
            for line in chunk.split("\n"):
                m = _HEADING.match(line)
                if m:
                    if lines:
                        blocks.append(Block("\n".join(lines)))
                        lines = []
                    blocks.append(Block(m.group(2).strip(), heading=len(m.group(1))))
                else:
                    lines.append(line)
            if lines:
                blocks.append(Block("\n".join(lines)))
        else:
            blocks.append(Block(chunk))
    return blocks


def decode_text(data: bytes) -> str:
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        return data.decode("latin-1")


def _checkpoint(should_stop: StopCheck) -> None:
    if should_stop():
        raise ConversionCancelled()


def _source_kind(source_type: str) -> str:
    st = source_type.lower()
    if st == PDF_MIME:
        return "pdf"
    if st == DOCX_MIME:
        return "docx"
    if st in MARKDOWN_TYPES:
        return "md"
    if st.startswith("text/"):
        return "txt"
    raise UnsupportedConversion(f"cannot read documents of type {source_type}")


# Source kind that is already in the target format
_SAME_FORMAT = {"pdf": "PDF", "docx": "DOCX", "md": "MD", "txt": "TXT"}


class DocumentBackend:
    supports_cancellation = True

    def __init__(self, *, pdf_extractor: Callable[[Path], str] | None = None) -> None:
        self._pdf_extractor = pdf_extractor

    def convert(
        self,
        input_path: Path,
        source_type: str,
        target: Format,
        options: ImageOptions | None,
        should_stop: StopCheck,
    ) -> bytes:
        if target.category is not FormatCategory.DOCUMENT:
            raise UnsupportedConversion(f"document backend cannot produce {target.code}")
        kind = _source_kind(source_type)
        try:
            if _SAME_FORMAT[kind] == target.code:
                return input_path.read_bytes()
            _checkpoint(should_stop)

            blocks = self._extract(input_path, kind)
            _checkpoint(should_stop)

            return self._render(blocks, target, title=input_path.stem)
        except ConverterError:
            raise
        except MemoryError as e:
            raise ResourceExhausted("out of memory while converting document") from e

    def _extract(self, input_path: Path, kind: str) -> list[Block]:
        if kind in ("txt", "md"):
            return parse_blocks(decode_text(input_path.read_bytes()), markdown=kind == "md")
        if kind == "docx":
            return self._extract_docx(input_path)
        return self._extract_pdf(input_path)

    @staticmethod
    def _extract_docx(input_path: Path) -> list[Block]:
        try:
            document = docx.Document(str(input_path))
        except (PackageNotFoundError, zipfile.BadZipFile, KeyError, ValueError) as e:
            raise CorruptInput(f"not a readable DOCX file: {e}") from e
        blocks: list[Block] = []
        for para in document.paragraphs:
            text = para.text.strip()
            if not text:
                continue
            style = (para.style.name if para.style is not None else "") or ""
            level = 0
            if style.startswith("Heading"):
                suffix = style.removeprefix("Heading").strip()
                level = int(suffix) if suffix.isdigit() else 1
            elif style == "Title":
                level = 1
            blocks.append(Block(text, heading=min(level, 6)))
        for table in document.tables:
            for row in table.rows:
                cells = [cell.text.strip() for cell in row.cells]
                if any(cells):
                    blocks.append(Block("\t".join(cells)))
        return blocks

    def _extract_pdf(self, input_path: Path) -> list[Block]:
        if self._pdf_extractor is None:
            raise UnsupportedConversion("PDF text extraction is not available")
        try:
            markdown = self._pdf_extractor(input_path)
        except ImportError as e:
            raise UnsupportedConversion("PDF text extraction requires docling") from e
        except MemoryError:
            raise
        except Exception as e:
            raise CorruptInput(f"PDF could not be read: {e}") from e
        return parse_blocks(markdown, markdown=True)

    def _render(self, blocks: list[Block], target: Format, *, title: str) -> bytes:
        if target.code == "TXT":
            return render_text(blocks).encode("utf-8")
        if target.code == "MD":
            return render_markdown(blocks).encode("utf-8")
        if target.code == "DOCX":
            return render_docx(blocks)
        if target.code == "PDF":
            return render_pdf(blocks, title=title)
        raise UnsupportedConversion(f"no writer for {target.code}")


def render_text(blocks: list[Block]) -> str:
    return "\n\n".join(b.text for b in blocks) + "\n" if blocks else ""


def render_markdown(blocks: list[Block]) -> str:
    parts = [f"{'#' * b.heading} {b.text}" if b.heading else b.text for b in blocks]
    return "\n\n".join(parts) + "\n" if parts else ""


def render_docx(blocks: list[Block]) -> bytes:
    document = docx.Document()
    for b in blocks:
        text = _CONTROL_CHARS.sub("", b.text)
        if b.heading:
            document.add_heading(text, level=min(b.heading, 9))
        else:
            document.add_paragraph(text)
    buf = io.BytesIO()
    document.save(buf)
    return buf.getvalue()


def _latin1(text: str) -> str:
    # Core PDF fonts only cover latin-1
    text = _CONTROL_CHARS.sub("", text).replace("\t", "    ")
    return text.encode("latin-1", "replace").decode("latin-1")


def render_pdf(blocks: list[Block], *, title: str = "") -> bytes:
    pdf = FPDF(format="A4")
    pdf.set_auto_page_break(auto=True, margin=15)
    if title:
        pdf.set_title(_latin1(title))
    pdf.add_page()
    for b in blocks:
        if b.heading:
            pdf.set_font("Helvetica", style="B", size=max(12, 20 - 2 * b.heading))
            pdf.multi_cell(0, 8, _latin1(b.text), new_x=XPos.LMARGIN, new_y=YPos.NEXT)
        else:
            pdf.set_font("Helvetica", size=11)
            pdf.multi_cell(0, 6, _latin1(b.text), new_x=XPos.LMARGIN, new_y=YPos.NEXT)
        pdf.ln(3)
    return bytes(pdf.output())
