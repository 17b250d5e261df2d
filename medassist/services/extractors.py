"""Format-specific text extraction for uploaded documents."""

from __future__ import annotations

import io
import os
import re
import zipfile
import zlib
from dataclasses import dataclass
from typing import Callable
from xml.etree import ElementTree

from pypdf import PdfReader
from pypdf.errors import PyPdfError

from medassist.core.errors import ExtractionError, UnsupportedFormatError
from medassist.core.logging import get_logger

logger = get_logger(__name__)

PAGE_BREAK = "\f"

WORD_NS = "http://schemas.openxmlformats.org/wordprocessingml/2006/main"
DRAWING_NS = "http://schemas.openxmlformats.org/drawingml/2006/main"
WORD_DOCUMENT_PART = "word/document.xml"
_SLIDE_PART = re.compile(r"^ppt/slides/slide(\d+)\.xml$")

# zipfile raises these beyond BadZipFile for members it cannot decompress.
_ARCHIVE_ERRORS = (
    zipfile.BadZipFile,
    zipfile.LargeZipFile,
    zlib.error,
    NotImplementedError,
    RuntimeError,
    EOFError,
)
_PDF_ERRORS = (
    PyPdfError,
    ValueError,
    KeyError,
    TypeError,
    AttributeError,
    IndexError,
    RecursionError,
    zlib.error,
    NotImplementedError,
)


def extract_pdf(data: bytes) -> str:
    """Extract text from each page in order, separated by page breaks."""
    try:
        reader = PdfReader(io.BytesIO(data))
        pages = [page.extract_text() or "" for page in reader.pages]
    except _PDF_ERRORS as exc:
        raise ExtractionError(f"Could not read PDF content: {exc}") from exc
    logger.debug("Extracted %d PDF pages", len(pages))
    return PAGE_BREAK.join(page.strip() for page in pages)


def extract_docx(data: bytes) -> str:
    """Concatenate every text run of the main document part, one per line."""
    with _open_archive(data) as archive:
        if WORD_DOCUMENT_PART not in archive.namelist():
            raise ExtractionError(f"Archive has no {WORD_DOCUMENT_PART} part.")
        return _text_runs(archive, WORD_DOCUMENT_PART, f"{{{WORD_NS}}}t")


def extract_pptx(data: bytes) -> str:
    """Concatenate text runs of every slide, slide1 first, one per line."""
    with _open_archive(data) as archive:
        slides = []
        for name in archive.namelist():
            match = _SLIDE_PART.match(name)
            if match:
                slides.append((int(match.group(1)), name))
        if not slides:
            raise ExtractionError("Archive contains no slides.")
        slides.sort()
        return "".join(
            _text_runs(archive, name, f"{{{DRAWING_NS}}}t") for _, name in slides
        )


def extract_markdown(data: bytes) -> str:
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ExtractionError(f"Markdown file is not valid UTF-8: {exc}") from exc


def _open_archive(data: bytes) -> zipfile.ZipFile:
    try:
        return zipfile.ZipFile(io.BytesIO(data))
    except _ARCHIVE_ERRORS as exc:
        raise ExtractionError(f"File is not a valid Office archive: {exc}") from exc


def _text_runs(archive: zipfile.ZipFile, part: str, tag: str) -> str:
    try:
        root = ElementTree.fromstring(archive.read(part))
    except (ElementTree.ParseError, *_ARCHIVE_ERRORS) as exc:
        raise ExtractionError(f"Could not parse {part}: {exc}") from exc
    return "".join(f"{node.text or ''}\n" for node in root.iter(tag))


@dataclass(frozen=True)
class DocumentFormat:
    name: str
    extract: Callable[[bytes], str]
    # Markdown input already carries its own structure.
    normalize: bool = True


FORMATS: dict[str, DocumentFormat] = {
    ".md": DocumentFormat("markdown", extract_markdown, normalize=False),
    ".pdf": DocumentFormat("pdf", extract_pdf),
    ".doc": DocumentFormat("docx", extract_docx),
    ".docx": DocumentFormat("docx", extract_docx),
    ".ppt": DocumentFormat("pptx", extract_pptx),
    ".pptx": DocumentFormat("pptx", extract_pptx),
}
ALLOWED_EXTENSIONS = frozenset(FORMATS)


def file_extension(filename: str) -> str:
    return os.path.splitext(filename or "")[1].lower()


def resolve_format(filename: str) -> DocumentFormat:
    """Pick the extractor for a filename, rejecting unknown extensions."""
    ext = file_extension(filename)
    fmt = FORMATS.get(ext)
    if fmt is None:
        raise UnsupportedFormatError(ext)
    return fmt


def extract_text(data: bytes, filename: str) -> str:
    """Convert raw file bytes to plain text using the format's extractor."""
    fmt = resolve_format(filename)
    logger.debug("Extracting %s as %s (%d bytes)", filename, fmt.name, len(data))
    return fmt.extract(data)
