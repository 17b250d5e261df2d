"""Plain text to Markdown normalization and heading-based section chunking."""

from __future__ import annotations

import math
import re

from medassist.models.documents import SectionDraft
from medassist.services.extractors import PAGE_BREAK

DEFAULT_MAX_SECTION_LENGTH = 2500
HEADING_MARKER = "## "

_BLANK_RUN = re.compile(r"\n(?:[ \t]*\n)+")
_MD_HEADING = re.compile(r"^ {0,3}(#{1,6})[ \t]+(.+?)(?:[ \t]+#+)?[ \t]*$")
_FENCE = re.compile(r"^ {0,3}(`{3,}|~{3,})")


def is_heading_line(line: str) -> bool:
    """True for lines made only of uppercase letters and whitespace.

    At least two letters are required so a lone "I" or "A" is not promoted.
    """
    stripped = line.strip()
    letters = [ch for ch in stripped if not ch.isspace()]
    if len(letters) < 2:
        return False
    return all(ch.isalpha() and ch.isupper() for ch in letters)


def to_markdown(text: str) -> str:
    """Convert extracted plain text into lightweight Markdown.

    ALL-CAPS lines become level-two headings and runs of blank lines collapse
    to a single paragraph break. Page-break markers survive on their own line.
    """
    pages = [_normalize_page(page) for page in text.split(PAGE_BREAK)]
    return f"\n{PAGE_BREAK}\n".join(pages)


def _normalize_page(page: str) -> str:
    lines = []
    for line in page.split("\n"):
        if is_heading_line(line):
            lines.append(f"{HEADING_MARKER}{line.strip()}")
        else:
            lines.append(line.rstrip())
    return _BLANK_RUN.sub("\n\n", "\n".join(lines)).strip("\n")


def chunk_markdown(
    markdown: str,
    *,
    max_section_length: int = DEFAULT_MAX_SECTION_LENGTH,
) -> list[SectionDraft]:
    """Split Markdown into ordered sections.

    Heading lines start a new section; page breaks inside a heading block and
    the length limit produce continuation parts that keep the block heading.
    """
    if not markdown.strip():
        return []

    drafts: list[SectionDraft] = []
    for heading, block in _split_on_headings(markdown):
        pieces: list[str] = []
        for page in block.split(PAGE_BREAK):
            if page.strip():
                pieces.extend(_split_by_length(page.strip(), max_section_length))
        for part, content in enumerate(pieces, start=1):
            drafts.append(SectionDraft(content=content, heading=heading, part=part))
    return drafts


def _split_on_headings(markdown: str) -> list[tuple[str | None, str]]:
    blocks: list[tuple[str | None, list[str]]] = [(None, [])]
    fence: str | None = None

    for line in markdown.split("\n"):
        fence_match = _FENCE.match(line)
        if fence_match:
            marker = fence_match.group(1)
            if fence is None:
                fence = marker[0] * 3
            elif marker.startswith(fence):
                fence = None
        elif fence is None:
            heading_match = _MD_HEADING.match(line)
            if heading_match:
                blocks.append((heading_match.group(2).strip(), [line]))
                continue
        blocks[-1][1].append(line)

    return [(heading, "\n".join(lines)) for heading, lines in blocks if "".join(lines).strip()]


def _split_by_length(text: str, max_length: int) -> list[str]:
    if len(text) <= max_length:
        return [text]

    count = math.ceil(len(text) / max_length)
    target = math.ceil(len(text) / count)
    pieces: list[str] = []
    start = 0
    while start < len(text):
        end = min(start + target, len(text))
        if end < len(text):
            # Prefer breaking on whitespace so words stay intact.
            cut = max(text.rfind(" ", start, end), text.rfind("\n", start, end))
            if cut > start:
                end = cut
        piece = text[start:end].strip()
        if piece:
            pieces.append(piece)
        start = end
    return pieces
