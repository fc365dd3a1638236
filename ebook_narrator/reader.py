"""Load .txt and .epub documents as plain text ready for segmentation."""

import logging
import os
import re
import zipfile

from bs4 import BeautifulSoup, NavigableString, Tag

from ebook_narrator.constants import (
    HEADING_CLOSE,
    HEADING_OPEN,
    IMAGE_LABEL,
    LIST_BULLET,
    SENTENCE_TERMINALS,
    STRUCTURAL_MAX_LENGTH,
)
from ebook_narrator.errors import DocumentError

logger = logging.getLogger(__name__)

_HEADING_TAGS = {"h1", "h2", "h3", "h4", "h5", "h6"}
_BLOCK_TAGS = {"p", "div"}
_LIST_TAGS = {"ul", "ol"}
_HTML_NAME_RE = re.compile(r"\.(html|xhtml)$", re.IGNORECASE)


def load_document(path: str) -> str:
    """Read a .txt or .epub file and return its text."""
    ext = os.path.splitext(path)[1].lower()
    if ext == ".txt":
        return read_text_file(path)
    if ext == ".epub":
        return read_epub(path)
    raise DocumentError(f"Unsupported file type '{ext}': expected .txt or .epub")


def read_text_file(path: str) -> str:
    """Decode as UTF-8, falling back to GBK for legacy Chinese text files."""
    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError as e:
        raise DocumentError(f"Cannot read {path}: {e}") from e

    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        logger.info("%s is not UTF-8; decoding as GBK", path)
    try:
        return data.decode("gbk")
    except UnicodeDecodeError as e:
        raise DocumentError(f"{path} is neither UTF-8 nor GBK text") from e


def read_epub(path: str) -> str:
    """Concatenate the text of every HTML/XHTML document in the archive.

    Documents are read in sorted path order, which matches spine order for
    the common chapter-numbered layouts.
    """
    try:
        with zipfile.ZipFile(path) as archive:
            names = sorted(
                info.filename for info in archive.infolist()
                if not info.is_dir() and _HTML_NAME_RE.search(info.filename)
            )
            parts = []
            for name in names:
                html = archive.read(name).decode("utf-8", errors="replace")
                parts.append(extract_text_from_html(html))
    except (zipfile.BadZipFile, OSError) as e:
        raise DocumentError(f"Cannot open EPUB {path}: {e}") from e

    text = "\n".join(parts)
    if not text.strip():
        raise DocumentError(f"No readable text found in {path}")
    return text


def _is_toc_heading(text: str) -> bool:
    return len(text) < STRUCTURAL_MAX_LENGTH and not text.endswith(tuple(SENTENCE_TERMINALS))


def _render(node) -> str:
    if isinstance(node, NavigableString):
        # comments, doctypes and processing instructions are subclasses
        if type(node) is not NavigableString:
            return ""
        return node.strip()
    if not isinstance(node, Tag):
        return ""

    name = node.name.lower()
    if name == "img":
        alt = node.get("alt", "")
        return f"[{IMAGE_LABEL}: {alt}]" if alt else f"[{IMAGE_LABEL}]"

    if name in _HEADING_TAGS:
        text = node.get_text().strip()
        if not text:
            return ""
        if _is_toc_heading(text):
            text = f"{HEADING_OPEN}{text}{HEADING_CLOSE}"
        return f"\n\n\n{text}\n\n\n"

    if name in _BLOCK_TAGS:
        content = "".join(_render(child) for child in node.children).strip()
        return f"\n\n{content}\n\n" if content else ""

    if name == "br":
        return "\n"

    if name in _LIST_TAGS:
        items = ""
        for child in node.children:
            if isinstance(child, Tag) and child.name.lower() == "li":
                item = _render(child).strip()
                if item:
                    items += f"\n{LIST_BULLET} {item}"
        return f"\n{items}\n\n" if items else ""

    return "".join(_render(child) for child in node.children)


def extract_text_from_html(html: str) -> str:
    """Flatten an HTML document to plain text with blank-line paragraph breaks.

    TOC-like headings are wrapped in 【】 so the segmenter keeps them as
    standalone structural units.
    """
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()

    text = _render(soup.body or soup)
    text = re.sub(r"\n{3,}", "\n\n", text)
    text = re.sub(r"[ \t]+", " ", text)
    text = text.replace("\n ", "\n").replace(" \n", "\n")
    return text.strip()
