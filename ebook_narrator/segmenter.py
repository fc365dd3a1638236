"""Split raw text into bounded, speakable units."""

import logging
import re

from ebook_narrator.constants import (
    CLAUSE_SPLITTERS,
    HEADING_CLOSE,
    HEADING_OPEN,
    MAX_UNIT_LENGTH,
    SENTENCE_SPLITTERS,
    SENTENCE_TERMINALS,
    SOFT_BREAK_CHARS,
    SOFT_BREAK_WINDOW,
    STRUCTURAL_MAX_LENGTH,
)
from ebook_narrator.errors import SegmentationDefect
from ebook_narrator.models import SpeakableUnit

logger = logging.getLogger(__name__)

_PARAGRAPH_RE = re.compile(r"\n\s*\n")
_WHITESPACE_RE = re.compile(r"\s+")
# Capture the terminal so it can be reattached to the sentence it ends
_SENTENCE_RE = re.compile(rf"([{re.escape(SENTENCE_SPLITTERS)}])\s*")
# Zero-width split after each clause separator keeps the separator in place
_CLAUSE_RE = re.compile(rf"(?<=[{re.escape(CLAUSE_SPLITTERS)}])\s*")


def is_structural(paragraph: str) -> bool:
    """Headings and TOC entries: bracket-marked, or short with no terminal punctuation."""
    if HEADING_OPEN in paragraph and HEADING_CLOSE in paragraph:
        return True
    return (
        len(paragraph) < STRUCTURAL_MAX_LENGTH
        and not paragraph.endswith(tuple(SENTENCE_TERMINALS))
    )


def split_sentences(paragraph: str) -> list[str]:
    """Split on sentence terminals, keeping each terminal on its sentence."""
    parts = _SENTENCE_RE.split(paragraph)
    sentences = []
    for i in range(0, len(parts), 2):
        terminal = parts[i + 1] if i + 1 < len(parts) else ""
        sentence = (parts[i] + terminal).strip()
        if sentence:
            sentences.append(sentence)
    return sentences


def _join(left: str, right: str) -> str:
    """Join two pieces, spacing only after Latin text (CJK runs together)."""
    if not left:
        return right
    separator = " " if left[-1].isascii() else ""
    return left + separator + right


def _pack(pieces: list[str], limit: int, overflow) -> list[str]:
    """Greedily pack pieces into chunks no longer than limit.

    A single piece over the limit is flushed on its own through overflow().
    """
    chunks = []
    current = ""
    for piece in pieces:
        candidate = _join(current, piece)
        if len(candidate) <= limit:
            current = candidate
            continue
        if current:
            chunks.append(current)
        current = ""
        if len(piece) <= limit:
            current = piece
        else:
            chunks.extend(overflow(piece))
    if current:
        chunks.append(current)
    return chunks


def split_by_length(text: str, limit: int, window: int = SOFT_BREAK_WINDOW) -> list[str]:
    """Hard-split text into pieces of at most limit chars.

    Cuts after the last soft-break character found in the window before the
    limit, or exactly at the limit when there is none.
    """
    pieces = []
    text = text.strip()
    while len(text) > limit:
        cut = limit
        for i in range(limit - 1, max(limit - window, 0) - 1, -1):
            if text[i] in SOFT_BREAK_CHARS:
                cut = i + 1
                break
        head = text[:cut].strip()
        if head:
            pieces.append(head)
        text = text[cut:].strip()
    if text:
        pieces.append(text)
    return pieces


def split_clauses(sentence: str, limit: int, window: int = SOFT_BREAK_WINDOW) -> list[str]:
    """Split an over-long sentence on commas/semicolons, then by length."""
    clauses = [c for c in _CLAUSE_RE.split(sentence) if c.strip()]
    return _pack(clauses, limit, lambda piece: split_by_length(piece, limit, window))


def _check_units(units: list[SpeakableUnit], limit: int) -> None:
    for i, unit in enumerate(units):
        if not unit.is_structural and len(unit.text) > limit:
            logger.error("%s", SegmentationDefect(i, len(unit.text), limit))


def segment(
    text: str,
    max_unit_length: int = MAX_UNIT_LENGTH,
    soft_break_window: int = SOFT_BREAK_WINDOW,
) -> list[SpeakableUnit]:
    """Segment text into an ordered list of SpeakableUnits.

    Paragraphs are separated by blank lines. Structural paragraphs (headings,
    TOC entries) become single units exempt from the length bound; prose is
    packed sentence by sentence up to max_unit_length, falling back to clause
    and soft-break splitting for sentences that do not fit.
    """
    if max_unit_length < 1:
        raise ValueError(f"max_unit_length must be positive, got {max_unit_length}")

    paragraphs = []
    for raw in _PARAGRAPH_RE.split(text):
        cleaned = _WHITESPACE_RE.sub(" ", raw).strip()
        if cleaned:
            paragraphs.append(cleaned)

    units = []
    for p_index, paragraph in enumerate(paragraphs):
        if is_structural(paragraph):
            units.append(SpeakableUnit(text=paragraph, is_structural=True))
            continue

        chunks = _pack(
            split_sentences(paragraph),
            max_unit_length,
            lambda sentence: split_clauses(sentence, max_unit_length, soft_break_window),
        )
        last_paragraph = p_index == len(paragraphs) - 1
        for c_index, chunk in enumerate(chunks):
            trailing = not last_paragraph and c_index == len(chunks) - 1
            units.append(SpeakableUnit(text=chunk, has_trailing_break=trailing))

    _check_units(units, max_unit_length)
    return units
