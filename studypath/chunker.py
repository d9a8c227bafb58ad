"""
StudyPath: Chunk Builder & Part Splitter
========================================
Two partitions of the (filtered) page sequence:

    Parts   fixed-size groups of ``pages_per_part`` pages. A failure or a
            quota wall costs at most one part's progress.
    Chunks  one request each. Greedy packing bounded by both a page count
            and a character budget; a page is never split.
"""

from __future__ import annotations

import logging
from typing import Sequence

from studypath.models import ContentChunk, Page

logger = logging.getLogger(__name__)

PAGES_PER_CHUNK = 15
MAX_CHARS_PER_CHUNK = 120_000
PAGES_PER_PART = 200


def build_chunks(
    pages: Sequence[Page],
    pages_per_chunk: int = PAGES_PER_CHUNK,
    max_chars_per_chunk: int = MAX_CHARS_PER_CHUNK,
) -> list[ContentChunk]:
    """
    Pack ordered pages into chunks.

    Parameters
    ----------
    pages : Sequence[Page]
        Pages in document order.
    pages_per_chunk : int
        Hard cap on pages per chunk.
    max_chars_per_chunk : int
        Character budget. Only a chunk holding a single oversized page may
        exceed it.

    Returns
    -------
    list[ContentChunk]
        Contiguous, non-overlapping chunks covering every page once.
    """
    chunks: list[ContentChunk] = []
    current: list[Page] = []
    current_chars = 0

    def flush() -> None:
        nonlocal current, current_chars
        if not current:
            return
        chunk = ContentChunk(chunk_index=len(chunks), pages=tuple(current))
        chunks.append(chunk)
        logger.debug(
            "Chunk %s: pages %s-%s, %s chars",
            chunk.chunk_index,
            chunk.start_page,
            chunk.end_page,
            chunk.total_characters,
        )
        current = []
        current_chars = 0

    for page in pages:
        page_chars = len(page.text)
        would_exceed_chars = current_chars + page_chars > max_chars_per_chunk
        would_exceed_pages = len(current) >= pages_per_chunk

        if current and (would_exceed_chars or would_exceed_pages):
            flush()

        current.append(page)
        current_chars += page_chars

        # An oversized page travels alone
        if len(current) == 1 and current_chars > max_chars_per_chunk:
            flush()

    flush()
    return chunks


def split_into_parts(
    pages: Sequence[Page], pages_per_part: int = PAGES_PER_PART
) -> list[list[Page]]:
    """Fixed-size contiguous partition; the last part may be shorter."""
    if pages_per_part < 1:
        raise ValueError("pages_per_part must be at least 1")
    return [list(pages[i : i + pages_per_part]) for i in range(0, len(pages), pages_per_part)]
