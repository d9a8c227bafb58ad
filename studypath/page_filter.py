"""
StudyPath: Page Filter
======================
Drops pages that are unlikely to hold learnable content:

    * near-empty pages (fewer than ``min_page_chars`` after trimming)
    * short pages that open with a structural heading such as
      "Bibliography", "Index" or "Table of contents"

If filtering would keep less than ``min_retained_ratio`` of the document
it is treated as a false positive and the input is returned untouched.
"""

from __future__ import annotations

import logging
from typing import Sequence

from studypath.config import PipelineSettings
from studypath.models import Page

logger = logging.getLogger(__name__)

IRRELEVANT_PAGE_KEYWORDS = (
    "bibliografía",
    "bibliography",
    "referencias",
    "references",
    "índice",
    "index",
    "tabla de contenido",
    "table of contents",
    "glosario",
    "glossary",
    "apéndice",
    "appendix",
    "agradecimientos",
    "acknowledgments",
    "acknowledgements",
    "sobre el autor",
    "about the author",
)


def _is_structural_page(page: Page, max_chars: int) -> bool:
    """A short page that starts with a bibliography/index/... heading."""
    trimmed = page.text.strip()
    if len(trimmed) >= max_chars:
        return False
    head = trimmed.lower()
    return any(head.startswith(keyword) for keyword in IRRELEVANT_PAGE_KEYWORDS)


def filter_relevant_pages(
    pages: Sequence[Page], settings: PipelineSettings | None = None
) -> list[Page]:
    """Return the pages worth summarising, in their original order."""
    settings = settings or PipelineSettings()
    kept: list[Page] = []

    for page in pages:
        trimmed_len = len(page.text.strip())
        if trimmed_len < settings.min_page_chars:
            logger.debug("Filtering page %s: too short (%s chars)", page.number, trimmed_len)
            continue
        if _is_structural_page(page, settings.irrelevant_page_max_chars):
            logger.debug("Filtering page %s: structural page", page.number)
            continue
        kept.append(page)

    if pages and len(kept) / len(pages) < settings.min_retained_ratio:
        logger.warning(
            "Filtering too aggressive: %s/%s pages kept. Using all pages.",
            len(kept),
            len(pages),
        )
        return list(pages)

    logger.info("Relevant pages after filtering: %s of %s", len(kept), len(pages))
    return kept
