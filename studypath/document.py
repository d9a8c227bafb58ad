"""
StudyPath: Document Source
==========================
Turns an input file into a ``DocumentContent``.

    .pdf   text layer read page by page with PyMuPDF
    .json  an already-extracted document:

        {
          "documentId": "...",
          "filename": "book.pdf",
          "pages": [{"pageNumber": 1, "content": "...", "wordCount": 120}],
          "metadata": {...}
        }

snake_case keys (``document_id``, ``page_number``, ``word_count``) are
accepted as well. Scanned PDFs without a text layer are rejected.
"""

from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path
from typing import Iterable, Optional

import fitz  # PyMuPDF

from studypath.errors import DocumentLoadError
from studypath.models import DocumentContent, Page

logger = logging.getLogger(__name__)

# Below this much text in the whole PDF we assume there is no text layer
MIN_DOCUMENT_CHARS = 100


def _document_id(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()[:16]


def _word_count(text: str) -> int:
    return len(text.split())


def _pick(entry: dict, *keys: str, default=None):
    for key in keys:
        if key in entry:
            return entry[key]
    return default


def document_from_texts(
    texts: Iterable[str],
    filename: str = "document.txt",
    document_id: Optional[str] = None,
) -> DocumentContent:
    """Build a document from raw page strings, numbering pages from 1."""
    pages = tuple(
        Page(number=i, text=text, word_count=_word_count(text))
        for i, text in enumerate(texts, start=1)
    )
    if document_id is None:
        document_id = _document_id("\f".join(p.text for p in pages).encode("utf-8"))
    return DocumentContent(document_id=document_id, filename=filename, pages=pages)


def load_document_json(path: str | Path) -> DocumentContent:
    path = Path(path)
    try:
        raw = path.read_bytes()
        data = json.loads(raw.decode("utf-8"))
    except FileNotFoundError as exc:
        raise DocumentLoadError(f"Document not found: {path}") from exc
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DocumentLoadError(f"Invalid document JSON in {path.name}: {exc}") from exc

    if not isinstance(data, dict) or not isinstance(data.get("pages"), list):
        raise DocumentLoadError(f"{path.name} has no 'pages' list")

    pages: list[Page] = []
    for position, entry in enumerate(data["pages"], start=1):
        if not isinstance(entry, dict):
            raise DocumentLoadError(f"Page entry #{position} is not an object")
        text = str(_pick(entry, "content", "text", default=""))
        try:
            number = int(_pick(entry, "pageNumber", "page_number", "number", default=position))
            words = int(_pick(entry, "wordCount", "word_count", default=_word_count(text)))
            pages.append(Page(number=number, text=text, word_count=words))
        except (TypeError, ValueError) as exc:
            raise DocumentLoadError(f"Invalid page entry #{position}: {exc}") from exc

    pages.sort(key=lambda p: p.number)
    document = DocumentContent(
        document_id=str(_pick(data, "documentId", "document_id", default=_document_id(raw))),
        filename=str(data.get("filename") or path.name),
        pages=tuple(pages),
    )
    logger.info("Loaded %s: %s pages, %s chars", document.filename, len(pages), document.total_characters)
    return document


def extract_pdf(path: str | Path) -> DocumentContent:
    """Extract the text of every page of a PDF."""
    path = Path(path)
    if not path.exists():
        raise DocumentLoadError(f"PDF not found: {path}")

    try:
        doc = fitz.open(str(path))
    except RuntimeError as exc:  # fitz.FileDataError and friends
        raise DocumentLoadError(f"Could not open {path.name}: {exc}") from exc

    pages: list[Page] = []
    try:
        logger.info("Opened '%s': %s pages", path.name, len(doc))
        for page_num, page in enumerate(doc):
            # (x0, y0, x1, y1, text, block_no, block_type)
            blocks = page.get_text("blocks")
            text_blocks = sorted(
                (b for b in blocks if b[6] == 0 and b[4].strip()), key=lambda b: b[1]
            )
            text = "\n\n".join(b[4].strip() for b in text_blocks)
            pages.append(Page(number=page_num + 1, text=text, word_count=_word_count(text)))
    finally:
        doc.close()

    total_chars = sum(len(p.text) for p in pages)
    if total_chars < MIN_DOCUMENT_CHARS:
        raise DocumentLoadError(
            f"Extracted text is suspiciously short ({total_chars} chars). "
            "The PDF is probably scanned and has no text layer."
        )

    return DocumentContent(
        document_id=_document_id(path.read_bytes()),
        filename=path.name,
        pages=tuple(pages),
    )


def load_document(path: str | Path) -> DocumentContent:
    """Load a ``.pdf`` or ``.json`` document; raises ``DocumentLoadError`` otherwise."""
    suffix = Path(path).suffix.lower()
    if suffix == ".pdf":
        return extract_pdf(path)
    if suffix == ".json":
        return load_document_json(path)
    raise DocumentLoadError(f"Unsupported document type '{suffix}' (expected .pdf or .json)")
