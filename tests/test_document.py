from __future__ import annotations

import json
from pathlib import Path

import pytest

from studypath.document import document_from_texts, load_document, load_document_json
from studypath.errors import DocumentLoadError


def _write(tmp_path: Path, payload, name: str = "book.json") -> Path:
    path = tmp_path / name
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def test_loads_camel_case_document(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        {
            "documentId": "abc",
            "filename": "biology.pdf",
            "pages": [
                {"pageNumber": 2, "content": "Second page", "wordCount": 2},
                {"pageNumber": 1, "content": "First page", "wordCount": 2},
            ],
            "metadata": {"totalPages": 2},
        },
    )

    document = load_document_json(path)

    assert document.document_id == "abc"
    assert document.filename == "biology.pdf"
    assert [p.number for p in document.pages] == [1, 2]
    assert document.total_words == 4
    assert document.total_characters == len("First page") + len("Second page")


def test_loads_snake_case_document_with_defaults(tmp_path: Path) -> None:
    path = _write(tmp_path, {"document_id": "xyz", "pages": [{"page_number": 1, "content": "one two three"}]})

    document = load_document(path)

    assert document.document_id == "xyz"
    assert document.filename == "book.json"
    assert document.pages[0].word_count == 3


@pytest.mark.parametrize(
    "payload",
    [
        {"pages": "nope"},
        {"pages": [{"pageNumber": 0, "content": "zero"}]},
        {"pages": [{"pageNumber": "one", "content": "x"}]},
        [1, 2, 3],
    ],
)
def test_invalid_documents_are_rejected(tmp_path: Path, payload) -> None:
    with pytest.raises(DocumentLoadError):
        load_document_json(_write(tmp_path, payload))


def test_broken_json_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "broken.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(DocumentLoadError):
        load_document(path)


def test_unsupported_suffix(tmp_path: Path) -> None:
    with pytest.raises(DocumentLoadError, match="Unsupported"):
        load_document(tmp_path / "notes.docx")


def test_missing_pdf(tmp_path: Path) -> None:
    with pytest.raises(DocumentLoadError, match="not found"):
        load_document(tmp_path / "missing.pdf")


def test_document_from_texts_is_deterministic() -> None:
    first = document_from_texts(["alpha beta", "gamma"])
    second = document_from_texts(["alpha beta", "gamma"])

    assert first.document_id == second.document_id
    assert [p.number for p in first.pages] == [1, 2]
    assert first.total_words == 3
