from __future__ import annotations

import json
from pathlib import Path

import pytest

import main
from studypath.config import PipelineSettings
from studypath.dlq import DLQ
from studypath.progress import CancellationToken

from tests.conftest import FakeGenerator, page_text, quota_exceeded


@pytest.fixture
def document_path(tmp_path: Path) -> Path:
    path = tmp_path / "biology.json"
    pages = [{"pageNumber": n, "content": page_text(n, 1000), "wordCount": 160} for n in range(1, 46)]
    path.write_text(json.dumps({"documentId": "doc-cli", "filename": "biology.pdf", "pages": pages}), encoding="utf-8")
    return path


@pytest.fixture
def dlq(tmp_path: Path):
    queue = DLQ(tmp_path / "dlq.db")
    yield queue
    queue.close()


def test_complete_run_writes_result(document_path: Path, tmp_path: Path, dlq: DLQ) -> None:
    output = tmp_path / "out.json"

    code = main.run(document_path, output, PipelineSettings(), FakeGenerator(default_topics=2), dlq)

    assert code == main.EXIT_OK
    data = json.loads(output.read_text(encoding="utf-8"))
    assert data["status"] == "completed"
    assert len(data["topics"]) == 6
    assert dlq.summary() == {}


def test_partial_run_then_retry_failed_merges_topics(document_path: Path, tmp_path: Path, dlq: DLQ) -> None:
    output = tmp_path / "out.json"
    failing = FakeGenerator({16: [quota_exceeded()]}, default_topics=1)

    assert main.run(document_path, output, PipelineSettings(), failing, dlq) == main.EXIT_OK
    first = json.loads(output.read_text(encoding="utf-8"))
    assert first["status"] == "partial"
    assert len(first["topics"]) == 2
    assert dlq.summary() == {"pending": 1}

    code = main.retry_failed(document_path, output, PipelineSettings(), FakeGenerator(default_topics=1), dlq)

    assert code == main.EXIT_OK
    merged = json.loads(output.read_text(encoding="utf-8"))
    assert merged["status"] == "completed"
    assert merged["description"].startswith("Complete learning path generated from 45 pages")
    assert [t["order"] for t in merged["topics"]] == [0, 1_000, 2_000]
    assert merged["failed_chunks"] == []


def test_cancelled_run_exits_with_2(document_path: Path, tmp_path: Path, dlq: DLQ) -> None:
    token = CancellationToken()
    token.cancel()
    output = tmp_path / "out.json"

    code = main.run(document_path, output, PipelineSettings(), FakeGenerator(), dlq, token)

    assert code == main.EXIT_CANCELED
    assert json.loads(output.read_text(encoding="utf-8"))["status"] == "canceled"


def test_hard_failure_exits_with_1(document_path: Path, tmp_path: Path, dlq: DLQ) -> None:
    generator = FakeGenerator({1: [quota_exceeded()], 16: [quota_exceeded()], 31: [quota_exceeded()]})
    output = tmp_path / "out.json"

    code = main.run(document_path, output, PipelineSettings(), generator, dlq)

    assert code == main.EXIT_FAILED
    assert not output.exists()
    assert dlq.summary() == {"pending": 3}


def test_main_rejects_missing_input(tmp_path: Path) -> None:
    assert main.main([str(tmp_path / "missing.pdf")]) == main.EXIT_FAILED


def test_main_rejects_invalid_pages_per_part(document_path: Path, tmp_path: Path) -> None:
    code = main.main([str(document_path), "--pages-per-part", "1000", "--dlq", str(tmp_path / "dlq.db")])

    assert code == main.EXIT_FAILED


def test_retry_failed_crash_exits_with_1_and_keeps_result(
    document_path: Path, tmp_path: Path, dlq: DLQ, monkeypatch: pytest.MonkeyPatch
) -> None:
    output = tmp_path / "out.json"
    main.run(document_path, output, PipelineSettings(), FakeGenerator({16: [quota_exceeded()]}), dlq)
    before = output.read_text(encoding="utf-8")

    def broken(*args, **kwargs):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(dlq, "retry_all", broken)
    code = main.retry_failed(document_path, output, PipelineSettings(), FakeGenerator(), dlq)

    assert code == main.EXIT_FAILED
    assert output.read_text(encoding="utf-8") == before
    assert dlq.summary() == {"pending": 1}
