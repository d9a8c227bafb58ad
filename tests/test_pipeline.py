from __future__ import annotations

import pytest

from studypath.config import PipelineSettings
from studypath.document import document_from_texts
from studypath.errors import ErrorKind, NoTopicsGeneratedError
from studypath.models import CanceledRun, FailedChunk, ProcessingResult
from studypath.pipeline import extract_title, process_document
from studypath.processor import ChunkProcessor
from studypath.progress import CancellationToken, PipelineCallbacks

from tests.conftest import FakeGenerator, make_document, quota_exceeded, rate_limited


def _run(document, generator, settings=None, callbacks=None, token=None, wait=lambda s: False):
    settings = settings or PipelineSettings()
    processor = ChunkProcessor.from_settings(generator, settings)
    return process_document(document, processor, settings, callbacks, token, wait)


def test_all_chunks_succeed() -> None:
    generator = FakeGenerator(default_topics=2)

    result = _run(make_document(47, length=1000), generator)

    assert isinstance(result, ProcessingResult)
    assert not result.is_partial
    assert len(result.topics) == 8
    assert result.total_parts == 1 and result.total_chunks == 4
    assert result.description == "Complete learning path generated from 47 pages in 1 part(s)"
    assert result.to_dict()["status"] == "completed"
    assert [call[1:] for call in generator.calls] == [(1, 15), (16, 30), (31, 45), (46, 47)]


def test_one_fatal_chunk_gives_partial_result() -> None:
    # 75 pages -> 5 chunks; the third one (pages 31-45) always fails
    generator = FakeGenerator({31: [quota_exceeded()]}, default_topics=1)
    failures: list[FailedChunk] = []
    callbacks = PipelineCallbacks(on_chunk_failed=lambda failed, chunk: failures.append(failed))

    result = _run(make_document(75, length=1000), generator, callbacks=callbacks)

    assert isinstance(result, ProcessingResult)
    assert result.is_partial
    assert len(result.topics) == 4
    assert result.failed_chunks == (
        FailedChunk(part_index=0, chunk_index=2, start_page=31, end_page=45, message="API quota exceeded"),
    )
    assert failures == list(result.failed_chunks)
    assert result.description == "Processed 0 of 1 parts. 1 of 5 section(s) were omitted due to processing errors."
    assert result.to_dict()["status"] == "partial"


def test_exhausted_retries_are_recorded_as_failures() -> None:
    generator = FakeGenerator({16: [rate_limited()]})
    delays: list[float] = []

    def wait(seconds: float) -> bool:
        delays.append(seconds)
        return False

    result = _run(make_document(30, length=1000), generator, wait=wait)

    assert delays == [15, 30, 60]
    assert len(generator.calls) == 1 + 4
    assert result.failed_chunks[0].start_page == 16
    assert len(result.topics) == 2


def test_zero_topics_is_a_hard_failure() -> None:
    generator = FakeGenerator({1: [quota_exceeded()], 16: [quota_exceeded()]})

    with pytest.raises(NoTopicsGeneratedError) as excinfo:
        _run(make_document(20, length=1000), generator)

    assert excinfo.value.message.startswith("All chunks failed:")
    assert "Part 1, chunk 1 (pages 1-15)" in excinfo.value.message
    assert len(excinfo.value.failed_chunks) == 2


def test_cancel_after_second_chunk_keeps_collected_topics() -> None:
    token = CancellationToken()
    generator = FakeGenerator(default_topics=3)
    generator.on_call = lambda call_number: token.cancel() if call_number == 2 else None

    result = _run(make_document(75, length=1000), generator, token=token)

    assert isinstance(result, CanceledRun)
    assert len(generator.calls) == 2
    assert len(result.topics) == 6
    assert result.to_dict()["status"] == "canceled"


def test_cancel_before_start_processes_nothing() -> None:
    token = CancellationToken()
    token.cancel()
    generator = FakeGenerator()

    result = _run(make_document(10), generator, token=token)

    assert isinstance(result, CanceledRun)
    assert result.topics == ()
    assert generator.calls == []


def test_parts_keep_global_order_and_progress_fractions() -> None:
    settings = PipelineSettings(pages_per_part=20, pages_per_chunk=10)
    updates = []
    callbacks = PipelineCallbacks(on_progress=updates.append)

    result = _run(make_document(50, length=1000), FakeGenerator(default_topics=1), settings, callbacks)

    assert result.total_parts == 3
    assert result.total_chunks == 5
    assert [t.order for t in result.topics] == [0, 1_000, 1_000_000, 1_001_000, 2_000_000]
    assert [t.page_numbers[0] for t in result.topics] == [1, 11, 21, 31, 41]

    done = [u for u in updates if "topics generated" in u.message]
    assert [round(u.fraction, 4) for u in done] == [0.1667, 0.3333, 0.5, 0.6667, 1.0]
    assert [u.current_chunk for u in done] == [1, 2, 3, 4, 5]
    assert all(u.total_chunks == 5 for u in updates)
    assert done[2].message.startswith("Part 2/3 - ")


def test_partial_topics_callback_fires_per_successful_chunk() -> None:
    batches = []
    callbacks = PipelineCallbacks(on_partial_topics=batches.append)

    _run(make_document(30, length=1000), FakeGenerator(default_topics=2), callbacks=callbacks)

    assert [len(b) for b in batches] == [2, 2]


def test_identical_runs_are_identical() -> None:
    document = make_document(40, length=1000)

    first = _run(document, FakeGenerator(default_topics=2))
    second = _run(document, FakeGenerator(default_topics=2))

    assert first == second


def test_retry_messages_reach_progress_callback() -> None:
    generator = FakeGenerator({1: [rate_limited(), 1]})
    updates = []

    _run(make_document(10, length=1000), generator, callbacks=PipelineCallbacks(on_progress=updates.append))

    assert any("Rate limit detected. Retrying chunk 1 in 15s" in u.message for u in updates)


def test_title_comes_from_first_line_or_filename() -> None:
    document = document_from_texts(["\n  Cell Biology 101\nIntro"], filename="bio.pdf")
    empty = document_from_texts([], filename="notes.pdf")

    assert extract_title(document) == "Cell Biology 101"
    assert extract_title(empty) == "notes"


def test_empty_document_is_a_hard_failure() -> None:
    with pytest.raises(NoTopicsGeneratedError):
        _run(document_from_texts([], filename="empty.pdf"), FakeGenerator())


def test_timeout_kind_is_retryable_by_default() -> None:
    assert ErrorKind.TIMEOUT in PipelineSettings().retryable_kinds
