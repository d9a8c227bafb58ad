from __future__ import annotations

import threading
import time
import uuid

from studypath.errors import ContentGenerationError, ErrorKind
from studypath.models import Canceled, ChunkContext, ContentChunk, FatalFailure, RetryableFailure, Success
from studypath.processor import ChunkProcessor, build_chunk_content, topic_order
from studypath.progress import CancellationToken
from studypath.retry import RetryPolicy, process_with_retry

from tests.conftest import FakeGenerator, make_pages, quota_exceeded, rate_limited


def _chunk(start: int = 1, count: int = 3, index: int = 0) -> ContentChunk:
    return ContentChunk(chunk_index=index, pages=tuple(make_pages(count, start=start)))


def test_success_maps_topics_with_page_range_and_order() -> None:
    processor = ChunkProcessor(FakeGenerator(default_topics=3))
    chunk = _chunk(start=16, count=15, index=1)

    outcome = processor.process(chunk, ChunkContext(document_id="doc-1", part_index=2))

    assert isinstance(outcome, Success)
    assert [t.order for t in outcome.topics] == [2_001_000, 2_001_001, 2_001_002]
    assert all(t.page_numbers == tuple(range(16, 31)) for t in outcome.topics)
    assert outcome.topics[0].content == "Short description\n\nSummary content"
    assert outcome.topics[0].id == str(uuid.uuid5(uuid.NAMESPACE_URL, "doc-1/2001000"))


def test_request_text_is_delimited_by_page() -> None:
    text = build_chunk_content(_chunk(start=5, count=2))

    assert text.startswith("=== DOCUMENT: PAGES 5-6 ===")
    assert "--- PAGE 5 ---" in text and "--- PAGE 6 ---" in text


def test_rate_limit_is_retryable() -> None:
    processor = ChunkProcessor(FakeGenerator({1: [rate_limited()]}))

    outcome = processor.process(_chunk(), ChunkContext("doc-1"))

    assert outcome == RetryableFailure(ErrorKind.RATE_LIMITED, "Rate limit hit: 429")


def test_quota_exhaustion_is_fatal() -> None:
    processor = ChunkProcessor(FakeGenerator({1: [quota_exceeded()]}))

    outcome = processor.process(_chunk(), ChunkContext("doc-1"))

    assert isinstance(outcome, FatalFailure)
    assert outcome.kind is ErrorKind.QUOTA_EXCEEDED


def test_malformed_response_and_unexpected_errors_are_fatal() -> None:
    malformed = ContentGenerationError(ErrorKind.MALFORMED_RESPONSE, "bad json")
    processor = ChunkProcessor(FakeGenerator({1: [malformed], 4: [KeyError("boom")]}))

    first = processor.process(_chunk(start=1), ChunkContext("doc-1"))
    second = processor.process(_chunk(start=4, index=1), ChunkContext("doc-1"))

    assert first == FatalFailure(ErrorKind.MALFORMED_RESPONSE, "bad json")
    assert isinstance(second, FatalFailure)
    assert second.kind is ErrorKind.OTHER
    assert "KeyError" in second.message


def test_timeout_becomes_retryable_failure() -> None:
    release = threading.Event()
    generator = FakeGenerator()
    generator.on_call = lambda _: release.wait(5)
    processor = ChunkProcessor(generator, timeout=0.05)

    try:
        outcome = processor.process(_chunk(), ChunkContext("doc-1"))
    finally:
        release.set()

    assert isinstance(outcome, RetryableFailure)
    assert outcome.kind is ErrorKind.TIMEOUT


def test_topic_order_strides_do_not_collide() -> None:
    assert topic_order(0, 999, 999) < topic_order(1, 0, 0)
    assert topic_order(3, 1, 999) < topic_order(3, 2, 0)


def test_timed_out_request_finishes_before_the_next_attempt_starts() -> None:
    lock = threading.Lock()
    in_flight = [0]
    peak = [0]

    def slow_call(_: int) -> None:
        with lock:
            in_flight[0] += 1
            peak[0] = max(peak[0], in_flight[0])
        time.sleep(0.3)
        with lock:
            in_flight[0] -= 1

    generator = FakeGenerator()
    generator.on_call = slow_call
    processor = ChunkProcessor(generator, timeout=0.05)

    try:
        outcome = process_with_retry(processor, _chunk(), ChunkContext("doc-1"), RetryPolicy(3, 0.01, 0.01))
    finally:
        processor.close()

    assert outcome == FatalFailure(ErrorKind.TIMEOUT, "Chunk timed out after 0.05s")
    assert len(generator.calls) == 4
    assert peak[0] == 1


def test_cancel_while_waiting_on_a_timed_out_request() -> None:
    release = threading.Event()
    generator = FakeGenerator()
    generator.on_call = lambda _: release.wait(5)
    processor = ChunkProcessor(generator, timeout=0.05)
    token = CancellationToken()

    try:
        first = processor.process(_chunk(), ChunkContext("doc-1"), token)
        token.cancel()
        second = processor.process(_chunk(), ChunkContext("doc-1"), token)
    finally:
        release.set()
        processor.close()

    assert isinstance(first, RetryableFailure)
    assert isinstance(second, Canceled)
    assert len(generator.calls) == 1
