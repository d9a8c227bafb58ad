"""
StudyPath: Chunk Processor
==========================
Sends one chunk to the topic generator under a hard deadline and turns
whatever happens into a ``ChunkOutcome``. Nothing raises past ``process``.
"""

from __future__ import annotations

import concurrent.futures
import logging
import uuid
from typing import Iterable, Optional

from studypath.config import CHUNK_ORDER_STRIDE, PART_ORDER_STRIDE, PipelineSettings
from studypath.errors import ContentGenerationError, ErrorKind
from studypath.generator import ChunkResponse, TopicGenerator
from studypath.models import (
    Canceled,
    ChunkContext,
    ChunkOutcome,
    ContentChunk,
    FatalFailure,
    RetryableFailure,
    Success,
    Topic,
)
from studypath.progress import CancellationToken

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_TIMEOUT = 90.0
DEFAULT_RETRYABLE_KINDS = frozenset({ErrorKind.RATE_LIMITED, ErrorKind.TIMEOUT})
DRAIN_POLL_SECONDS = 0.2


def build_chunk_content(chunk: ContentChunk) -> str:
    """Page-delimited request text for one chunk."""
    lines = [f"=== DOCUMENT: PAGES {chunk.start_page}-{chunk.end_page} ===", ""]
    for page in chunk.pages:
        lines.append(f"--- PAGE {page.number} ---")
        lines.append(page.text)
        lines.append("")
    return "\n".join(lines)


def topic_order(part_index: int, chunk_index: int, local_index: int) -> int:
    return part_index * PART_ORDER_STRIDE + chunk_index * CHUNK_ORDER_STRIDE + local_index


class ChunkProcessor:
    """
    One generator call at a time, each bounded by ``timeout``.

    A call that outlives its deadline keeps the single worker busy; the next
    ``process`` waits for it to drain before sending anything else, so at most
    one request is ever in flight.
    """

    def __init__(
        self,
        generator: TopicGenerator,
        timeout: float = DEFAULT_CHUNK_TIMEOUT,
        retryable_kinds: Iterable[ErrorKind] = DEFAULT_RETRYABLE_KINDS,
    ) -> None:
        self.generator = generator
        self.timeout = timeout
        self.retryable_kinds = frozenset(retryable_kinds)
        self._executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="chunk")
        self._last: Optional[concurrent.futures.Future] = None

    @classmethod
    def from_settings(cls, generator: TopicGenerator, settings: PipelineSettings) -> "ChunkProcessor":
        return cls(generator, timeout=settings.chunk_timeout, retryable_kinds=settings.retryable_kinds)

    def _drain(self, token: Optional[CancellationToken]) -> bool:
        """Wait for a timed-out call to finish; False if cancelled first."""
        last = self._last
        if last is None or last.done():
            return True
        logger.info("Waiting for the previous timed-out request to finish...")
        while not last.done():
            if token is not None and token.is_cancelled:
                return False
            concurrent.futures.wait([last], timeout=DRAIN_POLL_SECONDS)
        return True

    def process(
        self,
        chunk: ContentChunk,
        context: ChunkContext,
        token: Optional[CancellationToken] = None,
    ) -> ChunkOutcome:
        if not self._drain(token):
            return Canceled()

        text = build_chunk_content(chunk)
        future = self._executor.submit(
            self.generator.generate_topics_for_chunk,
            text,
            chunk.chunk_index,
            chunk.start_page,
            chunk.end_page,
        )
        self._last = future
        try:
            response = future.result(timeout=self.timeout)
        except concurrent.futures.TimeoutError:
            return self._failure(ErrorKind.TIMEOUT, f"Chunk timed out after {self.timeout:g}s")
        except ContentGenerationError as exc:
            return self._failure(exc.kind, exc.message)
        except Exception as exc:
            logger.exception("Unexpected error from topic generator on chunk %s", chunk.chunk_index)
            return self._failure(ErrorKind.OTHER, f"{type(exc).__name__}: {exc}")

        return Success(self._to_topics(response, chunk, context))

    def close(self) -> None:
        """Release the worker; a request still running is not waited for."""
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _failure(self, kind: ErrorKind, message: str) -> ChunkOutcome:
        if kind in self.retryable_kinds:
            return RetryableFailure(kind, message)
        return FatalFailure(kind, message)

    def _to_topics(
        self, response: ChunkResponse, chunk: ContentChunk, context: ChunkContext
    ) -> tuple[Topic, ...]:
        drafts = response.topics
        if len(drafts) > CHUNK_ORDER_STRIDE:
            logger.warning(
                "Chunk %s returned %s topics; keeping the first %s",
                chunk.chunk_index,
                len(drafts),
                CHUNK_ORDER_STRIDE,
            )
            drafts = drafts[:CHUNK_ORDER_STRIDE]

        page_numbers = tuple(range(chunk.start_page, chunk.end_page + 1))
        topics = []
        for local_index, draft in enumerate(drafts):
            order = topic_order(context.part_index, chunk.chunk_index, local_index)
            topics.append(
                Topic(
                    id=str(uuid.uuid5(uuid.NAMESPACE_URL, f"{context.document_id}/{order}")),
                    title=draft.title,
                    content="\n\n".join(p for p in (draft.description, draft.content) if p),
                    page_numbers=page_numbers,
                    order=order,
                    key_points=draft.key_points,
                    estimated_minutes=draft.estimated_minutes,
                )
            )
        return tuple(topics)
