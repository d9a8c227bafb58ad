"""
StudyPath: Pipeline Aggregator
==============================
Drives a whole document through the chunked pipeline:

    filter pages → split into parts → chunk each part
                 → (per chunk, strictly sequential) retry → process
                 → collect topics / record failures → final result

A failing chunk never aborts the run. The run ends in one of three ways:

    ProcessingResult        complete, or partial with ``failed_chunks``
    CanceledRun             user cancelled; keeps every topic produced so far
    NoTopicsGeneratedError  every chunk was attempted, nothing came back

Usage
-----
    from studypath.pipeline import process_document
    result = process_document(document, ChunkProcessor(generator))
"""

from __future__ import annotations

import logging
from typing import Callable, Optional, Sequence

from studypath.chunker import build_chunks, split_into_parts
from studypath.config import PipelineSettings
from studypath.errors import NoTopicsGeneratedError
from studypath.models import (
    Canceled,
    CanceledRun,
    ChunkContext,
    ContentChunk,
    DocumentContent,
    FailedChunk,
    FatalFailure,
    PipelineOutcome,
    ProcessingResult,
    Success,
    Topic,
)
from studypath.page_filter import filter_relevant_pages
from studypath.progress import (
    CancellationToken,
    PipelineCallbacks,
    ProgressUpdate,
    overall_fraction,
)
from studypath.retry import RetryPolicy, SupportsProcess, process_with_retry

logger = logging.getLogger(__name__)

MAX_TITLE_CHARS = 100


def extract_title(document: DocumentContent) -> str:
    """First non-empty line of the first page, else the filename without ``.pdf``."""
    if document.pages:
        for line in document.pages[0].text.splitlines():
            if line.strip():
                return line.strip()[:MAX_TITLE_CHARS]
    filename = document.filename
    return filename[:-4] if filename.lower().endswith(".pdf") else filename


def plan_chunks(
    document: DocumentContent, settings: PipelineSettings
) -> list[list[ContentChunk]]:
    """Filtered pages, split into parts, each part chunked independently."""
    relevant = filter_relevant_pages(document.pages, settings)
    parts = split_into_parts(relevant, settings.pages_per_part)
    return [
        build_chunks(part, settings.pages_per_chunk, settings.max_chars_per_chunk)
        for part in parts
    ]


def describe_result(
    page_count: int,
    failed_parts: Sequence[int],
    total_parts: int,
    total_chunks: int,
) -> str:
    """Summary line for a result; ``failed_parts`` holds the part index of each failed chunk."""
    if not failed_parts:
        return f"Complete learning path generated from {page_count} pages in {total_parts} part(s)"
    successful_parts = total_parts - len(set(failed_parts))
    return (
        f"Processed {successful_parts} of {total_parts} parts. "
        f"{len(failed_parts)} of {total_chunks} section(s) were omitted due to processing errors."
    )


def process_document(
    document: DocumentContent,
    processor: SupportsProcess,
    settings: Optional[PipelineSettings] = None,
    callbacks: Optional[PipelineCallbacks] = None,
    token: Optional[CancellationToken] = None,
    wait: Optional[Callable[[float], bool]] = None,
) -> PipelineOutcome:
    """
    Turn a document into topics, one chunk at a time.

    Parameters
    ----------
    document : DocumentContent
        Ordered pages to summarise. Only read.
    processor : SupportsProcess
        Usually a ``ChunkProcessor`` wrapping a topic generator.
    settings : PipelineSettings, optional
        Chunk/part sizes, filter thresholds and retry policy.
    callbacks : PipelineCallbacks, optional
        Progress, partial-topic and failed-chunk hooks.
    token : CancellationToken, optional
        Checked before every chunk and during retry backoff.
    wait : Callable[[float], bool], optional
        Backoff sleeper, see ``process_with_retry``.

    Returns
    -------
    ProcessingResult | CanceledRun

    Raises
    ------
    NoTopicsGeneratedError
        When the run finished without producing a single topic.
    """
    settings = settings or PipelineSettings()
    callbacks = callbacks or PipelineCallbacks()
    token = token or CancellationToken()
    policy = RetryPolicy.from_settings(settings)

    logger.info(
        "Starting chunked processing of %s: %s pages, %s chars",
        document.filename,
        len(document.pages),
        document.total_characters,
    )

    plan = plan_chunks(document, settings)
    total_parts = len(plan)
    total_chunks = sum(len(chunks) for chunks in plan)
    logger.info("Document split into %s part(s), %s chunk(s)", total_parts, total_chunks)

    topics: list[Topic] = []
    failed: list[FailedChunk] = []
    current = 0

    def canceled() -> CanceledRun:
        logger.warning(
            "Processing canceled after %s/%s chunks (%s topics kept)",
            current,
            total_chunks,
            len(topics),
        )
        return CanceledRun(
            document_id=document.document_id,
            topics=tuple(topics),
            failed_chunks=tuple(failed),
        )

    for part_index, chunks in enumerate(plan):
        context = ChunkContext(document_id=document.document_id, part_index=part_index)
        part_label = f"Part {part_index + 1}/{total_parts}"
        logger.info(
            "Processing %s (pages %s-%s)",
            part_label,
            chunks[0].start_page,
            chunks[-1].end_page,
        )

        for position, chunk in enumerate(chunks):
            if token.is_cancelled:
                return canceled()
            current += 1

            def emit(message: str, done: int) -> None:
                callbacks.on_progress(
                    ProgressUpdate(
                        current_chunk=current,
                        total_chunks=total_chunks,
                        part_index=part_index,
                        total_parts=total_parts,
                        fraction=overall_fraction(part_index, done, len(chunks), total_parts),
                        message=f"{part_label} - {message}",
                    )
                )

            emit(
                f"Processing chunk {current} of {total_chunks} "
                f"(pages {chunk.start_page}-{chunk.end_page})",
                position,
            )
            outcome = process_with_retry(
                processor,
                chunk,
                context,
                policy=policy,
                token=token,
                on_message=lambda message: emit(message, position),
                wait=wait,
            )

            if isinstance(outcome, Canceled):
                return canceled()
            if isinstance(outcome, Success):
                topics.extend(outcome.topics)
                callbacks.on_partial_topics(outcome.topics)
                summary = f"Chunk {current}: {len(outcome.topics)} topics generated"
                logger.info(summary)
            elif isinstance(outcome, FatalFailure):
                record = FailedChunk(
                    part_index=part_index,
                    chunk_index=chunk.chunk_index,
                    start_page=chunk.start_page,
                    end_page=chunk.end_page,
                    message=outcome.message,
                )
                failed.append(record)
                callbacks.on_chunk_failed(record, chunk)
                summary = f"Chunk {current} failed: {outcome.message}"
                logger.error("Error processing %s", record.describe())
            else:
                raise TypeError(f"Unexpected chunk outcome: {outcome!r}")

            emit(summary, position + 1)

    if not topics:
        if failed:
            details = "All chunks failed:\n" + "\n".join(f.describe() for f in failed)
        else:
            details = "No topics could be generated from the document"
        logger.error("Processing failed: %s", details)
        raise NoTopicsGeneratedError(details, failed)

    if failed:
        logger.warning(
            "Some chunks failed (%s/%s): %s",
            len(failed),
            total_chunks,
            "; ".join(f.describe() for f in failed),
        )

    result = ProcessingResult(
        document_id=document.document_id,
        title=extract_title(document),
        description=describe_result(
            len(document.pages), [f.part_index for f in failed], total_parts, total_chunks
        ),
        topics=tuple(sorted(topics, key=lambda t: t.order)),
        failed_chunks=tuple(failed),
        total_parts=total_parts,
        total_chunks=total_chunks,
    )
    logger.info("Processing complete: %s topics generated", len(result.topics))
    return result
