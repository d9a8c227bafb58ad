"""
StudyPath: Progress & Cancellation
==================================
Everything the caller hands into a pipeline run to observe it or stop it.
Cancellation is cooperative: the run looks at the token before each chunk
and while sleeping between retries.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Callable, Sequence

from studypath.models import ContentChunk, FailedChunk, Topic


class CancellationToken:
    """Thread-safe one-way cancel flag."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True as soon as the token is cancelled."""
        return self._event.wait(timeout=max(seconds, 0.0))


@dataclass(frozen=True)
class ProgressUpdate:
    current_chunk: int  # 1-based, across all parts
    total_chunks: int
    part_index: int
    total_parts: int
    fraction: float  # 0.0 .. 1.0
    message: str

    @property
    def percentage(self) -> float:
        return round(self.fraction * 100, 1)


def overall_fraction(part_index: int, chunks_done: int, chunks_in_part: int, total_parts: int) -> float:
    """(part_index + progress within the part) / total_parts, clamped to [0, 1]."""
    if total_parts <= 0:
        return 1.0
    in_part = chunks_done / chunks_in_part if chunks_in_part else 1.0
    return min(max((part_index + in_part) / total_parts, 0.0), 1.0)


def _ignore_progress(update: ProgressUpdate) -> None:
    return None


def _ignore_topics(topics: Sequence[Topic]) -> None:
    return None


def _ignore_failure(failed: FailedChunk, chunk: ContentChunk) -> None:
    return None


@dataclass
class PipelineCallbacks:
    on_progress: Callable[[ProgressUpdate], None] = field(default=_ignore_progress)
    on_partial_topics: Callable[[Sequence[Topic]], None] = field(default=_ignore_topics)
    # Receives the failure record plus the chunk itself (for the dead-letter store)
    on_chunk_failed: Callable[[FailedChunk, ContentChunk], None] = field(default=_ignore_failure)
