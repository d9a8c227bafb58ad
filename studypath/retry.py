"""
StudyPath: Retry Controller
===========================
Bounded retries with exponential backoff around the chunk processor.

    attempt 1 ── RetryableFailure ── wait base ── attempt 2 ── wait 2×base ── ...

Only ``RetryableFailure`` is retried. Once ``max_retries`` retries are spent
the last failure is returned as a ``FatalFailure`` so the caller always sees
a terminal outcome. The backoff sleep observes the cancellation token.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from studypath.config import PipelineSettings
from studypath.errors import ErrorKind
from studypath.models import (
    Canceled,
    ChunkContext,
    ChunkOutcome,
    ContentChunk,
    FatalFailure,
    RetryableFailure,
)
from studypath.progress import CancellationToken

logger = logging.getLogger(__name__)

_REASONS = {
    ErrorKind.RATE_LIMITED: "Rate limit",
    ErrorKind.TIMEOUT: "Timeout",
}


class SupportsProcess(Protocol):
    def process(
        self, chunk: ContentChunk, context: ChunkContext, token: Optional[CancellationToken] = None
    ) -> ChunkOutcome: ...


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 15.0
    max_delay: float = 120.0

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> "RetryPolicy":
        return cls(
            max_retries=settings.max_retries,
            base_delay=settings.base_retry_delay,
            max_delay=settings.max_retry_delay,
        )

    def delay_for(self, retry: int) -> float:
        """Backoff before retry number ``retry`` (0-based)."""
        return min(self.base_delay * (2**retry), self.max_delay)


def process_with_retry(
    processor: SupportsProcess,
    chunk: ContentChunk,
    context: ChunkContext,
    policy: Optional[RetryPolicy] = None,
    token: Optional[CancellationToken] = None,
    on_message: Optional[Callable[[str], None]] = None,
    wait: Optional[Callable[[float], bool]] = None,
) -> ChunkOutcome:
    """
    Run ``processor.process`` until it yields a terminal outcome.

    Parameters
    ----------
    wait : Callable[[float], bool], optional
        Sleeps for the given seconds and returns True if cancelled meanwhile.
        Defaults to ``token.wait``.
    """
    policy = policy or RetryPolicy()
    token = token or CancellationToken()
    wait = wait or token.wait
    retries = 0

    while True:
        outcome = processor.process(chunk, context, token)
        if not isinstance(outcome, RetryableFailure):
            return outcome

        if retries >= policy.max_retries:
            logger.error(
                "Chunk %s (pages %s-%s) still failing after %s retries: %s",
                chunk.chunk_index + 1,
                chunk.start_page,
                chunk.end_page,
                retries,
                outcome.message,
            )
            return FatalFailure(outcome.kind, outcome.message)

        delay = policy.delay_for(retries)
        reason = _REASONS.get(outcome.kind, outcome.kind.value)
        message = (
            f"{reason} detected. Retrying chunk {chunk.chunk_index + 1} in {delay:g}s "
            f"(attempt {retries + 1}/{policy.max_retries})..."
        )
        logger.warning(message)
        if on_message is not None:
            on_message(message)

        if wait(delay):
            logger.info("Canceled while waiting to retry chunk %s", chunk.chunk_index + 1)
            return Canceled()
        retries += 1
