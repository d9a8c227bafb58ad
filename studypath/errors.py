"""
StudyPath: Error Taxonomy
=========================
Failure kinds reported by the content-generation service and the
exceptions raised at the edges of the pipeline.

    RATE_LIMITED        transient 429, retried with backoff
    TIMEOUT             chunk exceeded its deadline, retried
    QUOTA_EXCEEDED      daily quota gone, waiting will not help
    MALFORMED_RESPONSE  reply could not be parsed into topics
    NETWORK_ERROR       connection failure
    OTHER               any other remote error (bad status, auth, ...)
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from studypath.models import FailedChunk


class ErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    QUOTA_EXCEEDED = "quota_exceeded"
    MALFORMED_RESPONSE = "malformed_response"
    NETWORK_ERROR = "network_error"
    OTHER = "other"


class StudyPathError(Exception):
    """Base exception for the package."""


class ContentGenerationError(StudyPathError):
    """Raised by a topic generator; ``kind`` drives retry decisions."""

    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class NoTopicsGeneratedError(StudyPathError):
    """Every part was attempted and not a single topic came back."""

    def __init__(self, message: str, failed_chunks: Sequence["FailedChunk"] = ()) -> None:
        super().__init__(message)
        self.message = message
        self.failed_chunks = tuple(failed_chunks)


class DocumentLoadError(StudyPathError):
    """The input document could not be read or has no pages."""
