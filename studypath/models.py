"""
StudyPath: Data Model
=====================
Immutable records passed between the pipeline stages.

``ChunkOutcome`` is a tagged union of four plain dataclasses; callers
branch on it with ``isinstance``.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Union

from studypath.errors import ErrorKind


@dataclass(frozen=True)
class Page:
    number: int
    text: str
    word_count: int = 0

    def __post_init__(self) -> None:
        if self.number < 1:
            raise ValueError(f"Page numbers start at 1, got {self.number}")


@dataclass(frozen=True)
class DocumentContent:
    document_id: str
    filename: str
    pages: tuple[Page, ...]

    @property
    def total_characters(self) -> int:
        return sum(len(p.text) for p in self.pages)

    @property
    def total_words(self) -> int:
        return sum(p.word_count for p in self.pages)


@dataclass(frozen=True)
class ContentChunk:
    chunk_index: int
    pages: tuple[Page, ...]

    def __post_init__(self) -> None:
        if not self.pages:
            raise ValueError("A chunk needs at least one page")

    @property
    def start_page(self) -> int:
        return self.pages[0].number

    @property
    def end_page(self) -> int:
        return self.pages[-1].number

    @property
    def total_characters(self) -> int:
        return sum(len(p.text) for p in self.pages)


@dataclass(frozen=True)
class ChunkContext:
    """Where a chunk sits in the run; drives deterministic topic ordering."""

    document_id: str
    part_index: int = 0


@dataclass(frozen=True)
class Topic:
    id: str
    title: str
    content: str
    page_numbers: tuple[int, ...]
    order: int
    key_points: tuple[str, ...] = ()
    estimated_minutes: int = 30


# ──────────────────────────────────────────────
# CHUNK OUTCOMES
# ──────────────────────────────────────────────
@dataclass(frozen=True)
class Success:
    topics: tuple[Topic, ...]


@dataclass(frozen=True)
class RetryableFailure:
    kind: ErrorKind
    message: str


@dataclass(frozen=True)
class FatalFailure:
    kind: ErrorKind
    message: str


@dataclass(frozen=True)
class Canceled:
    pass


ChunkOutcome = Union[Success, RetryableFailure, FatalFailure, Canceled]


# ──────────────────────────────────────────────
# RUN RESULTS
# ──────────────────────────────────────────────
@dataclass(frozen=True)
class FailedChunk:
    part_index: int
    chunk_index: int
    start_page: int
    end_page: int
    message: str

    def describe(self) -> str:
        return (
            f"Part {self.part_index + 1}, chunk {self.chunk_index + 1} "
            f"(pages {self.start_page}-{self.end_page}): {self.message}"
        )


@dataclass(frozen=True)
class ProcessingResult:
    document_id: str
    title: str
    description: str
    topics: tuple[Topic, ...]
    failed_chunks: tuple[FailedChunk, ...] = ()
    total_parts: int = 0
    total_chunks: int = 0

    @property
    def is_partial(self) -> bool:
        return bool(self.failed_chunks)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = "partial" if self.is_partial else "completed"
        return data


@dataclass(frozen=True)
class CanceledRun:
    document_id: str
    topics: tuple[Topic, ...] = field(default_factory=tuple)
    failed_chunks: tuple[FailedChunk, ...] = field(default_factory=tuple)
    message: str = "Processing canceled by the user"

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = "canceled"
        return data


PipelineOutcome = Union[ProcessingResult, CanceledRun]
