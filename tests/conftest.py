"""Shared fixtures: a scripted topic generator and page builders."""
from __future__ import annotations

import threading
from typing import Callable, Dict, List, Sequence, Union

import pytest

from studypath.document import document_from_texts
from studypath.errors import ContentGenerationError, ErrorKind
from studypath.generator import ChunkResponse, TopicDraft
from studypath.models import DocumentContent, Page

# One scripted step: an exception to raise, or a number of topics to return
Step = Union[BaseException, int]


def page_text(number: int, length: int = 400) -> str:
    base = f"Page {number}: the mitochondria is the powerhouse of the cell. "
    return (base * (length // len(base) + 1))[:length]


def make_pages(count: int, length: int = 400, start: int = 1) -> List[Page]:
    return [Page(number=n, text=page_text(n, length), word_count=length // 6) for n in range(start, start + count)]


def make_document(page_count: int, length: int = 400, document_id: str = "doc-1") -> DocumentContent:
    return document_from_texts(
        [page_text(n, length) for n in range(1, page_count + 1)],
        filename="biology.pdf",
        document_id=document_id,
    )


class FakeGenerator:
    """
    Topic generator driven by a script keyed on the chunk's start page.

    Each key maps to a list of steps consumed one call at a time; the last
    step repeats. Unscripted chunks return ``default_topics`` topics.
    """

    def __init__(self, script: Dict[int, Sequence[Step]] | None = None, default_topics: int = 2) -> None:
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.default_topics = default_topics
        self.calls: List[tuple] = []
        self.on_call: Callable[[int], None] | None = None
        self._lock = threading.Lock()

    def generate_topics_for_chunk(self, text: str, chunk_index: int, start_page: int, end_page: int) -> ChunkResponse:
        with self._lock:
            self.calls.append((chunk_index, start_page, end_page))
            call_number = len(self.calls)
            steps = self.script.get(start_page)
            step: Step = self.default_topics
            if steps:
                step = steps.pop(0) if len(steps) > 1 else steps[0]
        if self.on_call is not None:
            self.on_call(call_number)
        if isinstance(step, BaseException):
            raise step
        return ChunkResponse(
            title=f"Pages {start_page}-{end_page}",
            description="",
            topics=tuple(
                TopicDraft(
                    title=f"Topic {local} of pages {start_page}-{end_page}",
                    description="Short description",
                    content="Summary content",
                    key_points=("a", "b"),
                )
                for local in range(step)
            ),
        )


def rate_limited() -> ContentGenerationError:
    return ContentGenerationError(ErrorKind.RATE_LIMITED, "Rate limit hit: 429")


def quota_exceeded() -> ContentGenerationError:
    return ContentGenerationError(ErrorKind.QUOTA_EXCEEDED, "API quota exceeded")


@pytest.fixture
def no_wait() -> Callable[[float], bool]:
    """Backoff sleeper that records delays and never sleeps."""
    delays: List[float] = []

    def wait(seconds: float) -> bool:
        delays.append(seconds)
        return False

    wait.delays = delays  # type: ignore[attr-defined]
    return wait
