"""
StudyPath: Topic Generator
==========================
Content-generation collaborator. Sends one chunk of page text to the LLM
and returns the topics it proposes. Uses LiteLLM with Gemini API support;
set ``LLM_PROVIDER=ollama`` to run against a local Ollama instance.

Every failure leaves this module as a ``ContentGenerationError`` whose
``kind`` tells the chunk processor whether a retry can help.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Protocol, Sequence

import litellm

from studypath.config import get_api_key, get_model, get_quota_markers
from studypath.errors import ContentGenerationError, ErrorKind

logger = logging.getLogger(__name__)

LLM_TIMEOUT = 60
MAX_OUTPUT_TOKENS = 8192

SYSTEM_PROMPT = """\
You are an expert teacher who turns fragments of educational documents into
concise, well-ordered study topics. Output ONLY valid JSON, no markdown and
no explanation.
"""

CHUNK_PROMPT = """\
Analyze the following fragment of an educational document (PAGES {START}-{END})
and summarise it as a sequence of study topics.

DOCUMENT CONTENT ({CHARS} characters):
{CONTENT}

CONTEXT:
- This is chunk #{INDEX} of a larger document
- It contains pages {START} to {END} ({PAGE_COUNT} pages)

RULES:
1. Summarise, do not copy. Keep key definitions, formulas and examples.
2. Respect the order of the document and go from basic to advanced.
3. Produce about {TOPICS} topics, each with a 120-220 word summary.
4. For each topic give a title, a 2-3 sentence description, the summary
   content, 4-6 key points and a realistic study time in minutes (15-60).

RESPONSE FORMAT (JSON):
{
  "title": "Section: Pages {START}-{END}",
  "description": "Structured summary of pages {START} to {END}",
  "topics": [
    {
      "title": "Specific topic title",
      "description": "What this topic covers",
      "content": "Summary of the topic",
      "keyPoints": ["Point 1", "Point 2", "Point 3", "Point 4"],
      "estimatedMinutes": 30
    }
  ]
}
"""


@dataclass(frozen=True)
class TopicDraft:
    title: str
    description: str
    content: str
    key_points: tuple[str, ...] = ()
    estimated_minutes: int = 30


@dataclass(frozen=True)
class ChunkResponse:
    title: str
    description: str
    topics: tuple[TopicDraft, ...]


class TopicGenerator(Protocol):
    def generate_topics_for_chunk(
        self, text: str, chunk_index: int, start_page: int, end_page: int
    ) -> ChunkResponse: ...


def recommended_topic_count(start_page: int, end_page: int) -> int:
    """About one topic per five pages, clamped to 4..12."""
    page_count = end_page - start_page + 1
    return min(max(page_count // 5, 4), 12)


def build_chunk_prompt(text: str, chunk_index: int, start_page: int, end_page: int) -> str:
    return (
        CHUNK_PROMPT.replace("{CONTENT}", text)
        .replace("{CHARS}", f"{len(text):,}")
        .replace("{INDEX}", str(chunk_index))
        .replace("{START}", str(start_page))
        .replace("{END}", str(end_page))
        .replace("{PAGE_COUNT}", str(end_page - start_page + 1))
        .replace("{TOPICS}", str(recommended_topic_count(start_page, end_page)))
    )


def _strip_code_fences(content: str) -> str:
    content = content.strip()
    if content.startswith("```json"):
        content = content[7:]
    if content.startswith("```"):
        content = content[3:]
    if content.endswith("```"):
        content = content[:-3]
    return content.strip()


def _to_minutes(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 30


def parse_chunk_response(content: str) -> ChunkResponse:
    """Parse the model's JSON reply. Raises MALFORMED_RESPONSE on any shape problem."""
    cleaned = _strip_code_fences(content or "")
    if not cleaned:
        raise ContentGenerationError(ErrorKind.MALFORMED_RESPONSE, "Empty content in response")
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise ContentGenerationError(
            ErrorKind.MALFORMED_RESPONSE, f"JSON parse failed: {exc} (first chars: {cleaned[:200]!r})"
        ) from exc

    if not isinstance(parsed, dict) or not isinstance(parsed.get("topics"), list):
        raise ContentGenerationError(ErrorKind.MALFORMED_RESPONSE, "Response has no 'topics' list")

    drafts: list[TopicDraft] = []
    for item in parsed["topics"]:
        if not isinstance(item, dict) or not str(item.get("title", "")).strip():
            raise ContentGenerationError(ErrorKind.MALFORMED_RESPONSE, f"Invalid topic entry: {item!r}"[:300])
        key_points = item.get("keyPoints", item.get("key_points", [])) or []
        drafts.append(
            TopicDraft(
                title=str(item["title"]).strip(),
                description=str(item.get("description", "")).strip(),
                content=str(item.get("content", "")).strip(),
                key_points=tuple(str(p) for p in key_points),
                estimated_minutes=_to_minutes(item.get("estimatedMinutes", item.get("estimated_minutes"))),
            )
        )

    return ChunkResponse(
        title=str(parsed.get("title", "")),
        description=str(parsed.get("description", "")),
        topics=tuple(drafts),
    )


def classify_error(exc: BaseException, quota_markers: Sequence[str] | None = None) -> ContentGenerationError:
    """
    Map a raw client exception onto the error taxonomy.

    A 429 is a hard quota failure when its text contains one of the quota
    markers, otherwise a transient rate limit. This is a heuristic over the
    provider's free-text error body; tune it with ``QUOTA_ERROR_MARKERS``.
    """
    if isinstance(exc, ContentGenerationError):
        return exc

    markers = get_quota_markers() if quota_markers is None else quota_markers
    message = str(exc) or type(exc).__name__
    status = getattr(exc, "status_code", None)

    if isinstance(exc, litellm.RateLimitError) or status == 429:
        lowered = message.lower()
        if any(marker.lower() in lowered for marker in markers):
            return ContentGenerationError(ErrorKind.QUOTA_EXCEEDED, f"API quota exceeded: {message}")
        return ContentGenerationError(ErrorKind.RATE_LIMITED, f"Rate limit hit: {message}")
    if isinstance(exc, (litellm.Timeout, TimeoutError)) or status == 408:
        return ContentGenerationError(ErrorKind.TIMEOUT, f"Request timed out: {message}")
    if isinstance(exc, (litellm.APIConnectionError, ConnectionError)):
        return ContentGenerationError(ErrorKind.NETWORK_ERROR, f"Connection failed: {message}")
    if status is not None:
        return ContentGenerationError(ErrorKind.OTHER, f"HTTP {status}: {message}")
    return ContentGenerationError(ErrorKind.OTHER, message)


class LiteLLMTopicGenerator:
    """``TopicGenerator`` backed by ``litellm.completion``."""

    def __init__(
        self,
        model: str | None = None,
        api_key: str | None = None,
        timeout: float = LLM_TIMEOUT,
        quota_markers: Sequence[str] | None = None,
        temperature: float = 0.7,
    ) -> None:
        self.model = model or get_model()
        self.api_key = api_key or get_api_key()
        self.timeout = timeout
        self.quota_markers = tuple(quota_markers) if quota_markers is not None else get_quota_markers()
        self.temperature = temperature

    @property
    def _is_gemini(self) -> bool:
        return self.model.startswith("gemini/")

    def _complete(self, messages: list[dict], timeout: float, **extra: Any) -> str:
        if self._is_gemini and not self.api_key:
            raise ContentGenerationError(ErrorKind.OTHER, "Missing GOOGLE_API_KEY for Gemini model")
        try:
            response = litellm.completion(
                model=self.model,
                timeout=timeout,
                messages=messages,
                api_key=self.api_key if self._is_gemini else None,
                api_base=os.getenv("OLLAMA_API_BASE") if self.model.startswith("ollama/") else None,
                **extra,
            )
        except Exception as exc:
            raise classify_error(exc, self.quota_markers) from exc

        if not response or not getattr(response, "choices", None):
            raise ContentGenerationError(ErrorKind.MALFORMED_RESPONSE, "Empty response from LLM")
        return response.choices[0].message.content or ""

    def generate_topics_for_chunk(
        self, text: str, chunk_index: int, start_page: int, end_page: int
    ) -> ChunkResponse:
        logger.info(
            "Generating chunk %s: pages %s-%s, ~%s topics expected",
            chunk_index,
            start_page,
            end_page,
            recommended_topic_count(start_page, end_page),
        )
        content = self._complete(
            [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_chunk_prompt(text, chunk_index, start_page, end_page)},
            ],
            timeout=self.timeout,
            max_tokens=MAX_OUTPUT_TOKENS,
            temperature=self.temperature,
            response_format={"type": "json_object"},
        )
        return parse_chunk_response(content)

    def check_connection(self) -> bool:
        """Minimal round trip so a misconfigured key fails before a long run."""
        try:
            self._complete([{"role": "user", "content": "Say OK"}], timeout=15)
        except ContentGenerationError as exc:
            logger.warning("LLM connection test failed (model: %s): %s", self.model, exc)
            return False
        logger.info("LLM connection test passed (model: %s)", self.model)
        return True
