"""
StudyPath: Shared Configuration
===============================
Centralised constants and settings used across all modules.
Every tunable is read from the environment (``.env`` supported).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from studypath.errors import ErrorKind

load_dotenv()

logger = logging.getLogger(__name__)

# ──────────────────────────────────────────────
# PATHS
# ──────────────────────────────────────────────
BASE_DIR = Path(__file__).resolve().parent.parent
OUTPUT_DIR = Path(os.getenv("OUTPUT_DIR", str(BASE_DIR / "data" / "output")))
DLQ_PATH = OUTPUT_DIR / "dlq.db"

# ──────────────────────────────────────────────
# MODEL SETTINGS
# ──────────────────────────────────────────────
DEFAULT_FALLBACK_MODEL = "gemini/gemini-2.5-flash"
DEFAULT_QUOTA_MARKERS = "quota,exceeded your current quota"

# Topic.order = part * PART_ORDER_STRIDE + chunk * CHUNK_ORDER_STRIDE + local
PART_ORDER_STRIDE = 1_000_000
CHUNK_ORDER_STRIDE = 1_000


def get_api_key() -> str | None:
    """Return the best available API key for Gemini."""
    return os.getenv("GOOGLE_API_KEY") or os.getenv("GEMINI_API_KEY")


def get_model() -> str:
    """Return the model identifier from the environment."""
    if os.getenv("LLM_PROVIDER", "gemini").lower() == "ollama":
        return os.getenv("OLLAMA_MODEL", "ollama/llama3")
    model = os.getenv("DEFAULT_MODEL", DEFAULT_FALLBACK_MODEL)
    if not model:
        logger.warning("DEFAULT_MODEL is empty, using fallback %s", DEFAULT_FALLBACK_MODEL)
        return DEFAULT_FALLBACK_MODEL
    return model


def get_quota_markers() -> tuple[str, ...]:
    """Substrings that turn a 429 response into a hard quota failure."""
    raw = os.getenv("QUOTA_ERROR_MARKERS", DEFAULT_QUOTA_MARKERS)
    return tuple(m.strip() for m in raw.split(",") if m.strip())


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {value!r}") from exc


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {value!r}") from exc


# ──────────────────────────────────────────────
# PIPELINE SETTINGS
# ──────────────────────────────────────────────
@dataclass(frozen=True)
class PipelineSettings:
    pages_per_chunk: int = 15
    max_chars_per_chunk: int = 120_000
    pages_per_part: int = 200
    min_page_chars: int = 50
    irrelevant_page_max_chars: int = 200
    min_retained_ratio: float = 0.3
    chunk_timeout: float = 90.0
    max_retries: int = 3
    base_retry_delay: float = 15.0
    max_retry_delay: float = 120.0
    retryable_kinds: frozenset[ErrorKind] = field(
        default_factory=lambda: frozenset({ErrorKind.RATE_LIMITED, ErrorKind.TIMEOUT})
    )

    def __post_init__(self) -> None:
        if self.pages_per_chunk < 1:
            raise ValueError("pages_per_chunk must be at least 1")
        if self.max_chars_per_chunk < 1:
            raise ValueError("max_chars_per_chunk must be at least 1")
        if not 1 <= self.pages_per_part < CHUNK_ORDER_STRIDE:
            raise ValueError(f"pages_per_part must be between 1 and {CHUNK_ORDER_STRIDE - 1}")
        if not 0.0 <= self.min_retained_ratio <= 1.0:
            raise ValueError("min_retained_ratio must be between 0 and 1")
        if self.chunk_timeout <= 0:
            raise ValueError("chunk_timeout must be positive")
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if self.base_retry_delay < 0 or self.max_retry_delay < self.base_retry_delay:
            raise ValueError("retry delays must satisfy 0 <= base <= max")

    @classmethod
    def from_env(cls) -> "PipelineSettings":
        return cls(
            pages_per_chunk=_env_int("PAGES_PER_CHUNK", 15),
            max_chars_per_chunk=_env_int("MAX_CHARS_PER_CHUNK", 120_000),
            pages_per_part=_env_int("PAGES_PER_PART", 200),
            min_page_chars=_env_int("MIN_PAGE_CHARS", 50),
            irrelevant_page_max_chars=_env_int("IRRELEVANT_PAGE_MAX_CHARS", 200),
            min_retained_ratio=_env_float("MIN_RETAINED_RATIO", 0.3),
            chunk_timeout=_env_float("CHUNK_TIMEOUT_SECONDS", 90.0),
            max_retries=_env_int("MAX_CHUNK_RETRIES", 3),
            base_retry_delay=_env_float("BASE_RETRY_DELAY_SECONDS", 15.0),
            max_retry_delay=_env_float("MAX_RETRY_DELAY_SECONDS", 120.0),
        )
