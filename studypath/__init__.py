"""
StudyPath
=========
Chunked document-to-learning-topics pipeline.

    from studypath import (
        ChunkProcessor, LiteLLMTopicGenerator, PipelineSettings,
        load_document, process_document,
    )

    settings = PipelineSettings.from_env()
    processor = ChunkProcessor.from_settings(LiteLLMTopicGenerator(), settings)
    result = process_document(load_document("book.pdf"), processor, settings)
"""

from studypath.config import PipelineSettings
from studypath.document import document_from_texts, load_document
from studypath.errors import (
    ContentGenerationError,
    DocumentLoadError,
    ErrorKind,
    NoTopicsGeneratedError,
    StudyPathError,
)
from studypath.generator import LiteLLMTopicGenerator
from studypath.models import (
    CanceledRun,
    DocumentContent,
    FailedChunk,
    Page,
    ProcessingResult,
    Topic,
)
from studypath.pipeline import process_document
from studypath.processor import ChunkProcessor
from studypath.progress import CancellationToken, PipelineCallbacks, ProgressUpdate
from studypath.retry import RetryPolicy

__version__ = "1.0.0"

__all__ = [
    "CancellationToken",
    "CanceledRun",
    "ChunkProcessor",
    "ContentGenerationError",
    "DocumentContent",
    "DocumentLoadError",
    "ErrorKind",
    "FailedChunk",
    "LiteLLMTopicGenerator",
    "NoTopicsGeneratedError",
    "Page",
    "PipelineCallbacks",
    "PipelineSettings",
    "ProcessingResult",
    "ProgressUpdate",
    "RetryPolicy",
    "StudyPathError",
    "Topic",
    "document_from_texts",
    "load_document",
    "process_document",
]
