"""
StudyPath: Command-Line Orchestrator
====================================
Runs the chunked pipeline on one document and writes the learning path:

    Load       PDF / extracted JSON → pages
    Filter     drop bibliography, index and near-empty pages
    Chunk      parts of 200 pages → chunks of ≤15 pages / ≤120k chars
    Generate   one LLM request per chunk, retried with backoff
    Aggregate  ordered topics + failed sections → JSON result

Usage
-----
    python main.py "path/to/book.pdf"                   # Full run
    python main.py "book.json" --output out.json        # Pre-extracted pages
    python main.py "book.pdf" --retry-failed            # Replay DLQ entries

Ctrl+C cancels after the chunk in flight; topics produced so far are kept.

Exit codes: 0 complete or partial, 1 hard failure, 2 canceled.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
import time
from dataclasses import asdict, replace
from pathlib import Path
from typing import Optional

from studypath.config import DLQ_PATH, OUTPUT_DIR, PipelineSettings
from studypath.dlq import DLQ
from studypath.document import load_document
from studypath.errors import NoTopicsGeneratedError, StudyPathError
from studypath.generator import LiteLLMTopicGenerator, TopicGenerator
from studypath.logging_config import configure_logging
from studypath.models import CanceledRun, ContentChunk, DocumentContent, FailedChunk, PipelineOutcome
from studypath.pipeline import describe_result, extract_title, plan_chunks, process_document
from studypath.processor import ChunkProcessor
from studypath.progress import CancellationToken, PipelineCallbacks, ProgressUpdate
from studypath.retry import RetryPolicy

logger = logging.getLogger("studypath.cli")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELED = 2


# ──────────────────────────────────────────────
# OUTPUT
# ──────────────────────────────────────────────
def default_output_path(input_path: Path) -> Path:
    return OUTPUT_DIR / f"{input_path.stem}_learning_path.json"


def write_result(data: dict, output_path: Path) -> None:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
    print(f"   💾 Result saved → {output_path}")


def print_banner(document: DocumentContent, settings: PipelineSettings, model: str) -> None:
    print()
    print("╔══════════════════════════════════════════════════════════╗")
    print("║             📚  StudyPath: LEARNING PATH ENGINE          ║")
    print("║       Chunked Document → Study Topics Pipeline           ║")
    print("╚══════════════════════════════════════════════════════════╝")
    print()
    print(f"   Document : {document.filename}")
    print(f"   Pages    : {len(document.pages)} ({document.total_characters:,} chars)")
    print(f"   Model    : {model}")
    print(
        f"   Chunking : ≤{settings.pages_per_chunk} pages / ≤{settings.max_chars_per_chunk:,} chars, "
        f"{settings.pages_per_part} pages per part"
    )
    print()


def print_summary(outcome: PipelineOutcome, elapsed: float) -> None:
    mins, secs = divmod(int(elapsed), 60)
    print()
    print("━" * 58)
    if isinstance(outcome, CanceledRun):
        print(f"🛑  CANCELED: {len(outcome.topics)} topics kept")
    elif outcome.is_partial:
        print(f"⚠️   PARTIAL: {len(outcome.topics)} topics, {len(outcome.failed_chunks)} section(s) omitted")
        for failed in outcome.failed_chunks:
            print(f"      ✗ {failed.describe()}")
    else:
        print(f"✅  COMPLETE: {len(outcome.topics)} topics")
        print(f"   {outcome.title}")
    print(f"   ⏱  {mins}m {secs}s")
    print("━" * 58)
    print()


# ──────────────────────────────────────────────
# PIPELINE
# ──────────────────────────────────────────────
def _run_in_thread(target, token: CancellationToken) -> None:
    """Run ``target`` in a worker thread; Ctrl+C on the main thread cancels it."""
    worker = threading.Thread(target=target, name="studypath-pipeline", daemon=True)
    worker.start()
    while worker.is_alive():
        try:
            worker.join(0.5)
        except KeyboardInterrupt:
            if token.is_cancelled:
                continue
            print("\n   ⚠️  Interrupted by user. Finishing the chunk in flight...")
            token.cancel()


def run(
    input_path: Path,
    output_path: Optional[Path] = None,
    settings: Optional[PipelineSettings] = None,
    generator: Optional[TopicGenerator] = None,
    dlq: Optional[DLQ] = None,
    token: Optional[CancellationToken] = None,
) -> int:
    """Process one document end to end and return the process exit code."""
    settings = settings or PipelineSettings.from_env()
    token = token or CancellationToken()
    output_path = output_path or default_output_path(input_path)
    start_time = time.time()

    try:
        document = load_document(input_path)
    except StudyPathError as exc:
        print(f"❌ {exc}")
        return EXIT_FAILED

    if generator is None:
        llm = LiteLLMTopicGenerator(timeout=settings.chunk_timeout)
        if llm.model.startswith("gemini/") and not llm.api_key:
            print("   ❌ ERROR: Gemini model requires GOOGLE_API_KEY or GEMINI_API_KEY")
            print("   💡 Set GOOGLE_API_KEY in your .env file")
            return EXIT_FAILED
        print_banner(document, settings, llm.model)
        print("   🔍 Testing LLM connection...")
        if not llm.check_connection():
            print("   ⚠️  LLM connection test failed. Chunks may fail.")
            print("   💡 Check your DEFAULT_MODEL env var and API keys.")
        generator = llm
    else:
        print_banner(document, settings, type(generator).__name__)

    processor = ChunkProcessor.from_settings(generator, settings)

    def on_progress(update: ProgressUpdate) -> None:
        print(f"   🔄 [{update.percentage:5.1f}%] {update.message}")

    def on_chunk_failed(failed: FailedChunk, chunk: ContentChunk) -> None:
        if dlq is not None:
            dlq.push(document.document_id, failed, chunk)

    callbacks = PipelineCallbacks(on_progress=on_progress, on_chunk_failed=on_chunk_failed)
    box: dict = {}

    def work() -> None:
        try:
            box["outcome"] = process_document(document, processor, settings, callbacks, token)
        except NoTopicsGeneratedError as exc:
            box["error"] = exc
        except Exception as exc:
            logger.exception("Pipeline crashed")
            box["error"] = exc

    try:
        _run_in_thread(work, token)
    finally:
        processor.close()

    if "error" in box:
        print(f"\n❌ Processing failed: {box['error']}")
        return EXIT_FAILED

    outcome: PipelineOutcome = box["outcome"]
    write_result(outcome.to_dict(), output_path)
    print_summary(outcome, time.time() - start_time)
    if isinstance(outcome, CanceledRun):
        return EXIT_CANCELED
    return EXIT_OK


def retry_failed(
    input_path: Path,
    output_path: Optional[Path] = None,
    settings: Optional[PipelineSettings] = None,
    generator: Optional[TopicGenerator] = None,
    dlq: Optional[DLQ] = None,
    token: Optional[CancellationToken] = None,
) -> int:
    """Replay the DLQ entries of a document and merge recovered topics into its result."""
    settings = settings or PipelineSettings.from_env()
    token = token or CancellationToken()
    output_path = output_path or default_output_path(input_path)
    dlq = dlq or DLQ(DLQ_PATH)

    try:
        document = load_document(input_path)
    except StudyPathError as exc:
        print(f"❌ {exc}")
        return EXIT_FAILED

    pending = dlq.get_all(document_id=document.document_id)
    if not pending:
        print("✅ No failed chunks in the Dead Letter Queue for this document.")
        return EXIT_OK

    print(f"   🔁 Retrying {len(pending)} failed chunk(s) of {document.filename}...")
    processor = ChunkProcessor.from_settings(
        generator or LiteLLMTopicGenerator(timeout=settings.chunk_timeout), settings
    )
    box: dict = {}

    def work() -> None:
        try:
            box["topics"] = dlq.retry_all(
                processor, document.document_id, RetryPolicy.from_settings(settings), token
            )
        except Exception as exc:
            logger.exception("DLQ retry crashed")
            box["error"] = exc

    try:
        _run_in_thread(work, token)
    finally:
        processor.close()

    if "error" in box:
        print(f"\n❌ Retry failed: {box['error']}")
        return EXIT_FAILED
    recovered = box["topics"]

    previous = {}
    if output_path.exists():
        previous = json.loads(output_path.read_text(encoding="utf-8"))
    topics = {t["id"]: t for t in previous.get("topics", [])}
    topics.update({t.id: asdict(t) for t in recovered})

    still_failing = [
        {
            "part_index": item["part_index"],
            "chunk_index": item["chunk_index"],
            "start_page": item["start_page"],
            "end_page": item["end_page"],
            "message": item["error"],
        }
        for item in dlq.get_all(document_id=document.document_id)
    ]
    total_parts = previous.get("total_parts", 0)
    total_chunks = previous.get("total_chunks", 0)
    if not total_parts:
        plan = plan_chunks(document, settings)
        total_parts, total_chunks = len(plan), sum(len(chunks) for chunks in plan)
    merged = {
        "document_id": document.document_id,
        "title": previous.get("title") or extract_title(document),
        "description": describe_result(
            len(document.pages), [item["part_index"] for item in still_failing], total_parts, total_chunks
        ),
        "topics": sorted(topics.values(), key=lambda t: t["order"]),
        "failed_chunks": still_failing,
        "total_parts": total_parts,
        "total_chunks": total_chunks,
        "status": "partial" if still_failing else "completed",
    }
    write_result(merged, output_path)
    print(f"   ✅ Recovered {len(recovered)} topic(s); {len(still_failing)} chunk(s) still failing.")
    return EXIT_CANCELED if token.is_cancelled else EXIT_OK


# ──────────────────────────────────────────────
# ENTRY POINT
# ──────────────────────────────────────────────
def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="StudyPath learning path generator")
    parser.add_argument("input", help="Path to a .pdf or extracted .json document")
    parser.add_argument("--output", help="Where to write the result JSON", default=None)
    parser.add_argument("--dlq", help="SQLite file for failed chunks", default=str(DLQ_PATH))
    parser.add_argument(
        "--retry-failed",
        action="store_true",
        help="Re-run this document's chunks from the Dead Letter Queue",
    )
    parser.add_argument("--pages-per-part", type=int, default=None, help="Pages per part (1-999)")
    parser.add_argument("--timeout", type=float, default=None, help="Per-chunk timeout in seconds")
    args = parser.parse_args(argv)

    configure_logging()

    input_path = Path(args.input)
    if not input_path.exists():
        print(f"❌ File not found: {input_path}")
        return EXIT_FAILED

    try:
        settings = PipelineSettings.from_env()
        overrides = {}
        if args.pages_per_part is not None:
            overrides["pages_per_part"] = args.pages_per_part
        if args.timeout is not None:
            overrides["chunk_timeout"] = args.timeout
        if overrides:
            settings = replace(settings, **overrides)
    except ValueError as exc:
        print(f"❌ Invalid configuration: {exc}")
        return EXIT_FAILED

    output_path = Path(args.output) if args.output else None
    dlq = DLQ(Path(args.dlq))
    try:
        if args.retry_failed:
            return retry_failed(input_path, output_path, settings, dlq=dlq)
        return run(input_path, output_path, settings, dlq=dlq)
    finally:
        dlq.close()


if __name__ == "__main__":
    sys.exit(main())
