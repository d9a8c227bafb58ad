"""
StudyPath: FastAPI Backend Server
=================================
Provides a REST + SSE API for the StudyPath pipeline.
Allows clients to:
  - Submit a document (PDF or extracted JSON)
  - Stream real-time progress via SSE
  - Poll logs
  - Fetch the final (possibly partial) learning path
  - Cancel a running job

Run with:
    uvicorn server.api:app --host 0.0.0.0 --port 8000 --reload

Endpoints:
    POST   /api/v1/generate                  → Submit a new job
    GET    /api/v1/jobs/{job_id}/progress    → SSE stream of progress events
    GET    /api/v1/jobs/{id}/logs            → Paginated logs
    GET    /api/v1/jobs/{id}/result          → Terminal result
    POST   /api/v1/jobs/{id}/cancel          → Cooperative cancel
    GET    /api/v1/jobs/{id}                 → Job status snapshot
    GET    /api/v1/jobs                      → All jobs
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, File, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from server.jobs import Job, job_store
from server.sse_manager import sse_manager
from studypath.config import OUTPUT_DIR, PipelineSettings
from studypath.document import load_document
from studypath.errors import NoTopicsGeneratedError, StudyPathError
from studypath.generator import LiteLLMTopicGenerator, TopicGenerator
from studypath.logging_config import configure_logging
from studypath.models import CanceledRun, ContentChunk, FailedChunk
from studypath.pipeline import process_document
from studypath.processor import ChunkProcessor
from studypath.progress import PipelineCallbacks, ProgressUpdate

logger = logging.getLogger(__name__)

UPLOAD_DIR = OUTPUT_DIR / "uploads"
ALLOWED_SUFFIXES = (".pdf", ".json")

app = FastAPI(
    title="StudyPath API",
    description="Chunked document to learning path pipeline",
    version="1.0.0",
)


# ──────────────────────────────────────────────
# STARTUP ACTIONS
# ──────────────────────────────────────────────
@app.on_event("startup")
async def startup_event():
    """On startup, mark jobs left 'processing' by a previous process as failed."""
    configure_logging()
    recovered = job_store.recover_interrupted()
    logger.info("Server startup: %s interrupted job(s) marked as failed", recovered)


# ──────────────────────────────────────────────
# CORS
# ──────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
    allow_credentials=True,
)


def _get_job_or_404(job_id: str) -> Job:
    job = job_store.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return job


# ──────────────────────────────────────────────
# POST /api/v1/generate: Submit Job
# ──────────────────────────────────────────────
@app.post("/api/v1/generate")
async def generate(document_file: Optional[UploadFile] = File(None)) -> JSONResponse:
    """
    Submit a new learning path job.
    Returns { job_id, status, message } immediately (202 Accepted).
    Progress is streamed via SSE at /jobs/{id}/progress.
    """
    if document_file is None or not document_file.filename:
        raise HTTPException(status_code=400, detail="No document file provided")
    suffix = Path(document_file.filename).suffix.lower()
    if suffix not in ALLOWED_SUFFIXES:
        raise HTTPException(status_code=400, detail=f"Unsupported file type '{suffix}' (expected .pdf or .json)")

    job = job_store.create(filename=document_file.filename)
    upload_path = UPLOAD_DIR / f"input_{job.job_id}{suffix}"
    upload_path.parent.mkdir(parents=True, exist_ok=True)
    upload_path.write_bytes(await document_file.read())
    job_store.update(job.job_id, input_path=str(upload_path))

    loop = asyncio.get_running_loop()

    # Launch pipeline in a background thread (non-blocking)
    thread = threading.Thread(
        target=_run_job,
        args=(job.job_id, upload_path, loop),
        daemon=True,
        name=f"pipeline-{job.job_id}",
    )
    thread.start()

    return JSONResponse(
        status_code=202,
        content={"job_id": job.job_id, "status": "processing", "message": "Job started"},
    )


# ──────────────────────────────────────────────
# GET /api/v1/jobs/{id}/progress: SSE Stream
# ──────────────────────────────────────────────
@app.get("/api/v1/jobs/{job_id}/progress")
async def progress_stream(job_id: str, request: Request) -> EventSourceResponse:
    """
    Server-Sent Events stream for real-time job progress.
    Closes after the terminal event.
    """
    job = _get_job_or_404(job_id)

    async def event_generator():
        # Send current state immediately on connect
        snapshot = _job_progress_payload(job)
        yield {"data": json.dumps(snapshot), "event": "message", "id": f"{job_id}-0"}
        if job.is_terminal:
            return

        async for event in sse_manager.subscribe(job_id):
            if await request.is_disconnected():
                break
            yield {
                "data": json.dumps(event),
                "event": "message",
                "id": f"{job_id}-{event.get('current_chunk', 0)}-{event.get('progress_percentage', 0)}",
            }

    return EventSourceResponse(event_generator())


# ──────────────────────────────────────────────
# GET /api/v1/jobs/{id}: Status Snapshot
# ──────────────────────────────────────────────
@app.get("/api/v1/jobs/{job_id}")
async def get_job(job_id: str) -> dict:
    return _job_progress_payload(_get_job_or_404(job_id))


# ──────────────────────────────────────────────
# GET /api/v1/jobs/{id}/logs: Log Polling
# ──────────────────────────────────────────────
@app.get("/api/v1/jobs/{job_id}/logs")
async def get_logs(job_id: str, cursor: int = 0, limit: int = 50) -> dict:
    """
    Return paginated log lines.
    cursor = index of last seen line. Returns new lines after cursor.
    """
    job = _get_job_or_404(job_id)
    all_lines = job.log_lines
    new_lines = all_lines[cursor : cursor + limit]
    return {
        "job_id": job_id,
        "logs": new_lines,
        "next_cursor": cursor + len(new_lines),
        "total": len(all_lines),
        "has_more": (cursor + len(new_lines)) < len(all_lines),
    }


# ──────────────────────────────────────────────
# GET /api/v1/jobs/{id}/result: Learning Path
# ──────────────────────────────────────────────
@app.get("/api/v1/jobs/{job_id}/result")
async def get_result(job_id: str) -> dict:
    job = _get_job_or_404(job_id)
    if not job.is_terminal:
        raise HTTPException(status_code=409, detail=f"Job is still running (status: {job.status})")
    return {"job_id": job_id, "status": job.status, "result": job.result, "error": job.error}


# ──────────────────────────────────────────────
# POST /api/v1/jobs/{id}/cancel: Cancel
# ──────────────────────────────────────────────
@app.post("/api/v1/jobs/{job_id}/cancel")
async def cancel_job(job_id: str) -> JSONResponse:
    job = _get_job_or_404(job_id)
    if not job_store.cancel(job_id):
        raise HTTPException(status_code=409, detail=f"Job cannot be canceled (status: {job.status})")
    job_store.append_log(job_id, "Cancellation requested by client", level="WARN")
    return JSONResponse(
        status_code=202,
        content={"job_id": job_id, "status": job.status, "message": "Cancellation requested"},
    )


# ──────────────────────────────────────────────
# GET /api/v1/jobs: All Jobs
# ──────────────────────────────────────────────
@app.get("/api/v1/jobs")
async def list_jobs() -> dict:
    return {"jobs": [_summary(job) for job in job_store.all_jobs()]}


def _summary(job: dict) -> dict:
    # Full results and logs are served by their own endpoints
    return {k: v for k, v in job.items() if k not in ("result", "log_lines")}


# ──────────────────────────────────────────────
# BACKGROUND PIPELINE RUNNER
# ──────────────────────────────────────────────
def _build_generator(settings: PipelineSettings) -> TopicGenerator:
    return LiteLLMTopicGenerator(timeout=settings.chunk_timeout)


def _run_job(
    job_id: str,
    input_path: Path,
    loop: Optional[asyncio.AbstractEventLoop] = None,
    settings: Optional[PipelineSettings] = None,
) -> None:
    """
    Runs the pipeline for one job in a background thread.
    Publishes SSE events via sse_manager after every chunk.
    """
    try:
        _execute_job(job_id, input_path, loop, settings)
    finally:
        job_store.release_token(job_id)


def _execute_job(
    job_id: str,
    input_path: Path,
    loop: Optional[asyncio.AbstractEventLoop],
    settings: Optional[PipelineSettings],
) -> None:
    def publish() -> None:
        job = job_store.get(job_id)
        if job:
            sse_manager.publish_threadsafe(job_id, _job_progress_payload(job), loop)

    def finish(status: str, message: str, level: str = "INFO", **kwargs) -> None:
        job_store.update(job_id, status=status, message=message, **kwargs)
        job_store.append_log(job_id, message, level=level)
        job_store.save()
        publish()

    def on_progress(update: ProgressUpdate) -> None:
        job_store.update(
            job_id,
            progress_percentage=update.percentage,
            current_chunk=update.current_chunk,
            total_chunks=update.total_chunks,
            current_part=update.part_index + 1,
            total_parts=update.total_parts,
            message=update.message,
        )
        level = "WARN" if "Retrying" in update.message else "INFO"
        job_store.append_log(job_id, update.message, level=level, source=f"Part {update.part_index + 1}")
        publish()

    def on_partial_topics(topics) -> None:
        job = job_store.get(job_id)
        if job:
            job_store.update(job_id, partial_topic_count=job.partial_topic_count + len(topics))

    def on_chunk_failed(failed: FailedChunk, chunk: ContentChunk) -> None:
        job_store.append_log(job_id, failed.describe(), level="ERROR", source=f"Part {failed.part_index + 1}")

    token = job_store.token_for(job_id)
    try:
        job_store.update(job_id, status="processing", message="Loading document...")
        publish()
        document = load_document(input_path)
        settings = settings or PipelineSettings.from_env()
        processor = ChunkProcessor.from_settings(_build_generator(settings), settings)
        callbacks = PipelineCallbacks(
            on_progress=on_progress,
            on_partial_topics=on_partial_topics,
            on_chunk_failed=on_chunk_failed,
        )
        try:
            outcome = process_document(document, processor, settings, callbacks, token)
        finally:
            processor.close()
    except NoTopicsGeneratedError as exc:
        finish("failed", "No topics could be generated.", level="ERROR", error=exc.message)
        return
    except StudyPathError as exc:
        finish("failed", f"Processing failed: {exc}", level="ERROR", error=str(exc))
        return
    except Exception as exc:
        logger.exception("Job %s crashed", job_id)
        finish("failed", f"Unexpected error: {str(exc)[:200]}", level="ERROR", error=str(exc))
        return

    data = outcome.to_dict()
    if isinstance(outcome, CanceledRun):
        finish("canceled", f"{outcome.message}. {len(outcome.topics)} topics kept.", level="WARN", result=data)
    elif outcome.is_partial:
        finish(
            "partial",
            outcome.description,
            level="WARN",
            result=data,
            progress_percentage=100.0,
        )
    else:
        finish(
            "completed",
            f"Learning path complete! {len(outcome.topics)} topics generated.",
            result=data,
            progress_percentage=100.0,
        )


def _job_progress_payload(job: Job) -> dict:
    payload = {
        "job_id": job.job_id,
        "status": job.status,
        "progress_percentage": job.progress_percentage,
        "current_chunk": job.current_chunk,
        "total_chunks": job.total_chunks,
        "current_part": job.current_part,
        "total_parts": job.total_parts,
        "partial_topic_count": job.partial_topic_count,
        "filename": job.filename,
        "message": job.message,
    }
    if job.status == "failed":
        payload["error"] = {
            "code": "SERVER_INTERRUPTED" if job.error == "Job interrupted by server restart." else "JOB_FAILED",
            "message": job.error or job.message,
        }
    return payload
