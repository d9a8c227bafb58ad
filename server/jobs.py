"""
StudyPath: Job State Store
==========================
In-memory store for all active and recent pipeline jobs.
Backed by a JSON file for persistence across server restarts.
Cancellation tokens are process-local and never persisted.
"""

from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Optional

from studypath.config import OUTPUT_DIR
from studypath.progress import CancellationToken

logger = logging.getLogger(__name__)

JOBS_FILE = OUTPUT_DIR / "jobs.json"
MAX_LOG_LINES = 500

TERMINAL_STATUSES = frozenset({"completed", "partial", "canceled", "failed"})


@dataclass
class Job:
    job_id: str
    status: str = "pending"  # pending | processing | completed | partial | canceled | failed
    progress_percentage: float = 0.0  # 0-100
    current_chunk: int = 0
    total_chunks: int = 0
    current_part: int = 0
    total_parts: int = 0
    partial_topic_count: int = 0
    message: str = ""
    filename: Optional[str] = None
    input_path: Optional[str] = None
    result: Optional[dict] = None
    error: Optional[str] = None
    log_lines: list[dict] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "Job":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in d.items() if k in known})


class JobStore:
    """Thread-safe in-memory job store with JSON persistence."""

    def __init__(self, jobs_file: Path = JOBS_FILE):
        self.jobs_file = Path(jobs_file)
        self._jobs: dict[str, Job] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._lock = threading.RLock()
        self._load()

    def create(self, filename: Optional[str] = None) -> Job:
        job_id = str(uuid.uuid4())[:8]
        job = Job(job_id=job_id, filename=filename)
        with self._lock:
            self._jobs[job_id] = job
            self._tokens[job_id] = CancellationToken()
        self.save()
        return job

    def get(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def update(self, job_id: str, **kwargs) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return None
            for k, v in kwargs.items():
                if hasattr(job, k):
                    setattr(job, k, v)
            job.updated_at = time.time()
            return job

    def append_log(self, job_id: str, message: str, level: str = "INFO", source: str = "Pipeline"):
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return
            job.log_lines.append(
                {
                    "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
                    "level": level,
                    "source": source,
                    "message": message,
                }
            )
            # Keep last MAX_LOG_LINES lines only
            if len(job.log_lines) > MAX_LOG_LINES:
                job.log_lines = job.log_lines[-MAX_LOG_LINES:]

    def all_jobs(self) -> list[dict]:
        with self._lock:
            return [j.to_dict() for j in self._jobs.values()]

    def token_for(self, job_id: str) -> Optional[CancellationToken]:
        return self._tokens.get(job_id)

    def release_token(self, job_id: str) -> None:
        """Forget the token of a job whose run has ended."""
        with self._lock:
            self._tokens.pop(job_id, None)

    def cancel(self, job_id: str) -> bool:
        """Signal cancellation; False if the job is unknown or already finished."""
        job = self._jobs.get(job_id)
        token = self._tokens.get(job_id)
        if not job or job.is_terminal or token is None:
            return False
        token.cancel()
        self.update(job_id, message="Cancellation requested...")
        return True

    def recover_interrupted(self) -> int:
        """Mark jobs left running by a previous process as failed."""
        count = 0
        with self._lock:
            for job in self._jobs.values():
                if job.status in ("pending", "processing") and job.job_id not in self._tokens:
                    job.status = "failed"
                    job.error = "Job interrupted by server restart."
                    job.message = job.error
                    count += 1
        if count:
            self.save()
        return count

    def save(self):
        with self._lock:
            self.jobs_file.parent.mkdir(parents=True, exist_ok=True)
            serializable = {jid: j.to_dict() for jid, j in self._jobs.items()}
            self.jobs_file.write_text(json.dumps(serializable, indent=2), encoding="utf-8")

    def _load(self):
        if not self.jobs_file.exists():
            return
        try:
            data = json.loads(self.jobs_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Could not load %s: %s", self.jobs_file, exc)
            return
        for jid, jdict in data.items():
            self._jobs[jid] = Job.from_dict(jdict)


# Global singleton
job_store = JobStore()
