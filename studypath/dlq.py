"""
StudyPath: Dead Letter Queue
============================
SQLite-backed DLQ for chunks that end a run as ``FatalFailure``.
The chunk's page texts are stored with the failure so it can be replayed
later without re-reading the source document.

Usage:
    from studypath.dlq import DLQ
    dlq = DLQ()
    dlq.push(document_id, failed_chunk, chunk)
    failures = dlq.get_all()
    topics = dlq.retry_all(processor)   # re-run all pending chunks
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from studypath.config import DLQ_PATH
from studypath.models import (
    Canceled,
    ChunkContext,
    ContentChunk,
    FailedChunk,
    Page,
    Success,
    Topic,
)
from studypath.progress import CancellationToken
from studypath.retry import RetryPolicy, SupportsProcess, process_with_retry

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def dlq_entry_id(document_id: str, part_index: int, chunk_index: int) -> str:
    return f"{document_id}:p{part_index}:c{chunk_index}"


class DLQ:
    """Dead Letter Queue backed by SQLite."""

    def __init__(self, db_path: Path = DLQ_PATH):
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._lock = threading.Lock()
        self._init_schema()

    def _init_schema(self):
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS failed_chunks (
                id          TEXT PRIMARY KEY,
                document_id TEXT,
                part_index  INTEGER,
                chunk_index INTEGER,
                start_page  INTEGER,
                end_page    INTEGER,
                pages_json  TEXT,
                error_msg   TEXT,
                retry_count INTEGER DEFAULT 0,
                status      TEXT DEFAULT 'pending',
                created_at  TEXT,
                updated_at  TEXT
            )
        """)
        self.conn.commit()

    def push(self, document_id: str, failed: FailedChunk, chunk: ContentChunk) -> str:
        """Add a failed chunk to the DLQ. Re-pushing the same chunk resets it to pending."""
        entry_id = dlq_entry_id(document_id, failed.part_index, failed.chunk_index)
        pages_json = json.dumps(
            [{"number": p.number, "text": p.text, "word_count": p.word_count} for p in chunk.pages],
            ensure_ascii=False,
        )
        now = _now()
        with self._lock:
            self.conn.execute(
                """
                INSERT OR REPLACE INTO failed_chunks
                (id, document_id, part_index, chunk_index, start_page, end_page,
                 pages_json, error_msg, retry_count, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, 'pending', ?, ?)
            """,
                (
                    entry_id,
                    document_id,
                    failed.part_index,
                    failed.chunk_index,
                    failed.start_page,
                    failed.end_page,
                    pages_json,
                    failed.message[:500],
                    now,
                    now,
                ),
            )
            self.conn.commit()
        logger.warning("Chunk %s (pages %s-%s) pushed to Dead Letter Queue", entry_id, failed.start_page, failed.end_page)
        return entry_id

    def get_all(self, status: str = "pending", document_id: Optional[str] = None) -> list[dict]:
        """Retrieve failures with the given status, in document order."""
        query = (
            "SELECT id, document_id, part_index, chunk_index, start_page, end_page, "
            "pages_json, error_msg, retry_count FROM failed_chunks WHERE status = ?"
        )
        params: list = [status]
        if document_id is not None:
            query += " AND document_id = ?"
            params.append(document_id)
        query += " ORDER BY document_id, part_index, chunk_index"
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [
            {
                "id": r[0],
                "document_id": r[1],
                "part_index": r[2],
                "chunk_index": r[3],
                "start_page": r[4],
                "end_page": r[5],
                "pages": json.loads(r[6]),
                "error": r[7],
                "retries": r[8],
            }
            for r in rows
        ]

    def mark_resolved(self, entry_id: str):
        """Mark a chunk as successfully retried."""
        with self._lock:
            self.conn.execute(
                "UPDATE failed_chunks SET status='resolved', updated_at=? WHERE id=?",
                (_now(), entry_id),
            )
            self.conn.commit()

    def _record_attempt(self, entry_id: str, error_msg: str):
        with self._lock:
            self.conn.execute(
                "UPDATE failed_chunks SET retry_count = retry_count + 1, error_msg=?, updated_at=? WHERE id=?",
                (error_msg[:500], _now(), entry_id),
            )
            self.conn.commit()

    def retry_all(
        self,
        processor: SupportsProcess,
        document_id: Optional[str] = None,
        policy: Optional[RetryPolicy] = None,
        token: Optional[CancellationToken] = None,
    ) -> list[Topic]:
        """
        Re-run pending failures through the retry controller.
        Returns the recovered topics in document order; entries that fail
        again stay pending with their retry count bumped.
        """
        token = token or CancellationToken()
        pending = self.get_all(document_id=document_id)
        logger.info("Retrying %s failed chunks from DLQ...", len(pending))
        recovered: list[Topic] = []
        resolved = 0

        for item in pending:
            if token.is_cancelled:
                logger.warning("DLQ retry canceled")
                break
            chunk = ContentChunk(
                chunk_index=item["chunk_index"],
                pages=tuple(
                    Page(number=p["number"], text=p["text"], word_count=p.get("word_count", 0))
                    for p in item["pages"]
                ),
            )
            context = ChunkContext(document_id=item["document_id"], part_index=item["part_index"])
            outcome = process_with_retry(processor, chunk, context, policy=policy, token=token)

            if isinstance(outcome, Success):
                self.mark_resolved(item["id"])
                recovered.extend(outcome.topics)
                resolved += 1
            elif isinstance(outcome, Canceled):
                logger.warning("DLQ retry canceled during %s", item["id"])
                break
            else:
                self._record_attempt(item["id"], outcome.message)
                logger.warning("DLQ retry failed for %s: %s", item["id"], outcome.message)

        logger.info("Recovered %s/%s chunks from DLQ", resolved, len(pending))
        return sorted(recovered, key=lambda t: t.order)

    def summary(self) -> dict:
        """Return a count of DLQ items by status."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT status, COUNT(*) FROM failed_chunks GROUP BY status"
            ).fetchall()
        return {r[0]: r[1] for r in rows}

    def close(self):
        self.conn.close()
