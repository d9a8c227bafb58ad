"""
StudyPath: Server-Sent Events Manager
=====================================
Publishes progress events from the pipeline to connected clients.
Each job has its own event queue per client. Clients connect via
GET /api/v1/jobs/{id}/progress.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import AsyncIterator

from server.jobs import TERMINAL_STATUSES

logger = logging.getLogger(__name__)


class SSEManager:
    """
    In-memory pub/sub broker for Server-Sent Events.
    The pipeline PUSHES events via `publish()`.
    Clients PULL events via `subscribe()`.
    """

    def __init__(self):
        # job_id → list of asyncio.Queue (one per connected client)
        self._queues: dict[str, list[asyncio.Queue]] = defaultdict(list)

    async def subscribe(self, job_id: str) -> AsyncIterator[dict]:
        """
        Async generator that yields SSE events for a specific job.
        Each connected client gets its own Queue so events are broadcast to all.
        """
        q: asyncio.Queue = asyncio.Queue(maxsize=100)
        self._queues[job_id].append(q)
        try:
            while True:
                event = await q.get()
                yield event
                if event.get("status") in TERMINAL_STATUSES:
                    break
        finally:
            self._queues[job_id].remove(q)
            if not self._queues[job_id]:
                del self._queues[job_id]

    def subscriber_count(self, job_id: str) -> int:
        return len(self._queues.get(job_id, []))

    async def publish(self, job_id: str, event: dict):
        """
        Push an event dictionary to all clients subscribed to this job.
        Event shape: the job progress payload (status, percentage, message, ...).
        """
        terminal = event.get("status") in TERMINAL_STATUSES
        for q in list(self._queues.get(job_id, [])):
            if q.full() and terminal:
                # The terminal event closes the stream; make room for it
                q.get_nowait()
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                # Slow client; drop the event
                logger.debug("Dropping SSE event for job %s", job_id)

    def publish_threadsafe(self, job_id: str, event: dict, loop: asyncio.AbstractEventLoop | None):
        """Publish from a worker thread onto the server's event loop."""
        if loop is not None and loop.is_running():
            asyncio.run_coroutine_threadsafe(self.publish(job_id, event), loop)


# Global singleton shared across the FastAPI app
sse_manager = SSEManager()
