"""StudyPath HTTP server (FastAPI + SSE)."""
