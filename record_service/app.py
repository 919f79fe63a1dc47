"""FastAPI record service for notes.

Endpoints:
  POST   /notes        — Create a note (201)
  PUT    /notes/{id}   — Replace a note's text and image (200, 404)
  DELETE /notes/{id}   — Delete a note (204, idempotent)
  GET    /notes        — All notes, newest first
  GET    /health       — Service and database status
  GET    /metrics      — Prometheus metrics

A note needs text or an image; requests with neither get 422. Database
failures are reported as 503 so clients can retry.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware

from notesync.config import settings
from notesync.metrics import HTTP_DURATION, HTTP_REQUESTS
from notesync.models import NoteRecord
from record_service.database import DatabaseUnavailable, NoteRepository

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
)
logger = logging.getLogger(__name__)

repository = NoteRepository(settings.database_url)

# Endpoints excluded from HTTP metrics
_METRICS_EXCLUDE = {"/metrics", "/openapi.json", "/docs", "/redoc"}


class MetricsMiddleware(BaseHTTPMiddleware):
    """Record HTTP request count and duration for Prometheus."""

    async def dispatch(self, request: Request, call_next):
        """Wrap each request with timing and counting."""
        path = request.url.path
        if path in _METRICS_EXCLUDE:
            return await call_next(request)

        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start

        # Label by route template so note ids don't explode cardinality
        route = request.scope.get("route")
        endpoint = getattr(route, "path", path)

        HTTP_REQUESTS.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=response.status_code,
        ).inc()
        HTTP_DURATION.labels(endpoint=endpoint).observe(elapsed)
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: connect to PostgreSQL and create the notes table."""
    logger.info("Connecting to PostgreSQL...")
    await repository.init()
    yield
    await repository.close()
    logger.info("Record service shut down.")


app = FastAPI(title="notesync record service", version="1.0.0", lifespan=lifespan)

app.add_middleware(MetricsMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_repository() -> NoteRepository:
    return repository


# --- Request models ---


class NoteIn(BaseModel):
    """Create/update request body."""

    text: Optional[str] = None
    image_url: Optional[str] = None


def _clean(body: NoteIn) -> tuple[Optional[str], Optional[str]]:
    text_value = (body.text or "").strip() or None
    image_url = (body.image_url or "").strip() or None
    if text_value is None and image_url is None:
        raise HTTPException(status_code=422, detail="A note needs text or an image")
    return text_value, image_url


def _unavailable(e: DatabaseUnavailable) -> HTTPException:
    logger.error("Database error: %s", e)
    return HTTPException(status_code=503, detail="Database error")


# --- Endpoints ---


@app.post("/notes", status_code=201, response_model=NoteRecord)
async def create_note(body: NoteIn, repo: NoteRepository = Depends(get_repository)) -> Any:
    """Store a new note."""
    text_value, image_url = _clean(body)
    try:
        return await repo.create(text_value, image_url)
    except DatabaseUnavailable as e:
        raise _unavailable(e) from e


@app.put("/notes/{note_id}", response_model=NoteRecord)
async def update_note(
    note_id: int, body: NoteIn, repo: NoteRepository = Depends(get_repository)
) -> Any:
    """Replace the text and image of an existing note."""
    text_value, image_url = _clean(body)
    try:
        row = await repo.update(note_id, text_value, image_url)
    except DatabaseUnavailable as e:
        raise _unavailable(e) from e
    if row is None:
        raise HTTPException(status_code=404, detail=f"Note {note_id} not found")
    return row


@app.delete("/notes/{note_id}", status_code=204)
async def delete_note(note_id: int, repo: NoteRepository = Depends(get_repository)) -> Response:
    """Delete a note. Deleting a missing note is not an error."""
    try:
        await repo.delete(note_id)
    except DatabaseUnavailable as e:
        raise _unavailable(e) from e
    return Response(status_code=204)


@app.get("/notes", response_model=list[NoteRecord])
async def list_notes(repo: NoteRepository = Depends(get_repository)) -> Any:
    """All notes, newest first."""
    try:
        return await repo.list()
    except DatabaseUnavailable as e:
        raise _unavailable(e) from e


@app.get("/health")
async def health(repo: NoteRepository = Depends(get_repository)) -> dict[str, Any]:
    """Service health with database status."""
    return {
        "service": "healthy",
        "database": "connected" if repo.available else "unavailable",
    }


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus metrics endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
