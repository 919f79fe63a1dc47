"""PostgreSQL storage for the record service.

Uses SQLAlchemy async engine with asyncpg driver. Unlike a logging sink,
the record service cannot work without its table, so failures are raised
as ``DatabaseUnavailable`` and reported to clients as 503.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

logger = logging.getLogger(__name__)

_CREATE_TABLE_STMTS = [
    """CREATE TABLE IF NOT EXISTS notes (
        id SERIAL PRIMARY KEY,
        text TEXT,
        image_url TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )""",
    "CREATE INDEX IF NOT EXISTS idx_notes_created ON notes(created_at)",
]

_COLUMNS = "id, text, image_url, created_at"


class DatabaseUnavailable(Exception):
    """The notes table cannot be reached."""


def _row_to_dict(row: Any) -> dict[str, Any]:
    return {"id": row[0], "text": row[1], "image_url": row[2], "created_at": row[3]}


class NoteRepository:
    """Async CRUD over the ``notes`` table."""

    def __init__(self, database_url: str) -> None:
        self._url = database_url
        self._engine: Optional[AsyncEngine] = None

    @property
    def available(self) -> bool:
        """Whether the PostgreSQL connection is active."""
        return self._engine is not None

    async def init(self) -> None:
        """Create engine, connection pool, and tables.

        Non-fatal if PostgreSQL is unavailable; requests then get 503.
        """
        try:
            self._engine = create_async_engine(self._url, pool_size=5, max_overflow=10)
            async with self._engine.begin() as conn:
                for stmt in _CREATE_TABLE_STMTS:
                    await conn.execute(text(stmt))
            logger.info("PostgreSQL connected — notes table ready")
        except Exception as e:
            logger.warning("PostgreSQL unavailable: %s", e)
            self._engine = None

    async def close(self) -> None:
        """Dispose of the engine and connection pool."""
        if self._engine:
            await self._engine.dispose()
            self._engine = None

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def create(self, text_value: Optional[str], image_url: Optional[str]) -> dict[str, Any]:
        row = await self._fetch_one(
            "INSERT INTO notes (text, image_url) VALUES (:text, :image_url) "
            f"RETURNING {_COLUMNS}",
            {"text": text_value, "image_url": image_url},
        )
        return _row_to_dict(row)

    async def update(
        self, note_id: int, text_value: Optional[str], image_url: Optional[str]
    ) -> Optional[dict[str, Any]]:
        """Overwrite a note. Returns None when the id does not exist."""
        row = await self._fetch_one(
            "UPDATE notes SET text = :text, image_url = :image_url WHERE id = :id "
            f"RETURNING {_COLUMNS}",
            {"id": note_id, "text": text_value, "image_url": image_url},
        )
        return _row_to_dict(row) if row else None

    async def delete(self, note_id: int) -> bool:
        """Delete a note. Returns False when the id did not exist."""
        row = await self._fetch_one(
            "DELETE FROM notes WHERE id = :id RETURNING id", {"id": note_id}
        )
        return row is not None

    async def list(self) -> list[dict[str, Any]]:
        engine = self._require_engine()
        try:
            async with engine.connect() as conn:
                result = await conn.execute(
                    text(f"SELECT {_COLUMNS} FROM notes ORDER BY created_at DESC, id DESC")
                )
                return [_row_to_dict(row) for row in result.fetchall()]
        except Exception as e:
            logger.warning("Failed to list notes: %s", e)
            raise DatabaseUnavailable(str(e)) from e

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_engine(self) -> AsyncEngine:
        if not self._engine:
            raise DatabaseUnavailable("database not connected")
        return self._engine

    async def _fetch_one(self, sql: str, params: dict[str, Any]) -> Any:
        engine = self._require_engine()
        try:
            async with engine.begin() as conn:
                result = await conn.execute(text(sql), params)
                return result.fetchone()
        except Exception as e:
            logger.warning("Note query failed: %s", e)
            raise DatabaseUnavailable(str(e)) from e
