"""Local-fallback persistence adapter.

Keeps the ordered note list as a JSON array under the ``"notes"`` key of a
durable key-value cache. Reads never fail: a missing key, unparsable JSON,
a non-array value or an unreachable cache all read as an empty list. A failed
write is logged and counted but does not fail the operation, so this adapter
never produces a ``TransportError``.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Optional
from uuid import uuid4

import pydantic

from notesync.errors import StorageError, ValidationError
from notesync.metrics import STORAGE_ERRORS
from notesync.models import ConfirmedId, Note, NoteDraft, NoteId, NoteRecord
from notesync.persistence.kv import KeyValueCache

logger = logging.getLogger(__name__)

NOTES_KEY = "notes"


class LocalPersistenceAdapter:
    """Persistence adapter backed by a local key-value cache."""

    def __init__(self, cache: KeyValueCache) -> None:
        self._cache = cache

    async def create(self, text: str, image_ref: Optional[str]) -> Note:
        draft = NoteDraft.validated(text, image_ref)
        note = Note(
            id=ConfirmedId(server_id=uuid4().hex),
            text=draft.text,
            image_ref=draft.image_ref,
            created_at=datetime.now(UTC),
        )
        notes = await self._read()
        await self._write([note, *notes])
        logger.info("Stored note %s locally", note.id)
        return note

    async def update(self, note_id: NoteId, text: str, image_ref: Optional[str]) -> Note:
        key = _server_id(note_id)
        draft = NoteDraft.validated(text, image_ref)
        notes = await self._read()
        for i, existing in enumerate(notes):
            if str(existing.id) == key:
                updated = existing.with_content(draft.text, draft.image_ref)
                notes[i] = updated
                await self._write(notes)
                return updated
        raise ValidationError(f"Note {key} not found", status=404)

    async def delete(self, note_id: NoteId) -> None:
        key = _server_id(note_id)
        notes = await self._read()
        remaining = [n for n in notes if str(n.id) != key]
        if len(remaining) != len(notes):
            await self._write(remaining)

    async def list(self) -> list[Note]:
        return await self._read()

    async def close(self) -> None:
        await self._cache.close()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _read(self) -> list[Note]:
        try:
            raw = await self._cache.get(NOTES_KEY)
        except StorageError as e:
            STORAGE_ERRORS.labels(operation="read").inc()
            logger.warning("Local cache unreadable, using empty list: %s", e)
            return []
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            STORAGE_ERRORS.labels(operation="read").inc()
            logger.warning("Local cache holds invalid JSON, using empty list: %s", e)
            return []
        if not isinstance(data, list):
            logger.warning("Local cache value is not a list, using empty list")
            return []

        notes: list[Note] = []
        seen: set[str] = set()
        for item in data:
            try:
                note = NoteRecord.model_validate(item).to_note()
            except pydantic.ValidationError as e:
                logger.warning("Skipping malformed cached note: %s", e)
                continue
            if str(note.id) in seen:
                continue
            seen.add(str(note.id))
            notes.append(note)
        return notes

    async def _write(self, notes: list[Note]) -> None:
        payload = json.dumps(
            [NoteRecord.from_note(n).model_dump(mode="json") for n in notes]
        )
        try:
            await self._cache.set(NOTES_KEY, payload)
        except StorageError as e:
            STORAGE_ERRORS.labels(operation="write").inc()
            logger.warning("Failed to persist notes locally: %s", e)


def _server_id(note_id: NoteId) -> str:
    if not isinstance(note_id, ConfirmedId):
        raise ValidationError(f"Note {note_id} has not been saved yet")
    return note_id.server_id
