"""In-memory ordered note collection.

The store is the single source of truth for rendering. It performs no I/O:
persistence goes through the sync controller, reordering through the
gesture engine. Every mutation is synchronous.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable, Optional

from notesync.models import Note, NoteId

logger = logging.getLogger(__name__)

Listener = Callable[[tuple[Note, ...]], None]


class NoteStore:
    """Ordered list of notes with unique ids, newest first by default."""

    def __init__(self, notes: Iterable[Note] = ()) -> None:
        self._notes: list[Note] = []
        self._listeners: list[Listener] = []
        for note in notes:
            self._insert(len(self._notes), note)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list(self) -> tuple[Note, ...]:
        """Snapshot of the current order. Safe to keep; never mutated."""
        return tuple(self._notes)

    def ids(self) -> list[NoteId]:
        return [n.id for n in self._notes]

    def index_of(self, note_id: NoteId) -> Optional[int]:
        for i, note in enumerate(self._notes):
            if note.id == note_id:
                return i
        return None

    def get(self, note_id: NoteId) -> Optional[Note]:
        idx = self.index_of(note_id)
        return None if idx is None else self._notes[idx]

    def __contains__(self, note_id: object) -> bool:
        return any(n.id == note_id for n in self._notes)

    def __len__(self) -> int:
        return len(self._notes)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def insert_at_head(self, note: Note) -> None:
        self.insert_at(0, note)

    def insert_at(self, index: int, note: Note) -> None:
        """Insert at ``index``, clamped to the current bounds."""
        index = max(0, min(index, len(self._notes)))
        self._insert(index, note)
        self._notify()

    def remove_by_id(self, note_id: NoteId) -> Optional[int]:
        """Remove a note. Returns the index it occupied, or None if absent."""
        idx = self.index_of(note_id)
        if idx is None:
            return None
        del self._notes[idx]
        self._notify()
        return idx

    def replace(self, note_id: NoteId, note: Note) -> bool:
        """Swap the note stored under ``note_id`` for ``note`` in place.

        ``note`` may carry a different id (a provisional note being replaced
        by its confirmed version) as long as that id is not already taken by
        another entry.
        """
        idx = self.index_of(note_id)
        if idx is None:
            return False
        if note.id != note_id and note.id in self:
            raise ValueError(f"duplicate note id {note.id}")
        self._notes[idx] = note
        self._notify()
        return True

    def move_to_position(self, note_id: NoteId, target_id: NoteId) -> bool:
        """Move ``note_id`` to the slot currently held by ``target_id``.

        Remove-then-insert: the moved note lands at the index the target had
        before removal, and every other note keeps its relative order.
        Returns False (no change) when the ids are equal or either is absent.
        """
        if note_id == target_id:
            return False
        from_idx = self.index_of(note_id)
        to_idx = self.index_of(target_id)
        if from_idx is None or to_idx is None:
            return False
        moved = self._notes.pop(from_idx)
        self._notes.insert(to_idx, moved)
        logger.debug("Moved note %s from %d to %d", note_id, from_idx, to_idx)
        self._notify()
        return True

    def reset(self, notes: Iterable[Note]) -> None:
        """Replace the whole list. Later duplicates of an id are dropped."""
        self._notes = []
        for note in notes:
            if note.id in self:
                logger.warning("Dropping duplicate note %s on reset", note.id)
                continue
            self._notes.append(note)
        self._notify()

    # ------------------------------------------------------------------
    # Change notification
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener called with the new order after each change."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _insert(self, index: int, note: Note) -> None:
        if note.id in self:
            raise ValueError(f"duplicate note id {note.id}")
        self._notes.insert(index, note)

    def _notify(self) -> None:
        snapshot = self.list()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.warning("Store listener failed: %s", e)
